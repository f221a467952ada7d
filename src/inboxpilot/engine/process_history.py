"""Webhook intake: turn provider change notifications into rule runs.

Outlook (Graph change notification, one message per delivery):
1. Load the account owning the subscription and validate entitlement
2. Fetch the message; only INBOX / SENT messages continue. This filter runs
   before the lock so a draft event cannot hold the lock the later sent
   event needs.
3. Acquire the per-message Redis lock; if held, another delivery has it
4. Already processed -> learn from removed categories in the background
5. Otherwise ``process_history_item``

Gmail (Pub/Sub push, a history id per delivery):
1. Load the account by email address and validate entitlement
2. List history since the stored cursor; ``messageAdded`` records in INBOX
   or SENT go to ``process_history_item``, ``labelRemoved`` records go to
   learning
3. Advance the stored cursor

Both return a small JSON body that is always sent with HTTP 200 so the
provider does not retry: ``{"ok": True}`` normally, ``{"error": True}``
when an unexpected error was captured.
"""

from __future__ import annotations

import asyncio
from email.utils import parseaddr
from typing import TYPE_CHECKING, Any

from inboxpilot.core.errors import (
    AuthenticationError,
    NotFoundError,
    ProviderAPIError,
    RateLimitExceeded,
)
from inboxpilot.core.logging import capture_exception, get_logger
from inboxpilot.engine.learn import learn_from_label_removal
from inboxpilot.engine.run_rules import run_rules
from inboxpilot.engine.webhook_validation import validate_webhook_account

if TYPE_CHECKING:
    from inboxpilot.db.store import EmailAccount
    from inboxpilot.engine.context import Services
    from inboxpilot.providers.base import EmailProvider, ParsedMessage
    from inboxpilot.rules.types import Rule

logger = get_logger(__name__)

OK: dict[str, Any] = {"ok": True}
ERROR: dict[str, Any] = {"error": True}

THROTTLING_CODES = frozenset({"TooManyRequests", "ApplicationThrottled", "MailboxConcurrency"})
ACCESS_DENIED_CODES = frozenset({"ErrorAccessDenied", "AccessDenied", "Authorization_RequestDenied"})

# Fallback window when an account has no stored Gmail history cursor
GMAIL_HISTORY_FALLBACK = 500

# Strong references to fire-and-forget tasks so they are not collected mid-run
_background_tasks: set[asyncio.Task] = set()


def is_inbox_or_sent(message: ParsedMessage) -> bool:
    return message.is_inbox or message.is_sent


def is_assistant_email(account_email: str, email_to_check: str | None) -> bool:
    """Whether an address is the account's ``+assistant`` alias."""
    if not email_to_check:
        return False
    local, _, domain = account_email.lower().partition("@")
    alias = f"{local}+assistant@{domain}"
    return any(
        parseaddr(part)[1].lower() == alias for part in email_to_check.split(",")
    )


def _spawn(coro: Any, *, label: str) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.warning("background_task_failed", task=label, error=str(t.exception()))

    task.add_done_callback(_done)


def handle_processing_error(error: Exception, account: EmailAccount | None) -> dict[str, Any]:
    """Map an error raised while processing a delivery onto the response body."""
    account_id = account.id if account else None

    if isinstance(error, NotFoundError):
        logger.info("message_not_found", email_account_id=account_id)
        return OK

    if isinstance(error, RateLimitExceeded) or (
        isinstance(error, ProviderAPIError)
        and (error.status_code == 429 or error.error_code in THROTTLING_CODES)
    ):
        logger.warning("provider_throttled", email_account_id=account_id, error=str(error))
        return OK

    if isinstance(error, AuthenticationError) or (
        isinstance(error, ProviderAPIError)
        and (error.status_code in (401, 403) or error.error_code in ACCESS_DENIED_CODES)
    ):
        logger.warning("provider_access_denied", email_account_id=account_id, error=str(error))
        return OK

    capture_exception(error, email_account_id=account_id)
    return ERROR


# ---------------------------------------------------------------------------
# Shared per-message processing
# ---------------------------------------------------------------------------


async def process_history_item(
    services: Services,
    *,
    provider: EmailProvider,
    account: EmailAccount,
    rules: list[Rule],
    message_id: str,
    thread_id: str | None = None,
    message: ParsedMessage | None = None,
    lock_acquired: bool = False,
) -> None:
    """Run the rules for one message unless it was already handled."""
    if not lock_acquired and not await services.lock.acquire(
        email=account.email, message_id=message_id
    ):
        return

    if message is None:
        message = await provider.get_message(message_id)
    thread_id = thread_id or message.thread_id

    if await services.store.find_executed_rule(account.id, thread_id, message_id):
        logger.info("message_already_processed", message_id=message_id)
        return

    if not is_inbox_or_sent(message):
        logger.info("message_not_in_inbox_or_sent", message_id=message_id, label_ids=message.label_ids)
        return

    if is_assistant_email(account.email, message.to) or is_assistant_email(
        account.email, message.from_
    ):
        logger.info("assistant_email_skipped", message_id=message_id)
        return

    if message.is_sent:
        logger.info("outbound_message_skipped", message_id=message_id)
        return

    if not rules or not account.ai_access:
        logger.info("no_automation_rules", message_id=message_id)
        return

    await run_rules(
        services=services,
        provider=provider,
        account=account,
        message=message,
        rules=rules,
    )


# ---------------------------------------------------------------------------
# Outlook
# ---------------------------------------------------------------------------


async def process_outlook_notification(
    services: Services, *, subscription_id: str, message_id: str
) -> dict[str, Any]:
    account = await services.store.get_email_account_by_subscription(subscription_id)
    validation = await validate_webhook_account(services, account)
    if not validation.ok:
        return OK
    assert account is not None

    try:
        provider = await services.provider_for(account)
        message = await provider.get_message(message_id)

        if not is_inbox_or_sent(message):
            logger.info(
                "message_not_in_inbox_or_sent",
                message_id=message_id,
                label_ids=message.label_ids,
            )
            return OK

        if not await services.lock.acquire(email=account.email, message_id=message_id):
            return OK

        existing = await services.store.find_executed_rule(account.id, message.thread_id, message_id)
        if existing:
            logger.info("message_already_processed", message_id=message_id)
            _spawn(
                learn_from_label_removal(services.store, account.id, message),
                label="learn_from_label_removal",
            )
            return OK

        rules = await services.store.list_rules(account.id, enabled_only=True)
        await process_history_item(
            services,
            provider=provider,
            account=account,
            rules=rules,
            message_id=message_id,
            message=message,
            lock_acquired=True,
        )
        return OK

    except Exception as e:
        return handle_processing_error(e, account)


# ---------------------------------------------------------------------------
# Gmail
# ---------------------------------------------------------------------------


def _start_history_id(account: EmailAccount, webhook_history_id: int) -> str:
    if account.last_synced_history_id:
        return account.last_synced_history_id
    return str(max(webhook_history_id - GMAIL_HISTORY_FALLBACK, 1))


async def process_gmail_notification(
    services: Services, *, email_address: str, history_id: int
) -> dict[str, Any]:
    account = await services.store.get_email_account_by_email(email_address.lower())
    validation = await validate_webhook_account(services, account)
    if not validation.ok:
        return OK
    assert account is not None

    try:
        provider = await services.provider_for(account)
        start = _start_history_id(account, history_id)

        try:
            history, latest = await provider.list_history(
                start, max_results=services.config.webhook.max_history_items
            )
        except NotFoundError:
            # Cursor too old for Gmail to answer; skip ahead rather than loop
            logger.warning("gmail_history_expired", email_account_id=account.id, start=start)
            await services.store.update_last_synced_history_id(account.id, str(history_id))
            return OK

        rules = await services.store.list_rules(account.id, enabled_only=True)
        seen: set[str] = set()

        for record in history:
            for added in record.get("messagesAdded", []):
                item = added.get("message", {})
                if item.get("id") in seen:
                    continue
                seen.add(item.get("id"))
                labels = item.get("labelIds") or []
                if "INBOX" not in labels and "SENT" not in labels:
                    continue
                try:
                    await process_history_item(
                        services,
                        provider=provider,
                        account=account,
                        rules=rules,
                        message_id=item["id"],
                        thread_id=item.get("threadId"),
                    )
                except NotFoundError:
                    logger.info("message_not_found", message_id=item["id"])

            for removed in record.get("labelsRemoved", []):
                item = removed.get("message", {})
                try:
                    message = await provider.get_message(item["id"])
                except NotFoundError:
                    continue
                await learn_from_label_removal(services.store, account.id, message)

        await services.store.update_last_synced_history_id(
            account.id, str(latest or history_id)
        )
        logger.info("gmail_history_processed", email_account_id=account.id, records=len(history))
        return OK

    except Exception as e:
        return handle_processing_error(e, account)

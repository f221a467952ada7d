"""Side effects for each action type.

``run_action_function`` is the single dispatch point used both for
immediate execution and for scheduled actions fired by the queue callback.

Usage:
    from inboxpilot.engine.actions import run_action_function

    draft_id = await run_action_function(provider, message, action, account_email=account.email)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import requests

from inboxpilot.core.errors import InboxPilotError, NotFoundError
from inboxpilot.core.logging import get_logger
from inboxpilot.rules.types import ActionType

if TYPE_CHECKING:
    from inboxpilot.providers.base import EmailProvider, ParsedMessage
    from inboxpilot.rules.types import ActionItem

logger = get_logger(__name__)

WEBHOOK_TIMEOUT = 10.0


class WebhookCallError(InboxPilotError):
    """Raised when a CALL_WEBHOOK target does not accept the payload."""

    pass


def _webhook_payload(message: ParsedMessage, account_email: str, executed_rule_id: int | None) -> dict[str, Any]:
    return {
        "email": {
            "threadId": message.thread_id,
            "messageId": message.id,
            "subject": message.subject,
            "from": message.from_,
            "cc": message.cc,
            "bcc": message.bcc,
            "headerMessageId": message.internet_message_id,
            "snippet": message.snippet,
            "date": message.date.isoformat() if message.date else None,
        },
        "executedRuleId": executed_rule_id,
        "emailAccount": account_email,
    }


def _post_webhook(url: str, payload: dict[str, Any]) -> None:
    try:
        response = requests.post(url, json=payload, timeout=WEBHOOK_TIMEOUT)
    except requests.exceptions.RequestException as e:
        raise WebhookCallError(f"Webhook call to {url} failed: {e}") from e
    if response.status_code >= 400:
        raise WebhookCallError(f"Webhook call to {url} returned {response.status_code}")


async def run_action_function(
    provider: EmailProvider,
    message: ParsedMessage,
    action: ActionItem,
    *,
    account_email: str,
    executed_rule_id: int | None = None,
) -> str | None:
    """Perform one action against the mailbox.

    Returns:
        The created draft id for DRAFT_EMAIL, otherwise None

    Raises:
        ProviderAPIError: If the provider call fails
        WebhookCallError: If CALL_WEBHOOK fails
        NotFoundError: If MOVE_FOLDER names a folder that does not exist
    """
    logger.debug("running_action", action_type=str(action.type), message_id=message.id)

    match action.type:
        case ActionType.ARCHIVE:
            await provider.archive_thread(message.thread_id)
        case ActionType.LABEL:
            if action.label:
                await provider.label_message(message, action.label)
        case ActionType.DRAFT_EMAIL:
            return await provider.create_draft(
                message,
                action.content or "",
                to=action.to,
                subject=action.subject,
                cc=action.cc,
                bcc=action.bcc,
            )
        case ActionType.REPLY:
            await provider.reply(message, action.content or "", cc=action.cc, bcc=action.bcc)
        case ActionType.SEND_EMAIL:
            if not action.to:
                raise ValueError("SEND_EMAIL needs a recipient")
            await provider.send_email(
                to=action.to,
                subject=action.subject or "",
                content=action.content or "",
                cc=action.cc,
                bcc=action.bcc,
            )
        case ActionType.FORWARD:
            if not action.to:
                raise ValueError("FORWARD needs a recipient")
            await provider.forward(
                message, to=action.to, content=action.content, cc=action.cc, bcc=action.bcc
            )
        case ActionType.MARK_SPAM:
            await provider.mark_spam(message.thread_id)
        case ActionType.MARK_READ:
            await provider.mark_read(message)
        case ActionType.MOVE_FOLDER:
            folder_id = action.folder_id
            if not folder_id and action.folder_name:
                folder_id = await provider.get_folder_id(action.folder_name)
            if not folder_id:
                raise NotFoundError(
                    f"Folder '{action.folder_name}' not found", error_code="ErrorFolderNotFound"
                )
            await provider.move_to_folder(message, folder_id)
        case ActionType.CALL_WEBHOOK:
            if action.url:
                payload = _webhook_payload(message, account_email, executed_rule_id)
                await asyncio.to_thread(_post_webhook, action.url, payload)
        case _:
            # Digest, sender notification and thread tracking have no mailbox side effect here
            logger.debug("action_without_side_effect", action_type=str(action.type))
    return None

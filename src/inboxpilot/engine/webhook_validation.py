"""Entitlement checks run before any webhook delivery is processed.

An account only gets its mail processed while it is premium, has AI
access, has at least one enabled rule and holds usable tokens. When any
check fails the provider watch is torn down so the provider stops sending
notifications, and the caller answers 200 so it does not retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from inboxpilot.core.errors import InboxPilotError
from inboxpilot.core.logging import get_logger
from inboxpilot.providers.auth import has_valid_tokens

if TYPE_CHECKING:
    from inboxpilot.db.store import EmailAccount
    from inboxpilot.engine.context import Services

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class AccountValidation:
    ok: bool
    reason: str | None = None


async def check_account(services: Services, account: EmailAccount) -> AccountValidation:
    if not account.is_premium:
        return AccountValidation(False, "not_premium")
    if not account.ai_access:
        return AccountValidation(False, "no_ai_access")
    if not await services.store.has_enabled_rules(account.id):
        return AccountValidation(False, "no_enabled_rules")
    if not has_valid_tokens(account):
        return AccountValidation(False, "no_valid_tokens")
    return AccountValidation(True)


async def unwatch_account(services: Services, account: EmailAccount) -> None:
    """Stop provider notifications and forget the subscription. Best effort."""
    try:
        provider = await services.provider_for(account)
        await provider.unwatch(account.watch_subscription_id)
    except InboxPilotError as e:
        logger.warning("unwatch_failed", email_account_id=account.id, error=str(e))
    await services.store.clear_watch(account.id)


async def validate_webhook_account(
    services: Services, account: EmailAccount | None
) -> AccountValidation:
    """Run the entitlement checks and clean up the watch on failure."""
    if account is None:
        logger.warning("webhook_account_not_found")
        return AccountValidation(False, "account_not_found")

    validation = await check_account(services, account)
    if not validation.ok:
        logger.info(
            "webhook_account_invalid",
            email_account_id=account.id,
            reason=validation.reason,
        )
        await unwatch_account(services, account)
    return validation

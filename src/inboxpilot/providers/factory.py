"""Build the right EmailProvider for an account."""

from __future__ import annotations

from typing import TYPE_CHECKING

from inboxpilot.providers.auth import get_valid_access_token
from inboxpilot.providers.gmail import GmailProvider, build_gmail_service
from inboxpilot.providers.graph_client import GraphClient
from inboxpilot.providers.outlook import OutlookProvider

if TYPE_CHECKING:
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.db.store import DatabaseStore, EmailAccount
    from inboxpilot.providers.base import EmailProvider

SUPPORTED_PROVIDERS = ("google", "microsoft")


async def create_email_provider(
    account: EmailAccount, store: DatabaseStore, config: AppConfig
) -> EmailProvider:
    """Refresh the account's token if needed and return a provider bound to it.

    Raises:
        AuthenticationError: If no usable token can be obtained
        ValueError: If the account's provider is unknown
    """
    if account.provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported email provider '{account.provider}'")

    token = await get_valid_access_token(account, store, config)
    if account.provider == "google":
        return GmailProvider(build_gmail_service(token), email_address=account.email)
    return OutlookProvider(GraphClient(token))

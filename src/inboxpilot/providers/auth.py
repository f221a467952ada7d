"""Access token refresh for connected mail accounts.

Tokens are stored per account in SQLite. Before a provider client is built
the access token is checked and, when it is missing or about to expire,
refreshed with the stored refresh token:

- Microsoft: MSAL ``ConfidentialClientApplication.acquire_token_by_refresh_token``
- Google: ``google.oauth2.credentials.Credentials.refresh``

Both libraries are synchronous, so refreshes run in a worker thread. The
refreshed tokens are written back to the store.

Usage:
    from inboxpilot.providers.auth import get_valid_access_token

    token = await get_valid_access_token(account, store, config)
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import google.auth.exceptions
import google.auth.transport.requests
import msal
from google.oauth2.credentials import Credentials

from inboxpilot.core.errors import AuthenticationError
from inboxpilot.core.logging import get_logger

if TYPE_CHECKING:
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.db.store import DatabaseStore, EmailAccount

logger = get_logger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Refresh this long before the recorded expiry
EXPIRY_MARGIN = timedelta(minutes=5)


def has_valid_tokens(account: EmailAccount) -> bool:
    """Whether the account can be used without user re-authentication."""
    return bool(account.refresh_token or (account.access_token and not _is_expired(account)))


def _is_expired(account: EmailAccount) -> bool:
    if account.token_expires_at is None:
        return False
    expires_at = account.token_expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return datetime.now(UTC) + EXPIRY_MARGIN >= expires_at


def _refresh_microsoft(account: EmailAccount, config: AppConfig) -> tuple[str, str | None, int]:
    ms = config.microsoft
    if not ms.client_id or not ms.client_secret:
        raise AuthenticationError(
            "Microsoft client_id and client_secret are not configured. "
            "Set MICROSOFT_CLIENT_ID and MICROSOFT_CLIENT_SECRET."
        )

    app = msal.ConfidentialClientApplication(
        ms.client_id,
        client_credential=ms.client_secret,
        authority=f"https://login.microsoftonline.com/{ms.tenant_id}",
    )
    result = app.acquire_token_by_refresh_token(account.refresh_token, scopes=ms.scopes)

    if "access_token" not in result:
        error = result.get("error_description") or result.get("error") or "unknown error"
        raise AuthenticationError(f"Microsoft token refresh failed for {account.email}: {error}")

    return result["access_token"], result.get("refresh_token"), int(result.get("expires_in", 3600))


def _refresh_google(account: EmailAccount, config: AppConfig) -> tuple[str, str | None, int]:
    google = config.google
    if not google.client_id or not google.client_secret:
        raise AuthenticationError(
            "Google client_id and client_secret are not configured. "
            "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
        )

    credentials = Credentials(
        token=None,
        refresh_token=account.refresh_token,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=google.client_id,
        client_secret=google.client_secret,
    )
    try:
        credentials.refresh(google.auth.transport.requests.Request())
    except google.auth.exceptions.RefreshError as e:
        raise AuthenticationError(f"Google token refresh failed for {account.email}: {e}") from e

    expires_in = 3600
    if credentials.expiry is not None:
        expiry = credentials.expiry.replace(tzinfo=UTC)
        expires_in = max(int((expiry - datetime.now(UTC)).total_seconds()), 0)
    return credentials.token, credentials.refresh_token, expires_in


async def get_valid_access_token(
    account: EmailAccount, store: DatabaseStore, config: AppConfig
) -> str:
    """Return a usable access token, refreshing and persisting it if needed.

    Raises:
        AuthenticationError: If there is no usable token and refresh fails
    """
    if account.access_token and not _is_expired(account):
        return account.access_token

    if not account.refresh_token:
        raise AuthenticationError(
            f"No valid tokens for {account.email}. The account must be reconnected."
        )

    refresh = _refresh_google if account.provider == "google" else _refresh_microsoft
    access_token, refresh_token, expires_in = await asyncio.to_thread(refresh, account, config)

    expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)
    await store.update_tokens(
        account.id,
        access_token=access_token,
        refresh_token=refresh_token or account.refresh_token,
        token_expires_at=expires_at,
    )
    account.access_token = access_token
    account.refresh_token = refresh_token or account.refresh_token
    account.token_expires_at = expires_at

    logger.info("access_token_refreshed", email_account_id=account.id, provider=account.provider)
    return access_token

"""Mail provider adapters (Gmail, Outlook) behind one EmailProvider interface."""

from inboxpilot.providers.base import (
    DRAFT,
    INBOX,
    SENT,
    SPAM,
    TRASH,
    UNREAD,
    EmailProvider,
    Label,
    ParsedMessage,
)
from inboxpilot.providers.factory import create_email_provider

__all__ = [
    "DRAFT",
    "INBOX",
    "SENT",
    "SPAM",
    "TRASH",
    "UNREAD",
    "EmailProvider",
    "Label",
    "ParsedMessage",
    "create_email_provider",
]

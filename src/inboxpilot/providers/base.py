"""Provider-neutral message type and the mail provider interface.

Gmail and Outlook expose very different APIs. The pipeline only ever talks
to ``EmailProvider`` and only ever sees ``ParsedMessage``. Outlook folders
are mapped onto Gmail-style system labels (INBOX, SENT, DRAFT, TRASH, SPAM)
so the intake filter can be written once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

INBOX = "INBOX"
SENT = "SENT"
DRAFT = "DRAFT"
TRASH = "TRASH"
SPAM = "SPAM"
UNREAD = "UNREAD"


@dataclass(frozen=True, slots=True)
class Label:
    id: str
    name: str


@dataclass
class ParsedMessage:
    """A message as the rule pipeline sees it."""

    id: str
    thread_id: str
    subject: str = ""
    from_: str = ""
    to: str = ""
    cc: str | None = None
    bcc: str | None = None
    reply_to: str | None = None
    snippet: str = ""
    text_plain: str | None = None
    text_html: str | None = None
    date: datetime | None = None
    label_ids: list[str] = field(default_factory=list)
    # Outlook category names, or Gmail user label names when resolved
    label_names: list[str] = field(default_factory=list)
    internet_message_id: str | None = None
    references: str | None = None

    @property
    def is_draft(self) -> bool:
        return DRAFT in self.label_ids

    @property
    def is_sent(self) -> bool:
        return SENT in self.label_ids

    @property
    def is_inbox(self) -> bool:
        return INBOX in self.label_ids

    def has_label(self, label_id: str | None = None, name: str | None = None) -> bool:
        if label_id and label_id in self.label_ids:
            return True
        if name:
            lowered = name.lower()
            return any(existing.lower() == lowered for existing in self.label_names)
        return False


@runtime_checkable
class EmailProvider(Protocol):
    """Operations the pipeline needs from a mailbox."""

    name: str

    async def get_message(self, message_id: str) -> ParsedMessage: ...

    async def get_thread_messages(self, thread_id: str) -> list[ParsedMessage]: ...

    async def get_or_create_label(self, name: str) -> Label: ...

    async def get_label_by_name(self, name: str) -> Label | None: ...

    async def label_message(self, message: ParsedMessage, label_name: str) -> None: ...

    async def label_thread(self, thread_id: str, label_name: str) -> None: ...

    async def archive_thread(self, thread_id: str) -> None: ...

    async def mark_read(self, message: ParsedMessage) -> None: ...

    async def mark_spam(self, thread_id: str) -> None: ...

    async def move_to_folder(self, message: ParsedMessage, folder_id: str) -> None: ...

    async def get_folder_id(self, folder_name: str) -> str | None: ...

    async def create_draft(
        self,
        original: ParsedMessage,
        content: str,
        *,
        to: str | None = None,
        subject: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> str: ...

    async def reply(
        self,
        original: ParsedMessage,
        content: str,
        *,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None: ...

    async def send_email(
        self,
        *,
        to: str,
        subject: str,
        content: str,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None: ...

    async def forward(
        self,
        original: ParsedMessage,
        *,
        to: str,
        content: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None: ...

    async def unwatch(self, subscription_id: str | None = None) -> None: ...

"""Gmail mailbox operations over the Gmail API (google-api-python-client).

The discovery client is synchronous; every request runs in a worker thread
and goes through ``with_provider_retry`` so 429s, rate-limit 403s and
5xx responses back off the same way everywhere. ``HttpError`` is converted
into ``ProviderAPIError`` / ``NotFoundError`` so the pipeline never sees
googleapiclient types.

Usage:
    from inboxpilot.providers.gmail import GmailProvider, build_gmail_service

    provider = GmailProvider(build_gmail_service(access_token))
    message = await provider.get_message(message_id)
"""

from __future__ import annotations

import asyncio
import base64
from datetime import UTC, datetime
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError

from inboxpilot.core.errors import NotFoundError, ProviderAPIError
from inboxpilot.core.logging import get_logger
from inboxpilot.core.retry import with_provider_retry
from inboxpilot.providers.base import INBOX, SENT, SPAM, UNREAD, Label, ParsedMessage

logger = get_logger(__name__)

USER_ID = "me"


def build_gmail_service(access_token: str) -> Resource:
    return build("gmail", "v1", credentials=Credentials(token=access_token), cache_discovery=False)


def _to_provider_error(error: HttpError) -> ProviderAPIError:
    status = int(error.resp.status) if error.resp is not None else None
    reason = None
    if isinstance(error.error_details, list) and error.error_details:
        first = error.error_details[0]
        if isinstance(first, dict):
            reason = first.get("reason")
    message = f"Gmail API error ({status}): {error.reason}"
    if status == 404:
        return NotFoundError(message, error_code=reason or "notFound")
    retry_after = error.resp.get("retry-after") if error.resp is not None else None
    return ProviderAPIError(
        message,
        status_code=status,
        error_code=reason,
        reason=reason,
        retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
    )


def _decode(data: str | None) -> str | None:
    if not data:
        return None
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="replace")


def _find_body(payload: dict[str, Any], mime_type: str) -> str | None:
    if payload.get("mimeType") == mime_type and payload.get("body", {}).get("data"):
        return _decode(payload["body"]["data"])
    for part in payload.get("parts") or []:
        found = _find_body(part, mime_type)
        if found:
            return found
    return None


def _encode_message(message: EmailMessage) -> str:
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


def _reply_subject(subject: str) -> str:
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


class GmailProvider:
    """EmailProvider implementation for Gmail mailboxes."""

    name = "google"

    def __init__(self, service: Resource, email_address: str | None = None):
        self.service = service
        self.email_address = email_address
        self._labels: dict[str, Label] | None = None

    async def _execute(self, request: Any, label: str) -> dict[str, Any]:
        async def _run() -> dict[str, Any]:
            try:
                return await asyncio.to_thread(request.execute)
            except HttpError as e:
                raise _to_provider_error(e) from e

        return await with_provider_retry(_run, label=label) or {}

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    async def _load_labels(self, force: bool = False) -> dict[str, Label]:
        if self._labels is None or force:
            response = await self._execute(
                self.service.users().labels().list(userId=USER_ID), "labels.list"
            )
            self._labels = {
                item["id"]: Label(id=item["id"], name=item["name"])
                for item in response.get("labels", [])
            }
        return self._labels

    async def get_label_by_name(self, name: str) -> Label | None:
        lowered = name.lower()
        for label in (await self._load_labels()).values():
            if label.name.lower() == lowered:
                return label
        return None

    async def get_or_create_label(self, name: str) -> Label:
        existing = await self.get_label_by_name(name)
        if existing:
            return existing
        body = {"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"}
        created = await self._execute(
            self.service.users().labels().create(userId=USER_ID, body=body), "labels.create"
        )
        label = Label(id=created["id"], name=created["name"])
        (await self._load_labels())[label.id] = label
        logger.info("gmail_label_created", name=name)
        return label

    async def label_message(self, message: ParsedMessage, label_name: str) -> None:
        label = await self.get_or_create_label(label_name)
        await self._modify_message(message.id, add=[label.id])

    async def label_thread(self, thread_id: str, label_name: str) -> None:
        label = await self.get_or_create_label(label_name)
        await self._modify_thread(thread_id, add=[label.id])

    async def _modify_message(
        self, message_id: str, add: list[str] | None = None, remove: list[str] | None = None
    ) -> None:
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        await self._execute(
            self.service.users().messages().modify(userId=USER_ID, id=message_id, body=body),
            "messages.modify",
        )

    async def _modify_thread(
        self, thread_id: str, add: list[str] | None = None, remove: list[str] | None = None
    ) -> None:
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        await self._execute(
            self.service.users().threads().modify(userId=USER_ID, id=thread_id, body=body),
            "threads.modify",
        )

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _parse(self, data: dict[str, Any]) -> ParsedMessage:
        payload = data.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        labels = await self._load_labels()
        label_ids = list(data.get("labelIds") or [])

        date = None
        if headers.get("date"):
            try:
                date = parsedate_to_datetime(headers["date"])
            except (TypeError, ValueError):
                date = None
        if date is None and data.get("internalDate"):
            date = datetime.fromtimestamp(int(data["internalDate"]) / 1000, tz=UTC)

        return ParsedMessage(
            id=data["id"],
            thread_id=data.get("threadId") or data["id"],
            subject=headers.get("subject", ""),
            from_=headers.get("from", ""),
            to=headers.get("to", ""),
            cc=headers.get("cc"),
            bcc=headers.get("bcc"),
            reply_to=headers.get("reply-to"),
            snippet=data.get("snippet", ""),
            text_plain=_find_body(payload, "text/plain"),
            text_html=_find_body(payload, "text/html"),
            date=date,
            label_ids=label_ids,
            label_names=[labels[i].name for i in label_ids if i in labels],
            internet_message_id=headers.get("message-id"),
            references=headers.get("references"),
        )

    async def get_message(self, message_id: str) -> ParsedMessage:
        data = await self._execute(
            self.service.users().messages().get(userId=USER_ID, id=message_id, format="full"),
            "messages.get",
        )
        return await self._parse(data)

    async def get_thread_messages(self, thread_id: str) -> list[ParsedMessage]:
        data = await self._execute(
            self.service.users().threads().get(userId=USER_ID, id=thread_id, format="full"),
            "threads.get",
        )
        return [await self._parse(m) for m in data.get("messages", [])]

    async def list_history(
        self, start_history_id: str, max_results: int = 100
    ) -> tuple[list[dict[str, Any]], str | None]:
        """History records since ``start_history_id`` and the mailbox's latest history id."""
        data = await self._execute(
            self.service.users().history().list(
                userId=USER_ID,
                startHistoryId=start_history_id,
                historyTypes=["messageAdded", "labelRemoved"],
                maxResults=max_results,
            ),
            "history.list",
        )
        return data.get("history", []), data.get("historyId")

    # ------------------------------------------------------------------
    # Folders (Gmail has none; labels stand in)
    # ------------------------------------------------------------------

    async def get_folder_id(self, folder_name: str) -> str | None:
        label = await self.get_label_by_name(folder_name)
        return label.id if label else None

    async def move_to_folder(self, message: ParsedMessage, folder_id: str) -> None:
        await self._modify_message(message.id, add=[folder_id], remove=[INBOX])

    # ------------------------------------------------------------------
    # Mailbox state
    # ------------------------------------------------------------------

    async def archive_thread(self, thread_id: str) -> None:
        await self._modify_thread(thread_id, remove=[INBOX])

    async def mark_read(self, message: ParsedMessage) -> None:
        await self._modify_message(message.id, remove=[UNREAD])

    async def mark_spam(self, thread_id: str) -> None:
        await self._modify_thread(thread_id, add=[SPAM], remove=[INBOX])

    # ------------------------------------------------------------------
    # Composing
    # ------------------------------------------------------------------

    def _build_mime(
        self,
        *,
        to: str,
        subject: str,
        content: str,
        cc: str | None = None,
        bcc: str | None = None,
        in_reply_to: ParsedMessage | None = None,
    ) -> EmailMessage:
        mime = EmailMessage()
        mime["To"] = to
        mime["Subject"] = subject
        if self.email_address:
            mime["From"] = self.email_address
        if cc:
            mime["Cc"] = cc
        if bcc:
            mime["Bcc"] = bcc
        if in_reply_to and in_reply_to.internet_message_id:
            mime["In-Reply-To"] = in_reply_to.internet_message_id
            references = in_reply_to.references or ""
            mime["References"] = f"{references} {in_reply_to.internet_message_id}".strip()
        mime.set_content(content, subtype="html")
        return mime

    async def create_draft(
        self,
        original: ParsedMessage,
        content: str,
        *,
        to: str | None = None,
        subject: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> str:
        mime = self._build_mime(
            to=to or original.reply_to or original.from_,
            subject=subject or _reply_subject(original.subject),
            content=content,
            cc=cc,
            bcc=bcc,
            in_reply_to=original,
        )
        body = {"message": {"raw": _encode_message(mime), "threadId": original.thread_id}}
        draft = await self._execute(
            self.service.users().drafts().create(userId=USER_ID, body=body), "drafts.create"
        )
        logger.info("gmail_draft_created", draft_id=draft["id"], thread_id=original.thread_id)
        return draft["id"]

    async def _send(self, mime: EmailMessage, thread_id: str | None = None) -> None:
        body: dict[str, Any] = {"raw": _encode_message(mime)}
        if thread_id:
            body["threadId"] = thread_id
        await self._execute(
            self.service.users().messages().send(userId=USER_ID, body=body), "messages.send"
        )

    async def reply(
        self,
        original: ParsedMessage,
        content: str,
        *,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        mime = self._build_mime(
            to=original.reply_to or original.from_,
            subject=_reply_subject(original.subject),
            content=content,
            cc=cc,
            bcc=bcc,
            in_reply_to=original,
        )
        await self._send(mime, thread_id=original.thread_id)

    async def send_email(
        self,
        *,
        to: str,
        subject: str,
        content: str,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        await self._send(self._build_mime(to=to, subject=subject, content=content, cc=cc, bcc=bcc))

    async def forward(
        self,
        original: ParsedMessage,
        *,
        to: str,
        content: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        quoted = original.text_html or (original.text_plain or original.snippet).replace("\n", "<br>")
        body = (
            f"{content or ''}<br><br>---------- Forwarded message ---------<br>"
            f"From: {original.from_}<br>Subject: {original.subject}<br>To: {original.to}<br><br>"
            f"{quoted}"
        )
        mime = self._build_mime(
            to=to, subject=f"Fwd: {original.subject}", content=body, cc=cc, bcc=bcc
        )
        await self._send(mime)

    async def unwatch(self, subscription_id: str | None = None) -> None:
        await self._execute(self.service.users().stop(userId=USER_ID), "users.stop")

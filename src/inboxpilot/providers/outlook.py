"""Outlook mailbox operations over Microsoft Graph.

Outlook has folders and categories rather than labels. The provider maps:
- the message's parent folder onto a system label (INBOX, SENT, DRAFT,
  TRASH, SPAM) so intake filtering is provider-neutral
- "labels" onto Outlook categories (created in the master category list
  on first use)
- archive / spam onto moves to the well-known Archive / JunkEmail folders

All Graph calls are blocking ``requests`` calls and run in worker threads.

Usage:
    from inboxpilot.providers.graph_client import GraphClient
    from inboxpilot.providers.outlook import OutlookProvider

    provider = OutlookProvider(GraphClient(access_token))
    message = await provider.get_message(message_id)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from email.utils import getaddresses
from typing import Any

from inboxpilot.core.errors import NotFoundError
from inboxpilot.core.logging import get_logger
from inboxpilot.providers.base import DRAFT, INBOX, SENT, SPAM, TRASH, UNREAD, Label, ParsedMessage
from inboxpilot.providers.graph_client import GraphClient

logger = get_logger(__name__)

MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,bccRecipients,replyTo,"
    "bodyPreview,body,receivedDateTime,parentFolderId,categories,isRead,isDraft,"
    "internetMessageId"
)

# Graph well-known folder name -> system label
WELL_KNOWN_FOLDERS: dict[str, str] = {
    "inbox": INBOX,
    "sentitems": SENT,
    "drafts": DRAFT,
    "deleteditems": TRASH,
    "junkemail": SPAM,
}

MAX_THREAD_MESSAGES = 50


def _format_address(recipient: dict[str, Any] | None) -> str:
    if not recipient:
        return ""
    address = recipient.get("emailAddress", {})
    name = address.get("name")
    email = address.get("address", "")
    if name and name != email:
        return f"{name} <{email}>"
    return email


def _join_recipients(recipients: list[dict[str, Any]] | None) -> str | None:
    if not recipients:
        return None
    return ", ".join(_format_address(r) for r in recipients)


def to_recipients(value: str | None) -> list[dict[str, Any]]:
    """Comma-separated addresses to Graph recipient objects."""
    if not value:
        return []
    return [
        {"emailAddress": {"address": address, **({"name": name} if name else {})}}
        for name, address in getaddresses([value])
        if address
    ]


def _parse_graph_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class OutlookProvider:
    """EmailProvider implementation for Outlook / Microsoft 365 mailboxes."""

    name = "microsoft"

    def __init__(self, client: GraphClient):
        self.client = client
        self._folder_ids: dict[str, str] = {}
        self._folder_labels: dict[str, str] = {}

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
        return await asyncio.to_thread(getattr(self.client, method), *args, **kwargs)

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def _load_well_known_folders(self) -> None:
        if self._folder_labels:
            return
        for well_known, label in WELL_KNOWN_FOLDERS.items():
            try:
                folder = await self._call(
                    "get", f"/me/mailFolders/{well_known}", params={"$select": "id"}
                )
            except NotFoundError:
                continue
            self._folder_ids[well_known] = folder["id"]
            self._folder_labels[folder["id"]] = label

    async def get_folder_id(self, folder_name: str) -> str | None:
        normalized = folder_name.replace(" ", "").lower()
        if normalized in WELL_KNOWN_FOLDERS or normalized == "archive":
            await self._load_well_known_folders()
            if normalized in self._folder_ids:
                return self._folder_ids[normalized]

        escaped = folder_name.replace("'", "''")
        response = await self._call(
            "get",
            "/me/mailFolders",
            params={"$filter": f"displayName eq '{escaped}'", "$select": "id,displayName"},
        )
        folders = response.get("value", [])
        return folders[0]["id"] if folders else None

    async def move_to_folder(self, message: ParsedMessage, folder_id: str) -> None:
        await self._call(
            "post", f"/me/messages/{message.id}/move", json={"destinationId": folder_id}
        )
        logger.debug("outlook_message_moved", message_id=message.id, folder_id=folder_id)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _parse(self, data: dict[str, Any]) -> ParsedMessage:
        await self._load_well_known_folders()

        label_ids: list[str] = []
        folder_label = self._folder_labels.get(data.get("parentFolderId", ""))
        if folder_label:
            label_ids.append(folder_label)
        if data.get("isDraft") and DRAFT not in label_ids:
            label_ids.append(DRAFT)
        if data.get("isRead") is False:
            label_ids.append(UNREAD)

        body = data.get("body") or {}
        is_html = body.get("contentType", "").lower() == "html"

        return ParsedMessage(
            id=data["id"],
            thread_id=data.get("conversationId") or data["id"],
            subject=data.get("subject") or "",
            from_=_format_address(data.get("from")),
            to=_join_recipients(data.get("toRecipients")) or "",
            cc=_join_recipients(data.get("ccRecipients")),
            bcc=_join_recipients(data.get("bccRecipients")),
            reply_to=_join_recipients(data.get("replyTo")),
            snippet=data.get("bodyPreview") or "",
            text_plain=None if is_html else body.get("content"),
            text_html=body.get("content") if is_html else None,
            date=_parse_graph_datetime(data.get("receivedDateTime")),
            label_ids=label_ids,
            label_names=list(data.get("categories") or []),
            internet_message_id=data.get("internetMessageId"),
        )

    async def get_message(self, message_id: str) -> ParsedMessage:
        data = await self._call(
            "get", f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS}
        )
        return await self._parse(data)

    async def get_thread_messages(self, thread_id: str) -> list[ParsedMessage]:
        escaped = thread_id.replace("'", "''")
        response = await self._call(
            "get",
            "/me/messages",
            params={
                "$filter": f"conversationId eq '{escaped}'",
                "$top": MAX_THREAD_MESSAGES,
                "$select": MESSAGE_FIELDS,
            },
        )
        return [await self._parse(item) for item in response.get("value", [])]

    # ------------------------------------------------------------------
    # Categories as labels
    # ------------------------------------------------------------------

    async def get_label_by_name(self, name: str) -> Label | None:
        response = await self._call("get", "/me/outlook/masterCategories")
        lowered = name.lower()
        for category in response.get("value", []):
            if category.get("displayName", "").lower() == lowered:
                return Label(id=category["id"], name=category["displayName"])
        return None

    async def get_or_create_label(self, name: str) -> Label:
        existing = await self.get_label_by_name(name)
        if existing:
            return existing
        created = await self._call(
            "post", "/me/outlook/masterCategories", json={"displayName": name, "color": "preset0"}
        )
        logger.info("outlook_category_created", name=name)
        return Label(id=created["id"], name=created["displayName"])

    async def label_message(self, message: ParsedMessage, label_name: str) -> None:
        label = await self.get_or_create_label(label_name)
        current = await self._call(
            "get", f"/me/messages/{message.id}", params={"$select": "categories"}
        )
        categories = list(current.get("categories") or [])
        if label.name in categories:
            return
        categories.append(label.name)
        await self._call("patch", f"/me/messages/{message.id}", json={"categories": categories})
        logger.debug("outlook_categories_updated", message_id=message.id, categories=categories)

    async def label_thread(self, thread_id: str, label_name: str) -> None:
        for message in await self.get_thread_messages(thread_id):
            await self.label_message(message, label_name)

    # ------------------------------------------------------------------
    # Mailbox state
    # ------------------------------------------------------------------

    async def archive_thread(self, thread_id: str) -> None:
        archive_id = await self.get_folder_id("archive")
        if archive_id is None:
            raise NotFoundError("Archive folder not found", error_code="ErrorFolderNotFound")
        for message in await self.get_thread_messages(thread_id):
            if message.is_inbox:
                await self.move_to_folder(message, archive_id)

    async def mark_read(self, message: ParsedMessage) -> None:
        await self._call("patch", f"/me/messages/{message.id}", json={"isRead": True})

    async def mark_spam(self, thread_id: str) -> None:
        junk_id = await self.get_folder_id("junkemail")
        if junk_id is None:
            raise NotFoundError("Junk Email folder not found", error_code="ErrorFolderNotFound")
        for message in await self.get_thread_messages(thread_id):
            if not message.is_sent:
                await self.move_to_folder(message, junk_id)

    # ------------------------------------------------------------------
    # Composing
    # ------------------------------------------------------------------

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
        draft = await self._call("post", f"/me/messages/{original.id}/createReply")
        update: dict[str, Any] = {"body": {"contentType": "html", "content": content}}
        if to:
            update["toRecipients"] = to_recipients(to)
        if subject:
            update["subject"] = subject
        if cc:
            update["ccRecipients"] = to_recipients(cc)
        if bcc:
            update["bccRecipients"] = to_recipients(bcc)
        await self._call("patch", f"/me/messages/{draft['id']}", json=update)
        logger.info("outlook_draft_created", draft_id=draft["id"], thread_id=original.thread_id)
        return draft["id"]

    async def reply(
        self,
        original: ParsedMessage,
        content: str,
        *,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"comment": content}
        if cc or bcc:
            payload["message"] = {
                "ccRecipients": to_recipients(cc),
                "bccRecipients": to_recipients(bcc),
            }
        await self._call("post", f"/me/messages/{original.id}/reply", json=payload)

    async def send_email(
        self,
        *,
        to: str,
        subject: str,
        content: str,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        message = {
            "subject": subject,
            "body": {"contentType": "html", "content": content},
            "toRecipients": to_recipients(to),
            "ccRecipients": to_recipients(cc),
            "bccRecipients": to_recipients(bcc),
        }
        await self._call("post", "/me/sendMail", json={"message": message, "saveToSentItems": True})

    async def forward(
        self,
        original: ParsedMessage,
        *,
        to: str,
        content: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"toRecipients": to_recipients(to), "comment": content or ""}
        if cc or bcc:
            payload["message"] = {
                "ccRecipients": to_recipients(cc),
                "bccRecipients": to_recipients(bcc),
            }
        await self._call("post", f"/me/messages/{original.id}/forward", json=payload)

    async def unwatch(self, subscription_id: str | None = None) -> None:
        if not subscription_id:
            return
        try:
            await self._call("delete", f"/subscriptions/{subscription_id}")
        except NotFoundError:
            logger.debug("outlook_subscription_already_gone", subscription_id=subscription_id)

"""Tests for webhook intake: account validation, filtering, locking, Gmail history."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from inboxpilot.core.errors import NotFoundError, ProviderAPIError
from inboxpilot.db.store import DatabaseStore, EmailAccount
from inboxpilot.engine import process_history
from inboxpilot.engine.context import Services
from inboxpilot.engine.process_history import (
    handle_processing_error,
    is_assistant_email,
    process_gmail_notification,
    process_history_item,
    process_outlook_notification,
)
from inboxpilot.providers.base import DRAFT, INBOX, SENT, TRASH
from inboxpilot.rules.types import ActionItem, ActionType, ExecutedRuleStatus


@pytest.fixture
async def rule(store: DatabaseStore, account: EmailAccount):
    return await store.create_rule(
        account.id,
        "Invoices",
        "Invoices and receipts",
        [ActionItem(type=ActionType.LABEL, label="Invoices", label_id="Label_7")],
    )


def _added(message_id: str, thread_id: str, labels: list[str]) -> dict:
    message = {"id": message_id, "threadId": thread_id, "labelIds": labels}
    return {"messagesAdded": [{"message": message}]}


async def _drain_background_tasks() -> None:
    await asyncio.gather(*list(process_history._background_tasks))


class TestHelpers:
    def test_assistant_alias(self) -> None:
        assert is_assistant_email("me@example.com", "Pilot <me+assistant@example.com>")
        assert is_assistant_email("me@example.com", "a@b.com, ME+Assistant@example.com")
        assert not is_assistant_email("me@example.com", "me@example.com")
        assert not is_assistant_email("me@example.com", None)

    def test_error_mapping(self) -> None:
        assert handle_processing_error(NotFoundError("gone"), None) == {"ok": True}
        throttled = ProviderAPIError("slow down", status_code=503, error_code="ApplicationThrottled")
        assert handle_processing_error(throttled, None) == {"ok": True}
        denied = ProviderAPIError("denied", status_code=403)
        assert handle_processing_error(denied, None) == {"ok": True}
        assert handle_processing_error(RuntimeError("boom"), None) == {"error": True}


class TestOutlookNotification:
    async def test_processes_new_inbox_message(
        self, services: Services, provider: AsyncMock, account: EmailAccount, rule, make_message
    ) -> None:
        message = make_message()
        provider.get_message.return_value = message

        result = await process_outlook_notification(
            services, subscription_id="sub-123", message_id="msg-1"
        )

        assert result == {"ok": True}
        provider.label_message.assert_awaited_once_with(message, "Invoices")
        executed = await services.store.find_executed_rule(account.id, "thread-1", "msg-1")
        assert executed.status == ExecutedRuleStatus.APPLIED

    @pytest.mark.parametrize("labels", [[DRAFT], [TRASH], []])
    async def test_draft_never_takes_lock(
        self,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        rule,
        make_message,
        labels,
    ) -> None:
        provider.get_message.return_value = make_message(label_ids=labels)

        result = await process_outlook_notification(
            services, subscription_id="sub-123", message_id="msg-1"
        )

        assert result == {"ok": True}
        assert not await services.lock.is_held(email=account.email, message_id="msg-1")
        llm.complete_text.assert_not_awaited()

    async def test_sent_after_draft_still_gets_lock(
        self, services: Services, provider: AsyncMock, account: EmailAccount, rule, make_message
    ) -> None:
        provider.get_message.return_value = make_message(label_ids=[DRAFT])
        await process_outlook_notification(services, subscription_id="sub-123", message_id="msg-1")

        provider.get_message.return_value = make_message(label_ids=[SENT])
        await process_outlook_notification(services, subscription_id="sub-123", message_id="msg-1")

        assert await services.lock.is_held(email=account.email, message_id="msg-1")

    async def test_lock_held_is_noop(
        self,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        rule,
        make_message,
    ) -> None:
        provider.get_message.return_value = make_message()
        await services.lock.acquire(email=account.email, message_id="msg-1")

        result = await process_outlook_notification(
            services, subscription_id="sub-123", message_id="msg-1"
        )

        assert result == {"ok": True}
        llm.complete_text.assert_not_awaited()

    async def test_already_processed_learns_from_removed_category(
        self,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        rule,
        make_message,
    ) -> None:
        await services.store.upsert_executed_rule(
            email_account_id=account.id,
            thread_id="thread-1",
            message_id="msg-1",
            status=ExecutedRuleStatus.APPLIED,
            rule_id=rule.id,
            actions=rule.actions,
        )
        provider.get_message.return_value = make_message(label_names=[])

        result = await process_outlook_notification(
            services, subscription_id="sub-123", message_id="msg-1"
        )
        await _drain_background_tasks()

        assert result == {"ok": True}
        llm.complete_text.assert_not_awaited()
        assert await services.store.get_excluded_senders(account.id) == {
            rule.id: {"billing@vendor.com"}
        }

    async def test_unknown_subscription_is_ok(self, services: Services, provider: AsyncMock) -> None:
        result = await process_outlook_notification(
            services, subscription_id="nope", message_id="msg-1"
        )
        assert result == {"ok": True}
        provider.get_message.assert_not_awaited()

    async def test_invalid_account_unwatches(
        self, services: Services, provider: AsyncMock, account: EmailAccount
    ) -> None:
        # No enabled rules
        result = await process_outlook_notification(
            services, subscription_id="sub-123", message_id="msg-1"
        )

        assert result == {"ok": True}
        provider.unwatch.assert_awaited_once_with("sub-123")
        provider.get_message.assert_not_awaited()
        reloaded = await services.store.get_email_account(account.id)
        assert reloaded.watch_subscription_id is None

    async def test_unexpected_error_is_reported(
        self, services: Services, provider: AsyncMock, account: EmailAccount, rule
    ) -> None:
        provider.get_message.side_effect = RuntimeError("boom")

        result = await process_outlook_notification(
            services, subscription_id="sub-123", message_id="msg-1"
        )

        assert result == {"error": True}

    async def test_missing_message_is_ok(
        self, services: Services, provider: AsyncMock, account: EmailAccount, rule
    ) -> None:
        provider.get_message.side_effect = NotFoundError("Message not found")

        result = await process_outlook_notification(
            services, subscription_id="sub-123", message_id="msg-1"
        )

        assert result == {"ok": True}


class TestProcessHistoryItem:
    async def test_skips_outbound_mail(
        self,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        rule,
        make_message,
    ) -> None:
        await process_history_item(
            services,
            provider=provider,
            account=account,
            rules=[rule],
            message_id="msg-1",
            message=make_message(label_ids=[SENT]),
        )
        llm.complete_text.assert_not_awaited()

    async def test_skips_assistant_mail(
        self,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        rule,
        make_message,
    ) -> None:
        await process_history_item(
            services,
            provider=provider,
            account=account,
            rules=[rule],
            message_id="msg-1",
            message=make_message(to="user+assistant@example.com"),
        )
        llm.complete_text.assert_not_awaited()

    async def test_takes_lock_when_not_given(
        self,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        rule,
        make_message,
    ) -> None:
        provider.get_message.return_value = make_message()

        for _ in range(2):
            await process_history_item(
                services, provider=provider, account=account, rules=[rule], message_id="msg-1"
            )

        llm.complete_text.assert_awaited_once()


class TestGmailNotification:
    async def test_processes_added_messages_and_advances_cursor(
        self,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        rule,
        make_message,
    ) -> None:
        provider.list_history = AsyncMock(
            return_value=(
                [
                    _added("msg-1", "thread-1", [INBOX]),
                    _added("msg-1", "thread-1", [INBOX]),
                    _added("msg-2", "thread-2", [DRAFT]),
                ],
                "9050",
            )
        )
        provider.get_message.return_value = make_message()

        result = await process_gmail_notification(
            services, email_address="User@Example.com", history_id=9000
        )

        assert result == {"ok": True}
        assert provider.list_history.await_args.args == ("8500",)
        provider.get_message.assert_awaited_once_with("msg-1")
        llm.complete_text.assert_awaited_once()
        reloaded = await services.store.get_email_account(account.id)
        assert reloaded.last_synced_history_id == "9050"

    async def test_uses_stored_cursor(
        self, services: Services, provider: AsyncMock, account: EmailAccount, rule
    ) -> None:
        await services.store.update_last_synced_history_id(account.id, "7000")
        provider.list_history = AsyncMock(return_value=([], None))

        await process_gmail_notification(services, email_address=account.email, history_id=9000)

        assert provider.list_history.await_args.args == ("7000",)
        reloaded = await services.store.get_email_account(account.id)
        assert reloaded.last_synced_history_id == "9000"

    async def test_expired_cursor_skips_ahead(
        self, services: Services, provider: AsyncMock, account: EmailAccount, rule
    ) -> None:
        provider.list_history = AsyncMock(side_effect=NotFoundError("History too old"))

        result = await process_gmail_notification(
            services, email_address=account.email, history_id=9000
        )

        assert result == {"ok": True}
        reloaded = await services.store.get_email_account(account.id)
        assert reloaded.last_synced_history_id == "9000"

    async def test_label_removed_records_learning(
        self, services: Services, provider: AsyncMock, account: EmailAccount, rule, make_message
    ) -> None:
        await services.store.upsert_executed_rule(
            email_account_id=account.id,
            thread_id="thread-1",
            message_id="msg-1",
            status=ExecutedRuleStatus.APPLIED,
            rule_id=rule.id,
            actions=rule.actions,
        )
        provider.list_history = AsyncMock(
            return_value=([{"labelsRemoved": [{"message": {"id": "msg-1"}}]}], "9001")
        )
        provider.get_message.return_value = make_message(label_ids=[INBOX])

        await process_gmail_notification(services, email_address=account.email, history_id=9001)

        assert rule.id in await services.store.get_excluded_senders(account.id)

"""Tests for the SQLite store: rules, executed rules, scheduled actions, patterns."""

from datetime import UTC, datetime, timedelta

import pytest

from inboxpilot.core.errors import ConflictError
from inboxpilot.db.store import DatabaseStore, EmailAccount
from inboxpilot.rules.types import (
    ActionItem,
    ActionType,
    ExecutedRuleStatus,
    LearnedPatternSource,
    ScheduledActionStatus,
)


async def _executed(store: DatabaseStore, account: EmailAccount, **overrides):
    values = {
        "email_account_id": account.id,
        "thread_id": "thread-1",
        "message_id": "msg-1",
        "status": ExecutedRuleStatus.APPLYING,
        "actions": [ActionItem(type=ActionType.ARCHIVE)],
    }
    values.update(overrides)
    return await store.upsert_executed_rule(**values)


async def _scheduled(store: DatabaseStore, account: EmailAccount, executed_rule_id: int):
    return await store.create_scheduled_action(
        executed_rule_id=executed_rule_id,
        email_account_id=account.id,
        message_id="msg-1",
        thread_id="thread-1",
        action=ActionItem(type=ActionType.ARCHIVE, delay_in_minutes=60),
        scheduled_for=datetime.now(UTC) + timedelta(hours=1),
    )


class TestEmailAccounts:
    async def test_lookup_by_email_and_subscription(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        assert (await store.get_email_account_by_email("user@example.com")).id == account.id
        assert (await store.get_email_account_by_subscription("sub-123")).id == account.id
        assert account.is_premium

    async def test_duplicate_email_conflicts(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        with pytest.raises(ConflictError):
            await store.create_email_account("USER@example.com", "google")

    async def test_history_cursor_and_watch(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        await store.update_last_synced_history_id(account.id, "4242")
        await store.clear_watch(account.id)
        reloaded = await store.get_email_account(account.id)
        assert reloaded.last_synced_history_id == "4242"
        assert reloaded.watch_subscription_id is None


class TestRules:
    async def test_create_orders_by_position(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        first = await store.create_rule(
            account.id, "Invoices", "Invoices and receipts",
            [ActionItem(type=ActionType.LABEL, label="Invoices")],
        )
        second = await store.create_rule(
            account.id, "Newsletters", "Newsletters", [ActionItem(type=ActionType.ARCHIVE)],
            enabled=False,
        )

        assert (first.position, second.position) == (0, 1)
        assert [r.name for r in await store.list_rules(account.id)] == ["Invoices", "Newsletters"]
        assert [r.name for r in await store.list_rules(account.id, enabled_only=True)] == [
            "Invoices"
        ]
        assert first.actions[0].label == "Invoices"

    async def test_duplicate_name_conflicts(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        await store.create_rule(account.id, "Invoices", "Invoices", [])
        with pytest.raises(ConflictError, match="already exists"):
            await store.create_rule(account.id, "Invoices", "Other", [])

    async def test_update_replaces_actions(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        rule = await store.create_rule(
            account.id, "Invoices", "Invoices", [ActionItem(type=ActionType.ARCHIVE)]
        )
        updated = await store.update_rule(
            rule.id,
            automate=False,
            actions=[ActionItem(type=ActionType.MARK_READ), ActionItem(type=ActionType.MARK_SPAM)],
        )

        assert updated.automate is False
        assert updated.instructions == "Invoices"
        assert [a.type for a in updated.actions] == [ActionType.MARK_READ, ActionType.MARK_SPAM]

    async def test_update_and_delete_missing_rule(self, store: DatabaseStore) -> None:
        assert await store.update_rule(999, name="Nope") is None
        assert await store.delete_rule(999) is False


class TestExecutedRules:
    async def test_upsert_converges_on_one_row(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        first = await _executed(store, account)
        second = await _executed(
            store,
            account,
            status=ExecutedRuleStatus.APPLIED,
            actions=[ActionItem(type=ActionType.LABEL, label="Done")],
        )

        assert second.id == first.id
        assert second.status == ExecutedRuleStatus.APPLIED
        assert [a.type for a in second.actions] == [ActionType.LABEL]
        assert second.actions[0].id is not None
        assert len(await store.list_executed_rules(account.id)) == 1

    async def test_conditional_status_update(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        executed = await _executed(store, account, status=ExecutedRuleStatus.PENDING)

        assert await store.update_executed_rule_status(
            executed.id, ExecutedRuleStatus.APPLYING, expected_status=ExecutedRuleStatus.PENDING
        )
        assert not await store.update_executed_rule_status(
            executed.id, ExecutedRuleStatus.REJECTED, expected_status=ExecutedRuleStatus.PENDING
        )
        found = await store.find_executed_rule(account.id, "thread-1", "msg-1")
        assert found.status == ExecutedRuleStatus.APPLYING

    async def test_thread_executions_exclude_current_message(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        await _executed(store, account, message_id="msg-0", status=ExecutedRuleStatus.APPLIED)
        await _executed(store, account, message_id="msg-1", status=ExecutedRuleStatus.SKIPPED)
        await _executed(store, account, thread_id="thread-2", message_id="msg-2")

        earlier = await store.list_thread_executions(account.id, "thread-1", "msg-1")

        assert earlier == [(None, ExecutedRuleStatus.APPLIED)]


class TestScheduledActions:
    async def test_claim_only_once(self, store: DatabaseStore, account: EmailAccount) -> None:
        executed = await _executed(store, account)
        scheduled = await _scheduled(store, account, executed.id)

        claimed = await store.claim_scheduled_action(scheduled.id)
        assert claimed is not None
        assert claimed.status == ScheduledActionStatus.EXECUTING
        assert claimed.action.delay_in_minutes == 60
        assert await store.claim_scheduled_action(scheduled.id) is None

    async def test_cancel_skips_claimed_rows(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        executed = await _executed(store, account)
        pending = await _scheduled(store, account, executed.id)
        running = await _scheduled(store, account, executed.id)
        await store.claim_scheduled_action(running.id)

        cancelled = await store.cancel_pending_scheduled_actions(
            [pending.id, running.id], "Superseded"
        )

        assert cancelled == 1
        row = await store.get_scheduled_action(pending.id)
        assert row.status == ScheduledActionStatus.CANCELLED
        assert row.error_message == "Superseded"
        assert (await store.get_scheduled_action(running.id)).status == (
            ScheduledActionStatus.EXECUTING
        )
        assert await store.claim_scheduled_action(pending.id) is None

    async def test_requeue_and_outstanding_count(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        executed = await _executed(store, account)
        scheduled = await _scheduled(store, account, executed.id)
        await store.claim_scheduled_action(scheduled.id)

        later = datetime.now(UTC) + timedelta(minutes=5)
        await store.requeue_scheduled_action(
            scheduled.id, scheduled_for=later, retry_count=1, error_message="Retry scheduled: boom"
        )
        row = await store.get_scheduled_action(scheduled.id)
        assert row.status == ScheduledActionStatus.PENDING
        assert row.retry_count == 1
        assert await store.count_outstanding_scheduled_actions(executed.id) == 1

        await store.claim_scheduled_action(scheduled.id)
        await store.complete_scheduled_action(scheduled.id)
        assert await store.count_outstanding_scheduled_actions(executed.id) == 0
        done = await store.get_scheduled_action(scheduled.id)
        assert done.status == ScheduledActionStatus.COMPLETED
        assert done.executed_at is not None

    async def test_requeue_ignores_pending_rows(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        executed = await _executed(store, account)
        scheduled = await _scheduled(store, account, executed.id)

        await store.requeue_scheduled_action(
            scheduled.id, scheduled_for=datetime.now(UTC), retry_count=3, error_message="x"
        )
        assert (await store.get_scheduled_action(scheduled.id)).retry_count == 0

    async def test_list_filters(self, store: DatabaseStore, account: EmailAccount) -> None:
        executed = await _executed(store, account)
        scheduled = await _scheduled(store, account, executed.id)
        await store.set_scheduled_id(scheduled.id, "qstash-1")

        pending = await store.list_scheduled_actions(
            account.id, message_id="msg-1", status=ScheduledActionStatus.PENDING
        )
        assert [s.scheduled_id for s in pending] == ["qstash-1"]
        assert await store.list_scheduled_actions(account.id, message_id="other") == []


class TestLearnedPatterns:
    async def test_excluded_senders_are_lowercased_and_upserted(
        self, store: DatabaseStore, account: EmailAccount
    ) -> None:
        rule = await store.create_rule(account.id, "Invoices", "Invoices", [])
        for exclude in (False, True):
            await store.save_learned_pattern(
                email_account_id=account.id,
                rule_id=rule.id,
                sender="Billing@Vendor.com",
                exclude=exclude,
                reason="Label removed",
                source=LearnedPatternSource.LABEL_REMOVED,
            )

        patterns = await store.list_learned_patterns(rule.id)
        assert len(patterns) == 1
        assert patterns[0].exclude is True
        assert await store.get_excluded_senders(account.id) == {rule.id: {"billing@vendor.com"}}


class TestLLMLogs:
    async def test_log_and_read_back(self, store: DatabaseStore) -> None:
        await store.log_llm_request(
            "choose_rule",
            "claude-haiku",
            {"system": "s", "messages": []},
            response={"text": "ok"},
            input_tokens=10,
            output_tokens=2,
            message_id="msg-1",
        )
        logs = await store.get_llm_logs(message_id="msg-1")
        assert len(logs) == 1
        assert logs[0].task_type == "choose_rule"
        assert logs[0].prompt_json == {"system": "s", "messages": []}
        assert await store.prune_llm_logs(retention_days=30) == 0

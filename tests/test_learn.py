"""Tests for learning sender exclusions from removed labels."""

import pytest

from inboxpilot.db.store import DatabaseStore, EmailAccount
from inboxpilot.engine.learn import learn_from_label_removal
from inboxpilot.rules.types import ActionItem, ActionType, ExecutedRuleStatus, SystemType

LABEL_ACTION = ActionItem(type=ActionType.LABEL, label="Newsletter", label_id="Label_3")


async def _applied(store: DatabaseStore, account: EmailAccount, *, system_type=None, actions=None):
    rule = await store.create_rule(
        account.id,
        f"Rule {system_type or 'custom'}",
        "Newsletters",
        actions or [LABEL_ACTION],
        system_type=system_type,
    )
    await store.upsert_executed_rule(
        email_account_id=account.id,
        thread_id="thread-1",
        message_id="msg-1",
        status=ExecutedRuleStatus.APPLIED,
        rule_id=rule.id,
        actions=rule.actions,
    )
    return rule


class TestLearnFromLabelRemoval:
    async def test_removed_label_excludes_sender(
        self, store: DatabaseStore, account: EmailAccount, make_message
    ) -> None:
        rule = await _applied(store, account, system_type=SystemType.NEWSLETTER)

        learned = await learn_from_label_removal(store, account.id, make_message())

        assert learned is True
        [pattern] = await store.list_learned_patterns(rule.id)
        assert pattern.sender == "billing@vendor.com"
        assert pattern.exclude is True
        assert pattern.reason == "Label removed"

    @pytest.mark.parametrize(
        "overrides",
        [{"label_ids": ["INBOX", "Label_3"]}, {"label_names": ["newsletter"]}],
    )
    async def test_label_still_present(
        self, store: DatabaseStore, account: EmailAccount, make_message, overrides
    ) -> None:
        await _applied(store, account)
        assert await learn_from_label_removal(store, account.id, make_message(**overrides)) is False

    @pytest.mark.parametrize("system_type", [SystemType.TO_REPLY, SystemType.COLD_EMAIL])
    async def test_conversation_rules_are_not_learned(
        self, store: DatabaseStore, account: EmailAccount, make_message, system_type
    ) -> None:
        await _applied(store, account, system_type=system_type)
        assert await learn_from_label_removal(store, account.id, make_message()) is False

    async def test_rule_without_label_action(
        self, store: DatabaseStore, account: EmailAccount, make_message
    ) -> None:
        await _applied(store, account, actions=[ActionItem(type=ActionType.ARCHIVE)])
        assert await learn_from_label_removal(store, account.id, make_message()) is False

    async def test_unprocessed_message(
        self, store: DatabaseStore, account: EmailAccount, make_message
    ) -> None:
        assert await learn_from_label_removal(store, account.id, make_message()) is False

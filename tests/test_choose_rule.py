"""Tests for LLM rule selection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from inboxpilot.ai.choose_rule import (
    RuleSelectionResponse,
    ai_choose_rule,
    parse_rule_selection,
    resolve_rule_number,
)
from inboxpilot.ai.email_for_llm import get_email_for_llm
from inboxpilot.ai.prompts import REQUIRES_MORE_INFORMATION, format_rules
from inboxpilot.config_schema import AppConfig
from inboxpilot.rules.types import Rule


@pytest.fixture
def rules() -> list[Rule]:
    return [
        Rule(id=10, email_account_id=1, name="Newsletters", instructions="Newsletters and digests"),
        Rule(id=11, email_account_id=1, name="Invoices", instructions="Invoices and receipts"),
    ]


class TestParseRuleSelection:
    def test_valid_json(self) -> None:
        response = parse_rule_selection('{"rule": 2, "reason": "an invoice"}')
        assert response == RuleSelectionResponse(rule=2, reason="an invoice")

    def test_code_fenced_json(self) -> None:
        response = parse_rule_selection('```json\n{"rule": 1}\n```')
        assert response is not None
        assert response.rule == 1

    @pytest.mark.parametrize(
        "text", ["Rule 2 fits best", '{"reason": "no number"}', '{"rule": "two"}', ""]
    )
    def test_invalid_answers_give_none(self, text: str) -> None:
        assert parse_rule_selection(text) is None


class TestResolveRuleNumber:
    def test_in_range_is_one_indexed(self, rules: list[Rule]) -> None:
        result = resolve_rule_number(rules, RuleSelectionResponse(rule=2, reason="r"))
        assert result.rule is rules[1]
        assert not result.requires_more_information

    def test_fallback_option(self, rules: list[Rule]) -> None:
        result = resolve_rule_number(rules, RuleSelectionResponse(rule=3))
        assert result.rule is None
        assert result.requires_more_information

    @pytest.mark.parametrize("number", [0, -1, 4, 99])
    def test_out_of_range_is_no_rule(self, rules: list[Rule], number: int) -> None:
        result = resolve_rule_number(rules, RuleSelectionResponse(rule=number))
        assert result.rule is None
        assert not result.requires_more_information


def test_format_rules_appends_fallback(rules: list[Rule]) -> None:
    assert format_rules(rules).splitlines() == [
        "1. Newsletters and digests",
        "2. Invoices and receipts",
        f"3. {REQUIRES_MORE_INFORMATION}",
    ]


class TestAiChooseRule:
    async def test_no_rules_skips_llm(self, make_message, sample_config: AppConfig) -> None:
        llm = MagicMock()
        llm.complete_text = AsyncMock()
        result = await ai_choose_rule(
            get_email_for_llm(make_message()), [], llm=llm, config=sample_config
        )
        assert result is None
        llm.complete_text.assert_not_awaited()

    async def test_selects_rule(
        self, make_message, rules: list[Rule], llm: MagicMock, sample_config: AppConfig
    ) -> None:
        llm.complete_text.return_value = '{"rule": 2, "reason": "It is an invoice"}'

        result = await ai_choose_rule(
            get_email_for_llm(make_message()),
            rules,
            llm=llm,
            config=sample_config,
            account_about="I run a small business",
        )

        assert result is not None
        assert result.rule is rules[1]
        assert result.reason == "It is an invoice"

        kwargs = llm.complete_text.await_args.kwargs
        assert kwargs["task"] == "choose_rule"
        assert kwargs["model"] == sample_config.llm.choose_rule_model
        assert "Choose rule 3" in kwargs["system"]
        assert "<user_info>\nI run a small business\n</user_info>" in kwargs["user"]
        assert "Quarterly invoice" in kwargs["user"]

    async def test_unparseable_answer_is_none(
        self, make_message, rules: list[Rule], llm: MagicMock, sample_config: AppConfig
    ) -> None:
        llm.complete_text.return_value = "I think the second one"
        result = await ai_choose_rule(
            get_email_for_llm(make_message()), rules, llm=llm, config=sample_config
        )
        assert result is None

"""Tests for action field classification and per-type sanitizing."""

from inboxpilot.rules.action_item import (
    GeneratedValue,
    StaticValue,
    TemplateValue,
    classify_field_value,
    get_action_fields,
    sanitize_action_fields,
    template_for_field,
)
from inboxpilot.rules.types import AI_GENERATED_FIELD_VALUE, ActionItem, ActionType


class TestClassifyFieldValue:
    def test_empty_values(self) -> None:
        assert classify_field_value(None) is None
        assert classify_field_value("") is None

    def test_sentinel_is_generated(self) -> None:
        assert classify_field_value(AI_GENERATED_FIELD_VALUE) == GeneratedValue()

    def test_placeholders_make_a_template(self) -> None:
        assert classify_field_value("Re: {{topic}}") == TemplateValue("Re: {{topic}}")

    def test_plain_text_is_static(self) -> None:
        assert classify_field_value("Invoices") == StaticValue("Invoices")


class TestTemplateForField:
    def test_sentinel_uses_field_prompt(self) -> None:
        assert template_for_field("label", AI_GENERATED_FIELD_VALUE) == (
            "{{The name of the label to apply}}"
        )

    def test_template_returned_as_is(self) -> None:
        assert template_for_field("subject", "Re: {{topic}}") == "Re: {{topic}}"

    def test_static_needs_nothing(self) -> None:
        assert template_for_field("label", "Invoices") is None


class TestSanitize:
    def test_label_keeps_only_label_fields(self) -> None:
        item = ActionItem(
            type=ActionType.LABEL,
            label="VIP",
            subject="stray",
            content="stray",
            url="https://x",
            delay_in_minutes=5,
        )
        clean = sanitize_action_fields(item)
        assert clean.label == "VIP"
        assert clean.subject is None
        assert clean.content is None
        assert clean.url is None
        assert clean.delay_in_minutes == 5

    def test_reply_drops_to_and_subject(self) -> None:
        clean = sanitize_action_fields(
            ActionItem(type=ActionType.REPLY, content="Thanks", to="a@b.com", subject="Hi")
        )
        assert clean.content == "Thanks"
        assert clean.to is None
        assert clean.subject is None

    def test_archive_has_no_fields(self) -> None:
        clean = sanitize_action_fields({"type": "ARCHIVE", "label": "x", "id": 4})
        assert clean.type == ActionType.ARCHIVE
        assert clean.id == 4
        assert get_action_fields(clean) == {}

    def test_webhook_keeps_url(self) -> None:
        clean = sanitize_action_fields(
            ActionItem(type=ActionType.CALL_WEBHOOK, url="https://hooks.example.com", label="x")
        )
        assert get_action_fields(clean) == {"url": "https://hooks.example.com"}

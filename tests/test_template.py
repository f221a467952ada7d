"""Tests for the {{placeholder}} template mini-language."""

from inboxpilot.rules.template import (
    Literal,
    Placeholder,
    has_placeholders,
    merge_template_with_vars,
    numbered_template,
    parse_template,
    tokenize,
)


class TestTokenize:
    def test_mixed_literals_and_placeholders(self) -> None:
        assert tokenize("Hi {{name}}, see {{link}}!") == [
            Literal("Hi "),
            Placeholder("name"),
            Literal(", see "),
            Placeholder("link"),
            Literal("!"),
        ]

    def test_placeholder_may_span_lines(self) -> None:
        tokens = tokenize("A {{write a\nshort reply}} B")
        assert tokens[1] == Placeholder("write a\nshort reply")

    def test_unterminated_open_is_literal(self) -> None:
        assert tokenize("Price: {{ 5") == [Literal("Price: {{ 5")]

    def test_empty_string(self) -> None:
        assert tokenize("") == []


class TestParseTemplate:
    def test_fixed_parts_surround_prompts(self) -> None:
        parsed = parse_template("Hello {{greeting}}, {{body}}")
        assert parsed.ai_prompts == ["greeting", "body"]
        assert parsed.fixed_parts == ["Hello ", ", ", ""]

    def test_fixed_parts_has_one_more_entry(self) -> None:
        for template in ["", "plain", "{{a}}", "x{{a}}y{{b}}z", "{{a}}{{b}}"]:
            parsed = parse_template(template)
            assert len(parsed.fixed_parts) == len(parsed.ai_prompts) + 1

    def test_adjacent_placeholders(self) -> None:
        parsed = parse_template("{{a}}{{b}}")
        assert parsed.fixed_parts == ["", "", ""]


class TestMerge:
    def test_merges_vars_in_order(self) -> None:
        result = merge_template_with_vars(
            "Dear {{name}},\n\n{{reply}}\n\nBest", {"var1": "Sam", "var2": "Thanks!"}
        )
        assert result == "Dear Sam,\n\nThanks!\n\nBest"

    def test_missing_var_becomes_empty(self) -> None:
        assert merge_template_with_vars("A {{x}} B {{y}}", {"var1": "1"}) == "A 1 B "

    def test_template_without_placeholders_unchanged(self) -> None:
        assert merge_template_with_vars("No vars here", {"var1": "x"}) == "No vars here"

    def test_merging_result_again_is_stable(self) -> None:
        variables = {"var1": "Sam", "var2": "Thanks!"}
        once = merge_template_with_vars("Dear {{name}}, {{reply}}", variables)

        assert once == "Dear Sam, Thanks!"
        assert merge_template_with_vars(once, variables) == once


def test_numbered_template() -> None:
    assert numbered_template("Hi {{name}} re {{topic}}") == (
        "Hi {{var1: name}} re {{var2: topic}}"
    )


def test_has_placeholders() -> None:
    assert has_placeholders("x {{y}}")
    assert not has_placeholders("x {{y")
    assert not has_placeholders(None)
    assert not has_placeholders("")

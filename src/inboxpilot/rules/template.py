"""Template mini-language for AI-filled action fields.

An action field such as ``"Hi {{first name of sender}},\\n\\n{{short reply}}"``
mixes literal text with placeholders whose inner text is a prompt for the LLM.
The template is tokenized into literal and placeholder tokens; the LLM is
asked for ``var1..varN`` and the answers are spliced back between the literals.

Usage:
    from inboxpilot.rules.template import merge_template_with_vars, parse_template

    parsed = parse_template("Hello {{greeting}}, {{body}}")
    parsed.ai_prompts    # ["greeting", "body"]
    parsed.fixed_parts   # ["Hello ", ", ", ""]

    merge_template_with_vars("Hello {{greeting}}", {"var1": "there"})  # "Hello there"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

OPEN = "{{"
CLOSE = "}}"

# Fields that may carry templates, in the order the LLM sees them
TEMPLATE_FIELDS: tuple[str, ...] = ("label", "subject", "content", "to", "cc", "bcc", "url")

# What the LLM is asked for when a field is the bare AI-generated sentinel
FIELD_PROMPTS: dict[str, str] = {
    "label": "The name of the label to apply",
    "subject": "The subject of the email",
    "content": "The content of the email",
    "to": "Comma-separated email addresses of the recipients",
    "cc": "Comma-separated email addresses to cc",
    "bcc": "Comma-separated email addresses to bcc",
    "url": "The URL to call",
}


@dataclass(frozen=True, slots=True)
class Literal:
    text: str


@dataclass(frozen=True, slots=True)
class Placeholder:
    prompt: str


Token = Literal | Placeholder


@dataclass(frozen=True, slots=True)
class ParsedTemplate:
    """Prompts and the static text around them.

    ``fixed_parts`` always has one more entry than ``ai_prompts``.
    """

    ai_prompts: list[str]
    fixed_parts: list[str]


def tokenize(template: str) -> list[Token]:
    """Split a template into literal and placeholder tokens.

    A placeholder runs from ``{{`` to the first following ``}}`` and may span
    lines. An unterminated ``{{`` is literal text.
    """
    tokens: list[Token] = []
    pos = 0
    while True:
        start = template.find(OPEN, pos)
        if start == -1:
            break
        end = template.find(CLOSE, start + len(OPEN))
        if end == -1:
            break
        if start > pos:
            tokens.append(Literal(template[pos:start]))
        tokens.append(Placeholder(template[start + len(OPEN) : end].strip()))
        pos = end + len(CLOSE)

    if pos < len(template):
        tokens.append(Literal(template[pos:]))
    return tokens


def has_placeholders(value: str | None) -> bool:
    if not value:
        return False
    return any(isinstance(token, Placeholder) for token in tokenize(value))


def parse_template(template: str) -> ParsedTemplate:
    ai_prompts: list[str] = []
    fixed_parts: list[str] = [""]
    for token in tokenize(template):
        if isinstance(token, Placeholder):
            ai_prompts.append(token.prompt)
            fixed_parts.append("")
        else:
            fixed_parts[-1] += token.text
    return ParsedTemplate(ai_prompts=ai_prompts, fixed_parts=fixed_parts)


def merge_template_with_vars(template: str, variables: dict[str, Any]) -> str:
    """Replace the Nth placeholder with ``variables["varN"]``; missing values become ""."""
    parsed = parse_template(template)
    result = parsed.fixed_parts[0]
    for i in range(len(parsed.ai_prompts)):
        value = variables.get(f"var{i + 1}") or ""
        result += str(value) + parsed.fixed_parts[i + 1]
    return result


def numbered_template(template: str) -> str:
    """Rewrite ``{{prompt}}`` as ``{{varN: prompt}}`` so the LLM can line answers up."""
    parts: list[str] = []
    index = 0
    for token in tokenize(template):
        if isinstance(token, Placeholder):
            index += 1
            parts.append(f"{OPEN}var{index}: {token.prompt}{CLOSE}")
        else:
            parts.append(token.text)
    return "".join(parts)

"""Action field helpers: allowed fields per action type and field classification.

Usage:
    from inboxpilot.rules.action_item import sanitize_action_fields

    clean = sanitize_action_fields(ActionItem(type=ActionType.LABEL, label="VIP", subject="x"))
    clean.subject  # None
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from inboxpilot.rules.template import FIELD_PROMPTS, has_placeholders
from inboxpilot.rules.types import (
    ACTION_FIELDS,
    AI_GENERATED_FIELD_VALUE,
    ActionItem,
    ActionType,
)

_EMAIL_FIELDS = frozenset({"subject", "content", "to", "cc", "bcc"})

ALLOWED_FIELDS: dict[ActionType, frozenset[str]] = {
    ActionType.LABEL: frozenset({"label", "label_id"}),
    ActionType.MOVE_FOLDER: frozenset({"folder_name", "folder_id"}),
    ActionType.REPLY: frozenset({"content", "cc", "bcc"}),
    ActionType.SEND_EMAIL: _EMAIL_FIELDS,
    ActionType.DRAFT_EMAIL: _EMAIL_FIELDS,
    ActionType.FORWARD: frozenset({"content", "to", "cc", "bcc"}),
    ActionType.CALL_WEBHOOK: frozenset({"url"}),
}


# ---------------------------------------------------------------------------
# Field values
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StaticValue:
    text: str


@dataclass(frozen=True, slots=True)
class GeneratedValue:
    """The whole field is written by the LLM."""


@dataclass(frozen=True, slots=True)
class TemplateValue:
    text: str


FieldValue = StaticValue | GeneratedValue | TemplateValue


def classify_field_value(value: str | None) -> FieldValue | None:
    if value is None or value == "":
        return None
    if value == AI_GENERATED_FIELD_VALUE:
        return GeneratedValue()
    if has_placeholders(value):
        return TemplateValue(value)
    return StaticValue(value)


def template_for_field(field_name: str, value: str | None) -> str | None:
    """The template the LLM should fill for a field, or None if nothing to generate."""
    match classify_field_value(value):
        case GeneratedValue():
            prompt = FIELD_PROMPTS.get(field_name, field_name.replace("_", " "))
            return f"{{{{{prompt}}}}}"
        case TemplateValue(text=text):
            return text
        case _:
            return None


# ---------------------------------------------------------------------------
# Allowed fields
# ---------------------------------------------------------------------------


def sanitize_action_fields(action: ActionItem | dict[str, Any]) -> ActionItem:
    """Keep only the fields that make sense for the action's type.

    Every other string field is set to None. ``delay_in_minutes`` is kept
    for all types.
    """
    item = ActionItem.from_dict(action) if isinstance(action, dict) else action
    allowed = ALLOWED_FIELDS.get(item.type, frozenset())
    changes: dict[str, Any] = {
        name: (getattr(item, name) if name in allowed else None) for name in ACTION_FIELDS
    }
    changes["delay_in_minutes"] = item.delay_in_minutes
    return item.with_fields(**changes)


def get_action_fields(action: ActionItem) -> dict[str, str]:
    """The populated string fields of an action."""
    fields: dict[str, str] = {}
    for name in ACTION_FIELDS:
        value = getattr(action, name)
        if value:
            fields[name] = value
    return fields

"""Rule catalog types and action field helpers.

Usage:
    from inboxpilot.rules import ActionItem, ActionType, sanitize_action_fields
"""

from inboxpilot.rules.action_item import (
    GeneratedValue,
    StaticValue,
    TemplateValue,
    classify_field_value,
    get_action_fields,
    sanitize_action_fields,
)
from inboxpilot.rules.template import merge_template_with_vars, parse_template
from inboxpilot.rules.types import (
    AI_GENERATED_FIELD_VALUE,
    ActionItem,
    ActionType,
    EmailForLLM,
    ExecutedRuleStatus,
    Rule,
    ScheduledActionStatus,
    SystemType,
)

__all__ = [
    "AI_GENERATED_FIELD_VALUE",
    "ActionItem",
    "ActionType",
    "EmailForLLM",
    "ExecutedRuleStatus",
    "Rule",
    "ScheduledActionStatus",
    "SystemType",
    "StaticValue",
    "GeneratedValue",
    "TemplateValue",
    "classify_field_value",
    "get_action_fields",
    "sanitize_action_fields",
    "parse_template",
    "merge_template_with_vars",
]

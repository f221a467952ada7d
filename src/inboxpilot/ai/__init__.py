"""LLM calls of the rule pipeline: rule selection, argument generation, drafts."""

from inboxpilot.ai.choose_args import (
    combine_actions_with_ai_args,
    extract_actions_needing_ai_generation,
    get_action_items_with_ai_args,
    get_parameter_fields_for_action,
)
from inboxpilot.ai.choose_rule import RuleSelectionResult, ai_choose_rule
from inboxpilot.ai.llm import CallContext, LLMClient

__all__ = [
    "CallContext",
    "LLMClient",
    "RuleSelectionResult",
    "ai_choose_rule",
    "combine_actions_with_ai_args",
    "extract_actions_needing_ai_generation",
    "get_action_items_with_ai_args",
    "get_parameter_fields_for_action",
]

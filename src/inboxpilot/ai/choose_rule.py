"""Rule selection: ask the LLM which rule, if any, applies to an email.

Rules are shown numbered from 1. One synthetic option is always appended
(number N+1) meaning "none match / need more information". The answer is
JSON only and validated with pydantic; anything that does not validate is
treated as no decision.

Usage:
    from inboxpilot.ai.choose_rule import ai_choose_rule

    selection = await ai_choose_rule(email, rules, llm=llm, config=config)
    if selection and selection.rule:
        ...
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

from inboxpilot.ai.prompts import build_choose_rule_prompts
from inboxpilot.core.logging import get_logger

if TYPE_CHECKING:
    from inboxpilot.ai.llm import CallContext, LLMClient
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.rules.types import EmailForLLM, Rule

logger = get_logger(__name__)


class RuleSelectionResponse(BaseModel):
    rule: int
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class RuleSelectionResult:
    """Outcome of a selection call that returned a valid answer.

    ``rule`` is None when the model chose the fallback option or a number
    outside the candidate range.
    """

    rule: Rule | None
    reason: str | None = None
    requires_more_information: bool = False


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_rule_selection(text: str) -> RuleSelectionResponse | None:
    """Validate the model's JSON answer. Returns None if it is not valid."""
    try:
        return RuleSelectionResponse.model_validate(json.loads(_strip_code_fence(text)))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("rule_selection_parse_failed", error=str(e), response=text[:200])
        return None


def resolve_rule_number(
    rules: list[Rule], response: RuleSelectionResponse
) -> RuleSelectionResult:
    """Map the 1-indexed answer onto the candidate list."""
    fallback = len(rules) + 1
    if response.rule == fallback:
        return RuleSelectionResult(
            rule=None, reason=response.reason, requires_more_information=True
        )
    if 1 <= response.rule <= len(rules):
        return RuleSelectionResult(rule=rules[response.rule - 1], reason=response.reason)

    logger.warning("rule_number_out_of_range", rule=response.rule, candidates=len(rules))
    return RuleSelectionResult(rule=None, reason=response.reason)


async def ai_choose_rule(
    email: EmailForLLM,
    rules: list[Rule],
    *,
    llm: LLMClient,
    config: AppConfig,
    account_about: str | None = None,
    context: CallContext | None = None,
) -> RuleSelectionResult | None:
    """Pick at most one rule for an email.

    Returns:
        The selection, or None if there were no rules or the answer could not
        be parsed (callers treat both as "no rule matched")

    Raises:
        LLMError: If the LLM call itself fails
    """
    if not rules:
        return None

    system, user = build_choose_rule_prompts(email, rules, account_about=account_about)
    text = await llm.complete_text(
        task="choose_rule",
        model=config.llm.choose_rule_model,
        system=system,
        user=user,
        context=context,
    )

    response = parse_rule_selection(text)
    if response is None:
        return None

    result = resolve_rule_number(rules, response)
    logger.info(
        "rule_selected",
        message_id=email.id,
        rule_id=result.rule.id if result.rule else None,
        requires_more_information=result.requires_more_information,
        reason=result.reason,
    )
    return result

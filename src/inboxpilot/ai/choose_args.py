"""Argument generation: fill AI-generated action fields for a selected rule.

Only runs when at least one action field is the AI-generated sentinel or
contains ``{{...}}`` placeholders. Each such field becomes an object schema
with string properties ``var1..varN``; all of them are requested in one
forced tool call keyed ``<TYPE>-<action_id>``. The answers are merged back
between the template's fixed parts.

DRAFT_EMAIL actions with empty content take a separate path: a full reply
is drafted from the thread. A failed draft is logged and ignored.

Usage:
    from inboxpilot.ai.choose_args import get_action_items_with_ai_args

    actions = await get_action_items_with_ai_args(
        message=message, account=account, rule=rule, provider=provider,
        llm=llm, config=config,
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from inboxpilot.ai.draft import fetch_messages_and_generate_draft
from inboxpilot.ai.email_for_llm import get_email_for_llm
from inboxpilot.ai.prompts import build_generate_args_prompts, build_generate_args_tool
from inboxpilot.core.errors import InboxPilotError, LLMError
from inboxpilot.core.logging import get_logger
from inboxpilot.rules.action_item import template_for_field
from inboxpilot.rules.template import (
    TEMPLATE_FIELDS,
    merge_template_with_vars,
    numbered_template,
    parse_template,
)
from inboxpilot.rules.types import ActionItem, ActionType

if TYPE_CHECKING:
    from inboxpilot.ai.llm import CallContext, LLMClient
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.db.store import EmailAccount
    from inboxpilot.providers.base import EmailProvider, ParsedMessage
    from inboxpilot.rules.types import Rule

logger = get_logger(__name__)

# {"LABEL-3": {"label": {"var1": "Invoices"}}, ...}
ActionArgs = dict[str, dict[str, dict[str, str]]]


def action_key(action: ActionItem) -> str:
    return f"{action.type}-{action.id}"


def get_parameter_fields_for_action(action: ActionItem) -> dict[str, dict[str, Any]]:
    """JSON schemas for the fields of one action that need generating.

    Example:
        content = "Dear {{greeting}},\\n\\n{{reply}}"
        -> {"content": {"type": "object",
                        "properties": {"var1": {"type": "string"}, "var2": {"type": "string"}},
                        "description": "Generate this template: Dear {{var1: greeting}},..."}}
    """
    fields: dict[str, dict[str, Any]] = {}
    for field_name in TEMPLATE_FIELDS:
        template = template_for_field(field_name, getattr(action, field_name))
        if template is None:
            continue

        prompts = parse_template(template).ai_prompts
        if not prompts:
            continue

        var_names = [f"var{i}" for i in range(1, len(prompts) + 1)]
        description = f"Generate this template: {numbered_template(template)}"
        if field_name == "content":
            description += "\nMake sure to maintain the exact formatting."

        fields[field_name] = {
            "type": "object",
            "properties": {name: {"type": "string"} for name in var_names},
            "required": var_names,
            "description": description,
        }
    return fields


def extract_actions_needing_ai_generation(actions: list[ActionItem]) -> list[dict[str, Any]]:
    """``{action_id, type, parameters}`` for every action with a field to generate."""
    result = []
    for action in actions:
        fields = get_parameter_fields_for_action(action)
        if not fields:
            continue
        result.append(
            {
                "action_id": action.id,
                "type": str(action.type),
                "parameters": {
                    "type": "object",
                    "properties": fields,
                    "required": list(fields),
                },
            }
        )
    return result


def missing_ai_args(parameters: list[dict[str, Any]], ai_args: ActionArgs | None) -> list[str]:
    """``"<TYPE>-<id>.<field>"`` for every requested field the LLM left out."""
    missing = []
    for entry in parameters:
        key = f"{entry['type']}-{entry['action_id']}"
        values = (ai_args or {}).get(key) or {}
        for field_name in entry["parameters"]["required"]:
            if not isinstance(values.get(field_name), dict):
                missing.append(f"{key}.{field_name}")
    return missing


def combine_actions_with_ai_args(
    actions: list[ActionItem],
    ai_args: ActionArgs | None,
    draft: str | None = None,
) -> list[ActionItem]:
    """Merge generated values (and a full draft) into the actions.

    Actions are returned unchanged when there are neither args nor a draft.
    """
    if not ai_args and not draft:
        return actions

    combined = []
    for action in actions:
        changes: dict[str, Any] = {}
        if draft and action.type == ActionType.DRAFT_EMAIL:
            changes["content"] = draft

        for field_name, variables in ((ai_args or {}).get(action_key(action)) or {}).items():
            if field_name == "content" and draft:
                continue
            if field_name not in TEMPLATE_FIELDS or not isinstance(variables, dict):
                continue

            original = getattr(action, field_name)
            if not isinstance(original, str):
                continue
            template = template_for_field(field_name, original) or original
            changes[field_name] = merge_template_with_vars(template, variables)

        combined.append(action.with_fields(**changes) if changes else action)
    return combined


async def get_action_items_with_ai_args(
    *,
    message: ParsedMessage,
    account: EmailAccount,
    rule: Rule,
    provider: EmailProvider,
    llm: LLMClient,
    config: AppConfig,
    context: CallContext | None = None,
) -> list[ActionItem]:
    """Resolve every AI-generated field of a rule's actions for one message.

    Raises:
        LLMError: If the argument generation call fails or leaves a
            requested field without a value
    """
    draft: str | None = None
    needs_draft = any(
        action.type == ActionType.DRAFT_EMAIL and not action.content for action in rule.actions
    )
    if needs_draft:
        try:
            draft = await fetch_messages_and_generate_draft(
                account, message.thread_id, provider, llm=llm, config=config, context=context
            )
        except (InboxPilotError, ValueError) as e:
            logger.error("draft_generation_failed", thread_id=message.thread_id, error=str(e))
            draft = None

    parameters = extract_actions_needing_ai_generation(rule.actions)
    if not parameters and not draft:
        return rule.actions

    ai_args: ActionArgs | None = None
    if parameters:
        system, user = build_generate_args_prompts(
            get_email_for_llm(message),
            rule,
            account_about=account.about,
            signature=account.signature,
        )
        ai_args = await llm.call_tool(
            task="choose_args",
            model=config.llm.choose_args_model,
            system=system,
            user=user,
            tool=build_generate_args_tool(parameters),
            context=context,
        )
        logger.info(
            "action_args_generated",
            rule_id=rule.id,
            actions=[p["type"] for p in parameters],
            received=bool(ai_args),
        )
        missing = missing_ai_args(parameters, ai_args)
        if missing:
            # Unfilled sentinels or placeholders must never reach a mailbox
            raise LLMError(
                f"Argument generation left fields unfilled: {', '.join(missing)}",
                task="choose_args",
            )

    return combine_actions_with_ai_args(rule.actions, ai_args, draft)

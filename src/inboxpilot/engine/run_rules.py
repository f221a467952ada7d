"""Rule selection and the plan-or-execute gate for one message.

Pipeline per message:
1. Drop rules that learned to exclude this sender
2. Ask the LLM to choose a rule (``ai_choose_rule``)
3. No rule -> record a SKIPPED executed rule and stop
4. Resolve AI-generated action fields (``get_action_items_with_ai_args``)
5. Upsert a PENDING executed rule keyed on (account, thread, message)
6. Cancel delayed actions still pending from an earlier run on this message
7. If the rule should execute now: run immediate actions, schedule delayed ones.
   Otherwise the record stays PENDING for the user to approve.

Step 5 is an upsert on a unique key, so duplicate deliveries of the same
message converge on one executed rule row.

Usage:
    from inboxpilot.engine.run_rules import run_rules

    result = await run_rules(services=services, provider=provider, account=account,
                             message=message, rules=rules)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from email.utils import parseaddr
from typing import TYPE_CHECKING

from inboxpilot.ai.choose_args import get_action_items_with_ai_args
from inboxpilot.ai.choose_rule import ai_choose_rule
from inboxpilot.ai.email_for_llm import get_email_for_llm
from inboxpilot.ai.llm import CallContext
from inboxpilot.core.logging import get_logger
from inboxpilot.engine.execute import execute_act
from inboxpilot.rules.action_item import sanitize_action_fields
from inboxpilot.rules.types import ExecutedRuleStatus
from inboxpilot.scheduling.scheduler import (
    cancel_scheduled_actions,
    is_delayed,
    schedule_delayed_actions,
)

if TYPE_CHECKING:
    from inboxpilot.db.store import EmailAccount, ExecutedRule, ScheduledAction
    from inboxpilot.engine.context import Services
    from inboxpilot.providers.base import EmailProvider, ParsedMessage
    from inboxpilot.rules.types import Rule

logger = get_logger(__name__)


@dataclass
class RunRulesResult:
    """What happened to one message."""

    rule: Rule | None
    reason: str | None
    status: ExecutedRuleStatus
    executed_rule: ExecutedRule | None = None
    scheduled: list[ScheduledAction] = field(default_factory=list)
    requires_more_information: bool = False


def sender_address(message: ParsedMessage) -> str:
    return parseaddr(message.from_)[1].lower()


async def filter_rules_for_sender(
    services: Services, account: EmailAccount, message: ParsedMessage, rules: list[Rule]
) -> list[Rule]:
    """Enabled rules that may run on this message.

    Drops rules that learned to exclude the sender. On a reply in a thread
    that already had messages processed, rules with ``run_on_threads`` off are
    dropped too, unless they were applied earlier in the same thread.
    """
    excluded = await services.store.get_excluded_senders(account.id)
    sender = sender_address(message)
    candidates = [
        rule
        for rule in rules
        if rule.enabled and sender not in excluded.get(rule.id, set())
    ]
    if all(rule.run_on_threads for rule in candidates):
        return candidates

    earlier = await services.store.list_thread_executions(
        account.id, message.thread_id, message.id
    )
    if not earlier:
        return candidates

    applied_in_thread = {
        rule_id
        for rule_id, status in earlier
        if rule_id is not None and status == ExecutedRuleStatus.APPLIED
    }
    return [
        rule for rule in candidates if rule.run_on_threads or rule.id in applied_in_thread
    ]


async def plan_or_execute_act(
    *,
    services: Services,
    provider: EmailProvider,
    account: EmailAccount,
    message: ParsedMessage,
    rule: Rule | None,
    reason: str | None,
    allow_execute: bool = True,
    force_execute: bool = False,
) -> RunRulesResult:
    """Record the decision for a message and act on it if allowed.

    Raises:
        LLMError: If argument generation fails
        SchedulerError / QueueError: If delayed actions cannot be scheduled
        Exception: The first failing immediate action
    """
    store = services.store

    if rule is None:
        executed = await store.upsert_executed_rule(
            email_account_id=account.id,
            thread_id=message.thread_id,
            message_id=message.id,
            status=ExecutedRuleStatus.SKIPPED,
            reason=reason,
        )
        logger.info("no_rule_matched", message_id=message.id, reason=reason)
        return RunRulesResult(
            rule=None, reason=reason, status=ExecutedRuleStatus.SKIPPED, executed_rule=executed
        )

    should_execute = allow_execute and (rule.automate or force_execute)

    actions = await get_action_items_with_ai_args(
        message=message,
        account=account,
        rule=rule,
        provider=provider,
        llm=services.llm,
        config=services.config,
        context=CallContext(email_account_id=account.id, message_id=message.id),
    )
    sanitized = [sanitize_action_fields(action) for action in actions]

    executed = await store.upsert_executed_rule(
        email_account_id=account.id,
        thread_id=message.thread_id,
        message_id=message.id,
        status=ExecutedRuleStatus.PENDING,
        rule_id=rule.id,
        reason=reason,
        automated=should_execute,
        actions=sanitized,
    )

    await cancel_scheduled_actions(
        store, services.queue, account.id, message.id, thread_id=message.thread_id
    )

    result = RunRulesResult(
        rule=rule, reason=reason, status=ExecutedRuleStatus.PENDING, executed_rule=executed
    )
    if not should_execute:
        logger.info("rule_planned", rule_id=rule.id, message_id=message.id)
        return result

    result.status, result.scheduled = await apply_executed_rule(
        services=services,
        provider=provider,
        account=account,
        message=message,
        executed=executed,
    )
    return result


async def apply_executed_rule(
    *,
    services: Services,
    provider: EmailProvider,
    account: EmailAccount,
    message: ParsedMessage,
    executed: ExecutedRule,
) -> tuple[ExecutedRuleStatus, list[ScheduledAction]]:
    """Schedule the delayed actions of a recorded rule, then run the rest.

    With only delayed actions the executed rule moves to APPLYING and the
    executor marks it APPLIED once the last scheduled action finishes.

    Returns:
        The resulting status and the scheduled actions created
    """
    store = services.store
    immediate = [a for a in executed.actions if not is_delayed(a)]
    delayed = [a for a in executed.actions if is_delayed(a)]

    scheduled: list[ScheduledAction] = []
    if delayed:
        scheduled = await schedule_delayed_actions(
            store, services.queue, services.config, executed, delayed
        )

    status = executed.status
    if immediate:
        await execute_act(
            provider=provider,
            store=store,
            executed_rule=executed,
            message=message,
            account_email=account.email,
            actions=immediate,
        )
        status = ExecutedRuleStatus.APPLIED
    elif not delayed:
        await store.update_executed_rule_status(executed.id, ExecutedRuleStatus.APPLIED)
        status = ExecutedRuleStatus.APPLIED
    elif status != ExecutedRuleStatus.APPLYING:
        # Kept out of PENDING so it cannot be approved a second time
        await store.update_executed_rule_status(executed.id, ExecutedRuleStatus.APPLYING)
        status = ExecutedRuleStatus.APPLYING

    logger.info(
        "rule_executed",
        rule_id=executed.rule_id,
        message_id=message.id,
        immediate=len(immediate),
        delayed=len(delayed),
    )
    return status, scheduled


async def run_rules(
    *,
    services: Services,
    provider: EmailProvider,
    account: EmailAccount,
    message: ParsedMessage,
    rules: list[Rule],
    allow_execute: bool = True,
    force_execute: bool = False,
) -> RunRulesResult:
    """Choose a rule for a message and plan or execute it."""
    candidates = await filter_rules_for_sender(services, account, message, rules)
    if not candidates:
        return await plan_or_execute_act(
            services=services,
            provider=provider,
            account=account,
            message=message,
            rule=None,
            reason="No enabled rules apply to this message",
            allow_execute=allow_execute,
        )

    selection = await ai_choose_rule(
        get_email_for_llm(message),
        candidates,
        llm=services.llm,
        config=services.config,
        account_about=account.about,
        context=CallContext(email_account_id=account.id, message_id=message.id),
    )

    if selection is None:
        rule, reason, needs_info = None, "Rule selection returned no decision", False
    else:
        rule, reason, needs_info = (
            selection.rule,
            selection.reason,
            selection.requires_more_information,
        )

    result = await plan_or_execute_act(
        services=services,
        provider=provider,
        account=account,
        message=message,
        rule=rule,
        reason=reason,
        allow_execute=allow_execute,
        force_execute=force_execute,
    )
    result.requires_more_information = needs_info
    return result

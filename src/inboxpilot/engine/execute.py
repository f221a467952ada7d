"""Run the resolved actions of an executed rule.

All action items run concurrently and independently: one failing does not
stop the others. Once every action has settled the first failure (if any)
is re-raised and the executed rule is marked ERROR. On success two
follow-up steps run side by side, so a failure in one cannot hide the
outcome of the other:

- label the thread as acted on
- mark the executed rule APPLIED

Usage:
    from inboxpilot.engine.execute import execute_act

    await execute_act(provider=provider, store=store, executed_rule=executed, message=message,
                      account_email=account.email)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from inboxpilot.core.logging import get_logger
from inboxpilot.engine.actions import run_action_function
from inboxpilot.rules.types import ExecutedRuleStatus

if TYPE_CHECKING:
    from inboxpilot.db.store import DatabaseStore, ExecutedRule
    from inboxpilot.providers.base import EmailProvider, ParsedMessage
    from inboxpilot.rules.types import ActionItem

logger = get_logger(__name__)

ACTED_LABEL_NAME = "InboxPilot/Acted"


async def _run_one(
    provider: EmailProvider,
    store: DatabaseStore,
    message: ParsedMessage,
    action: ActionItem,
    *,
    account_email: str,
    executed_rule_id: int,
) -> None:
    draft_id = await run_action_function(
        provider,
        message,
        action,
        account_email=account_email,
        executed_rule_id=executed_rule_id,
    )
    if draft_id and action.id is not None:
        await store.set_executed_action_draft_id(action.id, draft_id)


async def execute_act(
    *,
    provider: EmailProvider,
    store: DatabaseStore,
    executed_rule: ExecutedRule,
    message: ParsedMessage,
    account_email: str,
    actions: list[ActionItem] | None = None,
) -> None:
    """Execute action items for a message and record the outcome.

    Args:
        actions: Subset of the executed rule's items to run (defaults to all)

    Raises:
        Exception: The first action failure, after every action has finished
    """
    items = executed_rule.actions if actions is None else actions

    results = await asyncio.gather(
        *(
            _run_one(
                provider,
                store,
                message,
                action,
                account_email=account_email,
                executed_rule_id=executed_rule.id,
            )
            for action in items
        ),
        return_exceptions=True,
    )

    failures = [
        (action, result)
        for action, result in zip(items, results, strict=True)
        if isinstance(result, BaseException)
    ]
    for action, error in failures:
        logger.error(
            "action_failed",
            executed_rule_id=executed_rule.id,
            action_type=str(action.type),
            message_id=message.id,
            error=str(error),
        )

    if failures:
        await store.update_executed_rule_status(
            executed_rule.id, ExecutedRuleStatus.ERROR, reason=str(failures[0][1])
        )
        raise failures[0][1]

    label_result, status_result = await asyncio.gather(
        provider.label_thread(message.thread_id, ACTED_LABEL_NAME),
        store.update_executed_rule_status(executed_rule.id, ExecutedRuleStatus.APPLIED),
        return_exceptions=True,
    )
    if isinstance(label_result, BaseException):
        logger.warning("acted_label_failed", thread_id=message.thread_id, error=str(label_result))
    if isinstance(status_result, BaseException):
        logger.error(
            "executed_rule_status_update_failed",
            executed_rule_id=executed_rule.id,
            error=str(status_result),
        )

    logger.info(
        "actions_executed",
        executed_rule_id=executed_rule.id,
        message_id=message.id,
        count=len(items),
    )

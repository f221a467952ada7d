"""Delayed actions: persist, enqueue a queue callback, cancel.

A delayed action is a ``scheduled_actions`` row plus a QStash message that
will call ``/api/scheduled-actions/execute`` once the delay has passed.
There are no local timers. The row's status is the source of truth:

    PENDING -> EXECUTING -> COMPLETED | FAILED
    PENDING -> CANCELLED

Usage:
    from inboxpilot.scheduling.scheduler import (
        cancel_scheduled_actions,
        schedule_delayed_actions,
    )

    await cancel_scheduled_actions(store, queue, account_id, message_id)
    await schedule_delayed_actions(store, queue, config, executed_rule, delayed)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from inboxpilot.core.errors import InboxPilotError, SchedulerError
from inboxpilot.core.logging import get_logger
from inboxpilot.rules.types import ActionItem, ActionType, ScheduledActionStatus

if TYPE_CHECKING:
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.db.store import DatabaseStore, ExecutedRule, ScheduledAction
    from inboxpilot.scheduling.qstash import QStashClient

logger = get_logger(__name__)

DELAY_ELIGIBLE_ACTIONS = frozenset(
    {
        ActionType.ARCHIVE,
        ActionType.LABEL,
        ActionType.REPLY,
        ActionType.SEND_EMAIL,
        ActionType.FORWARD,
        ActionType.DRAFT_EMAIL,
        ActionType.CALL_WEBHOOK,
        ActionType.MARK_READ,
        ActionType.MARK_SPAM,
        ActionType.MOVE_FOLDER,
    }
)

DEFAULT_CANCEL_REASON = "Superseded by new rule"


def deduplication_id(scheduled_action_id: int, retry_count: int = 0) -> str:
    """Queue dedup key, distinct for every retry of the same row."""
    if retry_count:
        return f"scheduled-action-{scheduled_action_id}-retry-{retry_count}"
    return f"scheduled-action-{scheduled_action_id}"


def is_delayed(action: ActionItem) -> bool:
    return bool(action.delay_in_minutes and action.delay_in_minutes > 0)


def validate_delayed_action(action: ActionItem) -> None:
    """Raise SchedulerError if the action cannot be scheduled."""
    if action.type not in DELAY_ELIGIBLE_ACTIONS:
        raise SchedulerError(f"Action type {action.type} does not support delayed execution")
    if action.delay_in_minutes is None or action.delay_in_minutes <= 0:
        raise SchedulerError(
            f"Invalid delay for {action.type}: delay_in_minutes must be greater than 0"
        )


async def enqueue_scheduled_action(
    queue: QStashClient | None,
    config: AppConfig,
    scheduled: ScheduledAction,
) -> str:
    """Publish the queue callback for a row and return the queue message id.

    Raises:
        SchedulerError: If no queue client or callback URL is configured
        QueueError: If the queue rejects the publish
    """
    if queue is None or not config.queue.enabled:
        raise SchedulerError("Delayed actions need a configured queue client (QSTASH_TOKEN)")
    if not config.queue.callback_url:
        raise SchedulerError(
            "Delayed actions need queue.callback_url (SCHEDULED_ACTIONS_CALLBACK_URL)"
        )

    scheduled_for = scheduled.scheduled_for
    if scheduled_for.tzinfo is None:
        scheduled_for = scheduled_for.replace(tzinfo=UTC)
    return await queue.publish(
        config.queue.callback_url,
        {"scheduledActionId": scheduled.id},
        not_before=int(scheduled_for.timestamp()),
        deduplication_id=deduplication_id(scheduled.id, scheduled.retry_count),
    )


async def create_scheduled_action(
    store: DatabaseStore,
    queue: QStashClient | None,
    config: AppConfig,
    *,
    executed_rule_id: int,
    email_account_id: int,
    message_id: str,
    thread_id: str,
    action: ActionItem,
) -> ScheduledAction:
    """Persist one delayed action and enqueue its callback.

    Raises:
        SchedulerError: If the action is not eligible or no queue is configured
        QueueError: If enqueueing fails; the row is marked FAILED first
    """
    validate_delayed_action(action)

    scheduled_for = datetime.now(UTC) + timedelta(minutes=action.delay_in_minutes or 0)
    scheduled = await store.create_scheduled_action(
        executed_rule_id=executed_rule_id,
        email_account_id=email_account_id,
        message_id=message_id,
        thread_id=thread_id,
        action=action,
        scheduled_for=scheduled_for,
    )

    try:
        scheduled_id = await enqueue_scheduled_action(queue, config, scheduled)
    except InboxPilotError as e:
        logger.error(
            "scheduled_action_enqueue_failed",
            scheduled_action_id=scheduled.id,
            action_type=str(action.type),
            error=str(e),
        )
        await store.mark_scheduled_action_failed(scheduled.id, f"Failed to enqueue: {e}")
        raise

    await store.set_scheduled_id(scheduled.id, scheduled_id)
    scheduled.scheduled_id = scheduled_id

    logger.info(
        "scheduled_action_created",
        scheduled_action_id=scheduled.id,
        action_type=str(action.type),
        scheduled_for=scheduled_for.isoformat(),
        message_id=message_id,
    )
    return scheduled


async def schedule_delayed_actions(
    store: DatabaseStore,
    queue: QStashClient | None,
    config: AppConfig,
    executed_rule: ExecutedRule,
    actions: list[ActionItem],
) -> list[ScheduledAction]:
    """Schedule every delayed action of an executed rule.

    Stops at the first failure and re-raises it.
    """
    scheduled = []
    for action in actions:
        scheduled.append(
            await create_scheduled_action(
                store,
                queue,
                config,
                executed_rule_id=executed_rule.id,
                email_account_id=executed_rule.email_account_id,
                message_id=executed_rule.message_id,
                thread_id=executed_rule.thread_id,
                action=action,
            )
        )
    return scheduled


async def cancel_scheduled_actions(
    store: DatabaseStore,
    queue: QStashClient | None,
    email_account_id: int,
    message_id: str,
    thread_id: str | None = None,
    reason: str = DEFAULT_CANCEL_REASON,
) -> int:
    """Cancel every PENDING delayed action for a message.

    Queue cancellation is best effort: failures are logged and the rows are
    still marked CANCELLED, so a callback that fires anyway finds a
    non-PENDING row and does nothing.

    Returns:
        Number of rows cancelled
    """
    pending = await store.list_scheduled_actions(
        email_account_id,
        message_id=message_id,
        thread_id=thread_id,
        status=ScheduledActionStatus.PENDING,
    )
    if not pending:
        return 0

    for action in pending:
        if not action.scheduled_id or queue is None:
            continue
        try:
            await queue.cancel(action.scheduled_id)
        except InboxPilotError as e:
            logger.warning(
                "queue_cancel_failed",
                scheduled_action_id=action.id,
                scheduled_id=action.scheduled_id,
                error=str(e),
            )

    count = await store.cancel_pending_scheduled_actions([a.id for a in pending], reason)
    logger.info(
        "scheduled_actions_cancelled",
        email_account_id=email_account_id,
        message_id=message_id,
        count=count,
        reason=reason,
    )
    return count

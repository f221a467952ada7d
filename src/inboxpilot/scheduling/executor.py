"""Run a delayed action when its queue callback fires.

The callback only carries the row id. Work starts with an atomic claim
(PENDING -> EXECUTING); a row that was cancelled in the meantime, or that a
duplicate callback already claimed, is skipped and the callback still
answers success so the queue stops redelivering it.

Failure handling:
- message deleted            -> COMPLETED with a note
- permanent provider errors  -> FAILED, prefixed ``[PERMANENT]``
- anything else              -> back to PENDING and re-enqueued after
                                ``queue.retry_delay_minutes``, until
                                ``queue.max_retry_attempts`` is reached
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from inboxpilot.core.errors import (
    AuthenticationError,
    InboxPilotError,
    NotFoundError,
    ProviderAPIError,
)
from inboxpilot.core.logging import get_logger
from inboxpilot.engine.actions import run_action_function
from inboxpilot.rules.types import ExecutedRuleStatus
from inboxpilot.scheduling.scheduler import enqueue_scheduled_action

if TYPE_CHECKING:
    from inboxpilot.engine.context import Services
    from inboxpilot.db.store import ScheduledAction

logger = get_logger(__name__)

PERMANENT_PREFIX = "[PERMANENT] "
MESSAGE_GONE_NOTE = "Email no longer exists"
PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404})


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one queue callback."""

    scheduled_action_id: int
    status: str
    detail: str | None = None


def is_permanent_error(error: BaseException) -> bool:
    """Errors that will fail the same way on every retry."""
    if isinstance(error, (NotFoundError, AuthenticationError, ValueError)):
        return True
    if isinstance(error, ProviderAPIError):
        return error.status_code in PERMANENT_STATUS_CODES
    return False


async def _finish_executed_rule(services: Services, scheduled: ScheduledAction) -> None:
    remaining = await services.store.count_outstanding_scheduled_actions(
        scheduled.executed_rule_id
    )
    if remaining:
        return
    # APPLIED and ERROR are final; only a rule waiting on its delayed actions moves
    applied = await services.store.update_executed_rule_status(
        scheduled.executed_rule_id,
        ExecutedRuleStatus.APPLIED,
        expected_status=ExecutedRuleStatus.APPLYING,
    )
    if applied:
        logger.info("executed_rule_applied", executed_rule_id=scheduled.executed_rule_id)


async def _retry_or_fail(services: Services, scheduled: ScheduledAction, error: Exception) -> str:
    store = services.store
    queue_config = services.config.queue

    if is_permanent_error(error):
        await store.mark_scheduled_action_failed(scheduled.id, f"{PERMANENT_PREFIX}{error}")
        logger.error(
            "scheduled_action_failed",
            scheduled_action_id=scheduled.id,
            permanent=True,
            error=str(error),
        )
        return "failed"

    if scheduled.retry_count >= queue_config.max_retry_attempts:
        await store.mark_scheduled_action_failed(
            scheduled.id,
            f"Failed after {scheduled.retry_count} retries: {error}",
        )
        logger.error(
            "scheduled_action_failed",
            scheduled_action_id=scheduled.id,
            retries=scheduled.retry_count,
            error=str(error),
        )
        return "failed"

    scheduled.retry_count += 1
    scheduled.scheduled_for = datetime.now(UTC) + timedelta(minutes=queue_config.retry_delay_minutes)
    await store.requeue_scheduled_action(
        scheduled.id,
        scheduled_for=scheduled.scheduled_for,
        retry_count=scheduled.retry_count,
        error_message=f"Retry scheduled: {error}",
    )

    try:
        scheduled_id = await enqueue_scheduled_action(services.queue, services.config, scheduled)
    except InboxPilotError as e:
        await store.mark_scheduled_action_failed(scheduled.id, f"Failed to enqueue retry: {e}")
        logger.error("scheduled_action_requeue_failed", scheduled_action_id=scheduled.id, error=str(e))
        return "failed"

    await store.set_scheduled_id(scheduled.id, scheduled_id)
    logger.warning(
        "scheduled_action_retry",
        scheduled_action_id=scheduled.id,
        retry_count=scheduled.retry_count,
        scheduled_for=scheduled.scheduled_for.isoformat(),
        error=str(error),
    )
    return "retrying"


async def execute_scheduled_action(services: Services, scheduled_action_id: int) -> ExecutionResult:
    """Claim and run one scheduled action.

    Only database errors raised while claiming propagate; everything after
    the claim is recorded on the row.
    """
    scheduled = await services.store.claim_scheduled_action(scheduled_action_id)
    if scheduled is None:
        logger.info("scheduled_action_not_pending", scheduled_action_id=scheduled_action_id)
        return ExecutionResult(scheduled_action_id, "skipped", "Not pending")

    try:
        account = await services.store.get_email_account(scheduled.email_account_id)
        if account is None:
            raise ValueError(f"Email account {scheduled.email_account_id} no longer exists")

        provider = await services.provider_for(account)

        try:
            message = await provider.get_message(scheduled.message_id)
        except NotFoundError:
            await services.store.complete_scheduled_action(scheduled.id, MESSAGE_GONE_NOTE)
            logger.info("scheduled_action_message_gone", scheduled_action_id=scheduled.id)
            await _finish_executed_rule(services, scheduled)
            return ExecutionResult(scheduled.id, "completed", MESSAGE_GONE_NOTE)

        await run_action_function(
            provider,
            message,
            scheduled.action,
            account_email=account.email,
            executed_rule_id=scheduled.executed_rule_id,
        )

    except Exception as e:
        status = await _retry_or_fail(services, scheduled, e)
        if status == "failed":
            await _finish_executed_rule(services, scheduled)
        return ExecutionResult(scheduled.id, status, str(e))

    await services.store.complete_scheduled_action(scheduled.id)
    logger.info(
        "scheduled_action_completed",
        scheduled_action_id=scheduled.id,
        action_type=str(scheduled.action_type),
    )
    await _finish_executed_rule(services, scheduled)
    return ExecutionResult(scheduled.id, "completed")

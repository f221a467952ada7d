"""Delayed actions backed by an external queue (QStash)."""

from inboxpilot.scheduling.executor import ExecutionResult, execute_scheduled_action
from inboxpilot.scheduling.qstash import QStashClient
from inboxpilot.scheduling.scheduler import (
    cancel_scheduled_actions,
    create_scheduled_action,
    schedule_delayed_actions,
)

__all__ = [
    "ExecutionResult",
    "QStashClient",
    "cancel_scheduled_actions",
    "create_scheduled_action",
    "execute_scheduled_action",
    "schedule_delayed_actions",
]

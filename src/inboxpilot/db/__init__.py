"""Database layer for InboxPilot.

This module provides SQLite database access with async operations.

Usage:
    from inboxpilot.db import DatabaseStore

    store = DatabaseStore("data/inboxpilot.db")
    await store.initialize()

    account = await store.get_email_account_by_subscription("sub-123")
    rules = await store.list_rules(account.id, enabled_only=True)
"""

from inboxpilot.db.models import SCHEMA_VERSION, init_database, verify_schema
from inboxpilot.db.store import (
    DatabaseStore,
    EmailAccount,
    ExecutedRule,
    LearnedPattern,
    LLMLogEntry,
    ScheduledAction,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Dataclasses
    "EmailAccount",
    "ExecutedRule",
    "ScheduledAction",
    "LearnedPattern",
    "LLMLogEntry",
]

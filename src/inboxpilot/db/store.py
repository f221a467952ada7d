"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for InboxPilot. It uses aiosqlite for async access and returns
dataclasses rather than rows.

Usage:
    from inboxpilot.db.store import DatabaseStore

    store = DatabaseStore("data/inboxpilot.db")
    await store.initialize()

    # Idempotent per-message bookkeeping
    executed = await store.upsert_executed_rule(
        email_account_id=1,
        thread_id="t1",
        message_id="m1",
        rule_id=3,
        status=ExecutedRuleStatus.PENDING,
        actions=[ActionItem(type=ActionType.ARCHIVE)],
    )

    # Claim a scheduled action before running it
    scheduled = await store.claim_scheduled_action(42)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from inboxpilot.core.errors import ConflictError, DatabaseError
from inboxpilot.core.logging import get_correlation_id, get_logger
from inboxpilot.db.models import init_database
from inboxpilot.rules.types import (
    ActionItem,
    ActionType,
    ExecutedRuleStatus,
    LearnedPatternSource,
    Rule,
    ScheduledActionStatus,
    SystemType,
)

logger = get_logger(__name__)

# Column order shared by the actions and executed_actions tables
_ACTION_COLUMNS = (
    "type",
    "label",
    "label_id",
    "subject",
    "content",
    "to_address",
    "cc",
    "bcc",
    "url",
    "folder_name",
    "folder_id",
    "delay_in_minutes",
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _action_values(action: ActionItem) -> tuple[Any, ...]:
    return (
        str(action.type),
        action.label,
        action.label_id,
        action.subject,
        action.content,
        action.to,
        action.cc,
        action.bcc,
        action.url,
        action.folder_name,
        action.folder_id,
        action.delay_in_minutes,
    )


def _row_to_action(row: aiosqlite.Row) -> ActionItem:
    keys = row.keys()
    return ActionItem(
        id=row["id"],
        type=ActionType(row["type"]),
        label=row["label"],
        label_id=row["label_id"],
        subject=row["subject"],
        content=row["content"],
        to=row["to_address"],
        cc=row["cc"],
        bcc=row["bcc"],
        url=row["url"],
        folder_name=row["folder_name"],
        folder_id=row["folder_id"],
        delay_in_minutes=row["delay_in_minutes"],
        draft_id=row["draft_id"] if "draft_id" in keys else None,
    )


@dataclass
class EmailAccount:
    """A connected mailbox with its tokens and entitlement."""

    id: int
    email: str
    provider: str
    name: str | None = None
    about: str | None = None
    signature: str | None = None
    premium_tier: str | None = None
    premium_expires_at: datetime | None = None
    ai_access: bool = True
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    watch_subscription_id: str | None = None
    watch_expires_at: datetime | None = None
    last_synced_history_id: str | None = None

    @property
    def is_premium(self) -> bool:
        if not self.premium_tier:
            return False
        if self.premium_expires_at is None:
            return True
        return self.premium_expires_at > datetime.now(UTC)


@dataclass
class ExecutedRule:
    """Outcome of running the rules against one message."""

    id: int
    email_account_id: int
    thread_id: str
    message_id: str
    status: ExecutedRuleStatus
    rule_id: int | None = None
    automated: bool = False
    reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    actions: list[ActionItem] = field(default_factory=list)


@dataclass
class ScheduledAction:
    """A delayed action waiting on its queue callback."""

    id: int
    executed_rule_id: int
    email_account_id: int
    message_id: str
    thread_id: str
    action: ActionItem
    scheduled_for: datetime
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
    scheduled_id: str | None = None
    retry_count: int = 0
    error_message: str | None = None
    executed_at: datetime | None = None

    @property
    def action_type(self) -> ActionType:
        return self.action.type


@dataclass
class LearnedPattern:
    id: int
    email_account_id: int
    rule_id: int
    sender: str
    exclude: bool
    reason: str | None = None
    source: LearnedPatternSource | None = None
    created_at: datetime | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    task_type: str | None = None
    model: str | None = None
    email_account_id: int | None = None
    message_id: str | None = None
    request_id: str | None = None
    prompt_json: Any = None
    response_json: Any = None
    tool_call_json: Any = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


class DatabaseStore:
    """Database store for all InboxPilot data.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle concurrent webhook deliveries
        - foreign_keys: ON to enforce referential integrity and cascades
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Email Account Operations
    # =========================================================================

    async def create_email_account(
        self,
        email: str,
        provider: str,
        *,
        name: str | None = None,
        about: str | None = None,
        premium_tier: str | None = None,
        premium_expires_at: datetime | None = None,
        ai_access: bool = True,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        watch_subscription_id: str | None = None,
    ) -> EmailAccount:
        """Register a mailbox.

        Raises:
            ConflictError: If the email address is already connected
            DatabaseError: If the operation fails
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO email_accounts (
                        email, provider, name, about, premium_tier, premium_expires_at,
                        ai_access, access_token, refresh_token, token_expires_at,
                        watch_subscription_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email,
                        provider,
                        name,
                        about,
                        premium_tier,
                        premium_expires_at.isoformat() if premium_expires_at else None,
                        1 if ai_access else 0,
                        access_token,
                        refresh_token,
                        token_expires_at.isoformat() if token_expires_at else None,
                        watch_subscription_id,
                    ),
                )
                await db.commit()
                account_id = cursor.lastrowid

        except aiosqlite.IntegrityError as e:
            raise ConflictError(f"Email account {email} is already connected") from e
        except aiosqlite.Error as e:
            logger.error("Failed to create email account", email=email, error=str(e))
            raise DatabaseError(f"Failed to create email account {email}: {e}") from e

        logger.info("Email account created", email_account_id=account_id, provider=provider)
        account = await self.get_email_account(account_id)
        assert account is not None
        return account

    async def get_email_account(self, email_account_id: int) -> EmailAccount | None:
        return await self._get_email_account_where("id = ?", (email_account_id,))

    async def get_email_account_by_email(self, email: str) -> EmailAccount | None:
        return await self._get_email_account_where("email = ?", (email,))

    async def get_email_account_by_subscription(self, subscription_id: str) -> EmailAccount | None:
        """Find the Outlook account owning a Graph change-notification subscription."""
        return await self._get_email_account_where("watch_subscription_id = ?", (subscription_id,))

    async def list_email_accounts(self) -> list[EmailAccount]:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM email_accounts ORDER BY id")
                rows = await cursor.fetchall()
                return [self._row_to_account(row) for row in rows]
        except aiosqlite.Error as e:
            logger.error("Failed to list email accounts", error=str(e))
            raise DatabaseError(f"Failed to list email accounts: {e}") from e

    async def _get_email_account_where(
        self, clause: str, params: tuple[Any, ...]
    ) -> EmailAccount | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(f"SELECT * FROM email_accounts WHERE {clause}", params)
                row = await cursor.fetchone()
                return self._row_to_account(row) if row else None
        except aiosqlite.Error as e:
            logger.error("Failed to get email account", error=str(e))
            raise DatabaseError(f"Failed to get email account: {e}") from e

    async def update_tokens(
        self,
        email_account_id: int,
        access_token: str,
        token_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        """Store refreshed OAuth tokens. A None refresh token keeps the existing one."""
        await self._execute(
            """
            UPDATE email_accounts
            SET access_token = ?,
                token_expires_at = ?,
                refresh_token = COALESCE(?, refresh_token)
            WHERE id = ?
            """,
            (
                access_token,
                token_expires_at.isoformat() if token_expires_at else None,
                refresh_token,
                email_account_id,
            ),
            "update tokens",
        )

    async def set_watch(
        self,
        email_account_id: int,
        subscription_id: str | None,
        expires_at: datetime | None,
    ) -> None:
        await self._execute(
            """
            UPDATE email_accounts
            SET watch_subscription_id = ?, watch_expires_at = ?
            WHERE id = ?
            """,
            (subscription_id, expires_at.isoformat() if expires_at else None, email_account_id),
            "set watch",
        )

    async def clear_watch(self, email_account_id: int) -> None:
        await self.set_watch(email_account_id, None, None)
        logger.info("Watch cleared", email_account_id=email_account_id)

    async def update_last_synced_history_id(self, email_account_id: int, history_id: str) -> None:
        """Advance the Gmail history cursor. Never moves it backwards."""
        await self._execute(
            """
            UPDATE email_accounts
            SET last_synced_history_id = ?
            WHERE id = ?
              AND (last_synced_history_id IS NULL
                   OR CAST(last_synced_history_id AS INTEGER) < CAST(? AS INTEGER))
            """,
            (history_id, email_account_id, history_id),
            "update history id",
        )

    def _row_to_account(self, row: aiosqlite.Row) -> EmailAccount:
        return EmailAccount(
            id=row["id"],
            email=row["email"],
            provider=row["provider"],
            name=row["name"],
            about=row["about"],
            signature=row["signature"],
            premium_tier=row["premium_tier"],
            premium_expires_at=_parse_dt(row["premium_expires_at"]),
            ai_access=bool(row["ai_access"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=_parse_dt(row["token_expires_at"]),
            watch_subscription_id=row["watch_subscription_id"],
            watch_expires_at=_parse_dt(row["watch_expires_at"]),
            last_synced_history_id=row["last_synced_history_id"],
        )

    # =========================================================================
    # Rule Operations
    # =========================================================================

    async def create_rule(
        self,
        email_account_id: int,
        name: str,
        instructions: str,
        actions: list[ActionItem],
        *,
        enabled: bool = True,
        automate: bool = True,
        run_on_threads: bool = False,
        system_type: SystemType | None = None,
        position: int | None = None,
    ) -> Rule:
        """Create a rule and its actions in one transaction.

        New rules go to the end of the list unless a position is given.

        Raises:
            ConflictError: If the account already has a rule with this name
        """
        try:
            async with self._db() as db:
                if position is None:
                    cursor = await db.execute(
                        "SELECT COALESCE(MAX(position) + 1, 0) FROM rules WHERE email_account_id = ?",
                        (email_account_id,),
                    )
                    position = (await cursor.fetchone())[0]

                cursor = await db.execute(
                    """
                    INSERT INTO rules (
                        email_account_id, name, instructions, enabled, automate,
                        run_on_threads, system_type, position
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email_account_id,
                        name,
                        instructions,
                        1 if enabled else 0,
                        1 if automate else 0,
                        1 if run_on_threads else 0,
                        str(system_type) if system_type else None,
                        position,
                    ),
                )
                rule_id = cursor.lastrowid
                await self._insert_rule_actions(db, rule_id, actions)
                await db.commit()

        except aiosqlite.IntegrityError as e:
            raise ConflictError(
                f"A rule named '{name}' already exists for this account. "
                "Choose a different name or update the existing rule."
            ) from e
        except aiosqlite.Error as e:
            logger.error("Failed to create rule", name=name, error=str(e))
            raise DatabaseError(f"Failed to create rule '{name}': {e}") from e

        logger.info("Rule created", rule_id=rule_id, email_account_id=email_account_id)
        rule = await self.get_rule(rule_id)
        assert rule is not None
        return rule

    async def _insert_rule_actions(
        self, db: aiosqlite.Connection, rule_id: int, actions: list[ActionItem]
    ) -> None:
        columns = ", ".join(_ACTION_COLUMNS)
        placeholders = ", ".join("?" for _ in _ACTION_COLUMNS)
        await db.executemany(
            f"INSERT INTO actions (rule_id, position, {columns}) VALUES (?, ?, {placeholders})",
            [(rule_id, i, *_action_values(action)) for i, action in enumerate(actions)],
        )

    async def get_rule(self, rule_id: int) -> Rule | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM rules WHERE id = ?", (rule_id,))
                row = await cursor.fetchone()
                if not row:
                    return None
                actions = await self._load_rule_actions(db, [rule_id])
                return self._row_to_rule(row, actions.get(rule_id, []))
        except aiosqlite.Error as e:
            logger.error("Failed to get rule", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to get rule {rule_id}: {e}") from e

    async def list_rules(self, email_account_id: int, enabled_only: bool = False) -> list[Rule]:
        """List an account's rules in position order, with their actions."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM rules WHERE email_account_id = ?"
                if enabled_only:
                    query += " AND enabled = 1"
                query += " ORDER BY position, id"
                cursor = await db.execute(query, (email_account_id,))
                rows = await cursor.fetchall()
                actions = await self._load_rule_actions(db, [row["id"] for row in rows])
                return [self._row_to_rule(row, actions.get(row["id"], [])) for row in rows]
        except aiosqlite.Error as e:
            logger.error("Failed to list rules", email_account_id=email_account_id, error=str(e))
            raise DatabaseError(f"Failed to list rules: {e}") from e

    async def has_enabled_rules(self, email_account_id: int) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT 1 FROM rules WHERE email_account_id = ? AND enabled = 1 LIMIT 1",
                    (email_account_id,),
                )
                return await cursor.fetchone() is not None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to check enabled rules: {e}") from e

    async def update_rule(
        self,
        rule_id: int,
        *,
        name: str | None = None,
        instructions: str | None = None,
        enabled: bool | None = None,
        automate: bool | None = None,
        run_on_threads: bool | None = None,
        position: int | None = None,
        actions: list[ActionItem] | None = None,
    ) -> Rule | None:
        """Update a rule. Fields left as None are unchanged; actions are replaced wholesale.

        Returns:
            The updated rule, or None if it does not exist
        """

        def flag(value: bool | None) -> int | None:
            return None if value is None else int(value)

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE rules
                    SET name = COALESCE(?, name),
                        instructions = COALESCE(?, instructions),
                        enabled = COALESCE(?, enabled),
                        automate = COALESCE(?, automate),
                        run_on_threads = COALESCE(?, run_on_threads),
                        position = COALESCE(?, position),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        name,
                        instructions,
                        flag(enabled),
                        flag(automate),
                        flag(run_on_threads),
                        position,
                        _now(),
                        rule_id,
                    ),
                )
                if cursor.rowcount == 0:
                    return None
                if actions is not None:
                    await db.execute("DELETE FROM actions WHERE rule_id = ?", (rule_id,))
                    await self._insert_rule_actions(db, rule_id, actions)
                await db.commit()

        except aiosqlite.IntegrityError as e:
            raise ConflictError(f"A rule named '{name}' already exists for this account") from e
        except aiosqlite.Error as e:
            logger.error("Failed to update rule", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to update rule {rule_id}: {e}") from e

        logger.info("Rule updated", rule_id=rule_id)
        return await self.get_rule(rule_id)

    async def delete_rule(self, rule_id: int) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
                await db.commit()
                deleted = cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("Failed to delete rule", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to delete rule {rule_id}: {e}") from e

        if deleted:
            logger.info("Rule deleted", rule_id=rule_id)
        return deleted

    async def _load_rule_actions(
        self, db: aiosqlite.Connection, rule_ids: list[int]
    ) -> dict[int, list[ActionItem]]:
        if not rule_ids:
            return {}
        placeholders = ", ".join("?" for _ in rule_ids)
        cursor = await db.execute(
            f"SELECT * FROM actions WHERE rule_id IN ({placeholders}) ORDER BY position, id",
            rule_ids,
        )
        grouped: dict[int, list[ActionItem]] = {}
        for row in await cursor.fetchall():
            grouped.setdefault(row["rule_id"], []).append(_row_to_action(row))
        return grouped

    def _row_to_rule(self, row: aiosqlite.Row, actions: list[ActionItem]) -> Rule:
        return Rule(
            id=row["id"],
            email_account_id=row["email_account_id"],
            name=row["name"],
            instructions=row["instructions"],
            actions=actions,
            enabled=bool(row["enabled"]),
            automate=bool(row["automate"]),
            run_on_threads=bool(row["run_on_threads"]),
            system_type=SystemType(row["system_type"]) if row["system_type"] else None,
            position=row["position"],
        )

    # =========================================================================
    # Executed Rule Operations
    # =========================================================================

    async def upsert_executed_rule(
        self,
        *,
        email_account_id: int,
        thread_id: str,
        message_id: str,
        status: ExecutedRuleStatus,
        rule_id: int | None = None,
        reason: str | None = None,
        automated: bool = False,
        actions: list[ActionItem] | None = None,
    ) -> ExecutedRule:
        """Create or overwrite the executed rule for a message.

        The (account, thread, message) unique key means duplicate deliveries
        converge on a single row whatever order they land in. The action items
        are replaced in the same transaction.

        Returns:
            The stored ExecutedRule with action ids populated
        """
        now = _now()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO executed_rules (
                        email_account_id, thread_id, message_id, rule_id,
                        status, automated, reason, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(email_account_id, thread_id, message_id) DO UPDATE SET
                        rule_id = excluded.rule_id,
                        status = excluded.status,
                        automated = excluded.automated,
                        reason = excluded.reason,
                        updated_at = excluded.updated_at
                    RETURNING id
                    """,
                    (
                        email_account_id,
                        thread_id,
                        message_id,
                        rule_id,
                        str(status),
                        1 if automated else 0,
                        reason,
                        now,
                        now,
                    ),
                )
                executed_rule_id = (await cursor.fetchall())[0]["id"]

                await db.execute(
                    "DELETE FROM executed_actions WHERE executed_rule_id = ?",
                    (executed_rule_id,),
                )
                columns = ", ".join(_ACTION_COLUMNS)
                placeholders = ", ".join("?" for _ in _ACTION_COLUMNS)
                for action in actions or []:
                    await db.execute(
                        f"""
                        INSERT INTO executed_actions (executed_rule_id, {columns}, draft_id)
                        VALUES (?, {placeholders}, ?)
                        """,
                        (executed_rule_id, *_action_values(action), action.draft_id),
                    )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error(
                "Failed to upsert executed rule",
                message_id=message_id,
                thread_id=thread_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to record executed rule for {message_id}: {e}") from e

        logger.debug(
            "Executed rule saved",
            executed_rule_id=executed_rule_id,
            message_id=message_id,
            status=str(status),
        )
        executed = await self.get_executed_rule(executed_rule_id)
        assert executed is not None
        return executed

    async def get_executed_rule(self, executed_rule_id: int) -> ExecutedRule | None:
        return await self._get_executed_rule_where("id = ?", (executed_rule_id,))

    async def find_executed_rule(
        self, email_account_id: int, thread_id: str, message_id: str
    ) -> ExecutedRule | None:
        """Look up the executed rule recorded for a message, if any."""
        return await self._get_executed_rule_where(
            "email_account_id = ? AND thread_id = ? AND message_id = ?",
            (email_account_id, thread_id, message_id),
        )

    async def _get_executed_rule_where(
        self, clause: str, params: tuple[Any, ...]
    ) -> ExecutedRule | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(f"SELECT * FROM executed_rules WHERE {clause}", params)
                row = await cursor.fetchone()
                if not row:
                    return None
                actions = await self._load_executed_actions(db, [row["id"]])
                return self._row_to_executed_rule(row, actions.get(row["id"], []))
        except aiosqlite.Error as e:
            logger.error("Failed to get executed rule", error=str(e))
            raise DatabaseError(f"Failed to get executed rule: {e}") from e

    async def list_thread_executions(
        self, email_account_id: int, thread_id: str, exclude_message_id: str
    ) -> list[tuple[int | None, ExecutedRuleStatus]]:
        """(rule_id, status) of what was recorded for the thread's other messages."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT rule_id, status FROM executed_rules
                    WHERE email_account_id = ? AND thread_id = ? AND message_id != ?
                    """,
                    (email_account_id, thread_id, exclude_message_id),
                )
                rows = await cursor.fetchall()
                return [(row["rule_id"], ExecutedRuleStatus(row["status"])) for row in rows]
        except aiosqlite.Error as e:
            logger.error("Failed to list thread executions", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to list thread executions: {e}") from e

    async def list_executed_rules(
        self,
        email_account_id: int,
        status: ExecutedRuleStatus | None = None,
        limit: int = 50,
    ) -> list[ExecutedRule]:
        """Most recent executed rules for an account, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM executed_rules WHERE email_account_id = ?"
                params: list[Any] = [email_account_id]
                if status:
                    query += " AND status = ?"
                    params.append(str(status))
                query += " ORDER BY created_at DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                actions = await self._load_executed_actions(db, [row["id"] for row in rows])
                return [self._row_to_executed_rule(row, actions.get(row["id"], [])) for row in rows]
        except aiosqlite.Error as e:
            logger.error("Failed to list executed rules", error=str(e))
            raise DatabaseError(f"Failed to list executed rules: {e}") from e

    async def update_executed_rule_status(
        self,
        executed_rule_id: int,
        status: ExecutedRuleStatus,
        *,
        expected_status: ExecutedRuleStatus | None = None,
        reason: str | None = None,
    ) -> bool:
        """Set the status, optionally only if it currently equals expected_status.

        Returns:
            True if the row was updated
        """
        query = "UPDATE executed_rules SET status = ?, reason = COALESCE(?, reason), updated_at = ? WHERE id = ?"
        params: list[Any] = [str(status), reason, _now(), executed_rule_id]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(str(expected_status))
        rowcount = await self._execute(query, tuple(params), "update executed rule status")
        return rowcount > 0

    async def set_executed_action_draft_id(self, executed_action_id: int, draft_id: str) -> None:
        await self._execute(
            "UPDATE executed_actions SET draft_id = ? WHERE id = ?",
            (draft_id, executed_action_id),
            "record draft id",
        )

    async def _load_executed_actions(
        self, db: aiosqlite.Connection, executed_rule_ids: list[int]
    ) -> dict[int, list[ActionItem]]:
        if not executed_rule_ids:
            return {}
        placeholders = ", ".join("?" for _ in executed_rule_ids)
        cursor = await db.execute(
            f"""
            SELECT * FROM executed_actions
            WHERE executed_rule_id IN ({placeholders})
            ORDER BY id
            """,
            executed_rule_ids,
        )
        grouped: dict[int, list[ActionItem]] = {}
        for row in await cursor.fetchall():
            grouped.setdefault(row["executed_rule_id"], []).append(_row_to_action(row))
        return grouped

    def _row_to_executed_rule(self, row: aiosqlite.Row, actions: list[ActionItem]) -> ExecutedRule:
        return ExecutedRule(
            id=row["id"],
            email_account_id=row["email_account_id"],
            thread_id=row["thread_id"],
            message_id=row["message_id"],
            rule_id=row["rule_id"],
            status=ExecutedRuleStatus(row["status"]),
            automated=bool(row["automated"]),
            reason=row["reason"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            actions=actions,
        )

    # =========================================================================
    # Scheduled Action Operations
    # =========================================================================

    async def create_scheduled_action(
        self,
        *,
        executed_rule_id: int,
        email_account_id: int,
        message_id: str,
        thread_id: str,
        action: ActionItem,
        scheduled_for: datetime,
    ) -> ScheduledAction:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO scheduled_actions (
                        executed_rule_id, email_account_id, message_id, thread_id,
                        action_type, action_json, scheduled_for, status
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 'PENDING')
                    RETURNING *
                    """,
                    (
                        executed_rule_id,
                        email_account_id,
                        message_id,
                        thread_id,
                        str(action.type),
                        json.dumps(action.to_dict()),
                        scheduled_for.isoformat(),
                    ),
                )
                rows = await cursor.fetchall()
                await db.commit()
                return self._row_to_scheduled_action(rows[0])
        except aiosqlite.Error as e:
            logger.error("Failed to create scheduled action", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to create scheduled action: {e}") from e

    async def get_scheduled_action(self, scheduled_action_id: int) -> ScheduledAction | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM scheduled_actions WHERE id = ?", (scheduled_action_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_scheduled_action(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get scheduled action {scheduled_action_id}: {e}") from e

    async def list_scheduled_actions(
        self,
        email_account_id: int,
        *,
        message_id: str | None = None,
        thread_id: str | None = None,
        status: ScheduledActionStatus | None = None,
    ) -> list[ScheduledAction]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM scheduled_actions WHERE email_account_id = ?"
                params: list[Any] = [email_account_id]
                if message_id is not None:
                    query += " AND message_id = ?"
                    params.append(message_id)
                if thread_id is not None:
                    query += " AND thread_id = ?"
                    params.append(thread_id)
                if status is not None:
                    query += " AND status = ?"
                    params.append(str(status))
                query += " ORDER BY scheduled_for, id"
                cursor = await db.execute(query, params)
                return [self._row_to_scheduled_action(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("Failed to list scheduled actions", error=str(e))
            raise DatabaseError(f"Failed to list scheduled actions: {e}") from e

    async def set_scheduled_id(self, scheduled_action_id: int, scheduled_id: str) -> None:
        await self._execute(
            "UPDATE scheduled_actions SET scheduled_id = ?, updated_at = ? WHERE id = ?",
            (scheduled_id, _now(), scheduled_action_id),
            "record queue message id",
        )

    async def mark_scheduled_action_failed(
        self, scheduled_action_id: int, error_message: str
    ) -> None:
        await self._execute(
            """
            UPDATE scheduled_actions
            SET status = 'FAILED', error_message = ?, updated_at = ?
            WHERE id = ?
            """,
            (error_message, _now(), scheduled_action_id),
            "mark scheduled action failed",
        )

    async def cancel_pending_scheduled_actions(self, ids: list[int], reason: str) -> int:
        """Move the given rows to CANCELLED, skipping any that already left PENDING.

        Returns:
            Number of rows cancelled
        """
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        return await self._execute(
            f"""
            UPDATE scheduled_actions
            SET status = 'CANCELLED', error_message = ?, updated_at = ?
            WHERE id IN ({placeholders}) AND status = 'PENDING'
            """,
            (reason, _now(), *ids),
            "cancel scheduled actions",
        )

    async def claim_scheduled_action(self, scheduled_action_id: int) -> ScheduledAction | None:
        """Atomically move a PENDING action to EXECUTING.

        This is the only way a queue callback may start work: a row that was
        cancelled (or already claimed by a duplicate callback) is not returned.

        Returns:
            The claimed action, or None if it was not PENDING
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE scheduled_actions
                    SET status = 'EXECUTING', updated_at = ?
                    WHERE id = ? AND status = 'PENDING'
                    RETURNING *
                    """,
                    (_now(), scheduled_action_id),
                )
                rows = await cursor.fetchall()
                await db.commit()
                return self._row_to_scheduled_action(rows[0]) if rows else None
        except aiosqlite.Error as e:
            logger.error(
                "Failed to claim scheduled action",
                scheduled_action_id=scheduled_action_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to claim scheduled action: {e}") from e

    async def complete_scheduled_action(
        self, scheduled_action_id: int, note: str | None = None
    ) -> None:
        await self._execute(
            """
            UPDATE scheduled_actions
            SET status = 'COMPLETED', executed_at = ?, error_message = ?, updated_at = ?
            WHERE id = ?
            """,
            (_now(), note, _now(), scheduled_action_id),
            "complete scheduled action",
        )

    async def requeue_scheduled_action(
        self,
        scheduled_action_id: int,
        *,
        scheduled_for: datetime,
        retry_count: int,
        error_message: str,
    ) -> None:
        """Put an EXECUTING action back to PENDING for another attempt."""
        await self._execute(
            """
            UPDATE scheduled_actions
            SET status = 'PENDING', scheduled_for = ?, retry_count = ?,
                error_message = ?, updated_at = ?
            WHERE id = ? AND status = 'EXECUTING'
            """,
            (scheduled_for.isoformat(), retry_count, error_message, _now(), scheduled_action_id),
            "requeue scheduled action",
        )

    async def count_outstanding_scheduled_actions(self, executed_rule_id: int) -> int:
        """Scheduled actions of this executed rule that are still PENDING or EXECUTING."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM scheduled_actions
                    WHERE executed_rule_id = ? AND status IN ('PENDING', 'EXECUTING')
                    """,
                    (executed_rule_id,),
                )
                return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count scheduled actions: {e}") from e

    def _row_to_scheduled_action(self, row: aiosqlite.Row) -> ScheduledAction:
        action = ActionItem.from_dict(json.loads(row["action_json"]))
        scheduled_for = _parse_dt(row["scheduled_for"])
        assert scheduled_for is not None
        return ScheduledAction(
            id=row["id"],
            executed_rule_id=row["executed_rule_id"],
            email_account_id=row["email_account_id"],
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            action=action,
            scheduled_for=scheduled_for,
            status=ScheduledActionStatus(row["status"]),
            scheduled_id=row["scheduled_id"],
            retry_count=row["retry_count"] or 0,
            error_message=row["error_message"],
            executed_at=_parse_dt(row["executed_at"]),
        )

    # =========================================================================
    # Learned Pattern Operations
    # =========================================================================

    async def save_learned_pattern(
        self,
        *,
        email_account_id: int,
        rule_id: int,
        sender: str,
        exclude: bool,
        reason: str | None,
        source: LearnedPatternSource,
    ) -> None:
        """Record that a sender should (or should not) match a rule."""
        await self._execute(
            """
            INSERT INTO learned_patterns (
                email_account_id, rule_id, sender, exclude, reason, source
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(rule_id, sender) DO UPDATE SET
                exclude = excluded.exclude,
                reason = excluded.reason,
                source = excluded.source
            """,
            (email_account_id, rule_id, sender, 1 if exclude else 0, reason, str(source)),
            "save learned pattern",
        )
        logger.info(
            "Learned pattern saved",
            rule_id=rule_id,
            sender=sender,
            exclude=exclude,
            source=str(source),
        )

    async def list_learned_patterns(self, rule_id: int) -> list[LearnedPattern]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM learned_patterns WHERE rule_id = ? ORDER BY id", (rule_id,)
                )
                return [
                    LearnedPattern(
                        id=row["id"],
                        email_account_id=row["email_account_id"],
                        rule_id=row["rule_id"],
                        sender=row["sender"],
                        exclude=bool(row["exclude"]),
                        reason=row["reason"],
                        source=LearnedPatternSource(row["source"]) if row["source"] else None,
                        created_at=_parse_dt(row["created_at"]),
                    )
                    for row in await cursor.fetchall()
                ]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list learned patterns: {e}") from e

    async def get_excluded_senders(self, email_account_id: int) -> dict[int, set[str]]:
        """Map rule id to lower-cased senders excluded from that rule."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT rule_id, sender FROM learned_patterns
                    WHERE email_account_id = ? AND exclude = 1
                    """,
                    (email_account_id,),
                )
                excluded: dict[int, set[str]] = {}
                for row in await cursor.fetchall():
                    excluded.setdefault(row["rule_id"], set()).add(row["sender"].lower())
                return excluded
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to load learned patterns: {e}") from e

    # =========================================================================
    # LLM Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]],
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        email_account_id: int | None = None,
        message_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        Args:
            task_type: Pipeline step ('choose_rule', 'choose_args', 'draft')
            model: Model string used
            prompt: The prompt sent to the model
            response: The raw response
            tool_call: Extracted tool input, if the call used a tool
            input_tokens: Input token count
            output_tokens: Output token count
            duration_ms: Request duration in milliseconds
            email_account_id: Account the call was made for
            message_id: Message the call was about
            error: Error message (if failed)

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, email_account_id, message_id, request_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        email_account_id,
                        message_id,
                        get_correlation_id(),
                        json.dumps(prompt),
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log LLM request", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(self, limit: int = 100, message_id: str | None = None) -> list[LLMLogEntry]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log"
                params: list[Any] = []
                if message_id:
                    query += " WHERE message_id = ?"
                    params.append(message_id)
                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [self._row_to_llm_log(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("Failed to get LLM logs", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period.

        Returns:
            Number of entries deleted
        """
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        deleted = await self._execute(
            "DELETE FROM llm_request_log WHERE timestamp < ?",
            (cutoff.strftime("%Y-%m-%d %H:%M:%S"),),
            "prune LLM logs",
        )
        if deleted:
            logger.info("Pruned LLM logs", deleted=deleted, retention_days=retention_days)
        return deleted

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        def load(value: str | None) -> Any:
            if not value:
                return None
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None

        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_dt(row["timestamp"]) or datetime.now(UTC),
            task_type=row["task_type"],
            model=row["model"],
            email_account_id=row["email_account_id"],
            message_id=row["message_id"],
            request_id=row["request_id"],
            prompt_json=load(row["prompt_json"]),
            response_json=load(row["response_json"]),
            tool_call_json=load(row["tool_call_json"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            error=row["error"],
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _execute(self, sql: str, params: tuple[Any, ...], operation: str) -> int:
        """Run a single write statement and return the affected row count."""
        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.error("Database write failed", operation=operation, error=str(e))
            raise DatabaseError(f"Failed to {operation}: {e}") from e

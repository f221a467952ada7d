"""SQLite database schema and initialization for InboxPilot.

This module defines the database schema with 8 tables:
- email_accounts: Connected Gmail/Outlook mailboxes, tokens, entitlement, watch state
- rules: User-defined rules (natural-language instructions + flags)
- actions: Ordered actions belonging to a rule (typed field bags)
- executed_rules: One row per (account, thread, message) recording the outcome
- executed_actions: Resolved action items of an executed rule
- scheduled_actions: Delayed actions driven by queue callbacks
- learned_patterns: Sender include/exclude patterns learned from user feedback
- llm_request_log: LLM call logging for debugging

Usage:
    from inboxpilot.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/inboxpilot.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inboxpilot.core.errors import DatabaseError
from inboxpilot.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS email_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE COLLATE NOCASE,
    provider TEXT NOT NULL,                 -- 'google' or 'microsoft'
    name TEXT,
    about TEXT,                             -- Free text the user tells the assistant about themselves
    signature TEXT,
    premium_tier TEXT,                      -- NULL when not subscribed
    premium_expires_at DATETIME,
    ai_access INTEGER DEFAULT 1,
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at DATETIME,
    watch_subscription_id TEXT,             -- Graph subscription id (Outlook)
    watch_expires_at DATETIME,
    last_synced_history_id TEXT,            -- Gmail history cursor
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_email_accounts_subscription
    ON email_accounts(watch_subscription_id);

CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_account_id INTEGER NOT NULL REFERENCES email_accounts(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    instructions TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    automate INTEGER DEFAULT 1,
    run_on_threads INTEGER DEFAULT 0,
    system_type TEXT,                       -- TO_REPLY, NEWSLETTER, ... or NULL for custom rules
    position INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(email_account_id, name)
);

CREATE INDEX IF NOT EXISTS idx_rules_account ON rules(email_account_id, position);

CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER NOT NULL REFERENCES rules(id) ON DELETE CASCADE,
    position INTEGER DEFAULT 0,
    type TEXT NOT NULL,
    label TEXT,
    label_id TEXT,
    subject TEXT,
    content TEXT,
    to_address TEXT,                        -- "to" is a reserved word
    cc TEXT,
    bcc TEXT,
    url TEXT,
    folder_name TEXT,
    folder_id TEXT,
    delay_in_minutes INTEGER
);

CREATE INDEX IF NOT EXISTS idx_actions_rule ON actions(rule_id, position);

-- Exactly one row per message, enforced by the unique key and written by upsert
CREATE TABLE IF NOT EXISTS executed_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_account_id INTEGER NOT NULL REFERENCES email_accounts(id) ON DELETE CASCADE,
    thread_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    rule_id INTEGER REFERENCES rules(id) ON DELETE SET NULL,
    status TEXT NOT NULL,                   -- PENDING, APPLYING, APPLIED, REJECTED, SKIPPED, ERROR
    automated INTEGER DEFAULT 0,
    reason TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(email_account_id, thread_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_executed_rules_status
    ON executed_rules(email_account_id, status);

CREATE TABLE IF NOT EXISTS executed_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    executed_rule_id INTEGER NOT NULL REFERENCES executed_rules(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    label TEXT,
    label_id TEXT,
    subject TEXT,
    content TEXT,
    to_address TEXT,
    cc TEXT,
    bcc TEXT,
    url TEXT,
    folder_name TEXT,
    folder_id TEXT,
    delay_in_minutes INTEGER,
    draft_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_executed_actions_rule ON executed_actions(executed_rule_id);

-- Delayed actions; status only changes through queue callbacks or cancellation
CREATE TABLE IF NOT EXISTS scheduled_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    executed_rule_id INTEGER NOT NULL REFERENCES executed_rules(id) ON DELETE CASCADE,
    email_account_id INTEGER NOT NULL REFERENCES email_accounts(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    action_json TEXT NOT NULL,              -- Resolved ActionItem fields
    scheduled_for DATETIME NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING', -- PENDING, EXECUTING, COMPLETED, FAILED, CANCELLED
    scheduled_id TEXT,                      -- Queue message id
    retry_count INTEGER DEFAULT 0,
    error_message TEXT,
    executed_at DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_scheduled_actions_message
    ON scheduled_actions(email_account_id, message_id, status);
CREATE INDEX IF NOT EXISTS idx_scheduled_actions_executed_rule
    ON scheduled_actions(executed_rule_id, status);

CREATE TABLE IF NOT EXISTS learned_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_account_id INTEGER NOT NULL REFERENCES email_accounts(id) ON DELETE CASCADE,
    rule_id INTEGER NOT NULL REFERENCES rules(id) ON DELETE CASCADE,
    sender TEXT NOT NULL COLLATE NOCASE,
    exclude INTEGER DEFAULT 0,
    reason TEXT,
    source TEXT,                            -- USER, AI, LABEL_REMOVED
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(rule_id, sender)
);

CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'choose_rule', 'choose_args', 'draft'
    model TEXT,
    email_account_id INTEGER,
    message_id TEXT,
    request_id TEXT,                        -- Correlation ID of the webhook/queue request
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_message ON llm_request_log(message_id);
"""

REQUIRED_TABLES = (
    "email_accounts",
    "rules",
    "actions",
    "executed_rules",
    "executed_actions",
    "scheduled_actions",
    "learned_patterns",
    "llm_request_log",
)


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Tokens live in this file: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error(
            "Database initialization failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error(
            "Schema verification failed",
            db_path=str(db_path),
            error=str(e),
        )
        return False

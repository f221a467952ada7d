"""Pydantic configuration schema for InboxPilot.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from inboxpilot.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite storage configuration."""

    path: str = Field(
        default="data/inboxpilot.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LLMConfig(BaseModel):
    """Claude model selection and call limits."""

    choose_rule_model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used to pick a rule for an email",
    )
    choose_args_model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used to fill templated action fields",
    )
    draft_model: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model used to write full reply drafts",
    )
    max_tokens: int = Field(
        default=1024,
        ge=64,
        le=8192,
        description="Max output tokens per call",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries on rate limit and overload errors",
    )


class RedisConfig(BaseModel):
    """Redis connection for the per-message processing lock."""

    url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    lock_ttl_seconds: int = Field(
        default=60,
        ge=5,
        le=3600,
        description="How long a message stays claimed by one webhook delivery",
    )


class QueueConfig(BaseModel):
    """External durable queue (QStash) used for delayed actions."""

    enabled: bool = Field(
        default=True,
        description="Disable to refuse scheduling delayed actions",
    )
    base_url: str = Field(
        default="https://qstash.upstash.io",
        description="QStash API base URL",
    )
    token: str | None = Field(
        default=None,
        description="QStash API token (or set QSTASH_TOKEN)",
    )
    callback_url: str | None = Field(
        default=None,
        description="Public URL of /api/scheduled-actions/execute",
    )
    callback_secret: str | None = Field(
        default=None,
        description="Bearer secret the queue callback must present (or set CRON_SECRET)",
    )
    max_retry_attempts: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Times a transiently failing scheduled action is re-queued",
    )
    retry_delay_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="Delay before a failed scheduled action is retried",
    )


class GoogleConfig(BaseModel):
    """Google OAuth client and Pub/Sub push settings."""

    client_id: str | None = Field(default=None, description="Google OAuth client ID")
    client_secret: str | None = Field(default=None, description="Google OAuth client secret")
    pubsub_verification_token: str | None = Field(
        default=None,
        description="Token expected in the ?token= query of Pub/Sub push requests",
    )


class MicrosoftConfig(BaseModel):
    """Azure AD app registration and Graph subscription settings."""

    client_id: str | None = Field(default=None, description="Azure AD Application (client) ID")
    client_secret: str | None = Field(default=None, description="Azure AD client secret")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    webhook_client_state: str | None = Field(
        default=None,
        description="clientState value set on Graph subscriptions and checked on delivery",
    )
    scopes: list[str] = Field(
        default=[
            "Mail.ReadWrite",
            "Mail.Send",
            "User.Read",
        ],
        description="Microsoft Graph API permission scopes",
    )


class WebhookConfig(BaseModel):
    """Webhook intake limits."""

    max_history_items: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Max Gmail history records processed per push notification",
    )
    bulk_process_concurrency: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Messages processed in parallel by the bulk run endpoint",
    )


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(
        default=True,
        description="Emit JSON lines (disable for human-readable dev output)",
    )


class AppConfig(BaseModel):
    """Root configuration schema for InboxPilot.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    microsoft: MicrosoftConfig = Field(default_factory=MicrosoftConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

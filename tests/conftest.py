"""Pytest fixtures and configuration for InboxPilot tests.

Provides common fixtures for configuration, database, services and mocking.
"""

import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest

from inboxpilot.config import reset_config
from inboxpilot.config_schema import AppConfig
from inboxpilot.core.processing_lock import ProcessingLock
from inboxpilot.db.store import DatabaseStore, EmailAccount
from inboxpilot.engine.context import Services
from inboxpilot.providers.base import INBOX, EmailProvider, Label, ParsedMessage


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

database:
  path: data/test.db

queue:
  enabled: true
  token: "qstash-token"
  callback_url: "https://pilot.example.com/api/scheduled-actions/execute"
  callback_secret: "cron-secret"

google:
  pubsub_verification_token: "pubsub-token"

microsoft:
  webhook_client_state: "client-state"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "queue": {
            "enabled": True,
            "token": "qstash-token",
            "callback_url": "https://pilot.example.com/api/scheduled-actions/execute",
            "callback_secret": "cron-secret",
        },
        "google": {"pubsub_verification_token": "pubsub-token"},
        "microsoft": {"webhook_client_state": "client-state"},
        "llm_logging": {"enabled": False},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the INBOXPILOT_CONFIG_PATH environment variable."""
    old_value = os.environ.get("INBOXPILOT_CONFIG_PATH")
    os.environ["INBOXPILOT_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["INBOXPILOT_CONFIG_PATH"]
    else:
        os.environ["INBOXPILOT_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
async def account(store: DatabaseStore) -> EmailAccount:
    """A premium Gmail account with a refresh token and a watch."""
    return await store.create_email_account(
        "user@example.com",
        "google",
        name="Test User",
        premium_tier="pro",
        access_token="access",
        refresh_token="refresh",
        watch_subscription_id="sub-123",
    )


@pytest.fixture
def make_message() -> Callable[..., ParsedMessage]:
    """Factory for ParsedMessage with sensible inbox defaults."""

    def _make(
        message_id: str = "msg-1",
        thread_id: str = "thread-1",
        label_ids: list[str] | None = None,
        **overrides: Any,
    ) -> ParsedMessage:
        values: dict[str, Any] = {
            "subject": "Quarterly invoice",
            "from_": "Billing <billing@vendor.com>",
            "to": "user@example.com",
            "snippet": "Your invoice is attached",
            "text_plain": "Hello,\n\nYour invoice for March is attached.\n\nThanks",
            "date": datetime(2026, 3, 1, 9, 30, tzinfo=UTC),
            "internet_message_id": f"<{message_id}@vendor.com>",
        }
        values.update(overrides)
        return ParsedMessage(
            id=message_id,
            thread_id=thread_id,
            label_ids=[INBOX] if label_ids is None else label_ids,
            **values,
        )

    return _make


@pytest.fixture
def provider() -> AsyncMock:
    """Mock EmailProvider; every method is an AsyncMock."""
    p = AsyncMock(spec=EmailProvider)
    p.name = "google"
    p.get_or_create_label.return_value = Label(id="Label_1", name="InboxPilot/Acted")
    p.get_label_by_name.return_value = None
    p.create_draft.return_value = "draft-1"
    return p


@pytest.fixture
def llm() -> MagicMock:
    """Mock LLMClient with async complete_text and call_tool."""
    client = MagicMock()
    client.complete_text = AsyncMock(return_value='{"rule": 1, "reason": "matches"}')
    client.call_tool = AsyncMock(return_value=None)
    return client


@pytest.fixture
def queue() -> AsyncMock:
    """Mock QStashClient."""
    q = AsyncMock()
    q.publish.return_value = "qstash-msg-1"
    return q


@pytest.fixture
async def lock() -> AsyncGenerator[ProcessingLock, None]:
    """ProcessingLock backed by an in-memory Redis."""
    processing_lock = ProcessingLock(fakeredis.FakeAsyncRedis(), ttl_seconds=60)
    yield processing_lock
    await processing_lock.close()


@pytest.fixture
def services(
    store: DatabaseStore,
    llm: MagicMock,
    sample_config: AppConfig,
    lock: ProcessingLock,
    queue: AsyncMock,
    provider: AsyncMock,
) -> Services:
    """Services wired to the temp database and mocks."""
    return Services(
        store=store,
        llm=llm,
        config=sample_config,
        lock=lock,
        queue=queue,
        provider_factory=AsyncMock(return_value=provider),
    )

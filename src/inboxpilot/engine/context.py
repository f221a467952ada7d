"""Long-lived collaborators shared by the webhook, queue and CLI entry points."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from inboxpilot.providers.factory import create_email_provider

if TYPE_CHECKING:
    from inboxpilot.ai.llm import LLMClient
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.core.processing_lock import ProcessingLock
    from inboxpilot.db.store import DatabaseStore, EmailAccount
    from inboxpilot.providers.base import EmailProvider
    from inboxpilot.scheduling.qstash import QStashClient

ProviderFactory = Callable[["EmailAccount", "DatabaseStore", "AppConfig"], Awaitable["EmailProvider"]]


@dataclass
class Services:
    """Everything the pipeline needs beyond the message itself.

    ``queue`` is None when delayed actions are not configured; scheduling
    then fails with SchedulerError rather than dropping the action.
    """

    store: DatabaseStore
    llm: LLMClient
    config: AppConfig
    lock: ProcessingLock
    queue: QStashClient | None = None
    provider_factory: ProviderFactory = create_email_provider

    async def provider_for(self, account: EmailAccount) -> EmailProvider:
        return await self.provider_factory(account, self.store, self.config)

    async def close(self) -> None:
        await self.lock.close()


async def create_services(config: AppConfig) -> Services:
    """Build the shared collaborators from configuration.

    The database is initialized (tables created) before returning. The queue
    client is only built when ``queue.enabled`` and a token are set.
    """
    import anthropic
    from redis import asyncio as redis_asyncio

    from inboxpilot.ai.llm import LLMClient
    from inboxpilot.core.processing_lock import ProcessingLock
    from inboxpilot.db.store import DatabaseStore
    from inboxpilot.scheduling.qstash import QStashClient

    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    redis = redis_asyncio.from_url(config.redis.url, decode_responses=True)

    queue = None
    if config.queue.enabled and config.queue.token:
        queue = QStashClient(
            config.queue.token,
            base_url=config.queue.base_url,
            forward_secret=config.queue.callback_secret,
        )

    return Services(
        store=store,
        llm=LLMClient(anthropic.AsyncAnthropic(max_retries=0), store, config),
        config=config,
        lock=ProcessingLock(redis, ttl_seconds=config.redis.lock_ttl_seconds),
        queue=queue,
    )

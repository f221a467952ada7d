"""Distributed per-message processing lock backed by Redis.

Providers routinely deliver the same change notification more than once, and
deliveries for one message can arrive concurrently on different workers. A
short-lived ``SET NX EX`` key per (account, message) makes sure only one of
them runs the rules. The key is never released explicitly: it expires on its
own, which also covers a worker dying mid-run.

Usage:
    from inboxpilot.core.processing_lock import ProcessingLock

    lock = ProcessingLock(redis_client, ttl_seconds=60)
    if not await lock.acquire(email="me@example.com", message_id="abc"):
        return  # another delivery is already handling it
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from inboxpilot.core.logging import get_logger

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = get_logger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 60


def processing_key(email: str, message_id: str) -> str:
    return f"processing-message:{email.lower()}:{message_id}"


class ProcessingLock:
    """Acquire-only lock keyed on account email and provider message id."""

    def __init__(self, redis: Redis, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self._redis = redis
        self._ttl_seconds = ttl_seconds

    async def acquire(self, *, email: str, message_id: str) -> bool:
        """Try to claim the message.

        Returns:
            True if this caller now owns the message, False if another
            delivery claimed it within the TTL window.
        """
        key = processing_key(email, message_id)
        acquired = await self._redis.set(key, "1", nx=True, ex=self._ttl_seconds)
        if not acquired:
            logger.info("processing_lock_held", email=email, message_id=message_id)
            return False
        return True

    async def is_held(self, *, email: str, message_id: str) -> bool:
        return bool(await self._redis.exists(processing_key(email, message_id)))

    async def close(self) -> None:
        await self._redis.aclose()

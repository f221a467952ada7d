"""Minimal QStash REST client for delayed HTTP callbacks.

QStash stores a message and POSTs it to our callback URL no earlier than
``Upstash-Not-Before``. ``Upstash-Deduplication-Id`` makes publishing the
same scheduled action twice a no-op on their side. Headers prefixed with
``Upstash-Forward-`` are forwarded to the callback, which is how the bearer
secret reaches ``/api/scheduled-actions/execute``.

Usage:
    from inboxpilot.scheduling.qstash import QStashClient

    queue = QStashClient(token, base_url="https://qstash.upstash.io")
    message_id = await queue.publish(
        callback_url, {"scheduledActionId": 12}, not_before=1735689600,
        deduplication_id="scheduled-action-12",
    )
"""

from __future__ import annotations

import asyncio
from typing import Any

import requests

from inboxpilot.core.errors import QueueError
from inboxpilot.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 15.0


class QStashClient:
    """Publish and cancel QStash messages.

    Attributes:
        base_url: QStash API base URL
        forward_secret: Bearer secret forwarded to the callback, if any
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://qstash.upstash.io",
        forward_secret: str | None = None,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._token = token
        self.base_url = base_url.rstrip("/")
        self.forward_secret = forward_secret
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def _request(
        self,
        method: str,
        path: str,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> requests.Response:
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers={**self._headers(), **(headers or {})},
                json=json,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise QueueError(f"QStash {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise QueueError(
                f"QStash {method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _publish(
        self,
        url: str,
        body: dict[str, Any],
        not_before: int,
        deduplication_id: str | None,
    ) -> str:
        headers = {
            "Content-Type": "application/json",
            "Upstash-Not-Before": str(not_before),
        }
        if deduplication_id:
            headers["Upstash-Deduplication-Id"] = deduplication_id
        if self.forward_secret:
            headers["Upstash-Forward-Authorization"] = f"Bearer {self.forward_secret}"

        response = self._request("POST", f"/v2/publish/{url}", headers=headers, json=body)
        message_id = response.json().get("messageId")
        if not message_id:
            raise QueueError("QStash publish response did not include a messageId")
        return message_id

    async def publish(
        self,
        url: str,
        body: dict[str, Any],
        *,
        not_before: int,
        deduplication_id: str | None = None,
    ) -> str:
        """Schedule a POST of ``body`` to ``url`` at unix time ``not_before``.

        Returns:
            The QStash message id

        Raises:
            QueueError: If QStash rejects the request or is unreachable
        """
        message_id = await asyncio.to_thread(
            self._publish, url, body, not_before, deduplication_id
        )
        logger.debug("qstash_published", message_id=message_id, not_before=not_before)
        return message_id

    async def cancel(self, message_id: str) -> None:
        """Delete a pending message.

        Raises:
            QueueError: If QStash rejects the request or is unreachable
        """
        await asyncio.to_thread(self._request, "DELETE", f"/v2/messages/{message_id}")
        logger.debug("qstash_cancelled", message_id=message_id)

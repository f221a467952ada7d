"""Tests for the QStash REST client."""

from unittest.mock import MagicMock

import pytest
import requests

from inboxpilot.core.errors import QueueError
from inboxpilot.scheduling.qstash import QStashClient


def _response(status_code: int, payload: dict | None = None) -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = "error body"
    return response


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


class TestQStashClient:
    async def test_publish_sends_schedule_headers(self, session: MagicMock) -> None:
        session.request.return_value = _response(201, {"messageId": "msg_123"})
        client = QStashClient(
            "token-1", base_url="https://qstash.test/", forward_secret="cron", session=session
        )

        message_id = await client.publish(
            "https://pilot.example.com/api/scheduled-actions/execute",
            {"scheduledActionId": 4},
            not_before=1_800_000_000,
            deduplication_id="scheduled-action-4",
        )

        assert message_id == "msg_123"
        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "POST"
        assert url == (
            "https://qstash.test/v2/publish/https://pilot.example.com/api/scheduled-actions/execute"
        )
        assert kwargs["json"] == {"scheduledActionId": 4}
        headers = kwargs["headers"]
        assert headers["Authorization"] == "Bearer token-1"
        assert headers["Upstash-Not-Before"] == "1800000000"
        assert headers["Upstash-Deduplication-Id"] == "scheduled-action-4"
        assert headers["Upstash-Forward-Authorization"] == "Bearer cron"

    async def test_publish_error_status(self, session: MagicMock) -> None:
        session.request.return_value = _response(500)
        client = QStashClient("token-1", session=session)

        with pytest.raises(QueueError) as exc_info:
            await client.publish("https://x.test/cb", {}, not_before=1)
        assert exc_info.value.status_code == 500

    async def test_publish_without_message_id(self, session: MagicMock) -> None:
        session.request.return_value = _response(200, {})
        client = QStashClient("token-1", session=session)

        with pytest.raises(QueueError, match="messageId"):
            await client.publish("https://x.test/cb", {}, not_before=1)

    async def test_network_error_becomes_queue_error(self, session: MagicMock) -> None:
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        client = QStashClient("token-1", session=session)

        with pytest.raises(QueueError, match="refused"):
            await client.cancel("msg_1")

    async def test_cancel(self, session: MagicMock) -> None:
        session.request.return_value = _response(200)
        client = QStashClient("token-1", base_url="https://qstash.test", session=session)

        await client.cancel("msg_1")

        assert session.request.call_args.args == ("DELETE", "https://qstash.test/v2/messages/msg_1")

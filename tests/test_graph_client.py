"""Tests for the Microsoft Graph client's retries and error mapping."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from inboxpilot.core.errors import NotFoundError, ProviderAPIError, RateLimitExceeded
from inboxpilot.providers.graph_client import GraphClient


def _response(
    status_code: int, payload: dict | None = None, headers: dict | None = None
) -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.content = b"{}" if payload is not None else b""
    response.text = "error body"
    response.headers = headers or {}
    return response


@pytest.fixture
def session() -> MagicMock:
    s = MagicMock()
    s.headers = {}
    return s


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("inboxpilot.providers.graph_client.time.sleep") as sleep:
        yield sleep


class TestGraphClient:
    def test_sets_bearer_and_immutable_id_headers(self, session: MagicMock) -> None:
        GraphClient("token-1", session=session)

        assert session.headers["Authorization"] == "Bearer token-1"
        assert session.headers["Prefer"] == 'IdType="ImmutableId"'

    def test_get_returns_json(self, session: MagicMock) -> None:
        session.request.return_value = _response(200, {"id": "AAMk"})
        client = GraphClient("token-1", session=session)

        assert client.get("/me/messages/AAMk", params={"$select": "id"}) == {"id": "AAMk"}
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == "https://graph.microsoft.com/v1.0/me/messages/AAMk"

    def test_no_content_returns_empty_dict(self, session: MagicMock) -> None:
        session.request.return_value = _response(204)
        client = GraphClient("token-1", session=session)

        assert client.delete("/subscriptions/sub-1") == {}

    def test_absolute_next_link_is_used_as_is(self, session: MagicMock) -> None:
        session.request.return_value = _response(200, {"value": []})
        client = GraphClient("token-1", session=session)

        client.get("https://graph.microsoft.com/v1.0/me/messages?$skip=10")

        assert session.request.call_args.args[1].endswith("$skip=10")

    def test_retries_server_errors_then_succeeds(
        self, session: MagicMock, no_sleep: MagicMock
    ) -> None:
        session.request.side_effect = [_response(503), _response(200, {"ok": True})]
        client = GraphClient("token-1", session=session)

        assert client.get("/me") == {"ok": True}
        assert session.request.call_count == 2
        no_sleep.assert_called_once()

    def test_404_raises_not_found_without_retry(self, session: MagicMock) -> None:
        session.request.return_value = _response(
            404, {"error": {"code": "ErrorItemNotFound", "message": "gone"}}
        )
        client = GraphClient("token-1", session=session)

        with pytest.raises(NotFoundError) as exc_info:
            client.get("/me/messages/missing")

        assert exc_info.value.error_code == "ErrorItemNotFound"
        assert session.request.call_count == 1

    def test_throttling_exhausts_retries(self, session: MagicMock) -> None:
        session.request.return_value = _response(429, {}, headers={"Retry-After": "2"})
        client = GraphClient("token-1", max_retries=2, session=session)

        with pytest.raises(RateLimitExceeded) as exc_info:
            client.get("/me")

        assert exc_info.value.retry_after == 2.0
        assert session.request.call_count == 3

    def test_forbidden_keeps_status(self, session: MagicMock) -> None:
        session.request.return_value = _response(
            403, {"error": {"code": "ErrorAccessDenied", "message": "denied"}}
        )
        client = GraphClient("token-1", session=session)

        with pytest.raises(ProviderAPIError) as exc_info:
            client.get("/me")

        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "ErrorAccessDenied"

    def test_connection_errors_raise_after_retries(self, session: MagicMock) -> None:
        session.request.side_effect = requests.exceptions.ConnectionError("reset")
        client = GraphClient("token-1", max_retries=1, session=session)

        with pytest.raises(ProviderAPIError, match="failed after 1 retries"):
            client.get("/me")

        assert session.request.call_count == 2

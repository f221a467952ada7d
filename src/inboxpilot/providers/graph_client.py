"""Thin Microsoft Graph client over ``requests``.

Each call is retried in-process for throttling (429, honoring Retry-After),
5xx responses, timeouts and dropped connections. Final failures are mapped
onto ``NotFoundError`` / ``RateLimitExceeded`` / ``ProviderAPIError`` so the
Outlook provider and the retry classifier can branch on status and code.

Calls block; OutlookProvider runs them via ``asyncio.to_thread``.

Usage:
    from inboxpilot.providers.graph_client import GraphClient

    client = GraphClient(access_token)
    message = client.get("/me/messages/AAMk...", params={"$select": "id,subject"})
"""

import random
import time
from typing import Any

import requests

from inboxpilot.core.errors import NotFoundError, ProviderAPIError, RateLimitExceeded
from inboxpilot.core.logging import get_logger
from inboxpilot.core.retry import calculate_retry_delay, parse_retry_after

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_MAX_RETRIES = 3
REQUEST_TIMEOUT_SECONDS = 30.0

_TRANSPORT_ERRORS = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)


def _error_details(response: requests.Response) -> tuple[str, str]:
    """(code, message) from a Graph error body, tolerating non-JSON bodies."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return "unknown", response.text or f"HTTP {response.status_code}"
    return error.get("code", "unknown"), error.get("message", response.text)


def to_provider_error(response: requests.Response) -> ProviderAPIError:
    status = response.status_code
    code, message = _error_details(response)
    if status == 404:
        return NotFoundError(f"Graph resource not found: {message}", error_code=code)
    if status == 429:
        return RateLimitExceeded(
            f"Graph throttled the request: {message}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 401:
        message = f"{message} (access token rejected; the account may need reconnecting)"
    elif status == 403:
        message = f"{message} (Mail.ReadWrite and Mail.Send must be granted)"
    return ProviderAPIError(
        f"Graph API error ({status}): {message}", status_code=status, error_code=code
    )


class GraphClient:
    """Graph calls made with one account's access token."""

    def __init__(
        self,
        access_token: str,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                # Ids survive folder moves
                "Prefer": 'IdType="ImmutableId"',
            }
        )

    def _url(self, endpoint: str) -> str:
        # @odata.nextLink values are already absolute
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _backoff(self, response: requests.Response | None, attempt: int) -> float:
        throttled = response is not None and response.status_code == 429
        retry_after = response.headers.get("Retry-After") if response is not None else None
        delay = calculate_retry_delay(
            is_rate_limit=throttled,
            is_server_error=not throttled,
            is_failed_precondition=False,
            attempt_number=attempt,
            retry_after_header=retry_after,
        )
        return max(delay * random.uniform(0.8, 1.2), 0.0)

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one Graph request, retrying transient failures.

        Returns:
            The decoded JSON body, or {} for empty 202/204 replies

        Raises:
            ProviderAPIError: Error responses and exhausted transport retries
        """
        url = self._url(endpoint)
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.session.request(
                    method, url, params=params, json=json, timeout=REQUEST_TIMEOUT_SECONDS
                )
            except _TRANSPORT_ERRORS as e:
                if attempt > self.max_retries:
                    raise ProviderAPIError(
                        f"{method} {endpoint} failed after {self.max_retries} retries: {e}"
                    ) from e
                delay = self._backoff(None, attempt)
                logger.warning(
                    "graph_transport_error",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                time.sleep(delay)
                continue

            status = response.status_code
            if status < 400:
                return {} if status in (202, 204) or not response.content else response.json()

            if (status == 429 or status >= 500) and attempt <= self.max_retries:
                delay = self._backoff(response, attempt)
                logger.warning(
                    "graph_request_retry",
                    method=method,
                    endpoint=endpoint,
                    status_code=status,
                    attempt=attempt,
                    delay=delay,
                )
                time.sleep(delay)
                continue

            error = to_provider_error(response)
            logger.error(
                "graph_request_failed",
                method=method,
                endpoint=endpoint,
                status_code=status,
                error=str(error)[:200],
            )
            raise error

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.request("POST", endpoint, params=params, json=json)

    def patch(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("PATCH", endpoint, json=json)

    def delete(self, endpoint: str) -> dict[str, Any]:
        return self.request("DELETE", endpoint)

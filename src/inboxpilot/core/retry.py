"""Retry classification and backoff helpers for provider and LLM calls.

Mail providers signal throttling differently: Microsoft Graph uses 429,
Gmail uses 429 or a 403 whose reason is one of the rate-limit reasons. Both
use 502/503/504 for transient server failures. This module turns any error
into an ``ErrorInfo``, classifies it, and computes how long to wait.

Usage:
    from inboxpilot.core.retry import (
        calculate_retry_delay,
        extract_error_info,
        is_retryable_error,
    )

    info = extract_error_info(exc)
    retry = is_retryable_error(info)
    if retry.retryable:
        delay = calculate_retry_delay(
            retry.is_rate_limit,
            retry.is_server_error,
            retry.is_failed_precondition,
            attempt_number=1,
            retry_after_header=info.retry_after_header,
        )
"""

from __future__ import annotations

import asyncio
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

from inboxpilot.core.errors import ProviderAPIError
from inboxpilot.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Gmail 403 reasons that mean "slow down" rather than "forbidden"
RATE_LIMIT_REASONS = frozenset(
    {
        "rateLimitExceeded",
        "userRateLimitExceeded",
        "quotaExceeded",
        "dailyLimitExceeded",
    }
)

SERVER_ERROR_STATUSES = frozenset({500, 502, 503, 504})

RATE_LIMIT_DELAY_SECONDS = 30.0
SERVER_ERROR_BASE_DELAY_SECONDS = 5.0
SERVER_ERROR_MAX_DELAY_SECONDS = 80.0
FAILED_PRECONDITION_DELAY_SECONDS = 5.0

LLM_BASE_DELAY_SECONDS = 2.0
LLM_MAX_DELAY_SECONDS = 60.0

_RATE_LIMIT_MESSAGE = re.compile(r"rate.?limit|quota.?exceeded|too.?many.?requests", re.I)
_SERVER_ERROR_MESSAGE = re.compile(r"internal.?error|server.?error", re.I)
_RETRY_AFTER_MESSAGE = re.compile(r"retry.?after\s+(\d+)", re.I)


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Provider-agnostic view of a failed API call."""

    status: int | None
    reason: str | None
    error_message: str
    retry_after_header: str | None = None


@dataclass(frozen=True, slots=True)
class RetryInfo:
    """Classification of an error for retry purposes."""

    retryable: bool
    is_rate_limit: bool
    is_server_error: bool
    is_failed_precondition: bool


@dataclass(frozen=True, slots=True)
class LLMErrorInfo:
    retryable: bool
    is_rate_limit: bool
    retry_after_seconds: float | None = None


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


def extract_error_info(error: BaseException) -> ErrorInfo:
    """Pull status, reason, and Retry-After out of any provider exception.

    Handles our own ``ProviderAPIError`` as well as googleapiclient's
    ``HttpError`` and anything carrying a ``response`` with a status.
    """
    if isinstance(error, ProviderAPIError):
        retry_after = None if error.retry_after is None else str(error.retry_after)
        return ErrorInfo(
            status=error.status_code,
            reason=error.reason or error.error_code,
            error_message=str(error),
            retry_after_header=retry_after,
        )

    response = getattr(error, "resp", None) or getattr(error, "response", None)
    status = getattr(error, "status_code", None)
    if status is None and response is not None:
        status = getattr(response, "status", None) or getattr(response, "status_code", None)
    if status is not None:
        try:
            status = int(status)
        except (TypeError, ValueError):
            status = None

    reason = None
    details = getattr(error, "error_details", None)
    if isinstance(details, list) and details and isinstance(details[0], dict):
        reason = details[0].get("reason")

    retry_after = None
    headers = getattr(response, "headers", None) if response is not None else None
    if headers is None and isinstance(response, dict):
        headers = response
    if headers is not None:
        retry_after = headers.get("retry-after") or headers.get("Retry-After")

    return ErrorInfo(
        status=status,
        reason=reason,
        error_message=str(error),
        retry_after_header=retry_after,
    )


def is_retryable_error(info: ErrorInfo) -> RetryInfo:
    """Classify an error as rate limit, server error, or failed precondition."""
    status = info.status
    is_rate_limit = status == 429 or (
        status == 403
        and (
            info.reason in RATE_LIMIT_REASONS
            or bool(_RATE_LIMIT_MESSAGE.search(info.error_message))
        )
    )
    is_server_error = status in SERVER_ERROR_STATUSES
    is_failed_precondition = status == 400 and (
        info.reason == "failedPrecondition"
        or "precondition check failed" in info.error_message.lower()
    )
    return RetryInfo(
        retryable=is_rate_limit or is_server_error or is_failed_precondition,
        is_rate_limit=is_rate_limit,
        is_server_error=is_server_error,
        is_failed_precondition=is_failed_precondition,
    )


def parse_retry_after(header: str | None) -> float | None:
    """Parse a Retry-After header given as seconds or as an HTTP date."""
    if not header:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max(0.0, (retry_at - datetime.now(UTC)).total_seconds())


def calculate_retry_delay(
    is_rate_limit: bool,
    is_server_error: bool,
    is_failed_precondition: bool,
    attempt_number: int,
    retry_after_header: str | None = None,
) -> float:
    """Seconds to wait before the next attempt.

    Rate limits honour Retry-After when present and otherwise wait a fixed 30s.
    Server errors back off 5s, 10s, 20s, 40s, 80s and stay at 80s.
    """
    if is_rate_limit:
        retry_after = parse_retry_after(retry_after_header)
        if retry_after:
            return retry_after
        return RATE_LIMIT_DELAY_SECONDS

    if is_server_error:
        delay = SERVER_ERROR_BASE_DELAY_SECONDS * 2 ** max(attempt_number - 1, 0)
        return min(delay, SERVER_ERROR_MAX_DELAY_SECONDS)

    if is_failed_precondition:
        return FAILED_PRECONDITION_DELAY_SECONDS

    return 0.0


async def with_provider_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_retries: int = 5,
) -> T:
    """Run a provider call, retrying throttling and transient server errors."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            info = extract_error_info(e)
            retry = is_retryable_error(info)
            if not retry.retryable or attempt > max_retries:
                raise

            delay = calculate_retry_delay(
                retry.is_rate_limit,
                retry.is_server_error,
                retry.is_failed_precondition,
                attempt,
                info.retry_after_header,
            )
            logger.warning(
                "provider_call_retrying",
                label=label,
                attempt=attempt,
                max_retries=max_retries,
                status=info.status,
                is_rate_limit=retry.is_rate_limit,
                delay_seconds=delay,
            )
            await _sleep(delay)


# ---------------------------------------------------------------------------
# LLM errors
# ---------------------------------------------------------------------------


def extract_llm_error_info(error: BaseException) -> LLMErrorInfo:
    """Detect LLM rate limits and server errors from an SDK exception."""
    status = getattr(error, "status_code", None)
    response = getattr(error, "response", None)
    if status is None and response is not None:
        status = getattr(response, "status_code", None)

    body: Any = getattr(error, "body", None)
    error_type = ""
    if isinstance(body, dict):
        inner = body.get("error")
        if isinstance(inner, dict):
            error_type = str(inner.get("type", ""))

    message = str(error)
    is_rate_limit = (
        status == 429
        or error_type == "rate_limit_error"
        or bool(_RATE_LIMIT_MESSAGE.search(message))
    )
    is_server_error = (
        status in SERVER_ERROR_STATUSES
        or status == 529
        or error_type == "overloaded_error"
        or bool(_SERVER_ERROR_MESSAGE.search(message))
    )

    retry_after: float | None = None
    headers = getattr(response, "headers", None)
    if headers is not None:
        retry_after = parse_retry_after(headers.get("retry-after"))
    if retry_after is None:
        match = _RETRY_AFTER_MESSAGE.search(message)
        if match:
            retry_after = float(match.group(1))

    return LLMErrorInfo(
        retryable=is_rate_limit or is_server_error,
        is_rate_limit=is_rate_limit,
        retry_after_seconds=retry_after,
    )


async def with_llm_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_retries: int = 3,
) -> T:
    """Retry an LLM call on rate limits and overload, honouring retry-after."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            info = extract_llm_error_info(e)
            if not info.retryable or attempt > max_retries:
                raise

            base_delay = LLM_BASE_DELAY_SECONDS * 2 ** (attempt - 1)
            delay = (
                info.retry_after_seconds
                if info.retry_after_seconds is not None
                else min(base_delay, LLM_MAX_DELAY_SECONDS)
            )
            delay += random.uniform(0, 0.1 * delay)

            logger.warning(
                "llm_rate_limit_retrying",
                label=label,
                attempt=attempt,
                max_retries=max_retries,
                delay_seconds=round(delay, 2),
                is_rate_limit=info.is_rate_limit,
            )
            await _sleep(delay)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)

"""structlog setup and request correlation for InboxPilot.

Every webhook delivery and queue callback gets a short request id; it is
kept in a contextvar and stamped on each log line as ``request_id`` so the
lines produced while handling one delivery can be grouped.

Usage:
    from inboxpilot.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)
    set_correlation_id(request_id)
    logger.info("rule_selected", message_id="abc123", rule_id=7)

    capture_exception(exc, email_account_id=42)
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("googleapiclient.discovery_cache", "httpx", "urllib3", "msal")


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog processor: add ``request_id`` when one is set."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict.setdefault("request_id", correlation_id)
    return event_dict


def _renderers(json_output: bool) -> list[structlog.types.Processor]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route stdlib logging to stdout and set up structlog on top of it.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the server; console rendering for the CLI
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            add_correlation_id,
            *_renderers(json_output),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def capture_exception(error: BaseException, **context: Any) -> None:
    """Log an unexpected exception with its traceback as ``exception_captured``.

    Error tracking hooks in here; callers add account and message ids as context.
    """
    get_logger("inboxpilot.errors").error(
        "exception_captured",
        error_type=type(error).__name__,
        error=str(error),
        exc_info=error,
        **context,
    )

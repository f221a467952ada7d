"""Custom exception types for InboxPilot.

Error messages follow the same shape everywhere:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, when there is any)
"""


class InboxPilotError(Exception):
    """Base exception for all InboxPilot errors."""

    pass


class ConfigValidationError(InboxPilotError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(InboxPilotError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(InboxPilotError):
    """Raised when provider tokens are missing, expired, or cannot be refreshed."""

    pass


class ProviderAPIError(InboxPilotError):
    """Raised when a mail provider API (Gmail or Microsoft Graph) returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from the provider response (e.g. "ErrorItemNotFound")
        reason: Finer-grained reason (Gmail's errors[0].reason, e.g. "rateLimitExceeded")
        retry_after: Seconds from a Retry-After header, if the provider sent one
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        reason: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.reason = reason
        self.retry_after = retry_after


class NotFoundError(ProviderAPIError):
    """Raised when a message, thread, or label no longer exists at the provider."""

    def __init__(self, message: str, error_code: str | None = "ItemNotFound"):
        super().__init__(message, status_code=404, error_code=error_code)


class RateLimitExceeded(ProviderAPIError):
    """Raised when the provider keeps throttling after all retries are exhausted."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(
            message, status_code=429, error_code="TooManyRequests", retry_after=retry_after
        )


class LLMError(InboxPilotError):
    """Raised when an LLM call fails after retries.

    Attributes:
        task: Which pipeline step made the call (choose_rule, choose_args, draft)
        attempts: Number of attempts made
    """

    def __init__(self, message: str, task: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.task = task
        self.attempts = attempts


class DatabaseError(InboxPilotError):
    """Raised when SQLite operations fail."""

    pass


class SchedulerError(InboxPilotError):
    """Raised when a delayed action cannot be scheduled.

    Covers ineligible action types, non-positive delays, and a missing queue client.
    """

    pass


class QueueError(InboxPilotError):
    """Raised when the external message queue rejects a publish or cancel request.

    Attributes:
        status_code: HTTP status code from the queue API (None for transport errors)
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConflictError(DatabaseError):
    """Raised when a write would violate a uniqueness constraint (e.g. duplicate rule name)."""

    pass

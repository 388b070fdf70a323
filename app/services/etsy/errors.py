"""Typed errors raised by the Etsy gateway, token broker and upload handlers.

Each error is classified where it originates. The queue decides between a
retry and a terminal failure from the error class alone (``is_retryable``),
never from the message text.
"""

from typing import Any, Optional


class EtsyAPIError(Exception):
    """Base exception for Etsy API errors."""

    is_retryable: bool = False

    def __init__(
        self,
        status_code: Optional[int],
        message: str,
        response_body: Any = None,
    ):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(
            f"Etsy API Error {status_code}: {message}" if status_code else message
        )


class RateLimitedError(EtsyAPIError):
    """Request budget exhausted (HTTP 429 or a local wait that is too long)."""

    is_retryable = True

    def __init__(
        self,
        message: str = "Etsy rate limit exceeded",
        retry_after: Optional[float] = None,
        response_body: Any = None,
    ):
        self.retry_after = retry_after
        super().__init__(429, message, response_body)


class NetworkError(EtsyAPIError):
    """Timeout, transport failure or 5xx response."""

    is_retryable = True


class AuthExpiredError(EtsyAPIError):
    """The shop connection must be re-authorized by the user."""

    def __init__(
        self,
        message: str = "Etsy authorization expired. Please reconnect your shop.",
        response_body: Any = None,
    ):
        super().__init__(401, message, response_body)


class PayloadValidationError(EtsyAPIError):
    """The job payload or provider request is permanently invalid."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Any = None):
        super().__init__(status_code, message, response_body)


class UnknownAPIError(EtsyAPIError):
    """Unclassified provider failure."""

    is_retryable = True


class JobCancelledError(Exception):
    """Raised at a handler checkpoint once the job has been cancelled."""

    is_retryable = False

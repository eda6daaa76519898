"""
Error taxonomy for the ingestion and retrieval core.

Retry decisions are made by type: only ``TransientIOError`` (and its
``RateLimitError`` subclass) is ever retried.
"""

from fastapi import HTTPException, status


class LearnHubError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ValidationError(LearnHubError):
    """Bad input. Raised before any network call, never retried."""


class ConfigurationError(LearnHubError):
    """A required credential or setting is missing."""


class TransientIOError(LearnHubError):
    """Network failure, timeout or 5xx answer from a remote service."""


class RateLimitError(TransientIOError):
    """HTTP 429. ``retry_after`` is the minimum delay before the next attempt."""

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(
            message,
            detail=f"retry after {retry_after}s" if retry_after is not None else None,
        )


class ExternalServiceError(LearnHubError):
    """Non-retryable 4xx answer from a remote service."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        self.status_code = status_code
        super().__init__(message, detail=detail)


class ProcessingError(LearnHubError):
    """Terminal ingestion failure: re-running the job cannot change the outcome."""


class CorruptDocumentError(ProcessingError):
    """Downloaded bytes are not a well-formed document."""


class ExtractionError(ProcessingError):
    """The document has no pages or no extractable text layer."""


class DatabaseError(LearnHubError):
    """A relational store operation failed."""


class NotFoundError(LearnHubError):
    """A referenced material does not exist."""


def is_terminal(error: BaseException) -> bool:
    """True when a failed ingestion job must not be retried."""
    return isinstance(error, ProcessingError)


# ── Utility: convert to HTTPException ────────────────────

_STATUS_BY_TYPE: list[tuple[type[LearnHubError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (TransientIOError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def error_to_http(error: BaseException) -> HTTPException:
    """Convert an error to an HTTPException with a consistent JSON body.

    Unknown errors are reported generically so internal state never leaks.
    """
    if not isinstance(error, LearnHubError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Internal error", "detail": None, "type": "InternalError"},
        )

    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in _STATUS_BY_TYPE:
        if isinstance(error, error_type):
            status_code = code
            break

    return HTTPException(
        status_code=status_code,
        detail={
            "error": error.message,
            "detail": error.detail,
            "type": type(error).__name__,
        },
    )

"""
Exception hierarchy for the HarperDB client.

Transport failures are split into transient (retried) and permanent
(surfaced immediately). The request executor wraps whichever one survives
the retry budget into a single QueryExecutionError.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class HarperDBError(Exception):
    """
    Base exception for HarperDB client errors.

    Wraps underlying transport or parsing exceptions with additional context
    and ensures proper logging.
    """

    def __init__(self, message: str, original_error: Exception | None = None):
        """
        Initialize client error.

        Args:
            message: Human-readable error message
            original_error: Original exception that caused this error
        """
        super().__init__(message)
        self.original_error = original_error
        self.message = message

        if original_error:
            logger.debug(
                f"{type(self).__name__}: {message}",
                extra={
                    "error_type": type(original_error).__name__,
                    "error_message": str(original_error)
                }
            )

    def __str__(self) -> str:
        """Return formatted error message."""
        if self.original_error:
            return f"{self.message} (caused by {type(self.original_error).__name__}: {self.original_error})"
        return self.message

    def __repr__(self) -> str:
        """Return detailed error representation."""
        return f"{self.__class__.__name__}(message={self.message!r}, original_error={self.original_error!r})"


class TransportError(HarperDBError):
    """
    Raised by a transport when a single request fails.

    Carries the HTTP status (if a response arrived), a short failure code
    (e.g. "ECONNABORTED" for timeouts) and the decoded server error body.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        body: Any = None,
        original_error: Exception | None = None
    ):
        self.status = status
        self.code = code
        self.body = body
        super().__init__(message, original_error)

    def __str__(self) -> str:
        return self.message

    @property
    def server_message(self) -> str | None:
        """Most specific message supplied by the server, if any."""
        if isinstance(self.body, dict):
            for field in ("error", "message"):
                value = self.body.get(field)
                if value:
                    return str(value)
        return None


class TransientTransportError(TransportError):
    """
    Server-side (5xx) failure or request timeout/abort.

    Eligible for retry by the RetryPolicy.
    """


class PermanentTransportError(TransportError):
    """
    Client-side (4xx) failure or any other non-retryable transport failure.
    """


class QueryExecutionError(HarperDBError):
    """
    Raised by the request executor once an operation has definitively failed.

    The message always reads "HarperDB query failed: <detail>", where detail
    is the most specific message available.
    """

    PREFIX = "HarperDB query failed"

    def __init__(
        self,
        detail: str,
        operation: str | None = None,
        original_error: Exception | None = None
    ):
        self.detail = detail
        self.operation = operation
        super().__init__(f"{self.PREFIX}: {detail}", original_error)

    def __str__(self) -> str:
        return self.message

    @property
    def status(self) -> int | None:
        """HTTP status of the underlying transport failure, if any."""
        return getattr(self.original_error, "status", None)


class HarperDBValidationError(HarperDBError):
    """
    Raised when input validation fails.

    This includes:
    - Invalid schema, table or attribute identifiers
    - Unknown parallel operation types
    - Missing required arguments
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None, original_error: Exception | None = None):
        self.field = field
        self.value = value
        if field:
            message = f"Validation error for '{field}': {message}"
        super().__init__(message, original_error)


class SchemaFileError(HarperDBError):
    """Raised when a schema definition file is missing or invalid."""

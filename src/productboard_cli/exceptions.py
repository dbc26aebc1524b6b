"""Custom exceptions for Productboard API and job errors."""

from typing import Any


class ProductboardError(Exception):
    """Base exception for Productboard API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}
        self.retry_after = retry_after

    def _first_error(self) -> dict[str, Any]:
        errors = self.details.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0]
        return {}

    @property
    def detail(self) -> str:
        """Human-readable cause from the structured error body, or the message."""
        first = self._first_error()
        return first.get("detail") or first.get("title") or str(self)

    @property
    def code(self) -> str | None:
        """Machine-readable error code, if the body carried one."""
        return self._first_error().get("code")

    @property
    def retryable(self) -> bool:
        status = self.status_code or 0
        return status == 429 or 500 <= status < 600


class AuthenticationError(ProductboardError):
    """401 - Invalid or missing API token."""


class ForbiddenError(ProductboardError):
    """403 - Access denied."""


class NotFoundError(ProductboardError):
    """404 - Resource not found."""


class ConflictError(ProductboardError):
    """409 - Resource already exists."""


class ValidationError(ProductboardError):
    """400/422 - Invalid request data."""


class RateLimitError(ProductboardError):
    """429 - Rate limit exceeded."""


class ServerError(ProductboardError):
    """5xx - Server error (retriable)."""


STATUS_ERRORS: dict[int, type[ProductboardError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    429: RateLimitError,
}


def error_for_status(status: int) -> type[ProductboardError]:
    """Pick the exception class for an HTTP status code."""
    if 500 <= status < 600:
        return ServerError
    return STATUS_ERRORS.get(status, ProductboardError)


class RowValidationError(Exception):
    """A row failed local validation and was never sent to the API."""

    def __init__(self, row_num: int, field: str | None, message: str):
        super().__init__(f"Row {row_num}: {message}")
        self.row_num = row_num
        self.field = field
        self.message = message


class JobError(Exception):
    """Raised for batch job misuse (job already active, unknown chunk type)."""

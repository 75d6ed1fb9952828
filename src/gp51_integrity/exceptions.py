"""Custom exception hierarchy for the GP51 data integrity service.

Maps local store (PostgREST) and GP51 API errors and internal failures to
typed exceptions for structured error handling throughout verification and
reconciliation.
"""

from __future__ import annotations


class IntegrityError(Exception):
    """Base exception for all integrity-related errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class StoreConnectionError(IntegrityError):
    """Raised when the local store is unreachable."""


class StoreAuthError(IntegrityError):
    """Raised when the service key is rejected (401)."""


class StoreNotFoundError(IntegrityError):
    """Raised when a table, row or RPC function does not exist (404)."""


class StorePermissionError(IntegrityError):
    """Raised when the service key lacks permission for the operation (403)."""


class StoreRateLimitError(IntegrityError):
    """Raised when the backend returns a rate-limit response (429)."""

    def __init__(self, message: str, retry_after: int | None = None, details: dict | None = None) -> None:
        super().__init__(message, details)
        self.retry_after = retry_after


class StoreAPIError(IntegrityError):
    """Raised for unexpected HTTP errors (5xx, malformed response, etc)."""

    def __init__(self, message: str, status_code: int | None = None, details: dict | None = None) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class GP51Error(IntegrityError):
    """Base exception for failures talking to the GP51 platform."""


class GP51ConnectionError(GP51Error):
    """Raised when the GP51 API cannot be reached."""


class GP51RateLimitError(GP51Error):
    """Raised when GP51 returns a rate-limit response (429)."""

    def __init__(self, message: str, retry_after: int | None = None, details: dict | None = None) -> None:
        super().__init__(message, details)
        self.retry_after = retry_after


class GP51AuthError(GP51Error):
    """Raised when GP51 login fails or a call is made without a valid token."""


class GP51APIError(GP51Error):
    """Raised when GP51 answers with a non-zero status."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        cause: str | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status = status
        self.cause = cause


class ManualReviewRequired(IntegrityError):
    """Raised by a reconciliation rule that cannot be resolved without a human."""


class UnknownRuleError(IntegrityError):
    """Raised when a reconciliation rule id is not registered."""


class DuplicateRuleError(IntegrityError):
    """Raised when registering a rule whose id already exists."""

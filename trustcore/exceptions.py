"""Custom exception classes for the trust core."""

from typing import Any

# Caller-facing message for every credential failure. Detail goes to logs
# and the audit trail only.
GENERIC_AUTH_MESSAGE = "Invalid credentials"


class TrustCoreError(Exception):
    """Base exception for the trust core."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            status_code: HTTP status code
            error_code: Machine-readable error code
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(TrustCoreError):
    """Raised for malformed input, before any store access (400)."""

    def __init__(
        self,
        message: str = "Invalid request data",
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize ValidationError.

        Args:
            message: Error message
            field: Name of the offending field
            details: Additional error details
        """
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=error_details,
        )


class AuthFailureError(TrustCoreError):
    """Raised when a token, key, secret or signature is wrong (401).

    The message is always generic; callers never learn which check failed.
    """

    def __init__(self, details: dict[str, Any] | None = None) -> None:
        """
        Initialize AuthFailureError.

        Args:
            details: Additional non-sensitive error details
        """
        super().__init__(
            message=GENERIC_AUTH_MESSAGE,
            status_code=401,
            error_code="AUTH_FAILED",
            details=details,
        )


class UnauthorizedError(TrustCoreError):
    """Raised when the caller does not own or may not use a resource (403)."""

    def __init__(
        self,
        message: str = "Forbidden: Access denied",
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize UnauthorizedError.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
            details=details,
        )


class NotFoundError(TrustCoreError):
    """Raised when a key, lock or record does not exist (404)."""

    def __init__(
        self,
        message: str = "Resource not found",
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize NotFoundError.

        Args:
            message: Error message
            resource_id: Identifier that was not found
            details: Additional error details
        """
        error_details = details or {}
        if resource_id:
            error_details["resource_id"] = resource_id
        super().__init__(
            message=message,
            status_code=404,
            error_code="NOT_FOUND",
            details=error_details,
        )


class LimitExceededError(TrustCoreError):
    """Raised when a per-owner quota is already used up (409)."""

    def __init__(
        self,
        message: str = "Limit exceeded",
        limit: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize LimitExceededError.

        Args:
            message: Error message
            limit: The quota that was hit
            details: Additional error details
        """
        error_details = details or {}
        if limit is not None:
            error_details["limit"] = limit
        super().__init__(
            message=message,
            status_code=409,
            error_code="LIMIT_EXCEEDED",
            details=error_details,
        )


class ConflictError(TrustCoreError):
    """Raised when a lock is already held by another owner (423)."""

    def __init__(
        self,
        message: str = "Operation in progress. Please wait and try again.",
        retry_after: int = 5,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize ConflictError.

        Args:
            message: Error message
            retry_after: Seconds until the lock expires at the latest
            details: Additional error details
        """
        error_details = details or {}
        error_details["retry_after"] = retry_after
        super().__init__(
            message=message,
            status_code=423,
            error_code="LOCKED",
            details=error_details,
        )
        self.retry_after = retry_after


class RateLimitError(TrustCoreError):
    """Raised when rate limit is exceeded (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int = 60,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize RateLimitError.

        Args:
            message: Error message
            retry_after: Seconds until retry is allowed
            details: Additional error details
        """
        error_details = details or {}
        error_details["retry_after"] = retry_after
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details=error_details,
        )
        self.retry_after = retry_after


class ExpiredError(TrustCoreError):
    """Raised when a token, key or session is past its validity (401)."""

    def __init__(
        self,
        message: str = "Credential expired",
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize ExpiredError.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(
            message=message,
            status_code=401,
            error_code="EXPIRED",
            details=details,
        )


class StoreUnavailableError(TrustCoreError):
    """Raised when the backing store cannot be reached (503)."""

    def __init__(
        self,
        message: str = "Service temporarily unavailable",
        store: str | None = None,
        retry_after: int = 60,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize StoreUnavailableError.

        Args:
            message: Error message
            store: Name of the unavailable store
            retry_after: Seconds until retry is recommended
            details: Additional error details
        """
        error_details = details or {}
        error_details["retry_after"] = retry_after
        if store:
            error_details["store"] = store
        super().__init__(
            message=message,
            status_code=503,
            error_code="SERVICE_UNAVAILABLE",
            details=error_details,
        )
        self.retry_after = retry_after


class ConfigurationError(TrustCoreError):
    """Raised when required configuration is missing or unsafe."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        setting: str | None = None,
    ) -> None:
        """
        Initialize ConfigurationError.

        Args:
            message: Error message
            setting: Name of the offending setting
        """
        super().__init__(
            message=message,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else None,
        )

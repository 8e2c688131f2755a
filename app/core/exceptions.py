"""
Base exception classes for application-wide error handling.

Every failure the payments engine surfaces to a caller carries a stable,
machine-readable error code plus a human-readable message. Dashboards
switch on the code; operators read the message.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Caller supplied bad input
    ├── NotFoundError - Resource not found
    ├── ConflictError - State conflicts (duplicates, concurrent modifications)
    └── ExternalServiceError - Third-party service failures

Usage:
    from core.exceptions import ValidationError, NotFoundError

    # Raise with message only
    raise ValidationError("Amount must be positive")

    # Raise with error code and details
    raise ConflictError(
        "Escrow already settled",
        error_code="STATE_CONFLICT",
        details={"shipment_id": str(shipment_id), "status": "settled"},
    )

    # Convert to dict for a caller-facing payload
    try:
        ...
    except BaseApplicationError as e:
        return ServiceResult.failure(e.message, e.error_code)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (ids, amounts, states)
        is_retryable: Whether the same call may succeed if repeated later

    Example:
        try:
            manager.release_escrow(shipment_id, actor_id)
        except NotFoundError as e:
            logger.warning(f"Escrow not found: {e.error_code}")
    """

    default_error_code: str = "APPLICATION_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for a caller-facing payload.

        Example:
            {
                "error": "Refund exceeds available funds",
                "error_code": "AMOUNT_EXCEEDS_AVAILABLE",
                "details": {"available_minor": 1395000}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """Return string representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when caller input is invalid.

    Use for non-positive amounts, unknown enum values that cannot be
    defaulted, and inconsistent parameter combinations. Never retried.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested resource is not found.

    Example:
        request = RefundRequest.objects.filter(id=request_id).first()
        if not request:
            raise NotFoundError(
                f"RefundRequest {request_id} not found",
                error_code="REFUND_REQUEST_NOT_FOUND",
                details={"request_id": str(request_id)},
            )
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Duplicate requests (unique business rules)
    - Concurrent modification conflicts
    - Invalid state transitions
    - Optimistic locking failures
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Log the original error for debugging but don't expose provider
    internals to callers.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"

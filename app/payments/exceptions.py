"""
Payment-specific exceptions: the engine's stable error taxonomy.

Every manager raises one of these; PaymentOrchestrator turns them into a
ServiceResult carrying `error_code` and the human-readable message. The
codes are part of the external contract and must not change.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── PaymentNotFoundError          PAYMENT_NOT_FOUND
    ├── InvalidAmountError            INVALID_AMOUNT            (caller error)
    ├── ConfigMissingError            CONFIG_MISSING            (fatal, alert)
    ├── AmountExceedsAvailableError   AMOUNT_EXCEEDS_AVAILABLE
    ├── SubscriptionSuspendedError    SUBSCRIPTION_SUSPENDED
    ├── DeliveryNotConfirmedError     DELIVERY_NOT_CONFIRMED
    └── GatewayError                  GATEWAY_ERROR
        ├── GatewayUnavailableError   GATEWAY_UNAVAILABLE       (retryable)
        ├── GatewayTimeoutError       GATEWAY_TIMEOUT           (retryable)
        └── PaymentDeclinedError      PAYMENT_DECLINED          (permanent)
    DuplicateRequestError             DUPLICATE_REQUEST   (inherits ConflictError)
    StateConflictError                STATE_CONFLICT      (inherits ConflictError)
    StaleRecordError                  STALE_RECORD        (inherits ConflictError)
    LockAcquisitionError              LOCK_CONTENTION     (inherits ConflictError)
    ImmutableRecordError              IMMUTABLE_RECORD    (inherits ConflictError)

Wallet lookups raise payments.ledger.exceptions.WalletNotFoundError
(WALLET_NOT_FOUND), which is part of the same taxonomy.

Usage:
    from payments.exceptions import InvalidAmountError, StateConflictError

    if gross_minor <= 0:
        raise InvalidAmountError(
            "Gross amount must be positive",
            details={"gross_minor": gross_minor},
        )

    # Gateway errors know whether a retry can help
    except GatewayError as e:
        if e.is_retryable:
            raise self.retry(exc=e, countdown=backoff_delay(self.request.retries))
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all payment operations.

    Inherits from BaseApplicationError so callers get the same
    message/error_code/details shape as every other application error.
    """

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """
    Raised when a payment entity cannot be found.

    Use for:
    - No escrow-in transaction for a shipment
    - Subscription lookup fails
    - RefundRequest lookup fails
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"


class InvalidAmountError(PaymentError):
    """
    Caller supplied a non-positive or inconsistent amount.

    Surfaced immediately and never retried. No state is changed.

    Example:
        if net_minor < 0:
            raise InvalidAmountError(
                "Commission exceeds gross amount",
                details={"gross_minor": gross, "commission_minor": commission},
            )
    """

    default_error_code: str = "INVALID_AMOUNT"


class ConfigMissingError(PaymentError):
    """
    A required configuration value is absent and has no compiled default.

    This is a deployment problem, not a caller problem. The operation is
    aborted before any state change and the error is logged at CRITICAL.
    """

    default_error_code: str = "CONFIG_MISSING"


class AmountExceedsAvailableError(PaymentError):
    """
    Refund approval exceeds the funds currently held or settled.

    Attributes:
        requested: Amount asked for (minor units)
        available: Amount that could still be refunded (minor units)
    """

    default_error_code: str = "AMOUNT_EXCEEDS_AVAILABLE"

    def __init__(
        self,
        requested: int,
        available: int,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.requested = requested
        self.available = available
        details = {
            **(details or {}),
            "requested_minor": requested,
            "available_minor": available,
        }
        super().__init__(
            message
            or f"Requested {requested} exceeds available {available}",
            details=details,
        )


class SubscriptionSuspendedError(PaymentError):
    """The payee fleet's subscription is suspended; new escrows are refused."""

    default_error_code: str = "SUBSCRIPTION_SUSPENDED"


class DeliveryNotConfirmedError(PaymentError):
    """Escrow release requested before proof of delivery was recorded."""

    default_error_code: str = "DELIVERY_NOT_CONFIRMED"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(PaymentError):
    """
    Base exception for payment gateway failures.

    Adapters translate provider SDK errors into these so the managers never
    depend on a specific provider. Use is_retryable to decide on retries:
    - True: Transient error, safe to retry with the same transaction id
    - False: Permanent error, do not retry

    Attributes:
        provider_code: Provider's own error code, if any
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(message, error_code=error_code, details=details)
        self.provider_code = provider_code


class GatewayUnavailableError(GatewayError):
    """
    Gateway could not be reached or answered with a server error.

    Covers connection failures, 5xx responses and rate limiting. The
    transaction is left PENDING/PROCESSING; retrying with the same
    transaction id is safe because adapters are idempotent on it.
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


class GatewayTimeoutError(GatewayError):
    """
    Gateway call exceeded PAYMENT_GATEWAY_TIMEOUT_SECONDS.

    IMPORTANT: the charge may have succeeded on the provider's side. The
    transaction stays PROCESSING and the reconciliation pass polls the
    provider to resolve it. Success is never inferred from a timeout.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    is_retryable: bool = True


class PaymentDeclinedError(GatewayError):
    """
    Gateway gave a definitive rejection (declined card, invalid account).

    The transaction is marked FAILED. Retrying with the same payment
    method will not help.
    """

    default_error_code: str = "PAYMENT_DECLINED"
    is_retryable: bool = False


# =============================================================================
# Business Rule & Concurrency Exceptions
# =============================================================================


class ImmutableRecordError(ConflictError):
    """
    Attempted to update or delete an append-only record (audit entries).
    """

    default_error_code: str = "IMMUTABLE_RECORD"


class DuplicateRequestError(ConflictError):
    """
    A second live request of the same kind already exists.

    Raised for a second non-terminal refund request on a shipment and for
    a second live subscription on a fleet. No state is changed.
    """

    default_error_code: str = "DUPLICATE_REQUEST"


class StateConflictError(ConflictError):
    """
    Attempted transition from a state that does not permit it.

    Example:
        raise StateConflictError(
            "Cannot release escrow in state pending",
            details={"shipment_id": str(shipment_id), "current_state": "pending"},
        )
    """

    default_error_code: str = "STATE_CONFLICT"


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    The record was modified by another process between read and update.
    The caller should retry with fresh data or abort.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"
    is_retryable: bool = True


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired within its timeout.

    Another worker is operating on the same shipment or subscription.
    Safe to retry after a short delay.
    """

    default_error_code: str = "LOCK_CONTENTION"
    is_retryable: bool = True


__all__ = [
    "AmountExceedsAvailableError",
    "ConfigMissingError",
    "DeliveryNotConfirmedError",
    "DuplicateRequestError",
    "GatewayError",
    "GatewayTimeoutError",
    "GatewayUnavailableError",
    "ImmutableRecordError",
    "InvalidAmountError",
    "LockAcquisitionError",
    "PaymentDeclinedError",
    "PaymentError",
    "PaymentNotFoundError",
    "StaleRecordError",
    "StateConflictError",
    "SubscriptionSuspendedError",
]

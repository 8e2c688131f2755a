"""
Tests for the payment error taxonomy.

Error codes are part of the external contract; these tests pin them.
"""

import pytest

from core.exceptions import ConflictError
from payments.exceptions import (
    AmountExceedsAvailableError,
    ConfigMissingError,
    DeliveryNotConfirmedError,
    DuplicateRequestError,
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    ImmutableRecordError,
    InvalidAmountError,
    LockAcquisitionError,
    PaymentDeclinedError,
    PaymentError,
    PaymentNotFoundError,
    StaleRecordError,
    StateConflictError,
    SubscriptionSuspendedError,
)


@pytest.mark.parametrize(
    "exc_class,code,retryable",
    [
        (PaymentNotFoundError, "PAYMENT_NOT_FOUND", False),
        (InvalidAmountError, "INVALID_AMOUNT", False),
        (ConfigMissingError, "CONFIG_MISSING", False),
        (SubscriptionSuspendedError, "SUBSCRIPTION_SUSPENDED", False),
        (DeliveryNotConfirmedError, "DELIVERY_NOT_CONFIRMED", False),
        (GatewayError, "GATEWAY_ERROR", False),
        (GatewayUnavailableError, "GATEWAY_UNAVAILABLE", True),
        (GatewayTimeoutError, "GATEWAY_TIMEOUT", True),
        (PaymentDeclinedError, "PAYMENT_DECLINED", False),
        (DuplicateRequestError, "DUPLICATE_REQUEST", False),
        (StateConflictError, "STATE_CONFLICT", False),
        (StaleRecordError, "STALE_RECORD", True),
        (LockAcquisitionError, "LOCK_CONTENTION", True),
        (ImmutableRecordError, "IMMUTABLE_RECORD", False),
    ],
)
def test_error_codes(exc_class, code, retryable):
    exc = exc_class("message")

    assert exc.error_code == code
    assert exc.is_retryable is retryable
    assert str(exc) == f"[{code}] message"


def test_gateway_errors_are_payment_errors():
    assert issubclass(PaymentDeclinedError, PaymentError)
    assert issubclass(GatewayTimeoutError, GatewayError)


def test_conflicts_share_base():
    for exc_class in (DuplicateRequestError, StateConflictError, StaleRecordError, LockAcquisitionError):
        assert issubclass(exc_class, ConflictError)


def test_provider_code_lands_in_details():
    exc = PaymentDeclinedError("Card declined", provider_code="insufficient_funds")

    assert exc.provider_code == "insufficient_funds"
    assert exc.to_dict()["details"] == {"provider_code": "insufficient_funds"}


def test_amount_exceeds_available_details():
    exc = AmountExceedsAvailableError(2_000_000, 1_395_000, details={"shipment_id": "s-1"})

    assert exc.requested == 2_000_000
    assert exc.available == 1_395_000
    assert exc.details == {
        "shipment_id": "s-1",
        "requested_minor": 2_000_000,
        "available_minor": 1_395_000,
    }
    assert "1395000" in exc.message

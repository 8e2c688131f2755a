"""
Pytest fixtures for gateway adapter tests.

Sections:
    - Mock Stripe Object Fixtures
    - Mock Stripe Error Fixtures
    - Mock Stripe Client Fixtures
"""

import uuid
from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe

from payments.adapters import GatewayRequest


# =============================================================================
# Test Data Fixtures
# =============================================================================


@pytest.fixture
def charge_request():
    return GatewayRequest(
        transaction_id=uuid.uuid4(),
        amount_minor=1_395_000,
        currency="inr",
        payer_reference="cus_shipper",
        metadata={"shipment_id": "shp-1"},
    )


# =============================================================================
# Mock Stripe Object Fixtures
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@dataclass
class MockStripeList:
    items: list[MockStripeObject]

    @property
    def data(self) -> list[MockStripeObject]:
        return self.items


@pytest.fixture
def mock_payment_intent():
    def _create(
        id: str = "pi_test123456",
        status: str = "succeeded",
        amount: int = 1_395_000,
        currency: str = "inr",
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "payment_intent",
                "status": status,
                "amount": amount,
                "currency": currency,
            }
        )

    return _create


@pytest.fixture
def mock_refund():
    def _create(
        id: str = "re_test123456",
        status: str = "succeeded",
        amount: int = 1_000_000,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "refund",
                "status": status,
                "amount": amount,
                "payment_intent": "pi_test123456",
            }
        )

    return _create


# =============================================================================
# Mock Stripe Error Fixtures
# =============================================================================


@pytest.fixture
def card_error():
    error = stripe.CardError(
        message="Your card was declined.",
        param=None,
        code="card_declined",
    )
    error.decline_code = "insufficient_funds"
    return error


@pytest.fixture
def invalid_request_error():
    return stripe.InvalidRequestError(
        message="No such customer",
        param="customer",
        code="resource_missing",
    )


@pytest.fixture
def rate_limit_error():
    return stripe.RateLimitError(message="Too many requests hit the API too quickly.")


@pytest.fixture
def api_connection_error():
    return stripe.APIConnectionError(message="Could not connect to Stripe.")


@pytest.fixture
def timeout_error():
    return stripe.APIConnectionError(
        message="Request to Stripe timed out (Read timed out.)"
    )


@pytest.fixture
def api_error():
    return stripe.APIError(message="Something went wrong on Stripe's end.")


@pytest.fixture
def authentication_error():
    return stripe.AuthenticationError(message="Invalid API Key provided.")


# =============================================================================
# Mock Stripe Client Fixtures
# =============================================================================


@pytest.fixture
def mock_stripe_http_client():
    with patch("stripe.RequestsClient") as mock:
        yield mock


@pytest.fixture
def mock_stripe_payment_intent(mock_payment_intent):
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = mock_payment_intent()
        mock.retrieve.return_value = mock_payment_intent()
        mock.search.return_value = MockStripeList(items=[])
        yield mock


@pytest.fixture
def mock_stripe_refund(mock_refund):
    with patch("stripe.Refund") as mock:
        mock.create.return_value = mock_refund()
        mock.retrieve.return_value = mock_refund()
        yield mock

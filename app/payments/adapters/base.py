"""
Payment gateway contract.

Managers talk to an abstract PaymentGateway; concrete adapters translate
it to a provider. Every adapter must be:

- Idempotent per GatewayRequest.transaction_id (used as the provider
  idempotency key), so resubmitting a PROCESSING transaction is safe
- Bounded: each call gives up after PAYMENT_GATEWAY_TIMEOUT_SECONDS

Outcomes:
    GatewayResponse(success=True)           accepted
    GatewayResponse(success=False)          definitive rejection
    GatewayResponse(pending=True)           provider has not decided yet
    raise GatewayTimeoutError               outcome unknown
    raise GatewayUnavailableError           not reached / 5xx / rate limited

Usage:
    from payments.adapters import GatewayRequest, get_gateway

    gateway = get_gateway()
    response = gateway.charge(GatewayRequest(
        transaction_id=txn.id,
        amount_minor=txn.amount_minor,
        currency=txn.currency,
        payer_reference=str(txn.payer_id),
    ))
"""

from __future__ import annotations

import abc
import random
import uuid
from dataclasses import dataclass, field
from typing import Any

from django.conf import settings
from django.utils.module_loading import import_string

# =============================================================================
# Retry Policy
# =============================================================================

RETRYABLE_ERROR_CODES = frozenset(
    {"NETWORK_ERROR", "TIMEOUT", "RATE_LIMITED", "SERVER_ERROR", "GATEWAY_ERROR"}
)
RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

MAX_RETRIES = 5
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MULTIPLIER = 2
BACKOFF_MAX_SECONDS = 300.0


def is_retryable(error_code: str | None = None, http_status: int | None = None) -> bool:
    """Whether a provider error code or HTTP status is worth retrying."""
    if error_code and error_code.upper() in RETRYABLE_ERROR_CODES:
        return True
    return http_status in RETRYABLE_HTTP_STATUSES


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    max_delay: float = BACKOFF_MAX_SECONDS,
) -> float:
    """
    Exponential backoff delay with jitter.

    Jitter prevents a thundering herd when many workers retry together.

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 3: 8.0 - 10.0 seconds
        # Attempt 9+: capped at 300 seconds (+ up to 25%)
        delay = backoff_delay(attempt=3)
    """
    delay = min(base * (BACKOFF_MULTIPLIER**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class GatewayRequest:
    """
    A charge or refund sent to the gateway.

    Attributes:
        transaction_id: PaymentTransaction id; the idempotency key
        amount_minor: Amount in smallest currency unit
        currency: ISO 4217 code
        payer_reference: Provider-side reference of the paying party
        payee_reference: Provider-side reference of the receiving party
        provider_reference: For refunds, provider id of the original charge
        description: Free text shown on statements
        metadata: Extra key/value pairs forwarded to the provider
    """

    transaction_id: uuid.UUID
    amount_minor: int
    currency: str = "inr"
    payer_reference: str | None = None
    payee_reference: str | None = None
    provider_reference: str | None = None
    description: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.amount_minor <= 0:
            raise ValueError("amount_minor must be positive")


@dataclass
class GatewayResponse:
    """
    What the gateway said about a request.

    Attributes:
        success: Provider accepted the movement
        provider_txn_id: Provider's id for the movement
        provider_status: Provider's raw status string
        raw_response: Full provider payload (stored on the transaction)
        error_code: Provider error code on rejection
        error_message: Human-readable rejection reason
        pending: Provider has not reached a decision yet
    """

    success: bool
    provider_txn_id: str | None = None
    provider_status: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    pending: bool = False

    @property
    def is_rejection(self) -> bool:
        return not self.success and not self.pending


# =============================================================================
# Contract
# =============================================================================


class PaymentGateway(abc.ABC):
    """Abstract payment gateway."""

    name: str = "gateway"

    @abc.abstractmethod
    def charge(self, request: GatewayRequest) -> GatewayResponse:
        """Collect money from the payer."""

    @abc.abstractmethod
    def refund(self, request: GatewayRequest) -> GatewayResponse:
        """Return money for a previous charge (request.provider_reference)."""

    @abc.abstractmethod
    def get_status(
        self,
        transaction_id: uuid.UUID,
        provider_txn_id: str | None = None,
    ) -> GatewayResponse:
        """Ask the provider what happened to an earlier request."""


def get_gateway() -> PaymentGateway:
    """Instantiate the gateway configured by PAYMENT_GATEWAY_CLASS."""
    gateway_class = import_string(settings.PAYMENT_GATEWAY_CLASS)
    return gateway_class()

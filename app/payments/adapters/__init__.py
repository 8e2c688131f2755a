"""
Payment gateway adapters.

All external money movement goes through a PaymentGateway so that managers
never depend on a provider SDK.

Usage:
    from payments.adapters import GatewayRequest, get_gateway

    response = get_gateway().charge(GatewayRequest(
        transaction_id=txn.id,
        amount_minor=txn.amount_minor,
    ))
"""

from payments.adapters.base import (
    MAX_RETRIES,
    GatewayRequest,
    GatewayResponse,
    PaymentGateway,
    backoff_delay,
    get_gateway,
    is_retryable,
)
from payments.adapters.fake import FakeGateway

__all__ = [
    "MAX_RETRIES",
    "FakeGateway",
    "GatewayRequest",
    "GatewayResponse",
    "PaymentGateway",
    "backoff_delay",
    "get_gateway",
    "is_retryable",
]

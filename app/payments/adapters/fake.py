"""
Deterministic in-memory gateway for tests and local development.

Accepts everything unless told otherwise. Outcomes can be scripted per
call (queued) or per payer reference (sticky). Responses are remembered
per transaction id, so repeated calls are idempotent just like a real
provider.

Usage:
    gateway = FakeGateway()
    gateway.queue_decline("card_declined")    # next call is rejected
    gateway.queue_timeout()                   # call after that times out
    gateway.decline_payer("shipper-42")       # every charge for this payer fails
"""

from __future__ import annotations

import logging
import uuid
from collections import deque

from django.utils import timezone

from payments.exceptions import GatewayTimeoutError, GatewayUnavailableError

from .base import GatewayRequest, GatewayResponse, PaymentGateway

logger = logging.getLogger(__name__)

ACCEPT = "accept"
DECLINE = "decline"
TIMEOUT = "timeout"
UNAVAILABLE = "unavailable"
PENDING = "pending"


class FakeGateway(PaymentGateway):
    name = "fake"

    def __init__(self) -> None:
        self._script: deque[tuple[str, str | None]] = deque()
        self._declined_payers: dict[str, str] = {}
        self._responses: dict[str, GatewayResponse] = {}
        self.calls: list[tuple[str, GatewayRequest]] = []

    # =========================================================================
    # Scripting
    # =========================================================================

    def queue_accept(self) -> None:
        self._script.append((ACCEPT, None))

    def queue_decline(self, error_code: str = "card_declined") -> None:
        self._script.append((DECLINE, error_code))

    def queue_timeout(self) -> None:
        self._script.append((TIMEOUT, None))

    def queue_unavailable(self) -> None:
        self._script.append((UNAVAILABLE, None))

    def queue_pending(self) -> None:
        self._script.append((PENDING, None))

    def decline_payer(self, payer_reference: str, error_code: str = "card_declined") -> None:
        self._declined_payers[payer_reference] = error_code

    def settle_pending(self, transaction_id: uuid.UUID, success: bool = True) -> None:
        """Resolve an earlier timed-out or pending request, as the provider would."""
        key = str(transaction_id)
        if success:
            self._responses[key] = self._accepted(key)
        else:
            self._responses[key] = self._rejected("processing_failed")

    # =========================================================================
    # PaymentGateway
    # =========================================================================

    def charge(self, request: GatewayRequest) -> GatewayResponse:
        return self._submit("charge", request)

    def refund(self, request: GatewayRequest) -> GatewayResponse:
        return self._submit("refund", request)

    def get_status(
        self,
        transaction_id: uuid.UUID,
        provider_txn_id: str | None = None,
    ) -> GatewayResponse:
        response = self._responses.get(str(transaction_id))
        if response is None:
            return GatewayResponse(success=False, pending=True, provider_status="unknown")
        return response

    # =========================================================================
    # Internals
    # =========================================================================

    def _submit(self, operation: str, request: GatewayRequest) -> GatewayResponse:
        self.calls.append((operation, request))
        key = str(request.transaction_id)

        existing = self._responses.get(key)
        if existing is not None and not existing.pending:
            return existing

        outcome, error_code = self._script.popleft() if self._script else (ACCEPT, None)
        if outcome == ACCEPT and request.payer_reference in self._declined_payers:
            outcome, error_code = DECLINE, self._declined_payers[request.payer_reference]

        logger.debug(
            "Fake gateway call",
            extra={"operation": operation, "transaction_id": key, "outcome": outcome},
        )

        if outcome == TIMEOUT:
            raise GatewayTimeoutError(
                "Fake gateway timed out",
                details={"transaction_id": key},
            )
        if outcome == UNAVAILABLE:
            raise GatewayUnavailableError(
                "Fake gateway unavailable",
                details={"transaction_id": key},
            )
        if outcome == PENDING:
            response = GatewayResponse(
                success=False,
                pending=True,
                provider_status="processing",
                raw_response=self._payload("processing"),
            )
        elif outcome == DECLINE:
            response = self._rejected(error_code or "card_declined")
        else:
            response = self._accepted(key)

        self._responses[key] = response
        return response

    def _accepted(self, key: str) -> GatewayResponse:
        provider_txn_id = f"TXN_{int(timezone.now().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"
        return GatewayResponse(
            success=True,
            provider_txn_id=provider_txn_id,
            provider_status="success",
            raw_response=self._payload("success"),
        )

    def _rejected(self, error_code: str) -> GatewayResponse:
        return GatewayResponse(
            success=False,
            provider_status="failed",
            raw_response={**self._payload("failed"), "error": "Payment processing failed"},
            error_code=error_code,
            error_message="Payment processing failed",
        )

    def _payload(self, status: str) -> dict:
        return {
            "gateway": self.name,
            "status": status,
            "timestamp": timezone.now().isoformat(),
        }

"""
Stripe-backed payment gateway.

Charges are PaymentIntents created and confirmed in one call; refunds are
Stripe Refunds against the original PaymentIntent. The PaymentTransaction
id is the Stripe idempotency key, so resubmitting a PROCESSING transaction
never charges twice.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- PAYMENT_GATEWAY_TIMEOUT_SECONDS: Per-call timeout (default: 10)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from payments.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)

from .base import GatewayRequest, GatewayResponse, PaymentGateway

if TYPE_CHECKING:
    from typing import NoReturn

SUCCESS_STATUSES = frozenset({"succeeded", "requires_capture"})
PENDING_STATUSES = frozenset({"processing", "pending"})


class StripeGateway(PaymentGateway):
    """
    PaymentGateway implementation over the Stripe API.

    Card declines and invalid requests are definitive rejections and come
    back as GatewayResponse(success=False). Network, server and rate-limit
    errors raise GatewayUnavailableError; timeouts raise GatewayTimeoutError.
    """

    name = "stripe"

    def __init__(self) -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = 0
        timeout = getattr(settings, "PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # PaymentGateway
    # =========================================================================

    def charge(self, request: GatewayRequest) -> GatewayResponse:
        params: dict[str, Any] = {
            "amount": request.amount_minor,
            "currency": request.currency,
            "confirm": True,
            "off_session": True,
            "description": request.description or None,
            "metadata": self._metadata(request),
        }
        if request.payer_reference:
            params["customer"] = request.payer_reference
        if request.metadata.get("payment_method"):
            params["payment_method"] = request.metadata["payment_method"]

        return self._call(
            "charge",
            request.transaction_id,
            lambda: stripe.PaymentIntent.create(
                idempotency_key=f"charge:{request.transaction_id}",
                **params,
            ),
        )

    def refund(self, request: GatewayRequest) -> GatewayResponse:
        if not request.provider_reference:
            raise GatewayError(
                "Refund requires the provider id of the original charge",
                details={"transaction_id": str(request.transaction_id)},
            )
        return self._call(
            "refund",
            request.transaction_id,
            lambda: stripe.Refund.create(
                payment_intent=request.provider_reference,
                amount=request.amount_minor,
                metadata=self._metadata(request),
                idempotency_key=f"refund:{request.transaction_id}",
            ),
        )

    def get_status(
        self,
        transaction_id: uuid.UUID,
        provider_txn_id: str | None = None,
    ) -> GatewayResponse:
        def lookup():
            if provider_txn_id and provider_txn_id.startswith("re_"):
                return stripe.Refund.retrieve(provider_txn_id)
            if provider_txn_id:
                return stripe.PaymentIntent.retrieve(provider_txn_id)
            found = stripe.PaymentIntent.search(
                query=f"metadata['transaction_id']:'{transaction_id}'",
                limit=1,
            )
            return found.data[0] if found.data else None

        return self._call("get_status", transaction_id, lookup)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _metadata(request: GatewayRequest) -> dict[str, str]:
        return {
            **{k: str(v) for k, v in request.metadata.items() if k != "payment_method"},
            "transaction_id": str(request.transaction_id),
        }

    def _call(self, operation: str, transaction_id: uuid.UUID, fn) -> GatewayResponse:
        logger = self.get_logger()
        log_context = {"operation": operation, "transaction_id": str(transaction_id)}

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            obj = fn()
        except stripe.CardError as e:
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": getattr(e, "decline_code", None)},
            )
            return GatewayResponse(
                success=False,
                provider_status="failed",
                raw_response=self._error_body(e),
                error_code=getattr(e, "decline_code", None) or e.code,
                error_message=str(e.user_message or e),
            )
        except stripe.InvalidRequestError as e:
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": e.code},
            )
            return GatewayResponse(
                success=False,
                provider_status="failed",
                raw_response=self._error_body(e),
                error_code=e.code or "invalid_request",
                error_message=str(e),
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._raise_translated(e, {**log_context, "duration_ms": duration_ms})

        duration_ms = (time.time() - start_time) * 1000
        if obj is None:
            logger.info("Stripe has no record of transaction", extra=log_context)
            return GatewayResponse(success=False, pending=True, provider_status="unknown")

        status = obj.status
        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "provider_txn_id": obj.id,
                "status": status,
                "duration_ms": duration_ms,
            },
        )

        if status in SUCCESS_STATUSES:
            return GatewayResponse(
                success=True,
                provider_txn_id=obj.id,
                provider_status=status,
                raw_response=obj.to_dict(),
            )
        if status in PENDING_STATUSES:
            return GatewayResponse(
                success=False,
                pending=True,
                provider_txn_id=obj.id,
                provider_status=status,
                raw_response=obj.to_dict(),
            )
        return GatewayResponse(
            success=False,
            provider_txn_id=obj.id,
            provider_status=status,
            raw_response=obj.to_dict(),
            error_code=status,
            error_message=f"Stripe returned status {status}",
        )

    @staticmethod
    def _error_body(error: stripe.StripeError) -> dict[str, Any]:
        return {"error": {"code": error.code, "message": str(error)}}

    def _raise_translated(self, error: Exception, log_context: dict[str, Any]) -> NoReturn:
        """Map transport-level Stripe errors onto gateway exceptions."""
        logger = self.get_logger()

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayUnavailableError(
                "Stripe rate limit exceeded",
                provider_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            if "timed out" in str(error).lower():
                logger.error("Stripe request timed out", extra=log_context)
                raise GatewayTimeoutError(
                    "Stripe request timed out",
                    provider_code="timeout",
                ) from error
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Could not connect to Stripe",
                provider_code="api_connection_error",
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise GatewayError(
                "Stripe authentication failed",
                provider_code="authentication_error",
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Stripe service error",
                provider_code="api_error",
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise GatewayUnavailableError(
            f"Unexpected Stripe error: {error}",
            provider_code="unknown_error",
        ) from error

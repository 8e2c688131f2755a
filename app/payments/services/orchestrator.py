"""
Payment orchestrator: the engine's single entry point.

PaymentOrchestrator wires the managers together with one gateway, one
config store and one audit logger, applies the rules that span managers,
and turns every outcome into a ServiceResult. Callers never see a domain
exception: they get `result.error_code` from the stable taxonomy in
payments.exceptions, or INTERNAL_ERROR for anything unexpected.

Cross-manager rules:
    - No new escrow for a fleet whose subscription is SUSPENDED
    - No release without a DeliveryConfirmation
    - No release while a dispute is open

Usage:
    from payments.services import PaymentOrchestrator

    orchestrator = PaymentOrchestrator()
    result = orchestrator.create_shipment_escrow(
        shipment_id, shipper_id, fleet_id, 1_500_000, SubscriptionTier.BASIC
    )
    if result.success:
        escrow = result.data
        escrow.commission_minor  # 105000

    result = orchestrator.record_delivery_confirmation(shipment_id, actor_id=driver_id)
    result.data.status  # complete (settlement)
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from django.utils import timezone

from django_fsm import TransitionNotAllowed

from core.exceptions import BaseApplicationError
from core.services import BaseService, ServiceResult

from payments.adapters import PaymentGateway, get_gateway
from payments.exceptions import (
    DeliveryNotConfirmedError,
    StateConflictError,
    SubscriptionSuspendedError,
)
from payments.ledger import WalletKind
from payments.models import DeliveryConfirmation
from payments.state_machines import (
    ActorType,
    BillingCycle,
    FeeBasis,
    RefundRequestType,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)

from .audit import AuditLogger, snapshot
from .config_store import ConfigStore
from .escrow import EscrowManager, ShipmentEscrow, resolve_actor_type
from .reconciliation import ReconciliationRunResult, ReconciliationService
from .refund import RefundManager
from .reporting import PaymentAnalytics, ReportingService
from .subscription import SubscriptionBillingManager

INTERNAL_ERROR = "INTERNAL_ERROR"


class PaymentOrchestrator(BaseService):
    """
    Facade over the escrow, subscription, refund and reporting services.

    Collaborators are built once per orchestrator and shared, so a test
    can pass a FakeGateway and inspect every call the managers make.
    """

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        config_store: ConfigStore | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.gateway = gateway or get_gateway()
        self.config_store = config_store or ConfigStore()
        self.audit = audit or AuditLogger()

        self.escrow = EscrowManager(self.gateway, self.config_store, self.audit)
        self.billing = SubscriptionBillingManager(self.gateway, self.config_store, self.audit)
        self.refunds = RefundManager(self.escrow, self.audit)
        self.reconciliation = ReconciliationService(self.escrow, self.billing, self.refunds)
        self.reporting = ReportingService()
        self.logger = self.get_logger()

    # =========================================================================
    # Error Boundary
    # =========================================================================

    def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> ServiceResult:
        try:
            return ServiceResult.success(func(*args, **kwargs))
        except BaseApplicationError as exc:
            level = logging.WARNING if getattr(exc, "is_retryable", False) else logging.INFO
            self.logger.log(
                level,
                f"{operation} failed: {exc.error_code}",
                extra={"operation": operation, "error_code": exc.error_code, "details": exc.details},
            )
            return ServiceResult.from_exception(exc)
        except TransitionNotAllowed as exc:
            self.logger.warning(
                f"{operation} hit a disallowed transition",
                extra={"operation": operation},
            )
            return ServiceResult.failure(str(exc), error_code="STATE_CONFLICT")
        except Exception as exc:
            self.logger.error(
                f"Unexpected error in {operation}: {type(exc).__name__}",
                extra={"operation": operation},
                exc_info=True,
            )
            return ServiceResult.failure(
                "An unexpected error occurred",
                error_code=INTERNAL_ERROR,
            )

    # =========================================================================
    # Escrow
    # =========================================================================

    def create_shipment_escrow(
        self,
        shipment_id: uuid.UUID,
        payer_id: uuid.UUID,
        payee_id: uuid.UUID | None,
        gross_minor: int,
        payer_tier: SubscriptionTier | str | None = None,
        actor_id: uuid.UUID | None = None,
        payee_wallet_kind: str = WalletKind.FLEET,
    ) -> ServiceResult[ShipmentEscrow]:
        """
        Capture a shipment's payment into escrow.

        When payer_tier is omitted the payee fleet's live subscription tier
        is used, falling back to basic.
        """

        def create():
            tier = payer_tier
            if payee_id is not None and payee_wallet_kind == WalletKind.FLEET:
                subscription = self.billing.live_subscription_for(payee_id)
                if subscription is not None and subscription.status == SubscriptionStatus.SUSPENDED:
                    raise SubscriptionSuspendedError(
                        "Fleet subscription is suspended",
                        details={"fleet_id": str(payee_id), "subscription_id": str(subscription.id)},
                    )
                if tier is None and subscription is not None:
                    tier = subscription.tier
            return self.escrow.create_shipment_escrow(
                shipment_id,
                payer_id,
                payee_id,
                gross_minor,
                tier or SubscriptionTier.BASIC,
                actor_id=actor_id,
                payee_wallet_kind=payee_wallet_kind,
            )

        return self._call("create_shipment_escrow", create)

    def release_escrow(
        self,
        shipment_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
    ) -> ServiceResult:
        """Settle a delivered shipment's escrow to the payee."""
        return self._call("release_escrow", self._release, shipment_id, actor_id, actor_type)

    def _release(self, shipment_id, actor_id, actor_type):
        if not DeliveryConfirmation.objects.filter(shipment_id=shipment_id).exists():
            raise DeliveryNotConfirmedError(
                "Delivery has not been confirmed",
                details={"shipment_id": str(shipment_id)},
            )
        escrow_in = self.escrow.get_escrow_in(shipment_id)
        if escrow_in is not None and escrow_in.status == TransactionStatus.DISPUTED:
            raise StateConflictError(
                "A dispute is open for this shipment",
                details={"shipment_id": str(shipment_id), "current_state": escrow_in.status},
            )
        return self.escrow.release_escrow(shipment_id, actor_id=actor_id, actor_type=actor_type)

    def record_delivery_confirmation(
        self,
        shipment_id: uuid.UUID,
        confirmed_at: datetime | None = None,
        proof_reference: str | None = None,
        actor_id: uuid.UUID | None = None,
    ) -> ServiceResult:
        """
        Store a proof-of-delivery event, then release the escrow.

        Replaying the same event is harmless: the first confirmation is
        kept and release is idempotent. The confirmation is kept even when
        release is refused (e.g. an open dispute).
        """
        actor_type = resolve_actor_type(actor_id)

        def confirm():
            confirmation, created = DeliveryConfirmation.objects.get_or_create(
                shipment_id=shipment_id,
                defaults={
                    "confirmed_at": confirmed_at or timezone.now(),
                    "proof_reference": proof_reference or "",
                    "confirmed_by": actor_id,
                },
            )
            if created:
                escrow_in = self.escrow.get_escrow_in(shipment_id)
                self.audit.log(
                    escrow_in.id if escrow_in else confirmation.id,
                    "delivery.confirmed",
                    actor_id,
                    actor_type,
                    new_values=snapshot(
                        confirmation, ["shipment_id", "confirmed_at", "proof_reference"]
                    ),
                    entity_type="payment_transaction" if escrow_in else "delivery_confirmation",
                )
                self.escrow.note_delivery(shipment_id, confirmation.confirmed_at)
            return self._release(shipment_id, actor_id, actor_type)

        return self._call("record_delivery_confirmation", confirm)

    def available_for_refund(self, shipment_id: uuid.UUID) -> ServiceResult[int]:
        return self._call("available_for_refund", self.escrow.available_for_refund, shipment_id)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def create_fleet_subscription(
        self,
        fleet_id: uuid.UUID,
        tier: SubscriptionTier | str,
        cycle: BillingCycle | str,
        fee_minor: int,
        fee_basis: FeeBasis | str = FeeBasis.PER_FLEET,
        vehicle_count: int = 1,
        auto_renew: bool = True,
        actor_id: uuid.UUID | None = None,
    ) -> ServiceResult:
        return self._call(
            "create_fleet_subscription",
            self.billing.create_fleet_subscription,
            fleet_id,
            tier,
            cycle,
            fee_minor,
            fee_basis=fee_basis,
            vehicle_count=vehicle_count,
            auto_renew=auto_renew,
            actor_id=actor_id,
        )

    def process_subscription_payment(
        self,
        subscription_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> ServiceResult:
        """Bill a due subscription; data is None when nothing was due."""
        return self._call(
            "process_subscription_payment",
            self.billing.process_subscription_payment,
            subscription_id,
            actor_id=actor_id,
        )

    def cancel_subscription(
        self,
        subscription_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        reason: str = "",
    ) -> ServiceResult:
        return self._call(
            "cancel_subscription",
            self.billing.cancel_subscription,
            subscription_id,
            actor_id=actor_id,
            reason=reason,
        )

    def reactivate_subscription(
        self,
        subscription_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> ServiceResult:
        return self._call(
            "reactivate_subscription",
            self.billing.reactivate_subscription,
            subscription_id,
            actor_id=actor_id,
        )

    # =========================================================================
    # Refunds & Disputes
    # =========================================================================

    def create_refund_request(
        self,
        shipment_id: uuid.UUID,
        requested_by: uuid.UUID,
        request_type: RefundRequestType | str,
        amount_minor: int,
        reason: str,
        evidence: dict | None = None,
    ) -> ServiceResult:
        return self._call(
            "create_refund_request",
            self.refunds.create_refund_request,
            shipment_id,
            requested_by,
            request_type,
            amount_minor,
            reason,
            evidence=evidence,
        )

    def approve_refund_request(
        self,
        request_id: uuid.UUID,
        approver_id: uuid.UUID,
        approved_amount: int | None = None,
        expected_version: int | None = None,
    ) -> ServiceResult:
        return self._call(
            "approve_refund_request",
            self.refunds.approve_refund_request,
            request_id,
            approver_id,
            approved_amount=approved_amount,
            expected_version=expected_version,
            actor_type=ActorType.ADMIN,
        )

    def process_approved_refund(
        self,
        request_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> ServiceResult:
        return self._call(
            "process_approved_refund",
            self.refunds.process_approved_refund,
            request_id,
            actor_id=actor_id,
        )

    def reject_refund_request(
        self,
        request_id: uuid.UUID,
        approver_id: uuid.UUID,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> ServiceResult:
        return self._call(
            "reject_refund_request",
            self.refunds.reject_refund_request,
            request_id,
            approver_id,
            reason=reason,
            expected_version=expected_version,
            actor_type=ActorType.ADMIN,
        )

    # =========================================================================
    # Configuration
    # =========================================================================

    def get_config(self, key: str | None = None, category: str | None = None) -> ServiceResult:
        """One key's value, or the effective configuration (optionally per category)."""
        if key is not None:
            return self._call("get_config", self.config_store.get, key)
        return self._call("get_config", self.config_store.all, category)

    def update_config(
        self,
        key: str,
        value: Any,
        actor_id: uuid.UUID,
        category: str | None = None,
        description: str | None = None,
    ) -> ServiceResult:
        def update():
            previous = self.config_store.all().get(key)
            row = self.config_store.set(
                key, value, actor_id=actor_id, category=category, description=description
            )
            self.audit.log(
                row.id,
                "config.updated",
                actor_id,
                ActorType.ADMIN,
                old_values={"key": key, "value": previous},
                new_values={"key": key, "value": row.value, "version": row.version},
                entity_type="payment_config",
            )
            return row

        return self._call("update_config", update)

    # =========================================================================
    # Reporting & Maintenance
    # =========================================================================

    def wallet_balance(
        self,
        owner_id: uuid.UUID | None,
        kind: WalletKind | str,
        currency: str = "inr",
    ) -> ServiceResult:
        return self._call("wallet_balance", self.reporting.wallet_balance, owner_id, kind, currency)

    def payment_history(
        self,
        shipment_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> ServiceResult:
        return self._call(
            "payment_history", self.reporting.payment_history, shipment_id, user_id, limit
        )

    def audit_history(self, payment_id: uuid.UUID) -> ServiceResult:
        return self._call("audit_history", self.audit.history, payment_id)

    def payment_analytics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ServiceResult[PaymentAnalytics]:
        return self._call("payment_analytics", self.reporting.payment_analytics, start, end)

    def reconcile(self, now: datetime | None = None) -> ServiceResult[ReconciliationRunResult]:
        return self._call("reconcile", self.reconciliation.reconcile_processing, now)

"""
Escrow manager: shipment funds from capture to settlement or refund.

A shipment escrow is a pair of gateway legs created together:

    ESCROW_IN  (net amount)   clearing -> platform escrow wallet
    COMMISSION (commission)   clearing -> platform commission wallet

Release moves the held net amount to the payee's wallet with an internal
SETTLEMENT leg. Refunds return money through the gateway with REFUND legs,
paid from the escrow wallet while funds are held and from the payee's
wallet once settled.

Every operation on one shipment runs under shipment_lock(shipment_id).
Gateway calls happen outside database transactions; each status change
and its ledger entries commit together.

Usage:
    manager = EscrowManager(gateway=get_gateway())
    escrow = manager.create_shipment_escrow(
        shipment_id, shipper_id, fleet_id, 1_500_000, SubscriptionTier.BASIC
    )
    escrow.net_minor  # 1395000

    settlement = manager.release_escrow(shipment_id, actor_id=operator_id)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal

from django.db import IntegrityError, transaction
from django.db.models import Sum

from core.services import BaseService

from payments.adapters import GatewayRequest, GatewayResponse, PaymentGateway, get_gateway
from payments.exceptions import (
    AmountExceedsAvailableError,
    GatewayError,
    GatewayTimeoutError,
    InvalidAmountError,
    PaymentDeclinedError,
    PaymentNotFoundError,
    StateConflictError,
)
from payments.ledger import EntryType, LedgerService, RecordEntryParams, WalletKind
from payments.ledger.exceptions import InsufficientBalance
from payments.locks import shipment_lock
from payments.models import PaymentTransaction, RefundRequest
from payments.state_machines import (
    FUNDED_ESCROW_STATUSES,
    ActorType,
    SubscriptionTier,
    TransactionKind,
    TransactionStatus,
)

from .audit import AuditLogger, snapshot
from .commission import CommissionCalculator
from .config_store import ConfigStore

ACTOR = "escrow_manager"

REFUND_SOURCE_ESCROW = "escrow"
REFUND_SOURCE_PAYEE = "payee"
REFUND_SOURCE_COMMISSION = "commission"


def resolve_actor_type(actor_id: uuid.UUID | None, actor_type: str | None = None) -> str:
    if actor_type:
        return actor_type
    return ActorType.USER if actor_id else ActorType.SYSTEM


@dataclass
class ShipmentEscrow:
    """The two legs created for one shipment."""

    escrow_in: PaymentTransaction
    commission: PaymentTransaction | None

    @property
    def net_minor(self) -> int:
        return self.escrow_in.amount_minor

    @property
    def commission_minor(self) -> int:
        return self.commission.amount_minor if self.commission else 0

    @property
    def gross_minor(self) -> int:
        return self.net_minor + self.commission_minor


class EscrowManager(BaseService):
    """
    Creates, releases, refunds and disputes shipment escrows.

    Collaborators are injected so tests can pass a FakeGateway and an
    in-memory audit double.
    """

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        config_store: ConfigStore | None = None,
        audit: AuditLogger | None = None,
        calculator: CommissionCalculator | None = None,
    ) -> None:
        self.gateway = gateway or get_gateway()
        self.config_store = config_store or ConfigStore()
        self.audit = audit or AuditLogger()
        self.calculator = calculator or CommissionCalculator(self.config_store)
        self.logger = self.get_logger()

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def get_escrow_in(shipment_id: uuid.UUID) -> PaymentTransaction | None:
        """The shipment's live escrow-in (pending through settled), if any."""
        return (
            PaymentTransaction.objects.escrow_in()
            .for_shipment(shipment_id)
            .live()
            .first()
        )

    @staticmethod
    def get_settlement(shipment_id: uuid.UUID) -> PaymentTransaction | None:
        return PaymentTransaction.objects.filter(
            shipment_id=shipment_id, kind=TransactionKind.SETTLEMENT
        ).first()

    @staticmethod
    def refunded_total(escrow_in: PaymentTransaction) -> int:
        """Sum of completed refunds paid against a transaction."""
        return (
            PaymentTransaction.objects.filter(
                related_transaction=escrow_in,
                kind=TransactionKind.REFUND,
                status=TransactionStatus.COMPLETE,
            ).aggregate(total=Sum("amount_minor"))["total"]
            or 0
        )

    def available_for_refund(self, shipment_id: uuid.UUID) -> int:
        """Held or settled amount not yet refunded."""
        escrow_in = self.get_escrow_in(shipment_id)
        if escrow_in is None or escrow_in.status not in FUNDED_ESCROW_STATUSES:
            return 0
        return escrow_in.amount_minor - self.refunded_total(escrow_in)

    def held_amount(self, shipment_id: uuid.UUID) -> int:
        """Amount still sitting in the escrow wallet for this shipment."""
        escrow_in = self.get_escrow_in(shipment_id)
        if escrow_in is None or escrow_in.status not in (
            TransactionStatus.HELD,
            TransactionStatus.DISPUTED,
        ):
            return 0
        return escrow_in.amount_minor - self.refunded_total(escrow_in)

    # =========================================================================
    # Create
    # =========================================================================

    def create_shipment_escrow(
        self,
        shipment_id: uuid.UUID,
        payer_id: uuid.UUID,
        payee_id: uuid.UUID | None,
        gross_minor: int,
        payer_tier: SubscriptionTier | str | None,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
        payee_wallet_kind: str = WalletKind.FLEET,
        currency: str = "inr",
    ) -> ShipmentEscrow:
        """
        Capture a shipment's gross amount as held net plus collected commission.

        Idempotent per shipment: a live escrow-in is returned as-is, with any
        unfinished gateway leg resubmitted under its original transaction id.

        Raises:
            InvalidAmountError: gross_minor not positive, or no net left
            WalletNotFoundError: A platform wallet is deactivated
            StateConflictError: The shipment's escrow was already refunded
            PaymentDeclinedError: Gateway rejected a leg (pair unwound)
            GatewayTimeoutError / GatewayUnavailableError: escrow-in or
                commission leg left PROCESSING for reconciliation or retry
        """
        if isinstance(gross_minor, bool) or not isinstance(gross_minor, int) or gross_minor <= 0:
            raise InvalidAmountError(
                "Gross amount must be a positive integer in minor units",
                details={"shipment_id": str(shipment_id), "gross_minor": gross_minor},
            )
        actor_type = resolve_actor_type(actor_id, actor_type)

        with shipment_lock(shipment_id):
            existing = self.get_escrow_in(shipment_id)
            if existing is not None:
                self.logger.info(
                    "Escrow already exists for shipment",
                    extra={"shipment_id": str(shipment_id), "escrow_in_id": str(existing.id)},
                )
                return self._resume(existing, actor_id, actor_type)
            self._check_not_refunded(shipment_id)

            quote = self.calculator.calculate_commission(gross_minor, payer_tier)
            if quote.net_minor <= 0:
                raise InvalidAmountError(
                    "Commission leaves no net amount to hold",
                    details={
                        "gross_minor": gross_minor,
                        "commission_minor": quote.commission_minor,
                    },
                )

            escrow_wallet = LedgerService.resolve_wallet(
                WalletKind.PLATFORM_ESCROW, currency=currency
            )
            LedgerService.resolve_wallet(WalletKind.PLATFORM_COMMISSION, currency=currency)
            LedgerService.resolve_wallet(WalletKind.EXTERNAL_CLEARING, currency=currency)

            try:
                with transaction.atomic():
                    escrow_in = PaymentTransaction.objects.create(
                        shipment_id=shipment_id,
                        payer_id=payer_id,
                        payee_id=payee_id,
                        payee_wallet_kind=payee_wallet_kind,
                        amount_minor=quote.net_minor,
                        currency=currency,
                        kind=TransactionKind.ESCROW_IN,
                        escrow_wallet=escrow_wallet,
                        commission_rate=quote.rate,
                        metadata={
                            "gross_minor": gross_minor,
                            "commission_minor": quote.commission_minor,
                            "tier": quote.tier,
                            "rate_source": quote.source,
                        },
                    )
                    commission = None
                    if quote.commission_minor > 0:
                        commission = PaymentTransaction.objects.create(
                            shipment_id=shipment_id,
                            payer_id=payer_id,
                            amount_minor=quote.commission_minor,
                            currency=currency,
                            kind=TransactionKind.COMMISSION,
                            commission_rate=quote.rate,
                            related_transaction=escrow_in,
                        )
            except IntegrityError:
                # Lost a race with a worker whose lock expired
                existing = self.get_escrow_in(shipment_id)
                if existing is None:
                    raise
                return self._resume(existing, actor_id, actor_type)

            self.audit.log(
                escrow_in.id,
                "escrow_in.created",
                actor_id,
                actor_type,
                new_values=snapshot(escrow_in),
                metadata={"commission_id": str(commission.id) if commission else None},
            )
            self.logger.info(
                "Shipment escrow created",
                extra={
                    "shipment_id": str(shipment_id),
                    "escrow_in_id": str(escrow_in.id),
                    "gross_minor": gross_minor,
                    "commission_minor": quote.commission_minor,
                },
            )

            escrow_in = self._submit_escrow_in(escrow_in, commission, actor_id, actor_type)
            if commission is not None:
                commission = self._submit_commission(
                    commission, escrow_in, actor_id, actor_type
                )
            return ShipmentEscrow(escrow_in=escrow_in, commission=commission)

    @staticmethod
    def _check_not_refunded(shipment_id: uuid.UUID) -> None:
        """
        A shipment is charged once. Only a declined, cancelled or unwound
        escrow-in may be replaced by a new attempt.
        """
        refunded = (
            PaymentTransaction.objects.escrow_in()
            .for_shipment(shipment_id)
            .filter(status=TransactionStatus.REFUNDED)
            .exclude(
                derived_transactions__kind=TransactionKind.REFUND,
                derived_transactions__metadata__reversal=True,
            )
            .first()
        )
        if refunded is not None:
            raise StateConflictError(
                "Shipment escrow was already refunded",
                details={
                    "shipment_id": str(shipment_id),
                    "escrow_in_id": str(refunded.id),
                    "current_state": refunded.status,
                },
            )

    def _resume(
        self,
        escrow_in: PaymentTransaction,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> ShipmentEscrow:
        commission = escrow_in.derived_transactions.filter(
            kind=TransactionKind.COMMISSION
        ).first()

        if escrow_in.status in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
            escrow_in = self._submit_escrow_in(escrow_in, commission, actor_id, actor_type)

        if (
            commission is not None
            and escrow_in.status == TransactionStatus.HELD
            and commission.status in (TransactionStatus.PENDING, TransactionStatus.PROCESSING)
        ):
            commission = self._submit_commission(commission, escrow_in, actor_id, actor_type)

        return ShipmentEscrow(escrow_in=escrow_in, commission=commission)

    def resume_shipment(
        self,
        shipment_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        actor_type: str = ActorType.SYSTEM,
    ) -> ShipmentEscrow | None:
        """
        Finish a pair whose escrow-in was resolved outside create_shipment_escrow.

        A failed escrow-in cancels its commission leg. A held escrow-in gets
        its commission leg submitted, or is reversed if that leg failed.
        """
        with shipment_lock(shipment_id):
            escrow_in = (
                PaymentTransaction.objects.escrow_in()
                .for_shipment(shipment_id)
                .order_by("-created_at")
                .first()
            )
            if escrow_in is None:
                return None
            commission = escrow_in.derived_transactions.filter(
                kind=TransactionKind.COMMISSION
            ).first()
            if commission is None:
                return ShipmentEscrow(escrow_in=escrow_in, commission=None)

            if escrow_in.status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
                commission = self._cancel_leg(
                    commission, "Escrow-in did not complete", actor_id, actor_type
                )
            elif escrow_in.status == TransactionStatus.HELD:
                if commission.status in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
                    commission = self._submit_commission(
                        commission, escrow_in, actor_id, actor_type
                    )
                elif commission.status == TransactionStatus.FAILED:
                    self._unwind_pair(
                        escrow_in,
                        commission,
                        commission.failure_reason or "Commission leg failed",
                        actor_id,
                        actor_type,
                    )
            escrow_in = PaymentTransaction.objects.get(pk=escrow_in.pk)
            return ShipmentEscrow(escrow_in=escrow_in, commission=commission)

    def abandon_transaction(
        self,
        txn: PaymentTransaction,
        reason: str,
        actor_id: uuid.UUID | None = None,
        actor_type: str = ActorType.SYSTEM,
    ) -> PaymentTransaction:
        """Fail a PENDING/PROCESSING leg whose outcome will never be known."""
        self.logger.warning(
            "Abandoning unresolved transaction",
            extra={"transaction_id": str(txn.id), "kind": txn.kind, "reason": reason},
        )
        return self._cancel_leg(txn, reason, actor_id, actor_type)

    def _request_for(
        self,
        txn: PaymentTransaction,
        provider_reference: str | None = None,
        description: str = "",
    ) -> GatewayRequest:
        return GatewayRequest(
            transaction_id=txn.id,
            amount_minor=txn.amount_minor,
            currency=txn.currency,
            payer_reference=str(txn.payer_id) if txn.payer_id else None,
            payee_reference=str(txn.payee_id) if txn.payee_id else None,
            provider_reference=provider_reference,
            description=description or f"{txn.get_kind_display()} for shipment {txn.shipment_id}",
            metadata={
                "kind": txn.kind,
                "shipment_id": str(txn.shipment_id) if txn.shipment_id else "",
            },
        )

    def _mark_submitted(
        self,
        txn: PaymentTransaction,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> PaymentTransaction:
        if txn.status != TransactionStatus.PENDING:
            return txn
        before = snapshot(txn, ["status"])
        with transaction.atomic():
            txn = PaymentTransaction.objects.select_for_update().get(pk=txn.pk)
            txn.submit()
            txn.save()
        self.audit.log(
            txn.id, f"{txn.kind}.submitted", actor_id, actor_type,
            old_values=before, new_values=snapshot(txn, ["status"]),
        )
        return txn

    def _submit_escrow_in(
        self,
        escrow_in: PaymentTransaction,
        commission: PaymentTransaction | None,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> PaymentTransaction:
        escrow_in = self._mark_submitted(escrow_in, actor_id, actor_type)

        try:
            response = self.gateway.charge(self._request_for(escrow_in))
        except GatewayError as exc:
            self.logger.warning(
                "Escrow-in left processing after gateway error",
                extra={"escrow_in_id": str(escrow_in.id), "error_code": exc.error_code},
            )
            self.audit.log(
                escrow_in.id, "escrow_in.gateway_error", actor_id, actor_type,
                metadata={"error_code": exc.error_code, "message": exc.message},
            )
            raise

        escrow_in = self.apply_gateway_outcome(escrow_in, response, actor_id, actor_type)

        if escrow_in.status == TransactionStatus.FAILED:
            if commission is not None:
                self._cancel_leg(commission, "Escrow-in was declined", actor_id, actor_type)
            raise PaymentDeclinedError(
                response.error_message or "Escrow payment was declined",
                provider_code=response.error_code,
                details={"shipment_id": str(escrow_in.shipment_id)},
            )
        if escrow_in.status == TransactionStatus.PROCESSING:
            raise GatewayTimeoutError(
                "Gateway has not resolved the escrow payment yet",
                details={"escrow_in_id": str(escrow_in.id)},
            )
        return escrow_in

    def _submit_commission(
        self,
        commission: PaymentTransaction,
        escrow_in: PaymentTransaction,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> PaymentTransaction:
        commission = self._mark_submitted(commission, actor_id, actor_type)

        try:
            response = self.gateway.charge(self._request_for(commission))
        except GatewayError as exc:
            if exc.is_retryable:
                # Outcome unknown; reconciliation or a retry finishes the pair
                self.logger.warning(
                    "Commission leg left processing after gateway error",
                    extra={"commission_id": str(commission.id), "error_code": exc.error_code},
                )
                self.audit.log(
                    commission.id, "commission.gateway_error", actor_id, actor_type,
                    metadata={"error_code": exc.error_code, "message": exc.message},
                )
                raise
            self.logger.error(
                "Commission leg failed, unwinding escrow-in",
                extra={"commission_id": str(commission.id), "error_code": exc.error_code},
            )
            self._unwind_pair(escrow_in, commission, exc.message, actor_id, actor_type)
            raise

        commission = self.apply_gateway_outcome(commission, response, actor_id, actor_type)
        if commission.status == TransactionStatus.COMPLETE:
            return commission
        if commission.status == TransactionStatus.PROCESSING:
            raise GatewayTimeoutError(
                "Gateway has not resolved the commission payment yet",
                details={"commission_id": str(commission.id)},
            )

        reason = response.error_message or "Commission payment was not accepted"
        self._unwind_pair(escrow_in, commission, reason, actor_id, actor_type)
        raise PaymentDeclinedError(
            reason,
            provider_code=response.error_code,
            details={"shipment_id": str(escrow_in.shipment_id)},
        )

    # =========================================================================
    # Gateway Outcomes
    # =========================================================================

    def apply_gateway_outcome(
        self,
        txn: PaymentTransaction,
        response: GatewayResponse,
        actor_id: uuid.UUID | None = None,
        actor_type: str = ActorType.SYSTEM,
    ) -> PaymentTransaction:
        """
        Record a gateway answer for a PROCESSING escrow-in or commission leg.

        Success moves it to HELD/COMPLETE and credits the platform wallet in
        the same database transaction. A rejection marks it FAILED. A
        pending answer leaves it PROCESSING. Already-resolved transactions
        are returned unchanged, so repeated answers are harmless.
        """
        with transaction.atomic():
            txn = PaymentTransaction.objects.select_for_update().get(pk=txn.pk)
            if txn.status != TransactionStatus.PROCESSING:
                return txn

            before = snapshot(txn, ["status", "provider_reference"])
            txn.provider_response = response.raw_response
            if response.provider_txn_id:
                txn.provider_reference = response.provider_txn_id

            if response.pending:
                txn.save(update_fields=["provider_response", "provider_reference", "updated_at"])
                return txn

            if not response.success:
                txn.fail(response.error_message or response.error_code or "Declined by gateway")
                txn.save()
                action = f"{txn.kind}.failed"
            elif txn.kind == TransactionKind.ESCROW_IN:
                txn.mark_held()
                txn.save()
                self._credit_from_clearing(txn, WalletKind.PLATFORM_ESCROW, EntryType.ESCROW_FUNDED)
                action = "escrow_in.held"
            else:
                txn.mark_complete()
                txn.save()
                self._credit_from_clearing(
                    txn, WalletKind.PLATFORM_COMMISSION, EntryType.COMMISSION_COLLECTED
                )
                action = f"{txn.kind}.completed"

        self.audit.log(
            txn.id, action, actor_id, actor_type,
            old_values=before,
            new_values=snapshot(txn, ["status", "provider_reference"]),
            metadata={"error_code": response.error_code} if response.error_code else None,
        )
        return txn

    def _credit_from_clearing(
        self,
        txn: PaymentTransaction,
        wallet_kind: str,
        entry_type: str,
    ) -> None:
        clearing = LedgerService.resolve_wallet(WalletKind.EXTERNAL_CLEARING, currency=txn.currency)
        target = LedgerService.resolve_wallet(wallet_kind, currency=txn.currency)
        LedgerService.record_entry(
            RecordEntryParams(
                debit_wallet_id=clearing.id,
                credit_wallet_id=target.id,
                amount_minor=txn.amount_minor,
                entry_type=entry_type,
                idempotency_key=f"txn:{txn.id}:{entry_type}",
                payment_transaction_id=txn.id,
                created_by=ACTOR,
            )
        )

    def _cancel_leg(
        self,
        txn: PaymentTransaction,
        reason: str,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> PaymentTransaction:
        with transaction.atomic():
            txn = PaymentTransaction.objects.select_for_update().get(pk=txn.pk)
            if txn.status == TransactionStatus.PENDING:
                txn.cancel(reason)
            elif txn.status == TransactionStatus.PROCESSING:
                txn.fail(reason)
            else:
                return txn
            txn.save()
        self.audit.log(
            txn.id, f"{txn.kind}.{txn.status}", actor_id, actor_type,
            new_values=snapshot(txn, ["status", "failure_reason"]),
        )
        return txn

    def _unwind_pair(
        self,
        escrow_in: PaymentTransaction,
        commission: PaymentTransaction,
        reason: str,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> None:
        """
        Commission leg failed after the escrow-in was captured: fail the
        commission and reverse the escrow-in so the pair is never half done.
        """
        self._cancel_leg(commission, reason, actor_id, actor_type)

        escrow_in = PaymentTransaction.objects.get(pk=escrow_in.pk)
        if escrow_in.status != TransactionStatus.HELD:
            return

        with transaction.atomic():
            reversal = PaymentTransaction.objects.create(
                shipment_id=escrow_in.shipment_id,
                payee_id=escrow_in.payer_id,
                amount_minor=escrow_in.amount_minor,
                currency=escrow_in.currency,
                kind=TransactionKind.REFUND,
                related_transaction=escrow_in,
                refund_reason=reason,
                metadata={"source": REFUND_SOURCE_ESCROW, "reversal": True},
            )
            reversal.submit()
            reversal.save()

        try:
            response = self.gateway.refund(
                self._request_for(
                    reversal,
                    provider_reference=escrow_in.provider_reference,
                    description=f"Reversal for shipment {escrow_in.shipment_id}",
                )
            )
        except GatewayError:
            self.logger.critical(
                "Escrow-in reversal could not reach the gateway; manual refund required",
                extra={"escrow_in_id": str(escrow_in.id), "reversal_id": str(reversal.id)},
                exc_info=True,
            )
            raise

        reversal = self.apply_refund_outcome(reversal, response, actor_id, actor_type, reason)
        if reversal.status != TransactionStatus.COMPLETE:
            self.logger.critical(
                "Escrow-in reversal not accepted by gateway; manual refund required",
                extra={
                    "escrow_in_id": str(escrow_in.id),
                    "reversal_id": str(reversal.id),
                    "error_code": response.error_code,
                },
            )
            return

        self.audit.log(
            escrow_in.id, "escrow_in.reversed", actor_id, actor_type,
            new_values={"status": TransactionStatus.REFUNDED},
            metadata={"reversal_id": str(reversal.id), "reason": reason},
        )

    def apply_refund_outcome(
        self,
        refund_txn: PaymentTransaction,
        response: GatewayResponse,
        actor_id: uuid.UUID | None = None,
        actor_type: str = ActorType.SYSTEM,
        reason: str = "",
    ) -> PaymentTransaction:
        """
        Record a gateway answer for a PROCESSING refund leg.

        Success completes the leg, debits the wallet it was paid from and,
        once nothing is left to refund, moves a held or disputed escrow-in
        to REFUNDED. All of it commits together.
        """
        if response.pending:
            return refund_txn
        if not response.success:
            return self._cancel_leg(
                refund_txn,
                response.error_message or "Refund declined by gateway",
                actor_id,
                actor_type,
            )

        with transaction.atomic():
            refund_txn = PaymentTransaction.objects.select_for_update().get(pk=refund_txn.pk)
            if refund_txn.status != TransactionStatus.PROCESSING:
                return refund_txn
            parent = PaymentTransaction.objects.select_for_update().get(
                pk=refund_txn.related_transaction_id
            )

            refund_txn.provider_reference = response.provider_txn_id
            refund_txn.provider_response = response.raw_response
            refund_txn.mark_complete()
            refund_txn.save()

            entry_type = (
                EntryType.REVERSAL if refund_txn.metadata.get("reversal") else EntryType.REFUND
            )
            self._pay_out_to_clearing(
                self._refund_source_wallet_id(refund_txn, parent), refund_txn, entry_type
            )

            parent_before = snapshot(parent, ["status"])
            if (
                parent.kind == TransactionKind.ESCROW_IN
                and parent.status in (TransactionStatus.HELD, TransactionStatus.DISPUTED)
                and parent.amount_minor - self.refunded_total(parent) <= 0
            ):
                parent.mark_refunded(reason or refund_txn.refund_reason or "")
                parent.save()

        self.audit.log(
            refund_txn.id, f"{refund_txn.metadata.get('source', 'escrow')}_refund.completed",
            actor_id, actor_type,
            new_values=snapshot(refund_txn, ["status", "amount_minor", "provider_reference"]),
            metadata={"related_transaction_id": str(parent.id)},
        )
        if parent.status == TransactionStatus.REFUNDED and parent_before["status"] != parent.status:
            self.audit.log(
                parent.id, f"{parent.kind}.refunded", actor_id, actor_type,
                old_values=parent_before, new_values=snapshot(parent, ["status"]),
            )
        return refund_txn

    @staticmethod
    def _refund_source_wallet_id(
        refund_txn: PaymentTransaction,
        parent: PaymentTransaction,
    ) -> uuid.UUID:
        source = refund_txn.metadata.get("source", REFUND_SOURCE_ESCROW)
        if source == REFUND_SOURCE_PAYEE:
            return LedgerService.resolve_wallet(
                parent.payee_wallet_kind, parent.payee_id, parent.currency
            ).id
        if source == REFUND_SOURCE_COMMISSION:
            return LedgerService.resolve_wallet(
                WalletKind.PLATFORM_COMMISSION, currency=parent.currency
            ).id
        return parent.escrow_wallet_id

    def _pay_out_to_clearing(
        self,
        source_wallet_id: uuid.UUID,
        txn: PaymentTransaction,
        entry_type: str,
    ) -> None:
        clearing = LedgerService.resolve_wallet(WalletKind.EXTERNAL_CLEARING, currency=txn.currency)
        LedgerService.record_entry(
            RecordEntryParams(
                debit_wallet_id=source_wallet_id,
                credit_wallet_id=clearing.id,
                amount_minor=txn.amount_minor,
                entry_type=entry_type,
                idempotency_key=f"txn:{txn.id}:{entry_type}",
                payment_transaction_id=txn.id,
                created_by=ACTOR,
            )
        )

    # =========================================================================
    # Release
    # =========================================================================

    def release_escrow(
        self,
        shipment_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
    ) -> PaymentTransaction:
        """
        Settle a held escrow to the payee's wallet.

        Idempotent: an existing settlement is returned without moving money.

        Raises:
            PaymentNotFoundError: No escrow for the shipment
            StateConflictError: Escrow is not HELD (pending, disputed, refunded)
        """
        actor_type = resolve_actor_type(actor_id, actor_type)
        with shipment_lock(shipment_id):
            return self._release(shipment_id, actor_id, actor_type, allow_disputed=False)

    def _release(
        self,
        shipment_id: uuid.UUID,
        actor_id: uuid.UUID | None,
        actor_type: str,
        allow_disputed: bool,
    ) -> PaymentTransaction:
        existing = self.get_settlement(shipment_id)
        if existing is not None:
            return existing

        escrow_in = self.get_escrow_in(shipment_id)
        if escrow_in is None:
            raise PaymentNotFoundError(
                f"No escrow for shipment {shipment_id}",
                details={"shipment_id": str(shipment_id)},
            )

        allowed = [TransactionStatus.HELD]
        if allow_disputed:
            allowed.append(TransactionStatus.DISPUTED)
        if escrow_in.status not in allowed:
            raise StateConflictError(
                f"Cannot release escrow in state {escrow_in.status}",
                details={"shipment_id": str(shipment_id), "current_state": escrow_in.status},
            )
        if escrow_in.payee_id is None:
            raise StateConflictError(
                "Escrow has no payee to settle to",
                details={"shipment_id": str(shipment_id)},
            )
        if escrow_in.derived_transactions.filter(
            kind=TransactionKind.COMMISSION,
            status__in=[TransactionStatus.PENDING, TransactionStatus.PROCESSING],
        ).exists():
            # A commission rejection still reverses the escrow-in
            raise StateConflictError(
                "Commission payment for this escrow is unresolved",
                details={"shipment_id": str(shipment_id), "current_state": escrow_in.status},
            )

        before = snapshot(escrow_in, ["status"])
        try:
            with transaction.atomic():
                escrow_in = PaymentTransaction.objects.select_for_update().get(pk=escrow_in.pk)
                if escrow_in.status not in allowed:
                    raise StateConflictError(
                        f"Cannot release escrow in state {escrow_in.status}",
                        details={"shipment_id": str(shipment_id), "current_state": escrow_in.status},
                    )
                releasable = escrow_in.amount_minor - self.refunded_total(escrow_in)
                payee_wallet = LedgerService.resolve_wallet(
                    escrow_in.payee_wallet_kind, escrow_in.payee_id, escrow_in.currency
                )

                settlement = PaymentTransaction.objects.create(
                    shipment_id=shipment_id,
                    payee_id=escrow_in.payee_id,
                    payee_wallet_kind=escrow_in.payee_wallet_kind,
                    amount_minor=releasable,
                    currency=escrow_in.currency,
                    kind=TransactionKind.SETTLEMENT,
                    escrow_wallet_id=escrow_in.escrow_wallet_id,
                    related_transaction=escrow_in,
                )
                settlement.complete_internal()
                settlement.save()

                LedgerService.record_entry(
                    RecordEntryParams(
                        debit_wallet_id=escrow_in.escrow_wallet_id,
                        credit_wallet_id=payee_wallet.id,
                        amount_minor=releasable,
                        entry_type=EntryType.SETTLEMENT,
                        idempotency_key=f"txn:{settlement.id}:{EntryType.SETTLEMENT}",
                        payment_transaction_id=settlement.id,
                        created_by=ACTOR,
                    )
                )

                escrow_in.settle()
                escrow_in.save()
        except IntegrityError:
            existing = self.get_settlement(shipment_id)
            if existing is None:
                raise
            return existing

        self.audit.log(
            escrow_in.id, "escrow_in.settled", actor_id, actor_type,
            old_values=before, new_values=snapshot(escrow_in, ["status"]),
            metadata={"settlement_id": str(settlement.id)},
        )
        self.audit.log(
            settlement.id, "settlement.completed", actor_id, actor_type,
            new_values=snapshot(settlement),
        )
        self.logger.info(
            "Escrow released",
            extra={
                "shipment_id": str(shipment_id),
                "settlement_id": str(settlement.id),
                "amount_minor": releasable,
            },
        )
        return settlement

    def note_delivery(self, shipment_id: uuid.UUID, confirmed_at: datetime) -> None:
        """Record when held funds are expected to be released, for reporting."""
        escrow_in = self.get_escrow_in(shipment_id)
        if escrow_in is None:
            return
        hold_days = self.config_store.get_int("escrow.hold_period_days")
        escrow_in.metadata = {
            **escrow_in.metadata,
            "delivered_at": confirmed_at.isoformat(),
            "hold_until": (confirmed_at + timedelta(days=hold_days)).isoformat(),
        }
        escrow_in.save(update_fields=["metadata", "updated_at"])

    # =========================================================================
    # Refund
    # =========================================================================

    def refund_escrow(
        self,
        shipment_id: uuid.UUID,
        amount_minor: int,
        refund_request: RefundRequest | None = None,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
        reason: str = "",
    ) -> PaymentTransaction:
        """
        Return part or all of a shipment's funds to the shipper.

        Raises:
            InvalidAmountError: amount_minor not positive
            StateConflictError: No funded escrow for the shipment
            AmountExceedsAvailableError: More than held/settled minus refunds
            InsufficientBalance: Settled funds already left the payee wallet
            PaymentDeclinedError: Gateway rejected the refund
        """
        actor_type = resolve_actor_type(actor_id, actor_type)
        with shipment_lock(shipment_id):
            return self._refund(
                shipment_id, amount_minor, refund_request, actor_id, actor_type, reason
            )

    def _refund(
        self,
        shipment_id: uuid.UUID,
        amount_minor: int,
        refund_request: RefundRequest | None,
        actor_id: uuid.UUID | None,
        actor_type: str,
        reason: str,
    ) -> PaymentTransaction:
        if amount_minor <= 0:
            raise InvalidAmountError(
                "Refund amount must be positive",
                details={"amount_minor": amount_minor},
            )

        escrow_in = self.get_escrow_in(shipment_id)
        if escrow_in is None or escrow_in.status not in FUNDED_ESCROW_STATUSES:
            raise StateConflictError(
                f"No funded escrow for shipment {shipment_id}",
                details={
                    "shipment_id": str(shipment_id),
                    "current_state": escrow_in.status if escrow_in else None,
                },
            )

        refund_txn = None
        if refund_request is not None:
            refund_txn = PaymentTransaction.objects.filter(
                refund_request=refund_request,
                kind=TransactionKind.REFUND,
                related_transaction=escrow_in,
                status__in=[TransactionStatus.PENDING, TransactionStatus.PROCESSING],
            ).first()

        available = escrow_in.amount_minor - self.refunded_total(escrow_in)
        if refund_txn is None and amount_minor > available:
            raise AmountExceedsAvailableError(
                requested=amount_minor,
                available=available,
                details={"shipment_id": str(shipment_id)},
            )

        settled = escrow_in.status == TransactionStatus.SETTLED
        if settled and refund_txn is None:
            self._check_payee_can_cover(escrow_in, amount_minor)

        if refund_txn is None:
            with transaction.atomic():
                refund_txn = PaymentTransaction.objects.create(
                    shipment_id=shipment_id,
                    payer_id=escrow_in.payee_id if settled else None,
                    payee_id=escrow_in.payer_id,
                    amount_minor=amount_minor,
                    currency=escrow_in.currency,
                    kind=TransactionKind.REFUND,
                    related_transaction=escrow_in,
                    refund_request=refund_request,
                    refund_reason=reason or None,
                    metadata={"source": REFUND_SOURCE_PAYEE if settled else REFUND_SOURCE_ESCROW},
                )
            self.audit.log(
                refund_txn.id, "refund.created", actor_id, actor_type,
                new_values=snapshot(refund_txn),
                metadata={"refund_request_id": str(refund_request.id) if refund_request else None},
            )
        refund_txn = self._mark_submitted(refund_txn, actor_id, actor_type)

        response = self.gateway.refund(
            self._request_for(refund_txn, provider_reference=escrow_in.provider_reference)
        )
        refund_txn = self.apply_refund_outcome(refund_txn, response, actor_id, actor_type, reason)

        if refund_txn.status == TransactionStatus.PROCESSING:
            raise GatewayTimeoutError(
                "Gateway has not resolved the refund yet",
                details={"refund_id": str(refund_txn.id)},
            )
        if refund_txn.status != TransactionStatus.COMPLETE:
            raise PaymentDeclinedError(
                response.error_message or "Refund was declined by the gateway",
                provider_code=response.error_code,
                details={"refund_id": str(refund_txn.id)},
            )

        if self.config_store.get_bool("refund.commission_refundable"):
            self._refund_commission(escrow_in, amount_minor, refund_request, actor_id, actor_type)

        self.logger.info(
            "Escrow refunded",
            extra={
                "shipment_id": str(shipment_id),
                "refund_id": str(refund_txn.id),
                "amount_minor": refund_txn.amount_minor,
            },
        )
        return refund_txn

    @staticmethod
    def _check_payee_can_cover(escrow_in: PaymentTransaction, amount_minor: int) -> None:
        payee_wallet = LedgerService.resolve_wallet(
            escrow_in.payee_wallet_kind, escrow_in.payee_id, escrow_in.currency
        )
        # Checked before calling the gateway so money never leaves without a ledger debit
        if payee_wallet.balance_minor < amount_minor:
            raise InsufficientBalance(
                wallet_id=payee_wallet.id,
                required=amount_minor,
                available=payee_wallet.balance_minor,
            )

    def _refund_commission(
        self,
        escrow_in: PaymentTransaction,
        refunded_minor: int,
        refund_request: RefundRequest | None,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> PaymentTransaction | None:
        """Return the commission share of a refund, pro rata to the net refunded."""
        commission = escrow_in.derived_transactions.filter(
            kind=TransactionKind.COMMISSION, status=TransactionStatus.COMPLETE
        ).first()
        if commission is None:
            return None

        share = (
            Decimal(commission.amount_minor) * Decimal(refunded_minor) / Decimal(escrow_in.amount_minor)
        ).quantize(Decimal(1), rounding=ROUND_HALF_EVEN)
        amount = min(int(share), commission.amount_minor - self.refunded_total(commission))
        if amount <= 0:
            return None

        with transaction.atomic():
            leg = PaymentTransaction.objects.create(
                shipment_id=escrow_in.shipment_id,
                payee_id=escrow_in.payer_id,
                amount_minor=amount,
                currency=commission.currency,
                kind=TransactionKind.REFUND,
                related_transaction=commission,
                refund_request=refund_request,
                metadata={"source": REFUND_SOURCE_COMMISSION},
            )
            leg.submit()
            leg.save()

        try:
            response = self.gateway.refund(
                self._request_for(leg, provider_reference=commission.provider_reference)
            )
        except GatewayError as exc:
            # Leg stays PROCESSING; reconciliation resolves it
            self.logger.error(
                "Commission refund could not reach the gateway",
                extra={"refund_id": str(leg.id), "error_code": exc.error_code},
                exc_info=True,
            )
            self.audit.log(
                leg.id, "commission_refund.gateway_error", actor_id, actor_type,
                metadata={"error_code": exc.error_code},
            )
            return leg

        return self.apply_refund_outcome(leg, response, actor_id, actor_type)

    # =========================================================================
    # Disputes
    # =========================================================================

    def open_dispute(
        self,
        shipment_id: uuid.UUID,
        refund_request: RefundRequest,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
    ) -> PaymentTransaction | None:
        """
        Freeze a held escrow while a dispute is adjudicated.

        Moves the escrow-in HELD -> DISPUTED and records a DISPUTE_HOLD
        marker for the frozen amount. Settled escrows are not frozen; a
        refund approved later is paid from the payee's wallet.
        """
        actor_type = resolve_actor_type(actor_id, actor_type)
        with shipment_lock(shipment_id):
            escrow_in = self.get_escrow_in(shipment_id)
            if escrow_in is None or escrow_in.status != TransactionStatus.HELD:
                return None
            held_minor = self.held_amount(shipment_id)

            with transaction.atomic():
                escrow_in = PaymentTransaction.objects.select_for_update().get(pk=escrow_in.pk)
                escrow_in.dispute()
                escrow_in.save()
                marker = PaymentTransaction.objects.create(
                    shipment_id=shipment_id,
                    payer_id=escrow_in.payer_id,
                    payee_id=escrow_in.payee_id,
                    amount_minor=held_minor,
                    currency=escrow_in.currency,
                    kind=TransactionKind.DISPUTE_HOLD,
                    related_transaction=escrow_in,
                    refund_request=refund_request,
                )
                marker.hold_internal()
                marker.save()

        self.audit.log(
            escrow_in.id, "escrow_in.disputed", actor_id, actor_type,
            old_values={"status": TransactionStatus.HELD},
            new_values=snapshot(escrow_in, ["status"]),
            metadata={"refund_request_id": str(refund_request.id), "dispute_hold_id": str(marker.id)},
        )
        return marker

    def resolve_dispute(
        self,
        shipment_id: uuid.UUID,
        refund_request: RefundRequest,
        refund_minor: int = 0,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
    ) -> PaymentTransaction | None:
        """
        Close a dispute.

        refund_minor == 0 resolves in the payee's favour (escrow released).
        Otherwise refund_minor goes back to the shipper and any remainder
        is released to the payee. Returns the refund leg, if any.
        """
        actor_type = resolve_actor_type(actor_id, actor_type)
        with shipment_lock(shipment_id):
            escrow_in = self.get_escrow_in(shipment_id)
            refund_txn = None

            if refund_minor > 0:
                refund_txn = self._refund(
                    shipment_id, refund_minor, refund_request, actor_id, actor_type,
                    reason=refund_request.reason,
                )
                escrow_in = PaymentTransaction.objects.get(pk=escrow_in.pk)

            if escrow_in is not None and escrow_in.status == TransactionStatus.DISPUTED:
                self._release(shipment_id, actor_id, actor_type, allow_disputed=True)

            marker = PaymentTransaction.objects.filter(
                refund_request=refund_request,
                kind=TransactionKind.DISPUTE_HOLD,
                status=TransactionStatus.HELD,
            ).first()
            if marker is not None:
                with transaction.atomic():
                    marker = PaymentTransaction.objects.select_for_update().get(pk=marker.pk)
                    if refund_minor > 0:
                        marker.mark_refunded(refund_request.reason)
                    else:
                        marker.settle()
                    marker.save()
                self.audit.log(
                    marker.id, f"dispute_hold.{marker.status}", actor_id, actor_type,
                    new_values=snapshot(marker, ["status"]),
                )
            return refund_txn

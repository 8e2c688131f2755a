"""
Reconciliation for transactions stuck in PROCESSING.

A gateway timeout leaves a transaction PROCESSING: the charge may or may
not have happened. This pass asks the gateway for the real outcome and
applies the same success or failure path the live call would have taken.

Resolution per transaction:
    - Gateway reports success  -> HELD/COMPLETE with ledger entries
    - Gateway reports rejection -> FAILED (paired leg cancelled/unwound)
    - Still unknown past reconciliation.processing_deadline_minutes -> FAILED
    - Still unknown within the deadline -> left alone for the next run

Success is never inferred from a timeout.

It also checks every wallet's stored balance against its entry history.

Usage:
    service = ReconciliationService(escrow=escrow, billing=billing, refunds=refunds)
    run = service.reconcile_processing()
    run.resolved, run.failed, run.pending
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from django.utils import timezone

from core.services import BaseService

from payments.adapters import GatewayResponse
from payments.exceptions import GatewayError, LockAcquisitionError, PaymentError
from payments.ledger import Wallet
from payments.locks import DistributedLock, shipment_lock, subscription_lock
from payments.models import PaymentTransaction
from payments.state_machines import ActorType, TransactionKind, TransactionStatus

from .escrow import EscrowManager
from .refund import RefundManager
from .subscription import SubscriptionBillingManager

# =============================================================================
# Constants
# =============================================================================

DEFAULT_GRACE_MINUTES = 5
DEFAULT_MAX_RECORDS = 500

RUN_LOCK_KEY = "reconciliation:run"
RUN_LOCK_TTL = 3600
RUN_LOCK_TIMEOUT = 5.0

DEADLINE_REASON = "Gateway outcome unknown past reconciliation deadline"


# =============================================================================
# Data Types
# =============================================================================


class ReconciliationOutcome(str, Enum):
    """What the pass did with one transaction."""

    RESOLVED_SUCCESS = "resolved_success"
    RESOLVED_FAILURE = "resolved_failure"
    DEADLINE_FAILED = "deadline_failed"
    STILL_PENDING = "still_pending"
    ERROR = "error"


@dataclass
class TransactionReconciliation:
    transaction_id: uuid.UUID
    kind: str
    outcome: ReconciliationOutcome
    status: str
    error: str | None = None


@dataclass
class WalletDrift:
    wallet_id: uuid.UUID
    stored_minor: int
    computed_minor: int

    @property
    def difference_minor(self) -> int:
        return self.stored_minor - self.computed_minor


@dataclass
class ReconciliationRunResult:
    """Summary of one reconciliation pass."""

    started_at: datetime
    completed_at: datetime | None = None
    checked: int = 0
    results: list[TransactionReconciliation] = field(default_factory=list)
    wallet_drift: list[WalletDrift] = field(default_factory=list)

    def _count(self, *outcomes: ReconciliationOutcome) -> int:
        return sum(1 for result in self.results if result.outcome in outcomes)

    @property
    def resolved(self) -> int:
        return self._count(ReconciliationOutcome.RESOLVED_SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(
            ReconciliationOutcome.RESOLVED_FAILURE, ReconciliationOutcome.DEADLINE_FAILED
        )

    @property
    def pending(self) -> int:
        return self._count(ReconciliationOutcome.STILL_PENDING)

    @property
    def errors(self) -> int:
        return self._count(ReconciliationOutcome.ERROR)


# =============================================================================
# Reconciliation Service
# =============================================================================


class ReconciliationService(BaseService):
    """
    Resolves PROCESSING transactions against the gateway.

    Concurrency Safety:
        - Global run lock prevents concurrent reconciliation runs
        - Each transaction is resolved under its shipment or subscription lock
        - Outcome appliers re-check the status under a row lock, so a
          transaction resolved meanwhile by a live call is left untouched
    """

    def __init__(
        self,
        escrow: EscrowManager,
        billing: SubscriptionBillingManager,
        refunds: RefundManager,
    ) -> None:
        self.escrow = escrow
        self.billing = billing
        self.refunds = refunds
        self.gateway = escrow.gateway
        self.config_store = escrow.config_store
        self.logger = self.get_logger()

    # =========================================================================
    # Public API
    # =========================================================================

    def reconcile_processing(
        self,
        now: datetime | None = None,
        grace_minutes: int = DEFAULT_GRACE_MINUTES,
        max_records: int = DEFAULT_MAX_RECORDS,
    ) -> ReconciliationRunResult:
        """
        Run one reconciliation pass.

        Raises:
            LockAcquisitionError: Another run is in progress
        """
        now = now or timezone.now()
        lock = DistributedLock(RUN_LOCK_KEY, ttl=RUN_LOCK_TTL, timeout=RUN_LOCK_TIMEOUT)
        try:
            lock.acquire()
        except LockAcquisitionError:
            self.logger.warning(
                "Another reconciliation run is in progress",
                extra={"lock_key": RUN_LOCK_KEY},
            )
            raise

        try:
            return self._run(now, grace_minutes, max_records)
        finally:
            lock.release()

    def reconcile_transaction(
        self,
        txn: PaymentTransaction,
        now: datetime | None = None,
    ) -> TransactionReconciliation:
        """Resolve a single PROCESSING transaction."""
        now = now or timezone.now()
        deadline_minutes = self.config_store.get_int("reconciliation.processing_deadline_minutes")
        past_deadline = txn.created_at <= now - timedelta(minutes=deadline_minutes)

        try:
            response = self.gateway.get_status(txn.id, txn.provider_reference)
        except GatewayError as exc:
            self.logger.warning(
                "Gateway status check failed",
                extra={"transaction_id": str(txn.id), "error_code": exc.error_code},
            )
            if past_deadline:
                return self._fail_past_deadline(txn, now)
            return self._result(txn, ReconciliationOutcome.ERROR, error=exc.message)

        if response.pending:
            if past_deadline:
                return self._fail_past_deadline(txn, now)
            return self._result(txn, ReconciliationOutcome.STILL_PENDING)

        try:
            txn = self._apply(txn, response, now)
        except PaymentError as exc:
            self.logger.error(
                "Failed to apply reconciled outcome",
                extra={"transaction_id": str(txn.id), "error_code": exc.error_code},
                exc_info=True,
            )
            return self._result(txn, ReconciliationOutcome.ERROR, error=exc.message)

        outcome = (
            ReconciliationOutcome.RESOLVED_SUCCESS
            if response.success
            else ReconciliationOutcome.RESOLVED_FAILURE
        )
        self.logger.info(
            "Transaction reconciled",
            extra={"transaction_id": str(txn.id), "kind": txn.kind, "status": txn.status},
        )
        return self._result(txn, outcome)

    def check_wallet_balances(self) -> list[WalletDrift]:
        """Wallets whose stored balance differs from credits minus debits."""
        drift = []
        for wallet in Wallet.objects.all():
            computed = wallet.computed_balance()
            if computed != wallet.balance_minor:
                self.logger.critical(
                    "Wallet balance drift detected",
                    extra={
                        "wallet_id": str(wallet.id),
                        "stored_minor": wallet.balance_minor,
                        "computed_minor": computed,
                    },
                )
                drift.append(
                    WalletDrift(
                        wallet_id=wallet.id,
                        stored_minor=wallet.balance_minor,
                        computed_minor=computed,
                    )
                )
        return drift

    # =========================================================================
    # Internal
    # =========================================================================

    def _run(self, now: datetime, grace_minutes: int, max_records: int) -> ReconciliationRunResult:
        run = ReconciliationRunResult(started_at=timezone.now())
        cutoff = now - timedelta(minutes=grace_minutes)
        stuck = PaymentTransaction.objects.filter(
            status=TransactionStatus.PROCESSING,
            updated_at__lte=cutoff,
        ).order_by("created_at")[:max_records]

        self.logger.info(
            "Starting reconciliation run",
            extra={"cutoff": cutoff.isoformat(), "max_records": max_records},
        )
        for txn in stuck:
            run.checked += 1
            try:
                run.results.append(self.reconcile_transaction(txn, now))
            except LockAcquisitionError as exc:
                # A live operation holds the lock; the next run picks it up
                run.results.append(self._result(txn, ReconciliationOutcome.ERROR, error=exc.message))

        run.wallet_drift = self.check_wallet_balances()
        run.completed_at = timezone.now()
        self.logger.info(
            "Reconciliation run complete",
            extra={
                "checked": run.checked,
                "resolved": run.resolved,
                "failed": run.failed,
                "pending": run.pending,
                "errors": run.errors,
                "wallet_drift": len(run.wallet_drift),
            },
        )
        return run

    def _apply(
        self,
        txn: PaymentTransaction,
        response: GatewayResponse,
        now: datetime,
    ) -> PaymentTransaction:
        if txn.kind == TransactionKind.SUBSCRIPTION:
            with subscription_lock(txn.subscription_id):
                return self.billing.apply_billing_outcome(txn, response, now)

        with shipment_lock(txn.shipment_id):
            if txn.kind == TransactionKind.REFUND:
                txn = self.escrow.apply_refund_outcome(txn, response)
            else:
                txn = self.escrow.apply_gateway_outcome(txn, response)

        self._follow_up(txn)
        return txn

    def _follow_up(self, txn: PaymentTransaction) -> None:
        if txn.kind in (TransactionKind.ESCROW_IN, TransactionKind.COMMISSION):
            try:
                self.escrow.resume_shipment(txn.shipment_id)
            except GatewayError as exc:
                self.logger.warning(
                    "Shipment escrow follow-up failed",
                    extra={"shipment_id": str(txn.shipment_id), "error_code": exc.error_code},
                )
        elif txn.kind == TransactionKind.REFUND:
            self.refunds.finalize_from_transaction(txn)

    def _fail_past_deadline(self, txn: PaymentTransaction, now: datetime) -> TransactionReconciliation:
        if txn.kind == TransactionKind.SUBSCRIPTION:
            with subscription_lock(txn.subscription_id):
                txn = self.billing.record_failure(
                    txn, DEADLINE_REASON, now, actor_type=ActorType.SYSTEM
                )
        else:
            with shipment_lock(txn.shipment_id):
                txn = self.escrow.abandon_transaction(txn, DEADLINE_REASON)
            if txn.kind in (TransactionKind.ESCROW_IN, TransactionKind.COMMISSION):
                self._follow_up(txn)

        self.logger.error(
            "Transaction failed past reconciliation deadline",
            extra={"transaction_id": str(txn.id), "kind": txn.kind},
        )
        return self._result(txn, ReconciliationOutcome.DEADLINE_FAILED)

    @staticmethod
    def _result(
        txn: PaymentTransaction,
        outcome: ReconciliationOutcome,
        error: str | None = None,
    ) -> TransactionReconciliation:
        return TransactionReconciliation(
            transaction_id=txn.id,
            kind=txn.kind,
            outcome=outcome,
            status=txn.status,
            error=error,
        )

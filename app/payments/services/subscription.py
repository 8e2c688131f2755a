"""
Subscription billing: recurring fleet fees, grace periods and suspension.

Each billing attempt creates one SUBSCRIPTION PaymentTransaction and
charges the fleet through the gateway. The outcome moves the
subscription through its state machine:

    success  -> ACTIVE, period advanced by one cycle
    decline  -> GRACE (first failure) -> SUSPENDED (still failing after
                grace_period_end)
    timeout  -> transaction left PROCESSING for reconciliation

Usage:
    billing = SubscriptionBillingManager(gateway=get_gateway())
    subscription = billing.create_fleet_subscription(
        fleet_id, SubscriptionTier.PREMIUM, BillingCycle.MONTHLY, 499_900
    )
    billing.process_subscription_payment(subscription.id)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from core.services import BaseService

from payments.adapters import GatewayRequest, GatewayResponse, PaymentGateway, get_gateway
from payments.exceptions import (
    DuplicateRequestError,
    GatewayError,
    GatewayTimeoutError,
    InvalidAmountError,
    PaymentNotFoundError,
    StateConflictError,
)
from payments.ledger import EntryType, LedgerService, RecordEntryParams, WalletKind
from payments.locks import subscription_lock
from payments.models import FleetSubscription, PaymentTransaction, add_billing_cycle
from payments.models.subscription import LIVE_SUBSCRIPTION_STATUSES
from payments.state_machines import (
    ActorType,
    BillingCycle,
    FeeBasis,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionKind,
    TransactionStatus,
)

from .audit import AuditLogger, snapshot
from .config_store import ConfigStore
from .escrow import resolve_actor_type

ACTOR = "subscription_billing"

BILLABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE,
    SubscriptionStatus.SUSPENDED,
)

SUBSCRIPTION_FIELDS = [
    "status",
    "current_period_start",
    "current_period_end",
    "next_billing_date",
    "grace_period_end",
    "failed_payment_count",
]


class SubscriptionBillingManager(BaseService):
    """Creates, bills and cancels fleet subscriptions."""

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        config_store: ConfigStore | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.gateway = gateway or get_gateway()
        self.config_store = config_store or ConfigStore()
        self.audit = audit or AuditLogger()
        self.logger = self.get_logger()

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def get_subscription(subscription_id: uuid.UUID) -> FleetSubscription:
        try:
            return FleetSubscription.objects.get(pk=subscription_id)
        except FleetSubscription.DoesNotExist:
            raise PaymentNotFoundError(
                f"Subscription {subscription_id} not found",
                details={"subscription_id": str(subscription_id)},
            )

    @staticmethod
    def live_subscription_for(fleet_id: uuid.UUID) -> FleetSubscription | None:
        return FleetSubscription.objects.filter(
            fleet_id=fleet_id, status__in=LIVE_SUBSCRIPTION_STATUSES
        ).first()

    @staticmethod
    def due_subscriptions(now: datetime | None = None):
        """Auto-renewing active/grace subscriptions whose billing date has passed."""
        now = now or timezone.now()
        return FleetSubscription.objects.filter(
            status__in=[SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE],
            next_billing_date__lte=now,
            auto_renew=True,
        ).order_by("next_billing_date")

    @staticmethod
    def lapsed_subscriptions(now: datetime | None = None):
        """Subscriptions past period end that will not renew."""
        now = now or timezone.now()
        return FleetSubscription.objects.filter(
            status__in=[SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE],
            current_period_end__lte=now,
            auto_renew=False,
        )

    # =========================================================================
    # Create / Cancel
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
        actor_type: str | None = None,
        currency: str = "inr",
    ) -> FleetSubscription:
        """
        Start a subscription whose first period begins now.

        Raises:
            InvalidAmountError: fee_minor not positive
            DuplicateRequestError: Fleet already has a live subscription
        """
        if isinstance(fee_minor, bool) or not isinstance(fee_minor, int) or fee_minor <= 0:
            raise InvalidAmountError(
                "Subscription fee must be a positive integer in minor units",
                details={"fee_minor": fee_minor},
            )
        if vehicle_count < 1:
            raise InvalidAmountError(
                "Vehicle count must be at least one",
                details={"vehicle_count": vehicle_count},
            )

        existing = self.live_subscription_for(fleet_id)
        if existing is not None:
            raise DuplicateRequestError(
                "Fleet already has a live subscription",
                details={"fleet_id": str(fleet_id), "subscription_id": str(existing.id)},
            )

        now = timezone.now()
        period_end = add_billing_cycle(now, cycle)
        try:
            with transaction.atomic():
                subscription = FleetSubscription.objects.create(
                    fleet_id=fleet_id,
                    tier=tier,
                    billing_cycle=cycle,
                    fee_minor=fee_minor,
                    currency=currency,
                    fee_basis=fee_basis,
                    vehicle_count=vehicle_count,
                    auto_renew=auto_renew,
                    billing_anchor_day=now.day,
                    current_period_start=now,
                    current_period_end=period_end,
                    next_billing_date=period_end,
                )
        except IntegrityError:
            raise DuplicateRequestError(
                "Fleet already has a live subscription",
                details={"fleet_id": str(fleet_id)},
            )

        self.audit.log(
            subscription.id, "subscription.created", actor_id,
            resolve_actor_type(actor_id, actor_type),
            new_values=snapshot(subscription),
            entity_type="fleet_subscription",
        )
        self.logger.info(
            "Fleet subscription created",
            extra={
                "subscription_id": str(subscription.id),
                "fleet_id": str(fleet_id),
                "tier": tier,
                "next_billing_date": period_end.isoformat(),
            },
        )
        return subscription

    def cancel_subscription(
        self,
        subscription_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        reason: str = "",
        actor_type: str | None = None,
    ) -> FleetSubscription:
        """
        Cancel a live subscription. Cancelled is terminal.

        Raises:
            PaymentNotFoundError: Unknown subscription
            StateConflictError: Already cancelled or expired
        """
        with subscription_lock(subscription_id):
            with transaction.atomic():
                subscription = self._locked(subscription_id)
                if not subscription.is_live:
                    raise StateConflictError(
                        f"Cannot cancel subscription in state {subscription.status}",
                        details={
                            "subscription_id": str(subscription_id),
                            "current_state": subscription.status,
                        },
                    )
                before = snapshot(subscription, SUBSCRIPTION_FIELDS)
                subscription.cancel(reason)
                subscription.save()

        self.audit.log(
            subscription.id, "subscription.cancelled", actor_id,
            resolve_actor_type(actor_id, actor_type),
            old_values=before,
            new_values=snapshot(subscription, SUBSCRIPTION_FIELDS),
            metadata={"reason": reason},
            entity_type="fleet_subscription",
        )
        return subscription

    def expire_lapsed(self, now: datetime | None = None) -> int:
        """Expire subscriptions with auto-renew off whose period has ended."""
        now = now or timezone.now()
        expired = 0
        for subscription in self.lapsed_subscriptions(now):
            with transaction.atomic():
                locked = self._locked(subscription.id)
                if locked.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE):
                    continue
                before = snapshot(locked, SUBSCRIPTION_FIELDS)
                locked.expire()
                locked.save()
            self.audit.log(
                locked.id, "subscription.expired", None, ActorType.SCHEDULER,
                old_values=before,
                new_values=snapshot(locked, SUBSCRIPTION_FIELDS),
                entity_type="fleet_subscription",
            )
            expired += 1
        return expired

    @staticmethod
    def _locked(subscription_id: uuid.UUID) -> FleetSubscription:
        try:
            return FleetSubscription.objects.select_for_update().get(pk=subscription_id)
        except FleetSubscription.DoesNotExist:
            raise PaymentNotFoundError(
                f"Subscription {subscription_id} not found",
                details={"subscription_id": str(subscription_id)},
            )

    # =========================================================================
    # Billing
    # =========================================================================

    def process_subscription_payment(
        self,
        subscription_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
        now: datetime | None = None,
    ) -> PaymentTransaction | None:
        """
        Bill one cycle if the subscription is due.

        Returns the SUBSCRIPTION transaction (COMPLETE or FAILED), or None
        when nothing was due. A decline is not raised: it is recorded on
        the transaction and reflected in the subscription status.

        Raises:
            PaymentNotFoundError: Unknown subscription
            StateConflictError: Cancelled or expired subscription
            GatewayTimeoutError / GatewayUnavailableError: transaction left
                PROCESSING; reconciliation or a retry resolves it
        """
        with subscription_lock(subscription_id):
            subscription = self.get_subscription(subscription_id)
            return self._bill(
                subscription,
                actor_type or (ActorType.USER if actor_id else ActorType.SCHEDULER),
                actor_id,
                now or timezone.now(),
                force=False,
            )

    def reactivate_subscription(
        self,
        subscription_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
        actor_type: str | None = None,
    ) -> PaymentTransaction:
        """
        Bill a SUSPENDED subscription immediately; success makes it ACTIVE.

        Raises:
            StateConflictError: Subscription is not suspended
        """
        with subscription_lock(subscription_id):
            subscription = self.get_subscription(subscription_id)
            if subscription.status != SubscriptionStatus.SUSPENDED:
                raise StateConflictError(
                    f"Cannot reactivate subscription in state {subscription.status}",
                    details={
                        "subscription_id": str(subscription_id),
                        "current_state": subscription.status,
                    },
                )
            return self._bill(
                subscription,
                resolve_actor_type(actor_id, actor_type),
                actor_id,
                timezone.now(),
                force=True,
            )

    def _bill(
        self,
        subscription: FleetSubscription,
        actor_type: str,
        actor_id: uuid.UUID | None,
        now: datetime,
        force: bool,
    ) -> PaymentTransaction | None:
        if subscription.status not in BILLABLE_STATUSES:
            raise StateConflictError(
                f"Cannot bill subscription in state {subscription.status}",
                details={
                    "subscription_id": str(subscription.id),
                    "current_state": subscription.status,
                },
            )

        txn = subscription.transactions.filter(
            kind=TransactionKind.SUBSCRIPTION,
            status__in=[TransactionStatus.PENDING, TransactionStatus.PROCESSING],
        ).first()

        if txn is None:
            if not force and not subscription.is_due(now):
                self.logger.debug(
                    "Subscription not due",
                    extra={"subscription_id": str(subscription.id)},
                )
                return None
            txn = PaymentTransaction.objects.create(
                payer_id=subscription.fleet_id,
                amount_minor=subscription.billed_amount_minor,
                currency=subscription.currency,
                kind=TransactionKind.SUBSCRIPTION,
                subscription=subscription,
                metadata={
                    "period_start": subscription.current_period_end.isoformat(),
                    "tier": subscription.tier,
                },
            )

        if txn.status == TransactionStatus.PENDING:
            with transaction.atomic():
                txn = PaymentTransaction.objects.select_for_update().get(pk=txn.pk)
                txn.submit()
                txn.save()
            self.audit.log(
                txn.id, "subscription_payment.submitted", actor_id, actor_type,
                new_values=snapshot(txn, ["status", "amount_minor", "subscription"]),
            )

        request = GatewayRequest(
            transaction_id=txn.id,
            amount_minor=txn.amount_minor,
            currency=txn.currency,
            payer_reference=str(subscription.fleet_id),
            description=f"{subscription.get_tier_display()} subscription",
            metadata={"kind": txn.kind, "subscription_id": str(subscription.id)},
        )
        try:
            response = self.gateway.charge(request)
        except GatewayError as exc:
            self.logger.warning(
                "Subscription payment left processing after gateway error",
                extra={"transaction_id": str(txn.id), "error_code": exc.error_code},
            )
            raise

        txn = self.apply_billing_outcome(txn, response, now, actor_id, actor_type)
        if txn.status == TransactionStatus.PROCESSING:
            raise GatewayTimeoutError(
                "Gateway has not resolved the subscription payment yet",
                details={"transaction_id": str(txn.id)},
            )
        return txn

    def apply_billing_outcome(
        self,
        txn: PaymentTransaction,
        response: GatewayResponse,
        now: datetime | None = None,
        actor_id: uuid.UUID | None = None,
        actor_type: str = ActorType.SYSTEM,
    ) -> PaymentTransaction:
        """
        Record a gateway answer for a PROCESSING subscription payment.

        Success completes the transaction, credits the revenue wallet and
        renews the subscription in one database transaction. A decline
        fails the transaction and moves the subscription towards
        suspension. Pending answers change nothing.
        """
        if response.pending:
            return txn

        if response.success:
            return self._record_success(txn, response, actor_id, actor_type)
        return self.record_failure(
            txn,
            response.error_message or response.error_code or "Declined by gateway",
            now or timezone.now(),
            actor_id,
            actor_type,
            raw_response=response.raw_response,
        )

    def _record_success(
        self,
        txn: PaymentTransaction,
        response: GatewayResponse,
        actor_id: uuid.UUID | None,
        actor_type: str,
    ) -> PaymentTransaction:
        with transaction.atomic():
            txn = PaymentTransaction.objects.select_for_update().get(pk=txn.pk)
            if txn.status != TransactionStatus.PROCESSING:
                return txn
            subscription = self._locked(txn.subscription_id)
            before = snapshot(subscription, SUBSCRIPTION_FIELDS)

            txn.provider_reference = response.provider_txn_id
            txn.provider_response = response.raw_response
            txn.mark_complete()
            txn.save()

            clearing = LedgerService.resolve_wallet(
                WalletKind.EXTERNAL_CLEARING, currency=txn.currency
            )
            revenue = LedgerService.resolve_wallet(
                WalletKind.PLATFORM_COMMISSION, currency=txn.currency
            )
            LedgerService.record_entry(
                RecordEntryParams(
                    debit_wallet_id=clearing.id,
                    credit_wallet_id=revenue.id,
                    amount_minor=txn.amount_minor,
                    entry_type=EntryType.SUBSCRIPTION_FEE,
                    idempotency_key=f"txn:{txn.id}:{EntryType.SUBSCRIPTION_FEE}",
                    payment_transaction_id=txn.id,
                    created_by=ACTOR,
                )
            )

            if subscription.status in BILLABLE_STATUSES:
                subscription.renew()
                subscription.save()

        self.audit.log(
            txn.id, "subscription_payment.completed", actor_id, actor_type,
            new_values=snapshot(txn, ["status", "provider_reference"]),
        )
        self.audit.log(
            subscription.id, "subscription.renewed", actor_id, actor_type,
            old_values=before,
            new_values=snapshot(subscription, SUBSCRIPTION_FIELDS),
            metadata={"transaction_id": str(txn.id)},
            entity_type="fleet_subscription",
        )
        self.logger.info(
            "Subscription renewed",
            extra={
                "subscription_id": str(subscription.id),
                "transaction_id": str(txn.id),
                "next_billing_date": subscription.next_billing_date.isoformat(),
            },
        )
        return txn

    def record_failure(
        self,
        txn: PaymentTransaction,
        reason: str,
        now: datetime,
        actor_id: uuid.UUID | None = None,
        actor_type: str = ActorType.SYSTEM,
        raw_response: dict | None = None,
    ) -> PaymentTransaction:
        """
        Fail a subscription payment and apply the grace/suspension rules.

        ACTIVE enters GRACE with grace_period_end = now + grace days. GRACE
        is suspended once now >= grace_period_end, otherwise it stays in
        GRACE with its original deadline.
        """
        grace_days = self.config_store.get_int("subscription.grace_period_days")

        with transaction.atomic():
            txn = PaymentTransaction.objects.select_for_update().get(pk=txn.pk)
            if txn.status not in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
                return txn
            subscription = self._locked(txn.subscription_id)
            before = snapshot(subscription, SUBSCRIPTION_FIELDS)

            if raw_response is not None:
                txn.provider_response = raw_response
            txn.fail(reason)
            txn.save()

            if subscription.status == SubscriptionStatus.ACTIVE:
                subscription.enter_grace(now + timedelta(days=grace_days))
            elif subscription.status == SubscriptionStatus.GRACE and (
                subscription.grace_period_end is None or now >= subscription.grace_period_end
            ):
                subscription.suspend()
            else:
                subscription.failed_payment_count += 1
            subscription.save()

        self.audit.log(
            txn.id, "subscription_payment.failed", actor_id, actor_type,
            new_values=snapshot(txn, ["status", "failure_reason"]),
        )
        self.audit.log(
            subscription.id, f"subscription.{subscription.status}", actor_id, actor_type,
            old_values=before,
            new_values=snapshot(subscription, SUBSCRIPTION_FIELDS),
            metadata={"transaction_id": str(txn.id), "reason": reason},
            entity_type="fleet_subscription",
        )
        self.logger.warning(
            "Subscription payment failed",
            extra={
                "subscription_id": str(subscription.id),
                "transaction_id": str(txn.id),
                "status": subscription.status,
                "failed_payment_count": subscription.failed_payment_count,
            },
        )
        return txn

    @staticmethod
    def suspended_fleet(fleet_id: uuid.UUID) -> bool:
        return FleetSubscription.objects.filter(
            fleet_id=fleet_id, status=SubscriptionStatus.SUSPENDED
        ).exists()

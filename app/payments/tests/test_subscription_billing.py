"""
Integration tests for SubscriptionBillingManager.

Time-dependent behaviour (due dates, grace deadlines) is driven with
freezegun so the grace and suspension boundaries are exact.
"""

import uuid
from datetime import datetime, timedelta, timezone as dt_timezone

import pytest
from django.utils import timezone
from freezegun import freeze_time

from payments.exceptions import (
    DuplicateRequestError,
    GatewayTimeoutError,
    InvalidAmountError,
    PaymentNotFoundError,
    StateConflictError,
)
from payments.ledger import EntryType, LedgerService, WalletKind
from payments.ledger.models import LedgerEntry
from payments.models import FleetSubscription, PaymentTransaction, add_billing_cycle
from payments.services import AuditLogger
from payments.state_machines import (
    BillingCycle,
    FeeBasis,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionKind,
    TransactionStatus,
)


def reload(subscription):
    return FleetSubscription.objects.get(pk=subscription.pk)


def make_due(subscription, due_at=None):
    due_at = due_at or timezone.now() - timedelta(hours=1)
    FleetSubscription.objects.filter(pk=subscription.pk).update(
        current_period_start=due_at - timedelta(days=30),
        current_period_end=due_at,
        next_billing_date=due_at,
    )
    return reload(subscription)


class TestCreateFleetSubscription:
    def test_first_period_starts_now(self, billing, fleet_id):
        with freeze_time("2026-01-31 10:00:00"):
            subscription = billing.create_fleet_subscription(
                fleet_id, SubscriptionTier.PREMIUM, BillingCycle.MONTHLY, 499_900
            )

        expected_end = datetime(2026, 2, 28, 10, 0, tzinfo=dt_timezone.utc)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.tier == SubscriptionTier.PREMIUM
        assert subscription.current_period_end == expected_end
        assert subscription.next_billing_date == expected_end
        assert subscription.failed_payment_count == 0

    def test_audited(self, fleet_subscription):
        actions = [entry.action for entry in AuditLogger().history(fleet_subscription.id)]

        assert actions == ["subscription.created"]

    def test_one_live_subscription_per_fleet(self, billing, fleet_subscription, fleet_id):
        with pytest.raises(DuplicateRequestError):
            billing.create_fleet_subscription(
                fleet_id, SubscriptionTier.ENTERPRISE, BillingCycle.YEARLY, 5_000_000
            )

    @pytest.mark.parametrize(("fee", "vehicles"), [(0, 1), (-100, 1), (100, 0)])
    def test_rejects_invalid_plan(self, billing, fleet_id, fee, vehicles):
        with pytest.raises(InvalidAmountError):
            billing.create_fleet_subscription(
                fleet_id,
                SubscriptionTier.BASIC,
                BillingCycle.MONTHLY,
                fee,
                fee_basis=FeeBasis.PER_VEHICLE,
                vehicle_count=vehicles,
            )


class TestProcessSubscriptionPayment:
    def test_not_due_returns_none(self, billing, fleet_subscription, fake_gateway):
        assert billing.process_subscription_payment(fleet_subscription.id) is None
        assert fake_gateway.calls == []

    def test_success_renews_for_one_cycle(self, billing, due_subscription, fake_gateway, fleet_id):
        old_end = due_subscription.current_period_end

        txn = billing.process_subscription_payment(due_subscription.id)

        subscription = reload(due_subscription)
        assert txn.kind == TransactionKind.SUBSCRIPTION
        assert txn.status == TransactionStatus.COMPLETE
        assert txn.amount_minor == 500_000
        assert txn.payer_id == fleet_id
        assert fake_gateway.calls[0][1].payer_reference == str(fleet_id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == old_end
        assert subscription.next_billing_date == add_billing_cycle(old_end, BillingCycle.MONTHLY)
        assert subscription.next_billing_date == subscription.current_period_end

    def test_success_credits_revenue_wallet(self, billing, due_subscription):
        txn = billing.process_subscription_payment(due_subscription.id)

        revenue = LedgerService.get_wallet_by_owner(WalletKind.PLATFORM_COMMISSION, None)
        assert revenue.balance_minor == 500_000
        assert LedgerEntry.objects.get(
            payment_transaction_id=txn.id
        ).entry_type == EntryType.SUBSCRIPTION_FEE

    def test_second_run_same_day_bills_nothing(self, billing, due_subscription, fake_gateway):
        billing.process_subscription_payment(due_subscription.id)

        assert billing.process_subscription_payment(due_subscription.id) is None
        assert len(fake_gateway.calls) == 1

    def test_per_vehicle_fee(self, billing, fleet_id, fake_gateway):
        subscription = billing.create_fleet_subscription(
            fleet_id,
            SubscriptionTier.BASIC,
            BillingCycle.QUARTERLY,
            50_000,
            fee_basis=FeeBasis.PER_VEHICLE,
            vehicle_count=12,
        )
        subscription = make_due(subscription)

        txn = billing.process_subscription_payment(subscription.id)

        assert txn.amount_minor == 600_000

    def test_first_decline_enters_grace(self, billing, due_subscription, fake_gateway, fleet_id):
        fake_gateway.decline_payer(str(fleet_id))
        now = timezone.now()

        txn = billing.process_subscription_payment(due_subscription.id, now=now)

        subscription = reload(due_subscription)
        assert txn.status == TransactionStatus.FAILED
        assert subscription.status == SubscriptionStatus.GRACE
        assert subscription.grace_period_end == now + timedelta(days=7)
        assert subscription.failed_payment_count == 1
        assert subscription.next_billing_date == due_subscription.next_billing_date

    def test_grace_period_comes_from_config(
        self, billing, due_subscription, fake_gateway, fleet_id, config_store
    ):
        config_store.set("subscription.grace_period_days", 3)
        fake_gateway.decline_payer(str(fleet_id))
        now = timezone.now()

        billing.process_subscription_payment(due_subscription.id, now=now)

        assert reload(due_subscription).grace_period_end == now + timedelta(days=3)

    def test_timeout_leaves_payment_processing(self, billing, due_subscription, fake_gateway):
        fake_gateway.queue_timeout()

        with pytest.raises(GatewayTimeoutError):
            billing.process_subscription_payment(due_subscription.id)

        txn = PaymentTransaction.objects.get(kind=TransactionKind.SUBSCRIPTION)
        assert txn.status == TransactionStatus.PROCESSING
        assert reload(due_subscription).status == SubscriptionStatus.ACTIVE

    def test_retry_after_timeout_reuses_transaction(self, billing, due_subscription, fake_gateway):
        fake_gateway.queue_timeout()
        with pytest.raises(GatewayTimeoutError):
            billing.process_subscription_payment(due_subscription.id)

        txn = billing.process_subscription_payment(due_subscription.id)

        assert PaymentTransaction.objects.filter(kind=TransactionKind.SUBSCRIPTION).count() == 1
        assert txn.status == TransactionStatus.COMPLETE
        assert fake_gateway.calls[0][1].transaction_id == fake_gateway.calls[1][1].transaction_id

    def test_pending_answer_raises_timeout(self, billing, due_subscription, fake_gateway):
        fake_gateway.queue_pending()

        with pytest.raises(GatewayTimeoutError):
            billing.process_subscription_payment(due_subscription.id)

    def test_unknown_subscription(self, billing):
        with pytest.raises(PaymentNotFoundError):
            billing.process_subscription_payment(uuid.uuid4())


class TestGraceAndSuspension:
    def test_declines_through_grace_to_suspension(self, billing, fake_gateway, fleet_id):
        with freeze_time("2026-03-01 09:00:00") as frozen:
            subscription = billing.create_fleet_subscription(
                fleet_id, SubscriptionTier.BASIC, BillingCycle.MONTHLY, 500_000
            )
            fake_gateway.decline_payer(str(fleet_id))

            frozen.move_to("2026-04-01 09:00:00")
            billing.process_subscription_payment(subscription.id)
            subscription = reload(subscription)
            assert subscription.status == SubscriptionStatus.GRACE
            assert subscription.grace_period_end == datetime(2026, 4, 8, 9, 0, tzinfo=dt_timezone.utc)
            assert subscription.failed_payment_count == 1

            frozen.move_to("2026-04-04 09:00:00")
            billing.process_subscription_payment(subscription.id)
            subscription = reload(subscription)
            assert subscription.status == SubscriptionStatus.GRACE
            assert subscription.grace_period_end == datetime(2026, 4, 8, 9, 0, tzinfo=dt_timezone.utc)
            assert subscription.failed_payment_count == 2
            assert billing.suspended_fleet(fleet_id) is False

            frozen.move_to("2026-04-09 09:00:00")
            billing.process_subscription_payment(subscription.id)
            subscription = reload(subscription)
            assert subscription.status == SubscriptionStatus.SUSPENDED
            assert subscription.failed_payment_count == 3
            assert billing.suspended_fleet(fleet_id) is True

        assert PaymentTransaction.objects.filter(
            subscription=subscription, status=TransactionStatus.FAILED
        ).count() == 3

    def test_suspended_at_exact_grace_deadline(self, billing, due_subscription, fake_gateway, fleet_id):
        fake_gateway.decline_payer(str(fleet_id))
        now = timezone.now()
        billing.process_subscription_payment(due_subscription.id, now=now)

        billing.process_subscription_payment(due_subscription.id, now=now + timedelta(days=7))

        assert reload(due_subscription).status == SubscriptionStatus.SUSPENDED

    def test_payment_during_grace_restores_active(self, billing, due_subscription, fake_gateway):
        fake_gateway.queue_decline()
        billing.process_subscription_payment(due_subscription.id)

        billing.process_subscription_payment(due_subscription.id)

        subscription = reload(due_subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.grace_period_end is None
        assert subscription.failed_payment_count == 0

    def test_reactivate_suspended(self, billing, fleet_subscription):
        FleetSubscription.objects.filter(pk=fleet_subscription.pk).update(
            status=SubscriptionStatus.SUSPENDED, failed_payment_count=3
        )

        txn = billing.reactivate_subscription(fleet_subscription.id)

        subscription = reload(fleet_subscription)
        assert txn.status == TransactionStatus.COMPLETE
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.failed_payment_count == 0

    def test_reactivate_requires_suspension(self, billing, fleet_subscription):
        with pytest.raises(StateConflictError):
            billing.reactivate_subscription(fleet_subscription.id)


class TestCancelAndExpire:
    def test_cancel(self, billing, fleet_subscription, admin_id):
        subscription = billing.cancel_subscription(
            fleet_subscription.id, actor_id=admin_id, reason="Fleet closed"
        )

        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.auto_renew is False
        assert subscription.cancellation_reason == "Fleet closed"

    def test_cancel_twice_conflicts(self, billing, fleet_subscription):
        billing.cancel_subscription(fleet_subscription.id)

        with pytest.raises(StateConflictError):
            billing.cancel_subscription(fleet_subscription.id)

    def test_cancelled_subscription_cannot_be_billed(self, billing, due_subscription):
        billing.cancel_subscription(due_subscription.id)

        with pytest.raises(StateConflictError):
            billing.process_subscription_payment(due_subscription.id)

    def test_expire_lapsed(self, billing, fleet_id):
        subscription = billing.create_fleet_subscription(
            fleet_id, SubscriptionTier.BASIC, BillingCycle.MONTHLY, 500_000, auto_renew=False
        )

        assert billing.expire_lapsed(timezone.now()) == 0
        assert billing.expire_lapsed(timezone.now() + timedelta(days=40)) == 1
        assert reload(subscription).status == SubscriptionStatus.EXPIRED


class TestQueries:
    def test_due_subscriptions(self, billing, due_subscription):
        FleetSubscription.objects.create(
            fleet_id=uuid.uuid4(),
            fee_minor=100_000,
            current_period_start=timezone.now(),
            current_period_end=timezone.now() + timedelta(days=30),
            next_billing_date=timezone.now() + timedelta(days=30),
        )

        assert list(billing.due_subscriptions()) == [due_subscription]

    def test_auto_renew_off_is_never_due(self, billing, due_subscription):
        FleetSubscription.objects.filter(pk=due_subscription.pk).update(auto_renew=False)

        assert not billing.due_subscriptions().exists()

"""
Tests for the Celery workers.

Tasks are called directly; PaymentOrchestrator is patched to build on
the FakeGateway fixture.
"""

import uuid
from datetime import timedelta

import pytest
from celery.exceptions import Retry
from django.utils import timezone

from payments.exceptions import GatewayError, GatewayTimeoutError, LockAcquisitionError
from payments.models import FleetSubscription, PaymentTransaction
from payments.state_machines import (
    SubscriptionStatus,
    SubscriptionTier,
    TransactionKind,
    TransactionStatus,
)
from payments.tests.conftest import GROSS_MINOR
from payments.workers import (
    bill_due_subscriptions,
    bill_single_subscription,
    reconcile_processing_transactions,
    reconcile_single_transaction,
)


@pytest.fixture(autouse=True)
def use_fake_gateway(mocker, fake_gateway):
    mocker.patch("payments.services.orchestrator.get_gateway", return_value=fake_gateway)


class TestBillDueSubscriptions:
    def test_queues_due_subscriptions(self, due_subscription, fleet_subscription, mocker):
        delay = mocker.patch.object(bill_single_subscription, "delay")

        result = bill_due_subscriptions()

        assert result == {"expired_count": 0, "queued_count": 1}
        delay.assert_called_once_with(str(due_subscription.id))

    def test_nothing_due(self, fleet_subscription, mocker):
        delay = mocker.patch.object(bill_single_subscription, "delay")

        result = bill_due_subscriptions()

        assert result["queued_count"] == 0
        delay.assert_not_called()

    def test_expires_lapsed_subscriptions(self, fleet_subscription, mocker):
        delay = mocker.patch.object(bill_single_subscription, "delay")
        FleetSubscription.objects.filter(pk=fleet_subscription.pk).update(
            auto_renew=False,
            current_period_end=timezone.now() - timedelta(minutes=1),
        )

        result = bill_due_subscriptions()

        assert result["expired_count"] == 1
        assert (
            FleetSubscription.objects.get(pk=fleet_subscription.pk).status
            == SubscriptionStatus.EXPIRED
        )
        delay.assert_not_called()


class TestBillSingleSubscription:
    def test_bills_due_subscription(self, due_subscription):
        result = bill_single_subscription(str(due_subscription.id))

        assert result["status"] == "billed"
        assert result["subscription_status"] == SubscriptionStatus.ACTIVE

    def test_declined_payment(self, due_subscription, fake_gateway):
        fake_gateway.queue_decline()

        result = bill_single_subscription(str(due_subscription.id))

        assert result["status"] == "declined"
        assert result["subscription_status"] == SubscriptionStatus.GRACE

    def test_not_due(self, fleet_subscription):
        result = bill_single_subscription(str(fleet_subscription.id))

        assert result == {"status": "not_due", "subscription_id": str(fleet_subscription.id)}

    def test_invalid_id(self, db):
        result = bill_single_subscription("not-a-uuid")

        assert result["status"] == "invalid"

    def test_unknown_subscription(self, db):
        result = bill_single_subscription(str(uuid.uuid4()))

        assert result["status"] == "invalid"
        assert result["error_code"] == "PAYMENT_NOT_FOUND"

    def test_timeout_schedules_retry(self, due_subscription, fake_gateway, mocker):
        fake_gateway.queue_timeout()
        retry = mocker.patch.object(bill_single_subscription, "retry", side_effect=Retry())

        with pytest.raises(Retry):
            bill_single_subscription(str(due_subscription.id))

        retry.assert_called_once()
        assert isinstance(retry.call_args.kwargs["exc"], GatewayTimeoutError)
        assert retry.call_args.kwargs["countdown"] > 0

    def test_non_retryable_gateway_error_fails(self, due_subscription, mocker):
        mocker.patch(
            "payments.services.subscription.SubscriptionBillingManager.process_subscription_payment",
            side_effect=GatewayError("Bad request", provider_code="invalid_request"),
        )

        result = bill_single_subscription(str(due_subscription.id))

        assert result["status"] == "failed"
        assert result["error_code"] == "GATEWAY_ERROR"


class TestReconcileProcessingTransactions:
    def test_completed_run(self, db):
        result = reconcile_processing_transactions()

        assert result["status"] == "completed"
        assert result["checked"] == 0
        assert result["wallet_drift"] == 0

    def test_skipped_when_locked(self, db, mocker):
        mocker.patch(
            "payments.services.reconciliation.ReconciliationService.reconcile_processing",
            side_effect=LockAcquisitionError("reconciliation:run"),
        )

        result = reconcile_processing_transactions()

        assert result["status"] == "skipped"


class TestReconcileSingleTransaction:
    @pytest.fixture
    def stuck(self, escrow_manager, fake_gateway, shipment_id, shipper_id, fleet_id):
        fake_gateway.queue_timeout()
        with pytest.raises(GatewayTimeoutError):
            escrow_manager.create_shipment_escrow(
                shipment_id, shipper_id, fleet_id, GROSS_MINOR, SubscriptionTier.BASIC
            )
        return PaymentTransaction.objects.get(kind=TransactionKind.ESCROW_IN)

    def test_resolves_transaction(self, stuck, fake_gateway):
        fake_gateway.settle_pending(stuck.id)

        result = reconcile_single_transaction(str(stuck.id))

        assert result["status"] == "resolved_success"
        assert result["current_state"] == TransactionStatus.HELD

    def test_still_pending(self, stuck):
        result = reconcile_single_transaction(str(stuck.id))

        assert result["status"] == "still_pending"

    def test_not_processing(self, held_escrow):
        result = reconcile_single_transaction(str(held_escrow.escrow_in.id))

        assert result["status"] == "not_processing"
        assert result["current_state"] == TransactionStatus.HELD

    def test_not_found(self, db):
        result = reconcile_single_transaction(str(uuid.uuid4()))

        assert result["status"] == "not_found"

    def test_invalid_id(self, db):
        result = reconcile_single_transaction("nope")

        assert result["status"] == "failed"

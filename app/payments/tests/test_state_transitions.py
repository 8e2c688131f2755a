"""
Tests for the django-fsm state machines.

Each machine is checked for its allowed paths, the side effects the
transitions record, and a sample of transitions that must be refused.
"""

import uuid
from datetime import timedelta

import pytest
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from payments.models import PaymentTransaction
from payments.state_machines import (
    RefundRequestStatus,
    SubscriptionStatus,
    TransactionKind,
    TransactionStatus,
)
from payments.tests.factories import (
    FleetSubscriptionFactory,
    PaymentTransactionFactory,
    RefundRequestFactory,
)


def advance(instance, *transitions):
    for name in transitions:
        getattr(instance, name)()
    instance.save()
    return instance


# =============================================================================
# PaymentTransaction
# =============================================================================


class TestPaymentTransactionTransitions:
    def test_escrow_happy_path(self, db):
        txn = advance(PaymentTransactionFactory(), "submit", "mark_held", "settle")

        assert txn.status == TransactionStatus.SETTLED
        assert txn.processed_at is not None
        assert txn.settled_at is not None
        assert txn.is_terminal

    def test_non_escrow_leg_completes(self, db):
        txn = advance(
            PaymentTransactionFactory(kind=TransactionKind.COMMISSION, amount_minor=105_000),
            "submit",
            "mark_complete",
        )

        assert txn.status == TransactionStatus.COMPLETE
        assert txn.is_terminal is False

    def test_fail_records_reason(self, db):
        txn = advance(PaymentTransactionFactory(), "submit")
        txn.fail("insufficient_funds")
        txn.save()

        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_reason == "insufficient_funds"

    def test_cancel_only_from_pending(self, db):
        txn = advance(PaymentTransactionFactory(), "submit")

        with pytest.raises(TransitionNotAllowed):
            txn.cancel("paired leg failed")

    def test_dispute_then_settle(self, db):
        txn = advance(PaymentTransactionFactory(), "submit", "mark_held", "dispute", "settle")

        assert txn.status == TransactionStatus.SETTLED

    def test_mark_refunded_from_held_records_reason(self, db):
        txn = advance(PaymentTransactionFactory(), "submit", "mark_held")
        txn.mark_refunded("Shipment cancelled")
        txn.save()

        assert txn.status == TransactionStatus.REFUNDED
        assert txn.refund_reason == "Shipment cancelled"

    def test_completed_leg_can_be_reversed(self, db):
        txn = advance(
            PaymentTransactionFactory(kind=TransactionKind.COMMISSION, amount_minor=105_000),
            "submit",
            "mark_complete",
            "mark_refunded",
        )

        assert txn.status == TransactionStatus.REFUNDED

    def test_internal_legs_skip_processing(self, db):
        settlement = advance(
            PaymentTransactionFactory(kind=TransactionKind.SETTLEMENT), "complete_internal"
        )
        marker = advance(
            PaymentTransactionFactory(kind=TransactionKind.DISPUTE_HOLD), "hold_internal"
        )

        assert settlement.status == TransactionStatus.COMPLETE
        assert marker.status == TransactionStatus.HELD

    @pytest.mark.parametrize(
        ("path", "refused"),
        [
            ((), "mark_held"),
            ((), "settle"),
            (("submit",), "settle"),
            (("submit", "mark_held", "settle"), "mark_refunded"),
            (("submit", "mark_held", "settle"), "dispute"),
            (("submit", "fail"), "submit"),
        ],
    )
    def test_refused_transitions(self, db, path, refused):
        txn = advance(PaymentTransactionFactory(), *path)

        with pytest.raises(TransitionNotAllowed):
            getattr(txn, refused)()

    def test_status_cannot_be_assigned_directly(self, db):
        txn = PaymentTransactionFactory()

        with pytest.raises(AttributeError):
            txn.status = TransactionStatus.SETTLED

    def test_reload_reflects_saved_status(self, db):
        txn = advance(PaymentTransactionFactory(), "submit", "mark_held")

        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.HELD


# =============================================================================
# FleetSubscription
# =============================================================================


class TestFleetSubscriptionTransitions:
    def test_renew_advances_one_cycle_and_clears_failures(self, db):
        subscription = FleetSubscriptionFactory()
        old_end = subscription.current_period_end
        subscription.enter_grace(timezone.now() + timedelta(days=7))
        subscription.save()

        subscription.renew()
        subscription.save()

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == old_end
        assert subscription.next_billing_date == subscription.current_period_end
        assert subscription.next_billing_date > old_end
        assert subscription.grace_period_end is None
        assert subscription.failed_payment_count == 0

    def test_grace_then_suspend_counts_failures(self, db):
        subscription = FleetSubscriptionFactory()
        grace_end = timezone.now() + timedelta(days=7)

        subscription.enter_grace(grace_end)
        subscription.save()
        assert subscription.status == SubscriptionStatus.GRACE
        assert subscription.grace_period_end == grace_end

        subscription.suspend()
        subscription.save()
        assert subscription.status == SubscriptionStatus.SUSPENDED
        assert subscription.failed_payment_count == 2

    def test_suspended_can_renew(self, db):
        subscription = FleetSubscriptionFactory()
        subscription.enter_grace(timezone.now())
        subscription.suspend()
        subscription.renew()
        subscription.save()

        assert subscription.status == SubscriptionStatus.ACTIVE

    def test_active_cannot_be_suspended_directly(self, db):
        with pytest.raises(TransitionNotAllowed):
            FleetSubscriptionFactory().suspend()

    def test_terminal_states(self, db):
        expired = FleetSubscriptionFactory()
        expired.expire()
        expired.save()
        cancelled = FleetSubscriptionFactory()
        cancelled.cancel()
        cancelled.save()

        with pytest.raises(TransitionNotAllowed):
            expired.renew()
        with pytest.raises(TransitionNotAllowed):
            cancelled.cancel()


# =============================================================================
# RefundRequest
# =============================================================================


class TestRefundRequestTransitions:
    def test_approval_path(self, db):
        approver = uuid.uuid4()
        request = RefundRequestFactory()
        refund_txn = PaymentTransactionFactory(kind=TransactionKind.REFUND)

        request.approve(approver, 400_000)
        request.start_processing(refund_txn)
        request.complete()
        request.save()

        assert request.status == RefundRequestStatus.COMPLETED
        assert request.approver_id == approver
        assert request.amount_approved_minor == 400_000
        assert request.refund_transaction == refund_txn
        assert request.approved_at is not None
        assert request.processed_at is not None

    def test_reject_records_reason(self, db):
        request = RefundRequestFactory()
        request.reject(uuid.uuid4(), "Delivered on time")
        request.save()

        assert request.status == RefundRequestStatus.REJECTED
        assert request.rejection_reason == "Delivered on time"

    @pytest.mark.parametrize("action", ["start_processing", "complete"])
    def test_pending_cannot_skip_approval(self, db, action):
        request = RefundRequestFactory()

        with pytest.raises(TransitionNotAllowed):
            if action == "start_processing":
                request.start_processing(None)
            else:
                request.complete()

    def test_rejected_cannot_be_approved(self, db):
        request = RefundRequestFactory()
        request.reject(uuid.uuid4())
        request.save()

        with pytest.raises(TransitionNotAllowed):
            request.approve(uuid.uuid4(), 100)

"""
Integration tests for PaymentOrchestrator.

The orchestrator never raises: every test asserts on ServiceResult
success and error_code, which is the contract callers rely on.
"""

import uuid

import pytest
from django_fsm import TransitionNotAllowed

from payments.ledger import Money, WalletKind
from payments.models import DeliveryConfirmation, FleetSubscription, PaymentConfig
from payments.state_machines import (
    BillingCycle,
    RefundRequestType,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionKind,
    TransactionStatus,
)
from payments.tests.conftest import GROSS_MINOR, NET_MINOR


@pytest.fixture
def escrow_result(orchestrator, shipment_id, shipper_id, fleet_id):
    return orchestrator.create_shipment_escrow(
        shipment_id, shipper_id, fleet_id, GROSS_MINOR, SubscriptionTier.BASIC
    )


# =============================================================================
# Escrow
# =============================================================================


class TestCreateShipmentEscrow:
    def test_success_wraps_escrow(self, escrow_result):
        assert escrow_result.success
        assert escrow_result.error_code is None
        assert escrow_result.data.net_minor == NET_MINOR

    def test_tier_defaults_to_fleet_subscription(
        self, orchestrator, billing, shipment_id, shipper_id, fleet_id
    ):
        billing.create_fleet_subscription(
            fleet_id, SubscriptionTier.PREMIUM, BillingCycle.MONTHLY, 999_900
        )

        result = orchestrator.create_shipment_escrow(shipment_id, shipper_id, fleet_id, GROSS_MINOR)

        assert result.data.commission_minor == 75_000

    def test_explicit_tier_wins(self, orchestrator, billing, shipment_id, shipper_id, fleet_id):
        billing.create_fleet_subscription(
            fleet_id, SubscriptionTier.PREMIUM, BillingCycle.MONTHLY, 999_900
        )

        result = orchestrator.create_shipment_escrow(
            shipment_id, shipper_id, fleet_id, GROSS_MINOR, SubscriptionTier.ENTERPRISE
        )

        assert result.data.commission_minor == 45_000

    def test_no_subscription_uses_basic(self, orchestrator, shipment_id, shipper_id, fleet_id):
        result = orchestrator.create_shipment_escrow(shipment_id, shipper_id, fleet_id, GROSS_MINOR)

        assert result.data.commission_minor == 105_000

    def test_suspended_fleet_is_refused(
        self, orchestrator, fleet_subscription, fake_gateway, shipment_id, shipper_id, fleet_id
    ):
        FleetSubscription.objects.filter(pk=fleet_subscription.pk).update(
            status=SubscriptionStatus.SUSPENDED
        )

        result = orchestrator.create_shipment_escrow(shipment_id, shipper_id, fleet_id, GROSS_MINOR)

        assert not result
        assert result.error_code == "SUBSCRIPTION_SUSPENDED"
        assert fake_gateway.calls == []

    @pytest.mark.parametrize(
        ("script", "error_code"),
        [
            ("queue_decline", "PAYMENT_DECLINED"),
            ("queue_timeout", "GATEWAY_TIMEOUT"),
            ("queue_unavailable", "GATEWAY_UNAVAILABLE"),
        ],
    )
    def test_gateway_outcomes_map_to_error_codes(
        self, orchestrator, fake_gateway, shipment_id, shipper_id, fleet_id, script, error_code
    ):
        getattr(fake_gateway, script)()

        result = orchestrator.create_shipment_escrow(shipment_id, shipper_id, fleet_id, GROSS_MINOR)

        assert result.success is False
        assert result.error_code == error_code

    def test_invalid_amount(self, orchestrator, shipment_id, shipper_id, fleet_id):
        result = orchestrator.create_shipment_escrow(shipment_id, shipper_id, fleet_id, 0)

        assert result.error_code == "INVALID_AMOUNT"
        assert result.details["gross_minor"] == 0

    def test_lock_contention(self, orchestrator, mock_redis, shipment_id, shipper_id, fleet_id):
        mock_redis.set.return_value = False

        result = orchestrator.create_shipment_escrow(shipment_id, shipper_id, fleet_id, GROSS_MINOR)

        assert result.error_code == "LOCK_CONTENTION"

    def test_unexpected_error_becomes_internal_error(
        self, orchestrator, mocker, shipment_id, shipper_id, fleet_id
    ):
        mocker.patch.object(
            orchestrator.escrow, "create_shipment_escrow", side_effect=RuntimeError("boom")
        )

        result = orchestrator.create_shipment_escrow(shipment_id, shipper_id, fleet_id, GROSS_MINOR)

        assert result.error_code == "INTERNAL_ERROR"
        assert "boom" not in result.error


# =============================================================================
# Delivery & Release
# =============================================================================


class TestRelease:
    def test_release_requires_delivery_confirmation(self, orchestrator, escrow_result, shipment_id):
        result = orchestrator.release_escrow(shipment_id)

        assert result.error_code == "DELIVERY_NOT_CONFIRMED"

    def test_release_after_confirmation(
        self, orchestrator, escrow_result, confirmed_delivery, shipment_id
    ):
        result = orchestrator.release_escrow(shipment_id)

        assert result.success
        assert result.data.kind == TransactionKind.SETTLEMENT
        assert result.data.amount_minor == NET_MINOR

    def test_release_of_unknown_shipment(self, orchestrator, confirmed_delivery, shipment_id):
        result = orchestrator.release_escrow(shipment_id)

        assert result.error_code == "PAYMENT_NOT_FOUND"

    def test_transition_error_maps_to_state_conflict(
        self, orchestrator, mocker, escrow_result, confirmed_delivery, shipment_id
    ):
        mocker.patch.object(
            orchestrator.escrow, "release_escrow", side_effect=TransitionNotAllowed("settle")
        )

        result = orchestrator.release_escrow(shipment_id)

        assert result.error_code == "STATE_CONFLICT"

    def test_delivery_confirmation_releases(
        self, orchestrator, escrow_result, shipment_id, fleet_id
    ):
        driver_id = uuid.uuid4()

        result = orchestrator.record_delivery_confirmation(
            shipment_id, proof_reference="POD-000123", actor_id=driver_id
        )

        assert result.success
        assert result.data.status == TransactionStatus.COMPLETE
        confirmation = DeliveryConfirmation.objects.get(shipment_id=shipment_id)
        assert confirmation.proof_reference == "POD-000123"
        assert confirmation.confirmed_by == driver_id
        assert orchestrator.wallet_balance(fleet_id, WalletKind.FLEET).data.minor == NET_MINOR

        actions = [
            entry.action
            for entry in orchestrator.audit_history(escrow_result.data.escrow_in.id).data
        ]
        assert "delivery.confirmed" in actions
        assert actions[-1] == "escrow_in.settled"

    def test_replayed_confirmation_is_harmless(self, orchestrator, escrow_result, shipment_id):
        first = orchestrator.record_delivery_confirmation(shipment_id)
        second = orchestrator.record_delivery_confirmation(shipment_id)

        assert second.data.id == first.data.id
        assert DeliveryConfirmation.objects.filter(shipment_id=shipment_id).count() == 1
        actions = [
            entry.action
            for entry in orchestrator.audit_history(escrow_result.data.escrow_in.id).data
        ]
        assert actions.count("delivery.confirmed") == 1

    def test_disputed_escrow_keeps_confirmation_but_refuses_release(
        self, orchestrator, escrow_result, shipment_id, shipper_id
    ):
        orchestrator.create_refund_request(
            shipment_id, shipper_id, RefundRequestType.DISPUTE, 200_000, "Seal broken"
        )

        result = orchestrator.record_delivery_confirmation(shipment_id)

        assert result.error_code == "STATE_CONFLICT"
        assert DeliveryConfirmation.objects.filter(shipment_id=shipment_id).exists()

    def test_available_for_refund(self, orchestrator, escrow_result, shipment_id):
        assert orchestrator.available_for_refund(shipment_id).data == NET_MINOR


# =============================================================================
# Subscriptions & Refunds
# =============================================================================


class TestSubscriptionOperations:
    def test_duplicate_subscription(self, orchestrator, fleet_subscription, fleet_id):
        result = orchestrator.create_fleet_subscription(
            fleet_id, SubscriptionTier.BASIC, BillingCycle.MONTHLY, 500_000
        )

        assert result.error_code == "DUPLICATE_REQUEST"

    def test_not_due_is_success_without_data(self, orchestrator, fleet_subscription):
        result = orchestrator.process_subscription_payment(fleet_subscription.id)

        assert result.success
        assert result.data is None

    def test_cancel_twice(self, orchestrator, fleet_subscription):
        assert orchestrator.cancel_subscription(fleet_subscription.id).success

        result = orchestrator.cancel_subscription(fleet_subscription.id)

        assert result.error_code == "STATE_CONFLICT"

    def test_reactivate_active_subscription(self, orchestrator, fleet_subscription):
        result = orchestrator.reactivate_subscription(fleet_subscription.id)

        assert result.error_code == "STATE_CONFLICT"

    def test_unknown_subscription(self, orchestrator):
        result = orchestrator.process_subscription_payment(uuid.uuid4())

        assert result.error_code == "PAYMENT_NOT_FOUND"


class TestRefundOperations:
    def test_over_approval(self, orchestrator, escrow_result, shipment_id, shipper_id, admin_id):
        request = orchestrator.create_refund_request(
            shipment_id, shipper_id, RefundRequestType.CANCELLATION, GROSS_MINOR, "Cancelled"
        ).data

        result = orchestrator.approve_refund_request(request.id, admin_id, 2_000_000)

        assert result.error_code == "AMOUNT_EXCEEDS_AVAILABLE"
        assert result.details["available_minor"] == NET_MINOR

    def test_stale_approval(self, orchestrator, escrow_result, shipment_id, shipper_id, admin_id):
        request = orchestrator.create_refund_request(
            shipment_id, shipper_id, RefundRequestType.CANCELLATION, 100_000, "Cancelled"
        ).data

        result = orchestrator.approve_refund_request(
            request.id, admin_id, expected_version=request.version + 3
        )

        assert result.error_code == "STALE_RECORD"

    def test_unknown_request(self, orchestrator, admin_id):
        result = orchestrator.reject_refund_request(uuid.uuid4(), admin_id)

        assert result.error_code == "PAYMENT_NOT_FOUND"

    def test_approval_audited_as_admin(
        self, orchestrator, escrow_result, shipment_id, shipper_id, admin_id
    ):
        request = orchestrator.create_refund_request(
            shipment_id, shipper_id, RefundRequestType.CANCELLATION, 100_000, "Cancelled"
        ).data

        orchestrator.approve_refund_request(request.id, admin_id)

        approved = [
            entry
            for entry in orchestrator.audit_history(request.id).data
            if entry.action == "refund_request.approved"
        ]
        assert approved[0].actor_type == "admin"
        assert approved[0].actor_id == admin_id


# =============================================================================
# Configuration & Reporting
# =============================================================================


class TestConfiguration:
    def test_update_config_is_audited(self, orchestrator, admin_id):
        result = orchestrator.update_config("subscription.grace_period_days", 10, admin_id)

        assert result.success
        row = PaymentConfig.objects.get(key="subscription.grace_period_days")
        entry = orchestrator.audit_history(row.id).data[0]
        assert entry.action == "config.updated"
        assert entry.old_values == {"key": "subscription.grace_period_days", "value": 7}
        assert entry.new_values["value"] == 10
        assert orchestrator.get_config("subscription.grace_period_days").data == 10

    def test_get_config_by_category(self, orchestrator):
        result = orchestrator.get_config(category="ESCROW")

        assert result.data == {"escrow.hold_period_days": 3}

    def test_missing_key(self, orchestrator):
        result = orchestrator.get_config("gateway.unknown")

        assert result.error_code == "CONFIG_MISSING"


class TestReporting:
    def test_wallet_balance_of_unknown_owner_is_zero(self, orchestrator):
        result = orchestrator.wallet_balance(uuid.uuid4(), WalletKind.FLEET)

        assert result.data == Money(minor=0, currency="inr")

    def test_payment_history_by_shipment_and_user(
        self, orchestrator, escrow_result, shipment_id, shipper_id
    ):
        by_shipment = orchestrator.payment_history(shipment_id=shipment_id).data
        by_user = orchestrator.payment_history(user_id=shipper_id).data

        assert {txn.kind for txn in by_shipment} == {
            TransactionKind.ESCROW_IN,
            TransactionKind.COMMISSION,
        }
        assert len(by_user) == 2
        assert orchestrator.payment_history(user_id=uuid.uuid4()).data == []

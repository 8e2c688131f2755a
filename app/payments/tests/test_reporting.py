"""
Tests for ReportingService.
"""

import uuid
from datetime import timedelta

import pytest
from django.utils import timezone

from payments.exceptions import PaymentDeclinedError
from payments.ledger import Money, WalletKind
from payments.services import ReportingService
from payments.state_machines import SubscriptionTier, TransactionKind
from payments.tests.conftest import BASIC_COMMISSION_MINOR, GROSS_MINOR, NET_MINOR


@pytest.fixture
def reports():
    return ReportingService()


class TestWalletBalance:
    def test_missing_wallet_reads_zero(self, reports, db):
        assert reports.wallet_balance(uuid.uuid4(), WalletKind.FLEET) == Money(minor=0)

    def test_platform_wallets(self, reports, held_escrow):
        assert reports.wallet_balance(None, WalletKind.PLATFORM_ESCROW).minor == NET_MINOR
        assert (
            reports.wallet_balance(None, WalletKind.PLATFORM_COMMISSION).minor
            == BASIC_COMMISSION_MINOR
        )


class TestPaymentHistory:
    def test_by_shipment(self, reports, held_escrow, shipment_id):
        history = reports.payment_history(shipment_id=shipment_id)

        assert {txn.kind for txn in history} == {
            TransactionKind.ESCROW_IN,
            TransactionKind.COMMISSION,
        }

    def test_by_party_covers_payer_and_payee(self, reports, settled_escrow, shipper_id, fleet_id):
        shipper_kinds = {txn.kind for txn in reports.payment_history(user_id=shipper_id)}
        fleet_kinds = {txn.kind for txn in reports.payment_history(user_id=fleet_id)}

        assert TransactionKind.ESCROW_IN in shipper_kinds
        assert TransactionKind.SETTLEMENT in fleet_kinds

    def test_limit(self, reports, held_escrow, shipment_id):
        assert len(reports.payment_history(shipment_id=shipment_id, limit=1)) == 1


class TestPaymentAnalytics:
    def test_empty_period(self, reports, db):
        analytics = reports.payment_analytics()

        assert analytics.transaction_count == 0
        assert analytics.total_commission_minor == 0
        assert analytics.daily == []

    def test_held_escrow_totals(self, reports, held_escrow):
        analytics = reports.payment_analytics()

        assert analytics.total_commission_minor == BASIC_COMMISSION_MINOR
        assert analytics.total_escrow_held_minor == NET_MINOR
        assert analytics.total_settlements_minor == 0
        assert analytics.transaction_count == 2
        assert len(analytics.daily) == 1
        assert analytics.daily[0]["commission"] == BASIC_COMMISSION_MINOR

    def test_settlement_moves_out_of_held(self, reports, settled_escrow):
        analytics = reports.payment_analytics()

        assert analytics.total_escrow_held_minor == 0
        assert analytics.total_settlements_minor == NET_MINOR

    def test_refunds_and_failures(
        self, reports, escrow_manager, held_escrow, fake_gateway, shipper_id, fleet_id
    ):
        escrow_manager.refund_escrow(held_escrow.escrow_in.shipment_id, 200_000)
        fake_gateway.queue_decline()
        with pytest.raises(PaymentDeclinedError):
            escrow_manager.create_shipment_escrow(
                uuid.uuid4(), shipper_id, fleet_id, GROSS_MINOR, SubscriptionTier.BASIC
            )

        analytics = reports.payment_analytics()

        assert analytics.total_refunds_minor == 200_000
        assert analytics.payment_failures == 1

    def test_subscription_revenue(self, reports, billing, due_subscription):
        billing.process_subscription_payment(due_subscription.id)

        assert reports.payment_analytics().subscription_revenue_minor == 500_000

    def test_window_excludes_older_transactions(self, reports, held_escrow):
        analytics = reports.payment_analytics(start=timezone.now() + timedelta(minutes=1))

        assert analytics.transaction_count == 0

"""
Pytest fixtures for payment tests.

Every test in this package runs with Redis replaced by a MagicMock, so
shipment and subscription locks are always granted unless a test says
otherwise (set mock_redis.set.return_value = False to simulate contention).

Money movement goes through a PaymentOrchestrator wired to a FakeGateway;
fixtures that need funded state build it through the managers so wallet
balances always match the ledger.

Usage:
    def test_release(orchestrator, held_escrow, confirmed_delivery):
        result = orchestrator.release_escrow(held_escrow.escrow_in.shipment_id)
        assert result.success
"""

import uuid
from datetime import timedelta

import pytest
from django.utils import timezone

from payments.adapters import FakeGateway
from payments.services import ConfigStore, PaymentOrchestrator
from payments.state_machines import BillingCycle, SubscriptionTier
from payments.tests.factories import DeliveryConfirmationFactory

# 15000.00 INR
GROSS_MINOR = 1_500_000
# 7% of GROSS_MINOR
BASIC_COMMISSION_MINOR = 105_000
NET_MINOR = GROSS_MINOR - BASIC_COMMISSION_MINOR


# =============================================================================
# Mock Redis Fixture (for locks)
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis(mocker):
    """
    Mock Redis client behind DistributedLock.

    Returns a MagicMock configured so every lock is acquired and released.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1

    mocker.patch(
        "payments.locks.get_redis_connection",
        return_value=mock_client,
    )

    return mock_client


# =============================================================================
# Party Fixtures
# =============================================================================


@pytest.fixture
def shipper_id():
    return uuid.uuid4()


@pytest.fixture
def fleet_id():
    return uuid.uuid4()


@pytest.fixture
def admin_id():
    return uuid.uuid4()


@pytest.fixture
def shipment_id():
    return uuid.uuid4()


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def fake_gateway():
    """Gateway double that accepts everything unless scripted otherwise."""
    return FakeGateway()


@pytest.fixture
def config_store(db):
    return ConfigStore()


@pytest.fixture
def orchestrator(db, fake_gateway, config_store):
    """Facade wired to the fake gateway."""
    return PaymentOrchestrator(gateway=fake_gateway, config_store=config_store)


@pytest.fixture
def escrow_manager(orchestrator):
    return orchestrator.escrow


@pytest.fixture
def billing(orchestrator):
    return orchestrator.billing


@pytest.fixture
def refunds(orchestrator):
    return orchestrator.refunds


# =============================================================================
# Escrow Fixtures
# =============================================================================


@pytest.fixture
def held_escrow(escrow_manager, shipment_id, shipper_id, fleet_id):
    """
    A 15000.00 INR basic-tier shipment captured into escrow.

    13950.00 INR sits in the escrow wallet, 1050.00 INR in commission.
    """
    return escrow_manager.create_shipment_escrow(
        shipment_id,
        shipper_id,
        fleet_id,
        GROSS_MINOR,
        SubscriptionTier.BASIC,
        actor_id=shipper_id,
    )


@pytest.fixture
def confirmed_delivery(db, shipment_id):
    return DeliveryConfirmationFactory(shipment_id=shipment_id)


@pytest.fixture
def settled_escrow(escrow_manager, held_escrow, shipment_id):
    """held_escrow released to the fleet wallet. Returns the settlement."""
    return escrow_manager.release_escrow(shipment_id)


# =============================================================================
# Subscription Fixtures
# =============================================================================


@pytest.fixture
def fleet_subscription(billing, fleet_id):
    """Monthly basic subscription of 5000.00 INR starting now."""
    return billing.create_fleet_subscription(
        fleet_id,
        SubscriptionTier.BASIC,
        BillingCycle.MONTHLY,
        500_000,
    )


@pytest.fixture
def due_subscription(fleet_subscription):
    """fleet_subscription with its first renewal an hour overdue."""
    from payments.models import FleetSubscription

    due_at = timezone.now() - timedelta(hours=1)
    FleetSubscription.objects.filter(pk=fleet_subscription.pk).update(
        current_period_start=due_at - timedelta(days=30),
        current_period_end=due_at,
        next_billing_date=due_at,
    )
    return FleetSubscription.objects.get(pk=fleet_subscription.pk)

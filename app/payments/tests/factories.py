"""
Factory Boy factories for payment test data.

Factories write rows directly: no gateway call, no ledger entry, no audit.
Use them for model and query tests. Tests of money movement should go
through the managers (see the escrow fixtures in conftest.py) so wallet
balances stay consistent with the ledger.

Usage:
    from payments.tests.factories import (
        FleetSubscriptionFactory,
        PaymentTransactionFactory,
        RefundRequestFactory,
    )

    # A pending escrow-in
    txn = PaymentTransactionFactory()

    # A subscription due for billing
    subscription = FleetSubscriptionFactory(next_billing_date=timezone.now())
"""

import uuid
from datetime import timedelta

import factory
from django.utils import timezone

from payments.models import (
    AuditEntry,
    DeliveryConfirmation,
    FleetSubscription,
    PaymentConfig,
    PaymentTransaction,
    RefundRequest,
)
from payments.state_machines import (
    BillingCycle,
    ConfigCategory,
    RefundRequestType,
    SubscriptionTier,
    TransactionKind,
)


class PaymentTransactionFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating PaymentTransaction instances.

    Default creates a PENDING escrow-in of 13950.00 INR for a new shipment.
    Move it through states with the model transitions, e.g.:

        txn = PaymentTransactionFactory()
        txn.submit()
        txn.mark_held()
        txn.save()
    """

    class Meta:
        model = PaymentTransaction
        skip_postgeneration_save = True

    shipment_id = factory.LazyFunction(uuid.uuid4)
    payer_id = factory.LazyFunction(uuid.uuid4)
    payee_id = factory.LazyFunction(uuid.uuid4)
    amount_minor = 1_395_000
    currency = "inr"
    kind = TransactionKind.ESCROW_IN
    metadata = factory.LazyFunction(dict)


class FleetSubscriptionFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating FleetSubscription instances.

    Default creates an ACTIVE monthly basic subscription whose current
    period started now; it is not due until next_billing_date.
    """

    class Meta:
        model = FleetSubscription
        skip_postgeneration_save = True

    fleet_id = factory.LazyFunction(uuid.uuid4)
    tier = SubscriptionTier.BASIC
    billing_cycle = BillingCycle.MONTHLY
    fee_minor = 499_900
    currency = "inr"
    vehicle_count = 1
    auto_renew = True
    current_period_start = factory.LazyFunction(timezone.now)
    current_period_end = factory.LazyAttribute(
        lambda o: o.current_period_start + timedelta(days=30)
    )
    next_billing_date = factory.SelfAttribute("current_period_end")


class RefundRequestFactory(factory.django.DjangoModelFactory):
    """Factory for creating PENDING RefundRequest instances."""

    class Meta:
        model = RefundRequest
        skip_postgeneration_save = True

    shipment_id = factory.LazyFunction(uuid.uuid4)
    requester_id = factory.LazyFunction(uuid.uuid4)
    request_type = RefundRequestType.CANCELLATION
    amount_requested_minor = 500_000
    reason = factory.Faker("sentence")
    evidence = factory.LazyFunction(dict)


class DeliveryConfirmationFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = DeliveryConfirmation
        skip_postgeneration_save = True

    shipment_id = factory.LazyFunction(uuid.uuid4)
    confirmed_at = factory.LazyFunction(timezone.now)
    proof_reference = factory.Sequence(lambda n: f"POD-{n:06d}")


class PaymentConfigFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PaymentConfig
        skip_postgeneration_save = True
        django_get_or_create = ("key",)

    key = factory.Sequence(lambda n: f"test.setting_{n}")
    value = 1
    category = ConfigCategory.GATEWAY


class AuditEntryFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = AuditEntry
        skip_postgeneration_save = True

    payment_id = factory.LazyFunction(uuid.uuid4)
    action = "escrow_in.created"
    metadata = factory.LazyFunction(dict)

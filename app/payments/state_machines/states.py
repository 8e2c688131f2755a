"""
State and category enums for payment models.

These are Django TextChoices for database storage and admin integration.
The FSM-managed enums are driven by django-fsm transitions declared on the
models; the rest are plain categories.

State Machines Overview:

PaymentTransaction Status:
    pending → processing → held → settled          (escrow happy path)
    pending → processing → complete                (commission, subscription)
    pending → processing → failed                  (gateway rejection)
    pending → cancelled                            (paired leg never submitted)
    held → refunded | disputed
    disputed → settled | refunded
    complete → refunded                            (reversal)

FleetSubscription Status:
    active → active (renewed) | grace (payment failed) | expired
    grace → active (renewed) | suspended (failed after grace)
    suspended → active (manual reactivation)
    active/grace/suspended → cancelled

RefundRequest Status:
    pending → approved → processing → completed
    pending → rejected
"""

from django.db import models


class TransactionKind(models.TextChoices):
    """Kinds of money movement recorded as a PaymentTransaction."""

    ESCROW_IN = "escrow_in", "Escrow In"
    ESCROW_OUT = "escrow_out", "Escrow Out"
    COMMISSION = "commission", "Commission"
    SUBSCRIPTION = "subscription", "Subscription"
    SETTLEMENT = "settlement", "Settlement"
    REFUND = "refund", "Refund"
    CHARGEBACK = "chargeback", "Chargeback"
    DISPUTE_HOLD = "dispute_hold", "Dispute Hold"


class TransactionStatus(models.TextChoices):
    """
    States for the PaymentTransaction lifecycle.

    Terminal states: SETTLED, FAILED, CANCELLED, REFUNDED.
    COMPLETE is terminal except for reversal (COMPLETE → REFUNDED).
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    HELD = "held", "Held"
    COMPLETE = "complete", "Complete"
    SETTLED = "settled", "Settled"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"
    REFUNDED = "refunded", "Refunded"
    DISPUTED = "disputed", "Disputed"


# Statuses in which an escrow-in still represents money the platform holds
# or has paid out on the shipment's behalf
FUNDED_ESCROW_STATUSES = (
    TransactionStatus.HELD,
    TransactionStatus.DISPUTED,
    TransactionStatus.SETTLED,
)

# An escrow-in in any of these states blocks creating a new one for the shipment
LIVE_ESCROW_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
    TransactionStatus.HELD,
    TransactionStatus.DISPUTED,
    TransactionStatus.SETTLED,
)


class SubscriptionTier(models.TextChoices):
    """
    Fleet subscription tiers, lowest first.

    The tier also selects the commission rate for shipments paid by
    members of that tier.
    """

    BASIC = "basic", "Basic"
    PREMIUM = "premium", "Premium"
    ENTERPRISE = "enterprise", "Enterprise"


class BillingCycle(models.TextChoices):
    """Subscription billing intervals."""

    MONTHLY = "monthly", "Monthly"
    QUARTERLY = "quarterly", "Quarterly"
    YEARLY = "yearly", "Yearly"


class FeeBasis(models.TextChoices):
    """How the subscription fee is charged."""

    PER_FLEET = "per_fleet", "Per Fleet"
    PER_VEHICLE = "per_vehicle", "Per Vehicle"


class SubscriptionStatus(models.TextChoices):
    """
    States for the FleetSubscription lifecycle.

    Terminal states: CANCELLED, EXPIRED
    SUSPENDED blocks the fleet from new shipment escrows.
    """

    ACTIVE = "active", "Active"
    GRACE = "grace", "Grace Period"
    SUSPENDED = "suspended", "Suspended"
    CANCELLED = "cancelled", "Cancelled"
    EXPIRED = "expired", "Expired"


class RefundRequestType(models.TextChoices):
    """Why a refund was requested."""

    CANCELLATION = "cancellation", "Cancellation"
    DISPUTE = "dispute", "Dispute"
    FAILED_DELIVERY = "failed_delivery", "Failed Delivery"
    ADMIN_OVERRIDE = "admin_override", "Admin Override"


class RefundRequestStatus(models.TextChoices):
    """
    States for the RefundRequest lifecycle.

    Terminal states: REJECTED, COMPLETED
    """

    PENDING = "pending", "Pending"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"


OPEN_REFUND_STATUSES = (
    RefundRequestStatus.PENDING,
    RefundRequestStatus.APPROVED,
    RefundRequestStatus.PROCESSING,
)


class ConfigCategory(models.TextChoices):
    """Category tag for PaymentConfig entries."""

    COMMISSION = "COMMISSION", "Commission"
    ESCROW = "ESCROW", "Escrow"
    SUBSCRIPTION = "SUBSCRIPTION", "Subscription"
    REFUND = "REFUND", "Refund"
    DISPUTE = "DISPUTE", "Dispute"
    GATEWAY = "GATEWAY", "Gateway"


class ActorType(models.TextChoices):
    """Who performed an audited action."""

    USER = "user", "User"
    ADMIN = "admin", "Admin"
    SYSTEM = "system", "System"
    SCHEDULER = "scheduler", "Scheduler"

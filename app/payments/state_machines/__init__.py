"""
State machine enums and helpers for payment models.

This module defines the state enums used by payment models with django-fsm.
"""

from payments.state_machines.states import (
    FUNDED_ESCROW_STATUSES,
    LIVE_ESCROW_STATUSES,
    OPEN_REFUND_STATUSES,
    ActorType,
    BillingCycle,
    ConfigCategory,
    FeeBasis,
    RefundRequestStatus,
    RefundRequestType,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionKind,
    TransactionStatus,
)

__all__ = [
    "FUNDED_ESCROW_STATUSES",
    "LIVE_ESCROW_STATUSES",
    "OPEN_REFUND_STATUSES",
    "ActorType",
    "BillingCycle",
    "ConfigCategory",
    "FeeBasis",
    "RefundRequestStatus",
    "RefundRequestType",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TransactionKind",
    "TransactionStatus",
]

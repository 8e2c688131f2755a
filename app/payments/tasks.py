"""
Celery tasks for the payments engine.

The tasks live in payments.workers; they are re-exported here so Celery
autodiscover (which imports `<app>.tasks`) registers them.

Usage:
    from payments.tasks import bill_due_subscriptions

    # Typically scheduled via celery-beat (see migration 0002)
    bill_due_subscriptions.delay()
"""

from payments.workers import (  # noqa: F401
    bill_due_subscriptions,
    bill_single_subscription,
    reconcile_processing_transactions,
    reconcile_single_transaction,
)

__all__ = [
    "bill_due_subscriptions",
    "bill_single_subscription",
    "reconcile_processing_transactions",
    "reconcile_single_transaction",
]

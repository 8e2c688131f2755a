"""
Workers for background payment processing.

This module contains Celery tasks scheduled by celery-beat:
- BillingScheduler: Bills due fleet subscriptions and expires lapsed ones
- ReconciliationWorker: Resolves transactions stuck in PROCESSING

Usage:
    from payments.workers import (
        bill_due_subscriptions,
        bill_single_subscription,
        reconcile_processing_transactions,
        reconcile_single_transaction,
    )

    # Trigger manual processing
    bill_due_subscriptions.delay()
    reconcile_single_transaction.delay(str(transaction_id))
"""

from payments.workers.billing_scheduler import (
    bill_due_subscriptions,
    bill_single_subscription,
)
from payments.workers.reconciliation_worker import (
    reconcile_processing_transactions,
    reconcile_single_transaction,
)

__all__ = [
    # Billing Scheduler
    "bill_due_subscriptions",
    "bill_single_subscription",
    # Reconciliation Worker
    "reconcile_processing_transactions",
    "reconcile_single_transaction",
]

"""
Reconciliation worker for transactions stuck in PROCESSING.

Tasks:
- reconcile_processing_transactions: Periodic pass over PROCESSING
  transactions plus the wallet balance check
- reconcile_single_transaction: On-demand resolution of one transaction

Usage:
    # Typically called via celery-beat schedule
    from payments.workers import reconcile_processing_transactions

    # Or resolve a specific transaction
    reconcile_single_transaction.delay(str(transaction_id))

Celery Beat Schedule (installed by migration 0002):
    'reconciliation-every-10-minutes': {
        'task': 'payments.workers.reconciliation_worker.reconcile_processing_transactions',
        'schedule': crontab(minute='*/10'),
        'kwargs': {'grace_minutes': 5},
    }
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from payments.exceptions import LockAcquisitionError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_GRACE_MINUTES = 5
DEFAULT_MAX_RECORDS = 500


# =============================================================================
# Periodic Task: Full Reconciliation Run
# =============================================================================


@shared_task(bind=True)
def reconcile_processing_transactions(
    self,
    grace_minutes: int = DEFAULT_GRACE_MINUTES,
    max_records: int = DEFAULT_MAX_RECORDS,
) -> dict:
    """
    Run one reconciliation pass.

    Transactions updated within the last grace_minutes are skipped so a
    live gateway call is never raced.

    Returns:
        Dict with:
        - status: "completed" or "skipped" (another run holds the lock)
        - checked, resolved, failed, pending, errors: per-transaction counts
        - wallet_drift: Number of wallets whose balance disagrees with entries

    Note:
        If another run is in progress this task returns "skipped" instead
        of waiting, so slow runs never pile up in the queue.
    """
    from payments.services import PaymentOrchestrator

    logger.info(
        "Starting scheduled reconciliation run",
        extra={"grace_minutes": grace_minutes, "max_records": max_records},
    )

    try:
        run = PaymentOrchestrator().reconciliation.reconcile_processing(
            grace_minutes=grace_minutes,
            max_records=max_records,
        )
    except LockAcquisitionError:
        logger.info(
            "Reconciliation run skipped - another run in progress",
            extra={"task_id": self.request.id},
        )
        return {
            "status": "skipped",
            "reason": "Another reconciliation run is in progress",
        }

    return {
        "status": "completed",
        "checked": run.checked,
        "resolved": run.resolved,
        "failed": run.failed,
        "pending": run.pending,
        "errors": run.errors,
        "wallet_drift": len(run.wallet_drift),
    }


# =============================================================================
# On-Demand Task: Single Transaction
# =============================================================================


@shared_task(bind=True)
def reconcile_single_transaction(self, transaction_id: str) -> dict:
    """
    Resolve one PROCESSING transaction against the gateway.

    Returns:
        Dict with:
        - status: Reconciliation outcome, "not_processing", "not_found",
          or "failed"
        - transaction_id: The ID processed
    """
    from payments.models import PaymentTransaction
    from payments.services import PaymentOrchestrator
    from payments.state_machines import TransactionStatus

    try:
        transaction_uuid = UUID(transaction_id)
    except ValueError:
        logger.error(f"Invalid transaction_id format: {transaction_id}")
        return {
            "status": "failed",
            "transaction_id": transaction_id,
            "error": "Invalid UUID format",
        }

    try:
        txn = PaymentTransaction.objects.get(pk=transaction_uuid)
    except PaymentTransaction.DoesNotExist:
        logger.warning("Transaction not found", extra={"transaction_id": transaction_id})
        return {"status": "not_found", "transaction_id": transaction_id}

    if txn.status != TransactionStatus.PROCESSING:
        return {
            "status": "not_processing",
            "transaction_id": transaction_id,
            "current_state": txn.status,
        }

    try:
        result = PaymentOrchestrator().reconciliation.reconcile_transaction(txn)
    except LockAcquisitionError as e:
        logger.warning(
            f"Could not lock transaction for reconciliation: {e}",
            extra={"transaction_id": transaction_id},
        )
        return {
            "status": "failed",
            "transaction_id": transaction_id,
            "error_code": e.error_code,
        }

    return {
        "status": result.outcome.value,
        "transaction_id": transaction_id,
        "current_state": result.status,
        "error": result.error,
    }


__all__ = [
    "reconcile_processing_transactions",
    "reconcile_single_transaction",
]

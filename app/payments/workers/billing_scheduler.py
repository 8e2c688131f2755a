"""
Billing scheduler for fleet subscriptions.

Tasks:
- bill_due_subscriptions: Periodic task that expires lapsed subscriptions
  and queues a billing task for every subscription that is due
- bill_single_subscription: Bills one subscription under its lock

Usage:
    # Typically called via celery-beat schedule
    from payments.workers import bill_due_subscriptions

    # Or bill one fleet right away
    bill_single_subscription.delay(str(subscription_id))

Celery Beat Schedule (installed by migration 0002):
    'subscription-billing-hourly': {
        'task': 'payments.workers.billing_scheduler.bill_due_subscriptions',
        'schedule': crontab(minute=0),
    }
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.utils import timezone

from payments.adapters import MAX_RETRIES, backoff_delay
from payments.exceptions import GatewayError, LockAcquisitionError, PaymentError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum subscriptions queued per scan
BATCH_SIZE = 200


# =============================================================================
# Periodic Task: Scan for Due Subscriptions
# =============================================================================


@shared_task(bind=True)
def bill_due_subscriptions(self, batch_size: int = BATCH_SIZE) -> dict:
    """
    Expire lapsed subscriptions, then queue billing for the due ones.

    Idempotent: bill_single_subscription re-checks due-ness under the
    subscription lock, so a subscription queued twice is billed once.

    Returns:
        Dict with expired_count and queued_count
    """
    from payments.services import PaymentOrchestrator

    now = timezone.now()
    billing = PaymentOrchestrator().billing

    expired_count = billing.expire_lapsed(now)
    due = billing.due_subscriptions(now).order_by("next_billing_date")[:batch_size]

    queued_count = 0
    for subscription in due:
        bill_single_subscription.delay(str(subscription.id))
        queued_count += 1

    logger.info(
        f"Subscription billing scan complete: queued {queued_count}",
        extra={
            "queued_count": queued_count,
            "expired_count": expired_count,
            "task_id": self.request.id,
        },
    )
    return {"expired_count": expired_count, "queued_count": queued_count}


# =============================================================================
# Individual Billing Task
# =============================================================================


@shared_task(bind=True, acks_late=True, max_retries=MAX_RETRIES)
def bill_single_subscription(self, subscription_id: str) -> dict:
    """
    Bill one subscription cycle.

    Returns:
        Dict with:
        - status: "billed", "declined", "not_due", "invalid", or "failed"
        - subscription_id: The ID processed
        - subscription_status: Status after billing, when billed or declined

    Raises:
        celery.exceptions.Retry: On lock contention or a retryable gateway
            error; the retry reuses the same PROCESSING transaction, so the
            gateway sees the same idempotency key.
    """
    from payments.services import PaymentOrchestrator
    from payments.state_machines import TransactionStatus

    try:
        subscription_uuid = UUID(subscription_id)
    except ValueError:
        logger.error(f"Invalid subscription_id format: {subscription_id}")
        return {"status": "invalid", "subscription_id": subscription_id}

    billing = PaymentOrchestrator().billing

    try:
        txn = billing.process_subscription_payment(subscription_uuid)
    except (LockAcquisitionError, GatewayError) as e:
        if not e.is_retryable:
            logger.warning(
                f"Subscription billing failed: {e.error_code}",
                extra={"subscription_id": subscription_id, "error_code": e.error_code},
            )
            return {
                "status": "failed",
                "subscription_id": subscription_id,
                "error_code": e.error_code,
            }
        countdown = backoff_delay(self.request.retries)
        logger.warning(
            f"Subscription billing will retry in {countdown:.1f}s",
            extra={
                "subscription_id": subscription_id,
                "error_code": e.error_code,
                "retries": self.request.retries,
            },
        )
        raise self.retry(exc=e, countdown=countdown)
    except PaymentError as e:
        logger.info(
            f"Subscription not billable: {e.error_code}",
            extra={"subscription_id": subscription_id, "error_code": e.error_code},
        )
        return {
            "status": "invalid",
            "subscription_id": subscription_id,
            "error_code": e.error_code,
        }

    if txn is None:
        return {"status": "not_due", "subscription_id": subscription_id}

    subscription = billing.get_subscription(subscription_uuid)
    status = "billed" if txn.status == TransactionStatus.COMPLETE else "declined"
    logger.info(
        f"Subscription {status}",
        extra={
            "subscription_id": subscription_id,
            "transaction_id": str(txn.id),
            "subscription_status": subscription.status,
        },
    )
    return {
        "status": status,
        "subscription_id": subscription_id,
        "transaction_id": str(txn.id),
        "subscription_status": subscription.status,
    }


__all__ = [
    "bill_due_subscriptions",
    "bill_single_subscription",
]

"""
Concurrency control for per-shipment and per-subscription operations.

Two complementary mechanisms:

1. **Distributed Locks** (DistributedLock, shipment_lock, subscription_lock)
   - Redis SET NX EX with an owner token, released by a Lua check-and-delete
   - Serializes create → release → refund for one shipment across workers
   - Held across the gateway round-trip, never across a DB row lock

2. **Optimistic Locking** (check_version)
   - Version-counter check combined with select_for_update
   - Used by admin-driven updates that were prepared from a stale read

Usage:

    from payments.locks import shipment_lock

    with shipment_lock(shipment_id):
        # Only one worker can touch this shipment's escrow at a time
        manager._release(shipment_id)

    from payments.locks import check_version

    with transaction.atomic():
        request = check_version(RefundRequest, request_id, expected_version=2)
        ...

Note:
    Database constraints (partial unique indexes on escrow-in and
    settlement per shipment) remain the last line of defence if a lock
    TTL expires mid-operation.
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.conf import settings
from django.db import models, transaction
from django_redis import get_redis_connection

from payments.exceptions import LockAcquisitionError, PaymentNotFoundError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Features:
        - TTL prevents deadlocks from crashed workers
        - Token-based ownership: a worker can only release its own lock
        - Blocking (with timeout) and non-blocking acquisition
        - Context manager support

    Example:
        with DistributedLock("escrow:shipment:123", ttl=60):
            create_or_release()

        lock = DistributedLock("subscription:456", blocking=False)
        try:
            with lock:
                bill()
        except LockAcquisitionError:
            # Another worker is billing this subscription
            pass

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Lock TTL in seconds (auto-releases after this time)
        blocking: If True, acquire() polls until available or timeout
        timeout: Maximum wait time in seconds (only if blocking=True)
    """

    # Atomic check-and-delete so a worker never frees someone else's lock
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    POLL_INTERVAL_SECONDS = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        """Get Redis connection (lazy initialization)."""
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: If the lock could not be acquired
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            deadline = time.monotonic() + self.timeout
            while time.monotonic() < deadline:
                if self._try_acquire(redis):
                    return True
                time.sleep(self.POLL_INTERVAL_SECONDS)

            self._token = None
            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis):
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Returns:
            True if lock was released, False if we didn't hold it
        """
        if self._token is None:
            return False

        redis = self._get_redis()
        result = redis.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, additional_ttl: int | None = None) -> bool:
        """
        Reset the lock TTL if we hold it.

        Args:
            additional_ttl: New TTL in seconds (defaults to original TTL)

        Returns:
            True if lock was extended, False if we don't hold it
        """
        if self._token is None:
            return False

        ttl = additional_ttl or self.ttl
        redis = self._get_redis()
        result = redis.eval(self.EXTEND_SCRIPT, 1, self.key, self._token, ttl)
        return bool(result)

    @property
    def is_held(self) -> bool:
        """Check if we currently hold the lock."""
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False  # Don't suppress exceptions


def shipment_lock(shipment_id: Any) -> DistributedLock:
    """Lock serializing every escrow operation for one shipment."""
    return DistributedLock(
        f"escrow:shipment:{shipment_id}",
        ttl=getattr(settings, "PAYMENT_LOCK_TTL_SECONDS", 60),
        timeout=getattr(settings, "PAYMENT_LOCK_TIMEOUT_SECONDS", 10.0),
    )


def subscription_lock(subscription_id: Any) -> DistributedLock:
    """Lock serializing billing operations for one subscription."""
    return DistributedLock(
        f"subscription:{subscription_id}",
        ttl=getattr(settings, "PAYMENT_LOCK_TTL_SECONDS", 60),
        timeout=getattr(settings, "PAYMENT_LOCK_TIMEOUT_SECONDS", 10.0),
    )


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Atomically check version and lock a record for update.

    Args:
        model_class: Django model class (must have a 'version' field)
        pk: Primary key of the record
        expected_version: Version the caller read earlier

    Returns:
        The locked model instance

    Raises:
        StaleRecordError: If version doesn't match (concurrent modification)
        PaymentNotFoundError: If record doesn't exist

    Note:
        Call inside transaction.atomic(); the row lock is held until the
        outer transaction commits or rolls back.
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )
        if instance is not None:
            return instance

        model_name = model_class.__name__
        current = model_class.objects.filter(pk=pk).first()
        if current is None:
            raise PaymentNotFoundError(
                f"{model_name} {pk} not found",
                details={"pk": str(pk)},
            )

        raise StaleRecordError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current.version})",
            details={
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current.version,
            },
        )


__all__ = [
    "DistributedLock",
    "check_version",
    "shipment_lock",
    "subscription_lock",
]

"""
FleetSubscription model for recurring fleet billing.

A fleet operator pays a fixed fee every billing cycle. Each billing
attempt creates a SUBSCRIPTION PaymentTransaction linked to the
subscription.

Usage:
    from payments.models import FleetSubscription
    from payments.state_machines import BillingCycle, SubscriptionTier

    subscription = FleetSubscription.objects.create(
        fleet_id=fleet_id,
        tier=SubscriptionTier.PREMIUM,
        billing_cycle=BillingCycle.MONTHLY,
        fee_minor=499_900,
        billing_anchor_day=now.day,
        current_period_start=now,
        current_period_end=add_billing_cycle(now, BillingCycle.MONTHLY),
        next_billing_date=add_billing_cycle(now, BillingCycle.MONTHLY),
    )
"""

from __future__ import annotations

import calendar
from datetime import datetime

from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel

from payments.state_machines import (
    BillingCycle,
    FeeBasis,
    SubscriptionStatus,
    SubscriptionTier,
)

CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}

LIVE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE,
    SubscriptionStatus.SUSPENDED,
)


def add_billing_cycle(
    start: datetime,
    cycle: BillingCycle | str,
    anchor_day: int | None = None,
) -> datetime:
    """
    Advance a datetime by one billing cycle in calendar months.

    The day of month is anchor_day (default: start's day) clamped to the
    last day of the target month, so 31 Jan + 1 month is 28/29 Feb and,
    with anchor_day=31, 28 Feb + 1 month is 31 Mar.
    """
    months = CYCLE_MONTHS[BillingCycle(cycle)]
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor_day or start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class FleetSubscription(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A fleet's recurring subscription.

    State Flow:
        ACTIVE -> ACTIVE (renewed)
        ACTIVE -> GRACE (renewal payment failed)
        GRACE -> ACTIVE (renewed) | SUSPENDED (still failing after grace)
        SUSPENDED -> ACTIVE (reactivated after a successful payment)
        ACTIVE/GRACE -> EXPIRED (period ended without auto-renew)
        ACTIVE/GRACE/SUSPENDED -> CANCELLED

    Invariant:
        While ACTIVE, current_period_end == next_billing_date.
        grace_period_end is set only while in GRACE.
    """

    # ==========================================================================
    # Plan
    # ==========================================================================

    fleet_id = models.UUIDField(
        db_index=True,
        help_text="Fleet operator being billed",
    )
    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        default=SubscriptionTier.BASIC,
        help_text="Subscription tier (also selects the commission rate)",
    )
    billing_cycle = models.CharField(
        max_length=20,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
        help_text="Billing interval",
    )
    fee_minor = models.PositiveBigIntegerField(
        help_text="Fee per cycle in smallest currency unit (per vehicle for per-vehicle basis)",
    )
    currency = models.CharField(
        max_length=3,
        default="inr",
        help_text="ISO 4217 currency code (lowercase)",
    )
    fee_basis = models.CharField(
        max_length=20,
        choices=FeeBasis.choices,
        default=FeeBasis.PER_FLEET,
        help_text="Whether the fee is charged per fleet or per vehicle",
    )
    vehicle_count = models.PositiveIntegerField(
        default=1,
        help_text="Vehicles billed when the fee basis is per vehicle",
    )

    # ==========================================================================
    # State & Period
    # ==========================================================================

    status = FSMField(
        default=SubscriptionStatus.ACTIVE,
        choices=SubscriptionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current subscription state (managed by FSM)",
    )
    current_period_start = models.DateTimeField(
        help_text="Start of the paid period",
    )
    current_period_end = models.DateTimeField(
        help_text="End of the paid period",
    )
    next_billing_date = models.DateTimeField(
        db_index=True,
        help_text="When the next renewal payment is due",
    )
    grace_period_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Deadline for a successful payment before suspension",
    )
    billing_anchor_day = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        help_text="Day of month renewals fall on (the subscription's start day)",
    )
    auto_renew = models.BooleanField(
        default=True,
        help_text="Whether the scheduler bills this subscription at period end",
    )
    failed_payment_count = models.PositiveIntegerField(
        default=0,
        help_text="Consecutive failed renewal payments",
    )
    cancelled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the subscription was cancelled",
    )
    cancellation_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Reason given when cancelling",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Fleet Subscription"
        verbose_name_plural = "Fleet Subscriptions"
        indexes = [
            models.Index(fields=["status", "next_billing_date"], name="payments_fl_status_6a1d2b_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                check=Q(fee_minor__gt=0),
                name="subscription_fee_positive",
            ),
            models.UniqueConstraint(
                fields=["fleet_id"],
                condition=Q(status__in=LIVE_SUBSCRIPTION_STATUSES),
                name="unique_live_subscription_per_fleet",
            ),
        ]

    def __str__(self) -> str:
        return f"FleetSubscription({self.fleet_id}, {self.tier}, {self.status})"

    @property
    def billed_amount_minor(self) -> int:
        """Amount charged per cycle after applying the fee basis."""
        if self.fee_basis == FeeBasis.PER_VEHICLE:
            return self.fee_minor * max(self.vehicle_count, 1)
        return self.fee_minor

    def is_due(self, now: datetime | None = None) -> bool:
        return self.next_billing_date <= (now or timezone.now())

    def _advance_period(self) -> None:
        self.current_period_start = self.current_period_end
        self.current_period_end = add_billing_cycle(
            self.current_period_end, self.billing_cycle, self.billing_anchor_day
        )
        self.next_billing_date = self.current_period_end

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=[
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.GRACE,
            SubscriptionStatus.SUSPENDED,
        ],
        target=SubscriptionStatus.ACTIVE,
    )
    def renew(self):
        """
        Record a successful renewal payment.

        The paid period always advances from the old period end, so a late
        payment does not shift the billing anniversary.
        """
        self._advance_period()
        self.grace_period_end = None
        self.failed_payment_count = 0

    @transition(
        field=status,
        source=SubscriptionStatus.ACTIVE,
        target=SubscriptionStatus.GRACE,
    )
    def enter_grace(self, grace_period_end: datetime):
        self.grace_period_end = grace_period_end
        self.failed_payment_count += 1

    @transition(
        field=status,
        source=SubscriptionStatus.GRACE,
        target=SubscriptionStatus.SUSPENDED,
    )
    def suspend(self):
        self.failed_payment_count += 1

    @transition(
        field=status,
        source=[SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE],
        target=SubscriptionStatus.EXPIRED,
    )
    def expire(self):
        self.grace_period_end = None

    @transition(
        field=status,
        source=[
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.GRACE,
            SubscriptionStatus.SUSPENDED,
        ],
        target=SubscriptionStatus.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason or None
        self.auto_renew = False

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES

"""
RefundRequest model for refund and dispute adjudication.

A shipper (or an admin) asks for money back on a shipment. An approver
accepts or rejects it; an accepted request is paid out through the
escrow manager and linked to the resulting REFUND transaction.

Usage:
    from payments.models import RefundRequest
    from payments.state_machines import RefundRequestType

    request = RefundRequest.objects.create(
        shipment_id=shipment_id,
        requester_id=shipper_id,
        request_type=RefundRequestType.CANCELLATION,
        amount_requested_minor=1_000_000,
        reason="Shipment cancelled before pickup",
    )

    request.approve(approver_id=admin_id, amount_minor=1_000_000)
    request.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel

from payments.state_machines import (
    OPEN_REFUND_STATUSES,
    RefundRequestStatus,
    RefundRequestType,
)


class RefundRequest(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A request to return money for a shipment.

    State Flow:
        PENDING -> APPROVED -> PROCESSING -> COMPLETED
        PENDING -> REJECTED

    An APPROVED request whose refund could not reach the gateway stays
    APPROVED and can be processed again.

    Constraint:
        At most one open (pending/approved/processing) request per shipment.
    """

    # ==========================================================================
    # Request
    # ==========================================================================

    shipment_id = models.UUIDField(
        db_index=True,
        help_text="Shipment the refund is requested for",
    )
    requester_id = models.UUIDField(
        help_text="Who asked for the refund",
    )
    request_type = models.CharField(
        max_length=20,
        choices=RefundRequestType.choices,
        help_text="Why the refund was requested",
    )
    amount_requested_minor = models.PositiveBigIntegerField(
        help_text="Amount asked for in smallest currency unit",
    )
    reason = models.TextField(
        blank=True,
        default="",
        help_text="Requester's explanation",
    )
    evidence = models.JSONField(
        default=dict,
        blank=True,
        help_text="Supporting material (photos, documents, notes)",
    )

    # ==========================================================================
    # Decision
    # ==========================================================================

    status = FSMField(
        default=RefundRequestStatus.PENDING,
        choices=RefundRequestStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current request state (managed by FSM)",
    )
    amount_approved_minor = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Amount granted by the approver",
    )
    approver_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Admin who approved or rejected the request",
    )
    approved_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the request was approved",
    )
    rejection_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Approver's reason for rejecting",
    )
    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the refund was paid out or the request closed",
    )
    refund_transaction = models.ForeignKey(
        "payments.PaymentTransaction",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
        help_text="REFUND transaction that paid this request",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund Request"
        verbose_name_plural = "Refund Requests"
        constraints = [
            models.CheckConstraint(
                check=Q(amount_requested_minor__gt=0),
                name="refund_request_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["shipment_id"],
                condition=Q(status__in=OPEN_REFUND_STATUSES),
                name="unique_open_refund_request_per_shipment",
            ),
        ]

    def __str__(self) -> str:
        return f"RefundRequest({self.id}, {self.request_type}, {self.status})"

    @property
    def is_dispute(self) -> bool:
        return self.request_type == RefundRequestType.DISPUTE

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=RefundRequestStatus.PENDING,
        target=RefundRequestStatus.APPROVED,
    )
    def approve(self, approver_id, amount_minor: int):
        self.approver_id = approver_id
        self.amount_approved_minor = amount_minor
        self.approved_at = timezone.now()

    @transition(
        field=status,
        source=RefundRequestStatus.PENDING,
        target=RefundRequestStatus.REJECTED,
    )
    def reject(self, approver_id, reason: str = ""):
        self.approver_id = approver_id
        self.rejection_reason = reason or None
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=RefundRequestStatus.APPROVED,
        target=RefundRequestStatus.PROCESSING,
    )
    def start_processing(self, refund_transaction):
        self.refund_transaction = refund_transaction

    @transition(
        field=status,
        source=RefundRequestStatus.PROCESSING,
        target=RefundRequestStatus.COMPLETED,
    )
    def complete(self):
        self.processed_at = timezone.now()

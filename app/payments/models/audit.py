"""
AuditEntry model: append-only record of every payment state change.

Written by payments.services.audit.AuditLogger. Rows are never updated or
deleted, through the instance or the queryset.
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin

from payments.exceptions import ImmutableRecordError
from payments.state_machines import ActorType


class AuditEntryQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise ImmutableRecordError("Audit entries are append-only")

    def delete(self):
        raise ImmutableRecordError("Audit entries are append-only")

    def for_payment(self, payment_id):
        return self.filter(payment_id=payment_id).order_by("created_at")


class AuditEntry(UUIDPrimaryKeyMixin, models.Model):
    """
    One audited action.

    Fields:
        payment_id: Transaction, refund request or subscription acted on
        entity_type: Model name of that entity
        action: Verb, e.g. "escrow.held", "refund_request.approved"
        actor_id: Who did it (empty for the system itself)
        actor_type: user, admin, system or scheduler
        old_values/new_values: JSON snapshots before and after
        metadata: Extra context (related transaction ids, error codes)
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="When the action was recorded",
    )
    payment_id = models.UUIDField(
        db_index=True,
        help_text="Entity the action was performed on",
    )
    entity_type = models.CharField(
        max_length=50,
        default="payment_transaction",
        help_text="Type of the entity acted on",
    )
    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="What happened",
    )
    actor_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Who performed the action",
    )
    actor_type = models.CharField(
        max_length=20,
        choices=ActorType.choices,
        default=ActorType.SYSTEM,
        help_text="Kind of actor",
    )
    old_values = models.JSONField(
        null=True,
        blank=True,
        help_text="Snapshot before the action",
    )
    new_values = models.JSONField(
        null=True,
        blank=True,
        help_text="Snapshot after the action",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional context",
    )

    objects = AuditEntryQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Audit Entry"
        verbose_name_plural = "Audit Entries"
        indexes = [
            models.Index(fields=["payment_id", "created_at"], name="payments_au_payment_7d3c56_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.action} on {self.payment_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Audit entries are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Audit entries are append-only")

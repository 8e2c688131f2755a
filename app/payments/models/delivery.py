"""
DeliveryConfirmation: the proof-of-delivery event that unlocks escrow.

Written once per shipment by the tracking side of the marketplace (or an
operator). Release of a shipment's escrow requires one to exist.
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class DeliveryConfirmation(UUIDPrimaryKeyMixin, BaseModel):
    """
    Confirmation that a shipment was delivered.

    Fields:
        shipment_id: Delivered shipment (one confirmation per shipment)
        confirmed_at: When delivery happened (reported by the event source)
        proof_reference: Proof-of-delivery document or photo reference
        confirmed_by: Actor that recorded the event
    """

    shipment_id = models.UUIDField(
        unique=True,
        help_text="Delivered shipment",
    )
    confirmed_at = models.DateTimeField(
        help_text="When the shipment was delivered",
    )
    proof_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Reference to the proof-of-delivery artefact",
    )
    confirmed_by = models.UUIDField(
        null=True,
        blank=True,
        help_text="Actor that recorded the confirmation",
    )

    class Meta:
        ordering = ["-confirmed_at"]
        verbose_name = "Delivery Confirmation"
        verbose_name_plural = "Delivery Confirmations"

    def __str__(self) -> str:
        return f"DeliveryConfirmation({self.shipment_id})"

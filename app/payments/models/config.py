"""
PaymentConfig model: business tunables stored in the database.

Values are read on every operation, so an update takes effect on the next
call without a restart. Use payments.services.config_store.ConfigStore
rather than querying this model directly.
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel

from payments.state_machines import ConfigCategory


class PaymentConfig(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    One named configuration value.

    Fields:
        key: Dotted name, e.g. "commission.rates"
        value: JSON value
        category: Area of the engine the key belongs to
        version: Incremented on every update
        updated_by: Actor that last changed the value
        is_active: Inactive keys fall back to compiled defaults
    """

    key = models.CharField(
        max_length=100,
        unique=True,
        help_text="Dotted configuration key",
    )
    value = models.JSONField(
        help_text="Configuration value (any JSON type)",
    )
    category = models.CharField(
        max_length=20,
        choices=ConfigCategory.choices,
        db_index=True,
        help_text="Engine area this key configures",
    )
    description = models.TextField(
        blank=True,
        default="",
        help_text="What this key controls",
    )
    updated_by = models.UUIDField(
        null=True,
        blank=True,
        help_text="Actor that last changed the value",
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Inactive keys are ignored and compiled defaults apply",
    )

    class Meta:
        ordering = ["category", "key"]
        verbose_name = "Payment Config"
        verbose_name_plural = "Payment Config"

    def __str__(self) -> str:
        return f"{self.key} (v{self.version})"

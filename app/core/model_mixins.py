"""
Model mixins providing reusable functionality for Django models.

These are abstract mixin classes combined with BaseModel. They carry no
payment-specific logic.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    VersionedMixin: Optimistic locking counter incremented on every update

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

    class PaymentTransaction(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
        amount_minor = models.PositiveBigIntegerField()

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid

from django.db import models
from django.db.models import F


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Payment records are referenced by external systems (gateway metadata,
    dashboards, audit trail) so identifiers must be non-guessable and safe
    to generate before the row is inserted.

    Fields:
        id: UUIDField as primary key (auto-generated)

    Usage:
        class Wallet(UUIDPrimaryKeyMixin, BaseModel):
            kind = models.CharField(max_length=30)

        wallet = Wallet.objects.create(kind="fleet")
        print(wallet.id)  # UUID like: 550e8400-e29b-41d4-a716-446655440000
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class VersionedMixin(models.Model):
    """
    Optimistic locking counter.

    On update (not force_insert), the version column is incremented in SQL
    with an F() expression, so two writers that both loaded version N can
    be told apart by payments.locks.check_version().

    Fields:
        version: Incremented on each save of an existing row

    Note:
        After save() the in-memory value is refreshed from the database,
        so instance.version is always a plain integer.
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        is_update = (
            not self._state.adding
            and self.pk
            and not kwargs.get("force_insert", False)
        )
        if is_update:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None:
                kwargs["update_fields"] = {*update_fields, "version"}
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

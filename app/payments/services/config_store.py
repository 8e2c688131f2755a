"""
Database-backed configuration with compiled-in defaults.

Every read goes to PaymentConfig, so an operator's update applies to the
next operation without a restart. Keys absent from the database fall back
to DEFAULTS; a key with neither raises ConfigMissingError.

Usage:
    store = ConfigStore()
    grace_days = store.get("subscription.grace_period_days")  # 7
    store.set("subscription.grace_period_days", 10, actor_id=admin_id)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from django.db import transaction

from payments.exceptions import ConfigMissingError
from payments.models import PaymentConfig
from payments.state_machines import ConfigCategory

logger = logging.getLogger(__name__)

_MISSING = object()

# key -> (value, category, description)
DEFAULTS: dict[str, tuple[Any, str, str]] = {
    "commission.rates": (
        {"basic": "7.0", "premium": "5.0", "enterprise": "3.0"},
        ConfigCategory.COMMISSION,
        "Commission percentage per subscription tier",
    ),
    "escrow.hold_period_days": (
        3,
        ConfigCategory.ESCROW,
        "Days held funds are expected to wait after delivery before release",
    ),
    "subscription.grace_period_days": (
        7,
        ConfigCategory.SUBSCRIPTION,
        "Days a fleet may keep operating after a failed renewal payment",
    ),
    "refund.commission_refundable": (
        False,
        ConfigCategory.REFUND,
        "Whether approved refunds also return the platform commission",
    ),
    "reconciliation.processing_deadline_minutes": (
        60,
        ConfigCategory.GATEWAY,
        "Minutes a transaction may stay processing before it is failed",
    ),
}


class ConfigStore:
    """Read and write PaymentConfig values."""

    def get(self, key: str, default: Any = _MISSING) -> Any:
        """
        Current value for a key.

        Resolution order: active database row, the caller's default,
        the compiled default.

        Raises:
            ConfigMissingError: Key unknown everywhere
        """
        row = PaymentConfig.objects.filter(key=key, is_active=True).first()
        if row is not None:
            return row.value
        if default is not _MISSING:
            return default
        if key in DEFAULTS:
            return DEFAULTS[key][0]

        logger.critical("Missing payment configuration", extra={"config_key": key})
        raise ConfigMissingError(
            f"Configuration key '{key}' is not set",
            details={"key": key},
        )

    def get_int(self, key: str) -> int:
        return int(self.get(key))

    def get_bool(self, key: str) -> bool:
        value = self.get(key)
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)

    def set(
        self,
        key: str,
        value: Any,
        actor_id: uuid.UUID | None = None,
        category: str | None = None,
        description: str | None = None,
    ) -> PaymentConfig:
        """
        Create or update a key; the row's version is bumped on update.
        """
        default_category = DEFAULTS.get(key, (None, ConfigCategory.GATEWAY, ""))[1]
        with transaction.atomic():
            row = PaymentConfig.objects.select_for_update().filter(key=key).first()
            if row is None:
                row = PaymentConfig.objects.create(
                    key=key,
                    value=value,
                    category=category or default_category,
                    description=description or DEFAULTS.get(key, (None, None, ""))[2],
                    updated_by=actor_id,
                )
            else:
                row.value = value
                row.updated_by = actor_id
                row.is_active = True
                if category:
                    row.category = category
                if description is not None:
                    row.description = description
                row.save()

        logger.info(
            "Payment configuration updated",
            extra={"config_key": key, "version": row.version, "actor_id": str(actor_id)},
        )
        return row

    def all(self, category: str | None = None) -> dict[str, Any]:
        """Effective configuration: compiled defaults overlaid by active rows."""
        values = {
            key: value
            for key, (value, key_category, _) in DEFAULTS.items()
            if category is None or key_category == category
        }
        rows = PaymentConfig.objects.filter(is_active=True)
        if category is not None:
            rows = rows.filter(category=category)
        values.update({row.key: row.value for row in rows})
        return values

"""
Best-effort audit logging.

Every payment state change is recorded as an AuditEntry. Writing the entry
must never break the operation being audited: failures are reported on the
"payments.audit.errors" logger and swallowed. Each write runs in its own
savepoint so a failed insert does not poison the caller's transaction.

Usage:
    audit = AuditLogger()
    before = snapshot(txn)
    txn.mark_held()
    txn.save()
    audit.log(txn.id, "escrow.held", actor_id, ActorType.USER,
              old_values=before, new_values=snapshot(txn))
"""

from __future__ import annotations

import datetime
import decimal
import logging
import uuid
from typing import Any

from django.db import models, transaction

from payments.models import AuditEntry
from payments.state_machines import ActorType

error_logger = logging.getLogger("payments.audit.errors")

SNAPSHOT_EXCLUDE = frozenset({"created_at", "updated_at", "provider_response"})


def _json_safe(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, decimal.Decimal)):
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def snapshot(instance: models.Model, fields: list[str] | None = None) -> dict[str, Any]:
    """
    Render model fields as a JSON-safe dict.

    Foreign keys are rendered as their raw id. Timestamps and the raw
    gateway payload are left out unless named explicitly.
    """
    values: dict[str, Any] = {}
    for field in instance._meta.concrete_fields:
        if fields is not None and field.name not in fields:
            continue
        if fields is None and field.name in SNAPSHOT_EXCLUDE:
            continue
        values[field.name] = _json_safe(getattr(instance, field.attname))
    return values


class AuditLogger:
    """Append-only writer for AuditEntry rows."""

    def log(
        self,
        payment_id: uuid.UUID,
        action: str,
        actor_id: uuid.UUID | None = None,
        actor_type: ActorType | str = ActorType.SYSTEM,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        entity_type: str = "payment_transaction",
    ) -> AuditEntry | None:
        """
        Record one action. Returns None if the entry could not be written.
        """
        try:
            with transaction.atomic():
                return AuditEntry.objects.create(
                    payment_id=payment_id,
                    entity_type=entity_type,
                    action=action,
                    actor_id=actor_id,
                    actor_type=actor_type,
                    old_values=_json_safe(old_values) if old_values is not None else None,
                    new_values=_json_safe(new_values) if new_values is not None else None,
                    metadata=_json_safe(metadata or {}),
                )
        except Exception:
            error_logger.error(
                "Failed to write audit entry",
                extra={
                    "payment_id": str(payment_id),
                    "action": action,
                    "actor_id": str(actor_id) if actor_id else None,
                },
                exc_info=True,
            )
            return None

    def history(self, payment_id: uuid.UUID) -> list[AuditEntry]:
        return list(AuditEntry.objects.for_payment(payment_id))

"""
Tests for AuditLogger and the append-only AuditEntry model.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from django.db import DatabaseError, transaction

from payments.exceptions import ImmutableRecordError
from payments.models import AuditEntry
from payments.services import AuditLogger
from payments.services.audit import snapshot
from payments.state_machines import ActorType
from payments.tests.factories import AuditEntryFactory, PaymentTransactionFactory


@pytest.fixture
def audit(db):
    return AuditLogger()


class TestLog:
    def test_writes_entry(self, audit):
        payment_id = uuid.uuid4()
        actor_id = uuid.uuid4()

        entry = audit.log(
            payment_id,
            "escrow_in.held",
            actor_id,
            ActorType.USER,
            old_values={"status": "processing"},
            new_values={"status": "held"},
        )

        assert entry is not None
        entry.refresh_from_db()
        assert entry.payment_id == payment_id
        assert entry.actor_id == actor_id
        assert entry.actor_type == ActorType.USER
        assert entry.new_values == {"status": "held"}
        assert entry.entity_type == "payment_transaction"

    def test_values_are_made_json_safe(self, audit):
        entry = audit.log(
            uuid.uuid4(),
            "config.updated",
            metadata={"rate": Decimal("7.5"), "at": datetime(2026, 1, 5, 9, 30)},
        )

        assert entry.metadata == {"rate": "7.5", "at": "2026-01-05T09:30:00"}

    def test_defaults_to_system_actor(self, audit):
        entry = audit.log(uuid.uuid4(), "reconciliation.resolved")

        assert entry.actor_type == ActorType.SYSTEM
        assert entry.actor_id is None

    def test_write_failure_is_swallowed_and_reported(self, audit, mocker):
        error_logger = mocker.patch("payments.services.audit.error_logger")
        mocker.patch.object(
            AuditEntry.objects, "create", side_effect=DatabaseError("disk full")
        )

        entry = audit.log(uuid.uuid4(), "escrow_in.held")

        assert entry is None
        error_logger.error.assert_called_once()
        assert error_logger.error.call_args[1]["extra"]["action"] == "escrow_in.held"

    def test_failure_does_not_break_outer_transaction(self, audit, mocker):
        txn = PaymentTransactionFactory()
        mocker.patch.object(
            AuditEntry.objects, "create", side_effect=DatabaseError("disk full")
        )

        with transaction.atomic():
            audit.log(txn.id, "escrow_in.created")
            txn.metadata = {"note": "still writable"}
            txn.save()

        txn.refresh_from_db(fields=["metadata"])
        assert txn.metadata == {"note": "still writable"}

    def test_history_is_oldest_first(self, audit):
        payment_id = uuid.uuid4()
        audit.log(payment_id, "escrow_in.created")
        audit.log(payment_id, "escrow_in.submitted")
        audit.log(uuid.uuid4(), "unrelated")

        actions = [entry.action for entry in audit.history(payment_id)]

        assert actions == ["escrow_in.created", "escrow_in.submitted"]


class TestSnapshot:
    def test_renders_foreign_keys_as_ids(self, db):
        txn = PaymentTransactionFactory()

        values = snapshot(txn)

        assert values["id"] == str(txn.id)
        assert values["status"] == "pending"
        assert "escrow_wallet" in values
        assert "created_at" not in values
        assert "provider_response" not in values

    def test_selected_fields_only(self, db):
        txn = PaymentTransactionFactory()

        assert snapshot(txn, ["status", "amount_minor"]) == {
            "status": "pending",
            "amount_minor": 1_395_000,
        }


class TestAppendOnly:
    def test_instance_update_rejected(self, db):
        entry = AuditEntryFactory()
        entry.action = "tampered"

        with pytest.raises(ImmutableRecordError):
            entry.save()

    def test_instance_delete_rejected(self, db):
        entry = AuditEntryFactory()

        with pytest.raises(ImmutableRecordError):
            entry.delete()

    def test_queryset_update_and_delete_rejected(self, db):
        AuditEntryFactory()

        with pytest.raises(ImmutableRecordError):
            AuditEntry.objects.all().update(action="tampered")
        with pytest.raises(ImmutableRecordError):
            AuditEntry.objects.all().delete()

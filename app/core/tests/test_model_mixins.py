"""
Tests for the mixins in core/model_mixins.py.

PaymentConfig is used as the concrete model: it combines
UUIDPrimaryKeyMixin, VersionedMixin and BaseModel.
"""

import uuid

import pytest

from payments.models import PaymentConfig
from payments.state_machines import ConfigCategory


@pytest.fixture
def config_row(db):
    return PaymentConfig.objects.create(
        key="escrow.hold_period_days",
        value=3,
        category=ConfigCategory.ESCROW,
    )


class TestUUIDPrimaryKeyMixin:
    def test_id_generated_before_insert(self):
        row = PaymentConfig(key="k", value=1, category=ConfigCategory.ESCROW)

        assert isinstance(row.id, uuid.UUID)

    def test_ids_are_unique(self, db):
        first = PaymentConfig.objects.create(key="a", value=1, category=ConfigCategory.ESCROW)
        second = PaymentConfig.objects.create(key="b", value=1, category=ConfigCategory.ESCROW)

        assert first.id != second.id


class TestVersionedMixin:
    def test_new_row_starts_at_one(self, config_row):
        assert config_row.version == 1

    def test_save_increments_version(self, config_row):
        config_row.value = 5
        config_row.save()

        assert config_row.version == 2
        assert PaymentConfig.objects.get(pk=config_row.pk).version == 2

    def test_update_fields_includes_version(self, config_row):
        config_row.value = 7
        config_row.save(update_fields=["value"])

        stored = PaymentConfig.objects.get(pk=config_row.pk)
        assert stored.value == 7
        assert stored.version == 2

    def test_concurrent_writers_both_increment(self, config_row):
        """Two copies loaded at version 1 end at version 3, not 2."""
        first = PaymentConfig.objects.get(pk=config_row.pk)
        second = PaymentConfig.objects.get(pk=config_row.pk)

        first.save()
        second.save()

        assert second.version == 3
        assert PaymentConfig.objects.get(pk=config_row.pk).version == 3


class TestBaseModel:
    def test_timestamps_set(self, config_row):
        assert config_row.created_at is not None
        assert config_row.updated_at >= config_row.created_at

    def test_str(self, config_row):
        assert str(config_row) == "escrow.hold_period_days (v1)"

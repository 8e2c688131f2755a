"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's tests/conftest.py.
"""

import os
import django
import pytest

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()

    from django.conf import settings

    # Never reach a real provider from the test suite
    settings.PAYMENT_GATEWAY_CLASS = "payments.adapters.fake.FakeGateway"

    # Lock contention in tests should fail fast rather than poll
    settings.PAYMENT_LOCK_TIMEOUT_SECONDS = 0.2


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_scenarios.py → e2e (full shipment and subscription journeys)
    - test_orchestrator.py, test_tasks.py, manager tests → integration
    - test_models.py, test_commission.py, test_locks.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    # Filename patterns for each category
    e2e_patterns = ["test_scenarios.py"]

    integration_patterns = [
        "test_services.py",
        "test_tasks.py",
        "test_orchestrator.py",
        "test_escrow_manager.py",
        "test_refund_manager.py",
        "test_subscription_billing.py",
        "test_reconciliation.py",
        "test_audit_logger.py",
        "test_config_store.py",
        "test_reporting.py",
        "test_stripe_gateway.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_commission.py",
        "test_state_transitions.py",
        "test_locks.py",
        "test_fake_gateway.py",
        "test_service_result.py",
        "test_exceptions.py",
        "test_model_mixins.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filepath = str(item.fspath)
        filename = filepath.split("/")[-1]

        # Check patterns in priority order
        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            # Default: integration (safe for Django where most tests hit DB)
            item.add_marker(pytest.mark.integration)


def _patch_postgresql_flush_for_cascade():
    """
    Patch PostgreSQL flush to always use CASCADE.

    TransactionTestCase resets the database with TRUNCATE, which fails on
    tables referenced by foreign keys (ledger entries, transactions) unless
    CASCADE is used.
    """
    from django.db.backends.postgresql import operations

    original_sql_flush = operations.DatabaseOperations.sql_flush

    def sql_flush_with_cascade(
        self, style, tables, *, reset_sequences=False, allow_cascade=False
    ):
        # Force CASCADE for PostgreSQL to handle FK constraints
        return original_sql_flush(
            self, style, tables, reset_sequences=reset_sequences, allow_cascade=True
        )

    operations.DatabaseOperations.sql_flush = sql_flush_with_cascade


# Apply the patch when conftest is loaded
_patch_postgresql_flush_for_cascade()

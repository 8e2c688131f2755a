"""
Tests for the payments app.

This package contains test modules for:
- test_models.py: Transaction, subscription, refund and audit model rules
- test_state_transitions.py: django-fsm transition tables
- test_commission.py: Commission rounding and tier fallback
- test_escrow_manager.py / test_refund_manager.py /
  test_subscription_billing.py: Manager behaviour against FakeGateway
- test_orchestrator.py: Facade rules and error codes
- test_reconciliation.py: Resolution of PROCESSING transactions
- test_scenarios.py: Full shipment and subscription journeys
- test_tasks.py: Celery workers

Usage:
    pytest payments/tests/
    pytest payments/tests/test_escrow_manager.py
"""

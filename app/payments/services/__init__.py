"""
Payment services for escrow, subscriptions, refunds and reporting.

This module provides:
- PaymentOrchestrator: Single entry point; returns ServiceResult everywhere
- EscrowManager: Shipment escrow lifecycle and commission collection
- SubscriptionBillingManager: Fleet subscription billing and dunning
- RefundManager: Refund requests and dispute adjudication
- ReconciliationService: Resolves transactions stuck in PROCESSING
- ReportingService: Payment history, balances and analytics
- CommissionCalculator, ConfigStore, AuditLogger: shared collaborators

Usage:
    from payments.services import PaymentOrchestrator

    orchestrator = PaymentOrchestrator()

    # Capture a shipment payment into escrow
    result = orchestrator.create_shipment_escrow(
        shipment_id, shipper_id, fleet_id, gross_minor=1_500_000
    )

    # Proof of delivery releases the escrow to the fleet
    result = orchestrator.record_delivery_confirmation(shipment_id, actor_id=driver_id)

    # Refund part of a shipment
    result = orchestrator.create_refund_request(
        shipment_id, shipper_id, RefundRequestType.PARTIAL, 50_000, "Late delivery"
    )
    orchestrator.approve_refund_request(result.data.id, admin_id)
"""

from payments.services.audit import AuditLogger
from payments.services.commission import CommissionCalculator, CommissionQuote
from payments.services.config_store import ConfigStore
from payments.services.escrow import EscrowManager, ShipmentEscrow
from payments.services.orchestrator import PaymentOrchestrator
from payments.services.reconciliation import (
    ReconciliationOutcome,
    ReconciliationRunResult,
    ReconciliationService,
)
from payments.services.refund import RefundManager
from payments.services.reporting import PaymentAnalytics, ReportingService
from payments.services.subscription import SubscriptionBillingManager

__all__ = [
    "AuditLogger",
    "CommissionCalculator",
    "CommissionQuote",
    "ConfigStore",
    "EscrowManager",
    "PaymentAnalytics",
    "PaymentOrchestrator",
    "ReconciliationOutcome",
    "ReconciliationRunResult",
    "ReconciliationService",
    "RefundManager",
    "ReportingService",
    "ShipmentEscrow",
    "SubscriptionBillingManager",
]

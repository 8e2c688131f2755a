"""
Payments app: escrow, commission, settlements, fleet subscriptions and refunds.

This app handles:
- Wallets and a double-entry ledger (payments.ledger)
- Shipment escrow: commission split, hold, release, refund, dispute
- Fleet subscription billing with grace period and suspension
- Refund and dispute requests
- Append-only audit trail
- Gateway adapters (Stripe, deterministic fake)
- Background billing and reconciliation (Celery)

Usage:
    from payments.services import PaymentOrchestrator

    orchestrator = PaymentOrchestrator()
    result = orchestrator.create_shipment_escrow(
        shipment_id=shipment_id,
        payer_id=shipper_id,
        payee_id=fleet_id,
        gross_minor=1_500_000,
        payer_tier="basic",
    )
"""

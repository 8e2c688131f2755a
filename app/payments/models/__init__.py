"""
Payment domain models.

- Wallet, LedgerEntry: Double-entry ledger (defined in payments.ledger)
- PaymentTransaction: Every money movement and its lifecycle
- FleetSubscription: Recurring fleet billing
- RefundRequest: Refund and dispute adjudication
- DeliveryConfirmation: Proof-of-delivery event unlocking escrow
- PaymentConfig: Hot-reloadable business tunables
- AuditEntry: Append-only audit trail
"""

from payments.ledger.models import EntryType, LedgerEntry, Wallet, WalletKind
from payments.models.audit import AuditEntry
from payments.models.config import PaymentConfig
from payments.models.delivery import DeliveryConfirmation
from payments.models.refund import RefundRequest
from payments.models.subscription import FleetSubscription, add_billing_cycle
from payments.models.transaction import PaymentTransaction

__all__ = [
    "AuditEntry",
    "DeliveryConfirmation",
    "EntryType",
    "FleetSubscription",
    "LedgerEntry",
    "PaymentConfig",
    "PaymentTransaction",
    "RefundRequest",
    "Wallet",
    "WalletKind",
    "add_billing_cycle",
]

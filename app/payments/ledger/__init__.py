"""
Ledger - double-entry bookkeeping for wallet balances.

Every movement debits one wallet and credits another. Wallet balances are
stored on the wallet row and change only together with a LedgerEntry.

Public API:
    Models:
        Wallet - Holds a balance (platform escrow, commission, fleet, driver)
        LedgerEntry - Records movements between wallets
        WalletKind - Enum of wallet categories
        EntryType - Enum of movement types

    Service:
        ledger - Singleton instance of LedgerService
        LedgerService - Class with all ledger operations

    Types:
        Money - Monetary amount in minor units
        RecordEntryParams - Parameters for recording entries

    Exceptions:
        LedgerError - Base exception for ledger operations
        WalletNotFoundError - Wallet lookup failures
        InsufficientBalance - Balance validation failures
        InactiveWallet - Operations on inactive wallets

Usage:
    from payments.ledger import ledger, WalletKind, EntryType, RecordEntryParams

    clearing = ledger.get_or_create_wallet(WalletKind.EXTERNAL_CLEARING)
    escrow = ledger.get_or_create_wallet(WalletKind.PLATFORM_ESCROW)

    ledger.record_entry(RecordEntryParams(
        debit_wallet_id=clearing.id,
        credit_wallet_id=escrow.id,
        amount_minor=1_395_000,
        entry_type=EntryType.ESCROW_FUNDED,
        idempotency_key=f"txn:{txn.id}:funded",
    ))

    print(ledger.get_balance(escrow.id))  # 13950.00 INR
"""

from .exceptions import (
    InactiveWallet,
    InsufficientBalance,
    LedgerError,
    WalletNotFoundError,
)
from .models import EntryType, LedgerEntry, Wallet, WalletKind
from .services import LedgerService, ledger
from .types import Money, RecordEntryParams

__all__ = [
    # Models
    "Wallet",
    "LedgerEntry",
    "WalletKind",
    "EntryType",
    # Service
    "ledger",
    "LedgerService",
    # Types
    "Money",
    "RecordEntryParams",
    # Exceptions
    "LedgerError",
    "WalletNotFoundError",
    "InsufficientBalance",
    "InactiveWallet",
]

"""
Data types for ledger operations.

Types:
    Money: A monetary amount in minor units with currency
    RecordEntryParams: Parameters for recording one double-entry movement

Usage:
    from payments.ledger.types import Money, RecordEntryParams

    amount = Money(minor=1_395_000, currency="inr")
    print(amount)  # "13950.00 INR"

    params = RecordEntryParams(
        debit_wallet_id=clearing.id,
        credit_wallet_id=escrow.id,
        amount_minor=1_395_000,
        entry_type=EntryType.ESCROW_FUNDED,
        idempotency_key=f"txn:{txn.id}:funded",
        payment_transaction_id=txn.id,
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Money:
    """
    A monetary amount in the currency's smallest unit.

    Integers only: no float ever touches a balance.

    Attributes:
        minor: Amount in the smallest currency unit (e.g., paise for INR)
        currency: ISO 4217 currency code (lowercase)
    """

    minor: int
    currency: str = "inr"

    def __str__(self) -> str:
        """Format as '13950.00 INR'."""
        sign = "-" if self.minor < 0 else ""
        major, minor = divmod(abs(self.minor), 100)
        return f"{sign}{major}.{minor:02d} {self.currency.upper()}"

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other)
        return Money(minor=self.minor + other.minor, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other)
        return Money(minor=self.minor - other.minor, currency=self.currency)

    def _check_currency(self, other: Money) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot combine Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )


@dataclass
class RecordEntryParams:
    """
    Parameters for recording a ledger entry.

    Every entry debits one wallet and credits another. The stored balances
    of both wallets move in the same database transaction as the entry.

    Required Attributes:
        debit_wallet_id: Wallet money is taken from
        credit_wallet_id: Wallet money is added to
        amount_minor: Amount in minor units (must be positive)
        entry_type: Type of entry (see EntryType)
        idempotency_key: Unique key; replays return the existing entry

    Optional Attributes:
        payment_transaction_id: PaymentTransaction that caused the movement
        description: Human-readable description
        metadata: Arbitrary JSON-serializable data
        created_by: Identifier of the service/actor creating the entry
    """

    debit_wallet_id: uuid.UUID
    credit_wallet_id: uuid.UUID
    amount_minor: int
    entry_type: str
    idempotency_key: str

    payment_transaction_id: uuid.UUID | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = field(default_factory=dict)
    created_by: str | None = None

    def __post_init__(self) -> None:
        if self.amount_minor <= 0:
            raise ValueError("amount_minor must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if self.debit_wallet_id == self.credit_wallet_id:
            raise ValueError("debit_wallet_id and credit_wallet_id must be different")

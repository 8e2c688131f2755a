"""
Ledger-specific exceptions for wallet operations.

Exception Hierarchy:
    LedgerError (base)
    ├── WalletNotFoundError - Wallet lookup failures (fatal configuration error)
    ├── InsufficientBalance - Debit would take a wallet below zero
    └── InactiveWallet - Operations on a deactivated wallet

Usage:
    from payments.ledger.exceptions import InsufficientBalance, WalletNotFoundError

    if balance < amount:
        raise InsufficientBalance(wallet.id, required=amount, available=balance)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError

if TYPE_CHECKING:
    import uuid
    from typing import Any


class LedgerError(BaseApplicationError):
    """Base exception for all ledger operations."""

    default_error_code: str = "LEDGER_ERROR"


class WalletNotFoundError(LedgerError):
    """
    Raised when a wallet cannot be found.

    A missing platform wallet means the deployment is misconfigured, so
    callers surface this as an alert and abort without partial changes.
    """

    default_error_code: str = "WALLET_NOT_FOUND"


class InsufficientBalance(LedgerError):
    """
    Raised when a debit would take a wallet below zero.

    Attributes:
        wallet_id: The wallet with insufficient funds
        required: Amount (minor units) that was required
        available: Amount (minor units) that was available
    """

    default_error_code: str = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        wallet_id: uuid.UUID,
        required: int,
        available: int,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.wallet_id = wallet_id
        self.required = required
        self.available = available

        message = (
            f"Insufficient balance in wallet {wallet_id}: "
            f"required {required}, available {available}"
        )
        details = {
            **(details or {}),
            "wallet_id": str(wallet_id),
            "required_minor": required,
            "available_minor": available,
        }
        super().__init__(message, error_code=error_code, details=details)


class InactiveWallet(LedgerError):
    """Raised when crediting or debiting a deactivated wallet."""

    default_error_code: str = "WALLET_INACTIVE"

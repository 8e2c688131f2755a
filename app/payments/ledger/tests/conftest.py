"""
Pytest fixtures for ledger tests.

Sections:
    - Wallet Fixtures: Platform, clearing and owner wallets
    - Funded Fixtures: Wallets with a balance recorded through the ledger
"""

import uuid

import pytest

from payments.ledger.models import EntryType, WalletKind
from payments.ledger.services import LedgerService
from payments.ledger.tests.factories import WalletFactory
from payments.ledger.types import RecordEntryParams


# ==========================================================================
# Wallet Fixtures
# ==========================================================================


@pytest.fixture
def clearing_wallet(db):
    """External clearing wallet; the only kind allowed to go negative."""
    return WalletFactory(
        kind=WalletKind.EXTERNAL_CLEARING,
        owner_id=None,
        allow_negative=True,
    )


@pytest.fixture
def escrow_wallet(db):
    return WalletFactory(kind=WalletKind.PLATFORM_ESCROW, owner_id=None)


@pytest.fixture
def commission_wallet(db):
    return WalletFactory(kind=WalletKind.PLATFORM_COMMISSION, owner_id=None)


@pytest.fixture
def fleet_wallet(db):
    return WalletFactory(kind=WalletKind.FLEET)


@pytest.fixture
def inactive_wallet(db):
    return WalletFactory(kind=WalletKind.DRIVER, is_active=False)


# ==========================================================================
# Funded Fixtures
# ==========================================================================


@pytest.fixture
def funded_escrow_wallet(clearing_wallet, escrow_wallet):
    """Escrow wallet holding 1395000 paise (13950.00 INR)."""
    LedgerService.record_entry(
        RecordEntryParams(
            debit_wallet_id=clearing_wallet.id,
            credit_wallet_id=escrow_wallet.id,
            amount_minor=1_395_000,
            entry_type=EntryType.ESCROW_FUNDED,
            idempotency_key=f"fund-escrow-{uuid.uuid4()}",
        )
    )
    escrow_wallet.refresh_from_db()
    return escrow_wallet


@pytest.fixture
def unique_idempotency_key():
    return f"test-{uuid.uuid4()}"

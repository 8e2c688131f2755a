"""
Tests for ledger models.

Covers wallet uniqueness, balance constraints and entry immutability.
"""

import uuid

import pytest
from django.db import IntegrityError, transaction

from payments.ledger.exceptions import LedgerError
from payments.ledger.models import EntryType, LedgerEntry, Wallet, WalletKind
from payments.ledger.services import LedgerService
from payments.ledger.tests.factories import WalletFactory
from payments.ledger.types import Money, RecordEntryParams


class TestWallet:
    """Tests for the Wallet model."""

    def test_wallet_defaults(self, db):
        wallet = Wallet.objects.create(kind=WalletKind.FLEET, owner_id=uuid.uuid4())

        assert isinstance(wallet.id, uuid.UUID)
        assert wallet.currency == "inr"
        assert wallet.balance_minor == 0
        assert wallet.allow_negative is False
        assert wallet.is_active is True

    def test_str_with_owner(self, db):
        owner_id = uuid.uuid4()
        wallet = WalletFactory(kind=WalletKind.DRIVER, owner_id=owner_id)

        assert str(wallet) == f"Driver ({owner_id})"

    def test_str_without_owner(self, db):
        wallet = WalletFactory(kind=WalletKind.PLATFORM_ESCROW, owner_id=None)

        assert str(wallet) == "Platform Escrow"

    def test_unique_per_kind_owner_currency(self, db):
        owner_id = uuid.uuid4()
        WalletFactory(kind=WalletKind.FLEET, owner_id=owner_id)

        with pytest.raises(IntegrityError):
            WalletFactory(kind=WalletKind.FLEET, owner_id=owner_id)

    def test_platform_wallet_unique_without_owner(self, db):
        WalletFactory(kind=WalletKind.PLATFORM_ESCROW, owner_id=None)

        with pytest.raises(IntegrityError):
            WalletFactory(kind=WalletKind.PLATFORM_ESCROW, owner_id=None)

    def test_negative_balance_rejected_by_database(self, db):
        wallet = WalletFactory(kind=WalletKind.FLEET)

        with pytest.raises(IntegrityError), transaction.atomic():
            Wallet.objects.filter(id=wallet.id).update(balance_minor=-1)

    def test_clearing_wallet_may_go_negative(self, db):
        wallet = WalletFactory(
            kind=WalletKind.EXTERNAL_CLEARING, owner_id=None, allow_negative=True
        )
        Wallet.objects.filter(id=wallet.id).update(balance_minor=-500)

        wallet.refresh_from_db()
        assert wallet.balance_minor == -500

    def test_delete_is_refused(self, db):
        wallet = WalletFactory()

        with pytest.raises(LedgerError) as exc_info:
            wallet.delete()

        assert exc_info.value.error_code == "WALLET_DELETE_FORBIDDEN"
        assert Wallet.objects.filter(id=wallet.id).exists()

    def test_computed_balance_matches_stored_balance(
        self, funded_escrow_wallet, fleet_wallet
    ):
        LedgerService.transfer(
            from_wallet_id=funded_escrow_wallet.id,
            to_wallet_id=fleet_wallet.id,
            amount_minor=395_000,
            idempotency_key="settle-part",
            entry_type=EntryType.SETTLEMENT,
        )
        funded_escrow_wallet.refresh_from_db()

        assert funded_escrow_wallet.balance_minor == 1_000_000
        assert funded_escrow_wallet.computed_balance() == 1_000_000


class TestLedgerEntry:
    """Tests for the LedgerEntry model."""

    def test_entry_cannot_be_modified(self, clearing_wallet, escrow_wallet):
        entry = LedgerService.record_entry(
            RecordEntryParams(
                debit_wallet_id=clearing_wallet.id,
                credit_wallet_id=escrow_wallet.id,
                amount_minor=1000,
                entry_type=EntryType.ESCROW_FUNDED,
                idempotency_key="immutable-entry",
            )
        )
        entry.description = "changed"

        with pytest.raises(LedgerError):
            entry.save()

        assert LedgerEntry.objects.get(id=entry.id).description is None

    def test_str(self, clearing_wallet, escrow_wallet):
        entry = LedgerService.record_entry(
            RecordEntryParams(
                debit_wallet_id=clearing_wallet.id,
                credit_wallet_id=escrow_wallet.id,
                amount_minor=1000,
                entry_type=EntryType.ESCROW_FUNDED,
                idempotency_key="str-entry",
            )
        )

        assert str(entry) == "Escrow Funded: 1000 inr"


class TestMoney:
    """Tests for the Money value type."""

    def test_str_formats_major_units(self):
        assert str(Money(minor=1_395_000)) == "13950.00 INR"

    def test_str_negative(self):
        assert str(Money(minor=-5, currency="usd")) == "-0.05 USD"

    def test_add_and_subtract(self):
        total = Money(minor=1_500_000) - Money(minor=105_000)

        assert total == Money(minor=1_395_000)
        assert total + Money(minor=5) == Money(minor=1_395_005)

    def test_mixed_currencies_rejected(self):
        with pytest.raises(ValueError):
            Money(minor=1, currency="inr") + Money(minor=1, currency="usd")


class TestRecordEntryParams:
    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError):
            RecordEntryParams(
                debit_wallet_id=uuid.uuid4(),
                credit_wallet_id=uuid.uuid4(),
                amount_minor=0,
                entry_type=EntryType.ADJUSTMENT,
                idempotency_key="k",
            )

    def test_rejects_same_wallet_on_both_sides(self):
        wallet_id = uuid.uuid4()
        with pytest.raises(ValueError):
            RecordEntryParams(
                debit_wallet_id=wallet_id,
                credit_wallet_id=wallet_id,
                amount_minor=10,
                entry_type=EntryType.ADJUSTMENT,
                idempotency_key="k",
            )

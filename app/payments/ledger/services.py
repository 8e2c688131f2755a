"""
Ledger service layer for wallet balances.

All wallet writes go through LedgerService so that every balance change
has a matching LedgerEntry, both written in one database transaction.

Usage:
    from payments.ledger.services import LedgerService, ledger
    from payments.ledger.types import RecordEntryParams

    escrow = ledger.get_or_create_wallet(WalletKind.PLATFORM_ESCROW)
    balance = ledger.get_balance(escrow.id)

    entry = ledger.record_entry(RecordEntryParams(
        debit_wallet_id=clearing.id,
        credit_wallet_id=escrow.id,
        amount_minor=1_395_000,
        entry_type=EntryType.ESCROW_FUNDED,
        idempotency_key=f"txn:{txn.id}:funded",
        payment_transaction_id=txn.id,
    ))
"""

from __future__ import annotations

import logging
import uuid

from django.db import IntegrityError, transaction
from django.db.models import F, Q

from .exceptions import InactiveWallet, InsufficientBalance, WalletNotFoundError
from .models import EntryType, LedgerEntry, Wallet, WalletKind
from .types import Money, RecordEntryParams

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Service class for ledger operations.

    Key features:
    - Atomic multi-entry writes (entries and balances move together)
    - Idempotency via unique keys (safe to retry)
    - Balance validation against the locked wallet row
    - Wallet rows locked in id order to prevent deadlocks

    All methods are static - no instance state is maintained.
    """

    @staticmethod
    def get_or_create_wallet(
        kind: WalletKind | str,
        owner_id: uuid.UUID | None = None,
        currency: str = "inr",
        allow_negative: bool | None = None,
        provider_account_ref: str | None = None,
    ) -> Wallet:
        """
        Get existing wallet or create a new one.

        Looks up a wallet by (kind, owner_id, currency). The external
        clearing wallet is created with allow_negative=True unless told
        otherwise; every other kind defaults to False.

        Example:
            escrow = LedgerService.get_or_create_wallet(WalletKind.PLATFORM_ESCROW)
            fleet = LedgerService.get_or_create_wallet(
                WalletKind.FLEET, owner_id=fleet_id
            )
        """
        if allow_negative is None:
            allow_negative = kind == WalletKind.EXTERNAL_CLEARING

        wallet, created = Wallet.objects.get_or_create(
            kind=kind,
            owner_id=owner_id,
            currency=currency,
            defaults={
                "allow_negative": allow_negative,
                "provider_account_ref": provider_account_ref,
            },
        )
        if created:
            logger.info(
                "Created wallet",
                extra={
                    "wallet_id": str(wallet.id),
                    "kind": kind,
                    "owner_id": str(owner_id) if owner_id else None,
                },
            )
        return wallet

    @staticmethod
    def resolve_wallet(
        kind: WalletKind | str,
        owner_id: uuid.UUID | None = None,
        currency: str = "inr",
    ) -> Wallet:
        """
        Get-or-create a wallet that must be usable for new entries.

        Raises:
            WalletNotFoundError: If the wallet exists but was deactivated
        """
        wallet = LedgerService.get_or_create_wallet(kind, owner_id, currency)
        if not wallet.is_active:
            raise WalletNotFoundError(
                f"No active {kind} wallet for currency {currency}",
                details={
                    "wallet_id": str(wallet.id),
                    "kind": str(kind),
                    "owner_id": str(owner_id) if owner_id else None,
                },
            )
        return wallet

    @staticmethod
    def get_wallet(wallet_id: uuid.UUID) -> Wallet:
        """
        Get wallet by ID.

        Raises:
            WalletNotFoundError: If wallet doesn't exist
        """
        try:
            return Wallet.objects.get(id=wallet_id)
        except Wallet.DoesNotExist:
            raise WalletNotFoundError(
                f"Wallet {wallet_id} not found",
                details={"wallet_id": str(wallet_id)},
            )

    @staticmethod
    def get_wallet_by_owner(
        kind: WalletKind | str,
        owner_id: uuid.UUID | None,
        currency: str = "inr",
    ) -> Wallet | None:
        """Get wallet by kind, owner and currency, or None."""
        return Wallet.objects.filter(
            kind=kind,
            owner_id=owner_id,
            currency=currency,
        ).first()

    @staticmethod
    def _validate_for_debit(wallet: Wallet, amount_minor: int) -> None:
        """
        Validate that a locked wallet can be debited.

        Raises:
            InactiveWallet: If wallet is inactive
            InsufficientBalance: If wallet lacks funds
        """
        if not wallet.is_active:
            raise InactiveWallet(
                f"Wallet {wallet.id} is inactive",
                details={"wallet_id": str(wallet.id)},
            )
        if not wallet.allow_negative and wallet.balance_minor < amount_minor:
            raise InsufficientBalance(
                wallet_id=wallet.id,
                required=amount_minor,
                available=wallet.balance_minor,
            )

    @staticmethod
    def _validate_for_credit(wallet: Wallet) -> None:
        if not wallet.is_active:
            raise InactiveWallet(
                f"Wallet {wallet.id} is inactive",
                details={"wallet_id": str(wallet.id)},
            )

    @staticmethod
    def record_entry(params: RecordEntryParams) -> LedgerEntry:
        """
        Record a single ledger entry.

        Idempotent - an existing entry with the same key is returned.
        """
        return LedgerService.record_entries([params])[0]

    @staticmethod
    def record_entries(entries: list[RecordEntryParams]) -> list[LedgerEntry]:
        """
        Record multiple ledger entries atomically.

        All entries succeed or all fail. Existing entries (by idempotency
        key) are returned without touching balances again. Entries are
        processed in order, so earlier entries in the batch count towards
        the balance checks of later ones.

        Call inside the caller's transaction.atomic() block when the entries
        accompany a status change, so both commit or roll back together.

        Raises:
            WalletNotFoundError: If any wallet doesn't exist
            InactiveWallet: If any wallet is inactive
            InsufficientBalance: If any debit wallet lacks funds
        """
        if not entries:
            return []

        results: list[LedgerEntry] = []

        with transaction.atomic():
            wallet_ids: set[uuid.UUID] = set()
            for params in entries:
                wallet_ids.add(params.debit_wallet_id)
                wallet_ids.add(params.credit_wallet_id)

            # Lock in id order so concurrent writers never wait on each other in a cycle
            wallets = {
                wallet.id: wallet
                for wallet in Wallet.objects.filter(id__in=wallet_ids)
                .select_for_update()
                .order_by("id")
            }

            for wallet_id in wallet_ids:
                if wallet_id not in wallets:
                    raise WalletNotFoundError(
                        f"Wallet {wallet_id} not found",
                        details={"wallet_id": str(wallet_id)},
                    )

            for params in entries:
                debit_wallet = wallets[params.debit_wallet_id]
                credit_wallet = wallets[params.credit_wallet_id]

                # Idempotency first: a replayed entry must not be re-validated
                # against a balance it already changed
                existing = LedgerEntry.objects.filter(
                    idempotency_key=params.idempotency_key
                ).first()
                if existing is not None:
                    results.append(existing)
                    continue

                LedgerService._validate_for_debit(debit_wallet, params.amount_minor)
                LedgerService._validate_for_credit(credit_wallet)

                try:
                    with transaction.atomic():
                        entry = LedgerEntry.objects.create(
                            idempotency_key=params.idempotency_key,
                            debit_wallet=debit_wallet,
                            credit_wallet=credit_wallet,
                            amount_minor=params.amount_minor,
                            currency=debit_wallet.currency,
                            entry_type=params.entry_type,
                            payment_transaction_id=params.payment_transaction_id,
                            description=params.description,
                            metadata=params.metadata or {},
                            created_by=params.created_by,
                        )
                except IntegrityError:
                    # Another process inserted the same key between check and create
                    results.append(
                        LedgerEntry.objects.get(idempotency_key=params.idempotency_key)
                    )
                    continue

                Wallet.objects.filter(id=debit_wallet.id).update(
                    balance_minor=F("balance_minor") - params.amount_minor
                )
                Wallet.objects.filter(id=credit_wallet.id).update(
                    balance_minor=F("balance_minor") + params.amount_minor
                )
                debit_wallet.balance_minor -= params.amount_minor
                credit_wallet.balance_minor += params.amount_minor

                results.append(entry)

        return results

    @staticmethod
    def transfer(
        from_wallet_id: uuid.UUID,
        to_wallet_id: uuid.UUID,
        amount_minor: int,
        idempotency_key: str,
        entry_type: EntryType | str = EntryType.ADJUSTMENT,
        payment_transaction_id: uuid.UUID | None = None,
        description: str | None = None,
        created_by: str | None = None,
    ) -> LedgerEntry:
        """
        Convenience method for a single wallet-to-wallet movement.

        Example:
            entry = LedgerService.transfer(
                from_wallet_id=escrow.id,
                to_wallet_id=fleet.id,
                amount_minor=1_395_000,
                idempotency_key=f"txn:{settlement.id}:settled",
                entry_type=EntryType.SETTLEMENT,
                payment_transaction_id=settlement.id,
                created_by="escrow_manager",
            )
        """
        return LedgerService.record_entry(
            RecordEntryParams(
                debit_wallet_id=from_wallet_id,
                credit_wallet_id=to_wallet_id,
                amount_minor=amount_minor,
                entry_type=entry_type,
                idempotency_key=idempotency_key,
                payment_transaction_id=payment_transaction_id,
                description=description,
                created_by=created_by,
            )
        )

    @staticmethod
    def get_balance(wallet_id: uuid.UUID) -> Money:
        """
        Get current balance for a wallet.

        Raises:
            WalletNotFoundError: If wallet doesn't exist
        """
        wallet = LedgerService.get_wallet(wallet_id)
        return Money(minor=wallet.balance_minor, currency=wallet.currency)

    @staticmethod
    def get_entries_for_wallet(
        wallet_id: uuid.UUID,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        """Entries where the wallet is debited or credited, newest first."""
        return list(
            LedgerEntry.objects.filter(
                Q(debit_wallet_id=wallet_id) | Q(credit_wallet_id=wallet_id)
            ).order_by("-created_at")[offset : offset + limit]
        )

    @staticmethod
    def get_entries_for_transaction(transaction_id: uuid.UUID) -> list[LedgerEntry]:
        """All entries caused by one PaymentTransaction, oldest first."""
        return list(
            LedgerEntry.objects.filter(
                payment_transaction_id=transaction_id
            ).order_by("created_at")
        )

    @staticmethod
    def deactivate_wallet(wallet_id: uuid.UUID) -> Wallet:
        """
        Mark a wallet inactive.

        Inactive wallets reject new entries; their history is preserved.
        """
        wallet = LedgerService.get_wallet(wallet_id)
        wallet.is_active = False
        wallet.save(update_fields=["is_active", "updated_at"])
        logger.warning(
            "Wallet deactivated",
            extra={"wallet_id": str(wallet.id), "kind": wallet.kind},
        )
        return wallet

    @staticmethod
    def reactivate_wallet(wallet_id: uuid.UUID) -> Wallet:
        wallet = LedgerService.get_wallet(wallet_id)
        wallet.is_active = True
        wallet.save(update_fields=["is_active", "updated_at"])
        return wallet


# Usage: from payments.ledger.services import ledger
ledger = LedgerService()

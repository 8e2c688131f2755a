"""
Ledger models: wallets and double-entry movements between them.

- Wallet: A named balance holder (platform escrow, platform commission,
  fleet, driver, external clearing)
- LedgerEntry: One movement debiting one wallet and crediting another

Wallets carry a stored balance so reads are cheap and row-lockable. The
stored balance is written only by LedgerService.record_entries, in the same
database transaction that inserts the entries, so it always equals
credits minus debits (see Wallet.computed_balance()).

Usage:
    from payments.ledger.models import Wallet, WalletKind

    escrow = Wallet.objects.get(
        kind=WalletKind.PLATFORM_ESCROW, owner_id=None, currency="inr"
    )
    escrow.balance_minor  # 1395000
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q, Sum
from django.db.models.functions import Coalesce

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from .exceptions import LedgerError


class WalletKind(models.TextChoices):
    """
    Kinds of wallet.

    Values:
        PLATFORM_ESCROW: Net shipment funds held until delivery
        PLATFORM_COMMISSION: Platform commission and subscription revenue
        FLEET: A fleet operator's balance
        DRIVER: An individual driver/vehicle owner's balance
        EXTERNAL_CLEARING: Money entering/leaving through the gateway;
            the only kind allowed to go negative
    """

    PLATFORM_ESCROW = "platform_escrow", "Platform Escrow"
    PLATFORM_COMMISSION = "platform_commission", "Platform Commission"
    FLEET = "fleet", "Fleet"
    DRIVER = "driver", "Driver"
    EXTERNAL_CLEARING = "external_clearing", "External Clearing"


PLATFORM_WALLET_KINDS = (
    WalletKind.PLATFORM_ESCROW,
    WalletKind.PLATFORM_COMMISSION,
    WalletKind.EXTERNAL_CLEARING,
)


class EntryType(models.TextChoices):
    """
    Types of ledger entries.

    Values:
        ESCROW_FUNDED: Net shipment amount captured into escrow
        COMMISSION_COLLECTED: Commission captured into the commission wallet
        SETTLEMENT: Escrow released to the fleet/driver wallet
        REFUND: Money returned to the shipper
        REVERSAL: Unwinding a captured leg whose pair failed
        SUBSCRIPTION_FEE: Fleet subscription payment
        ADJUSTMENT: Manual correction
    """

    ESCROW_FUNDED = "escrow_funded", "Escrow Funded"
    COMMISSION_COLLECTED = "commission_collected", "Commission Collected"
    SETTLEMENT = "settlement", "Settlement"
    REFUND = "refund", "Refund"
    REVERSAL = "reversal", "Reversal"
    SUBSCRIPTION_FEE = "subscription_fee", "Subscription Fee"
    ADJUSTMENT = "adjustment", "Adjustment"


class Wallet(UUIDPrimaryKeyMixin, BaseModel):
    """
    A named balance holder.

    Created once per (kind, owner, currency) via
    LedgerService.get_or_create_wallet; deactivated, never deleted, so the
    entry history stays intact.

    Fields:
        kind: Wallet category
        owner_id: Fleet/driver id (None for platform and clearing wallets)
        currency: ISO 4217 currency code
        balance_minor: Current balance in minor units
        provider_account_ref: Account id at the payment provider
        allow_negative: Only the external clearing wallet sets this
        is_active: Deactivated wallets reject new entries

    Constraints:
        - Unique (kind, owner_id, currency); platform wallets are unique
          per (kind, currency) because NULL owners never collide in SQL
        - balance_minor >= 0 unless allow_negative
    """

    # ==========================================================================
    # Identity
    # ==========================================================================

    kind = models.CharField(
        max_length=30,
        choices=WalletKind.choices,
        help_text="Category of this wallet",
    )
    owner_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Fleet or driver that owns this wallet (empty for platform wallets)",
    )
    currency = models.CharField(
        max_length=3,
        default="inr",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # Balance
    # ==========================================================================

    balance_minor = models.BigIntegerField(
        default=0,
        help_text="Current balance in smallest currency unit; written only by ledger entries",
    )
    allow_negative = models.BooleanField(
        default=False,
        help_text="Whether this wallet may go negative (external clearing only)",
    )

    # ==========================================================================
    # Provider & Lifecycle
    # ==========================================================================

    provider_account_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Account identifier at the payment provider",
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive wallets reject new entries",
    )

    class Meta:
        ordering = ["kind", "created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["kind", "owner_id", "currency"],
                name="unique_wallet_per_owner",
            ),
            models.UniqueConstraint(
                fields=["kind", "currency"],
                condition=Q(owner_id__isnull=True),
                name="unique_platform_wallet",
            ),
            models.CheckConstraint(
                check=Q(balance_minor__gte=0) | Q(allow_negative=True),
                name="wallet_balance_non_negative",
            ),
        ]
        indexes = [
            models.Index(fields=["kind", "currency"], name="payments_wa_kind_0c8f4e_idx"),
        ]

    def __str__(self) -> str:
        if self.owner_id:
            return f"{self.get_kind_display()} ({self.owner_id})"
        return self.get_kind_display()

    def delete(self, *args, **kwargs):
        raise LedgerError(
            "Wallets are deactivated, never deleted",
            error_code="WALLET_DELETE_FORBIDDEN",
            details={"wallet_id": str(self.pk)},
        )

    def computed_balance(self) -> int:
        """
        Recompute the balance from entries.

        Used by reconciliation to detect drift between the stored balance
        and the entry history. Should always equal balance_minor.
        """
        credits = LedgerEntry.objects.filter(credit_wallet=self).aggregate(
            total=Coalesce(Sum("amount_minor"), 0)
        )["total"]
        debits = LedgerEntry.objects.filter(debit_wallet=self).aggregate(
            total=Coalesce(Sum("amount_minor"), 0)
        )["total"]
        return credits - debits


class LedgerEntry(UUIDPrimaryKeyMixin, models.Model):
    """
    An immutable movement of money between two wallets.

    Corrections are made with new ADJUSTMENT or REVERSAL entries, never by
    editing an existing one.

    Fields:
        debit_wallet: Wallet money is taken from
        credit_wallet: Wallet money is added to
        amount_minor: Amount (always positive)
        entry_type: Category of this entry
        payment_transaction: PaymentTransaction that caused the movement
        idempotency_key: Unique key to prevent duplicate entries
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this entry was recorded",
    )

    debit_wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name="debit_entries",
        help_text="Wallet money is taken from",
    )
    credit_wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name="credit_entries",
        help_text="Wallet money is added to",
    )
    amount_minor = models.PositiveBigIntegerField(
        help_text="Amount in smallest currency unit (always positive)",
    )
    currency = models.CharField(
        max_length=3,
        default="inr",
        help_text="ISO 4217 currency code",
    )
    entry_type = models.CharField(
        max_length=30,
        choices=EntryType.choices,
        help_text="Category of this entry",
    )

    payment_transaction = models.ForeignKey(
        "payments.PaymentTransaction",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="ledger_entries",
        help_text="Transaction whose status change produced this entry",
    )

    description = models.TextField(
        null=True,
        blank=True,
        help_text="Human-readable description of this entry",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON data for extensibility",
    )
    created_by = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Identifier of service/actor that created this entry",
    )
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Unique key to prevent duplicate entries",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "ledger entries"
        indexes = [
            models.Index(fields=["entry_type"], name="payments_le_entry_t_4b9e23_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                check=Q(amount_minor__gt=0),
                name="ledger_entry_amount_positive",
            )
        ]

    def __str__(self) -> str:
        return f"{self.get_entry_type_display()}: {self.amount_minor} {self.currency}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise LedgerError(
                "Ledger entries are immutable",
                error_code="LEDGER_ENTRY_IMMUTABLE",
                details={"entry_id": str(self.pk)},
            )
        super().save(*args, **kwargs)

"""
Django admin configuration for ledger models.

Wallets and ledger entries are read-only here: balances move only through
LedgerService, and corrections are new ADJUSTMENT entries.
"""

from django.contrib import admin

from .models import LedgerEntry, Wallet
from .types import Money


@admin.register(Wallet)
class WalletAdmin(admin.ModelAdmin):
    """Visibility into wallet kinds, owners, balances and status."""

    list_display = [
        "id",
        "kind",
        "owner_id",
        "currency",
        "balance_display",
        "is_active",
        "allow_negative",
        "created_at",
    ]
    list_filter = ["kind", "currency", "is_active", "allow_negative"]
    search_fields = ["id", "owner_id", "provider_account_ref"]
    readonly_fields = [
        "id",
        "kind",
        "owner_id",
        "currency",
        "balance_minor",
        "balance_display",
        "allow_negative",
        "provider_account_ref",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "kind", "owner_id", "currency")}),
        ("Balance", {"fields": ("balance_minor", "balance_display")}),
        (
            "Configuration",
            {"fields": ("allow_negative", "is_active", "provider_account_ref")},
        ),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    @admin.display(description="Balance")
    def balance_display(self, obj: Wallet) -> str:
        return str(Money(minor=obj.balance_minor, currency=obj.currency))

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    """
    Ledger entries are immutable - no add, edit or delete through admin.
    """

    list_display = [
        "id",
        "created_at",
        "entry_type",
        "amount_display",
        "debit_wallet",
        "credit_wallet",
        "payment_transaction",
        "created_by",
    ]
    list_filter = ["entry_type", "currency", "created_at"]
    search_fields = [
        "id",
        "idempotency_key",
        "payment_transaction__id",
        "description",
        "created_by",
    ]
    readonly_fields = [
        "id",
        "created_at",
        "debit_wallet",
        "credit_wallet",
        "amount_minor",
        "currency",
        "entry_type",
        "payment_transaction",
        "description",
        "metadata",
        "created_by",
        "idempotency_key",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    @admin.display(description="Amount")
    def amount_display(self, obj: LedgerEntry) -> str:
        return str(Money(minor=obj.amount_minor, currency=obj.currency))

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_add_permission(self, request) -> bool:
        return False

"""
Payment admin configuration.

This file imports admin configurations from the ledger submodule and
registers payment domain models with the Django admin. Every money record
is read-only here: state changes go through PaymentOrchestrator so they are
locked, audited and mirrored in the ledger. Only PaymentConfig is editable,
and edits there bypass the audit trail, so operators should prefer
PaymentOrchestrator.update_config.
"""

from django.contrib import admin

from payments.ledger.admin import LedgerEntryAdmin, WalletAdmin
from payments.ledger.types import Money
from payments.models import (
    AuditEntry,
    DeliveryConfirmation,
    FleetSubscription,
    PaymentConfig,
    PaymentTransaction,
    RefundRequest,
)

__all__ = [
    "AuditEntryAdmin",
    "DeliveryConfirmationAdmin",
    "FleetSubscriptionAdmin",
    "LedgerEntryAdmin",
    "PaymentConfigAdmin",
    "PaymentTransactionAdmin",
    "RefundRequestAdmin",
    "WalletAdmin",
]


class ReadOnlyAdmin(admin.ModelAdmin):
    """Base for records that only the service layer may write."""

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(ReadOnlyAdmin):
    """
    Admin configuration for PaymentTransaction.

    Provides visibility into every money movement and its state.
    """

    list_display = [
        "id",
        "kind",
        "status",
        "amount_display",
        "shipment_id",
        "payer_id",
        "payee_id",
        "created_at",
    ]
    list_filter = ["kind", "status", "currency", "created_at"]
    search_fields = ["id", "shipment_id", "payer_id", "payee_id", "provider_reference"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "kind", "status", "amount_minor", "currency")}),
        (
            "Parties",
            {"fields": ("shipment_id", "payer_id", "payee_id", "payee_wallet_kind")},
        ),
        (
            "Links",
            {
                "fields": (
                    "escrow_wallet",
                    "related_transaction",
                    "subscription",
                    "refund_request",
                    "commission_rate",
                ),
            },
        ),
        (
            "Gateway",
            {
                "fields": ("provider_reference", "provider_response", "failure_reason"),
                "classes": ("collapse",),
            },
        ),
        (
            "Metadata",
            {"fields": ("metadata", "refund_reason", "version"), "classes": ("collapse",)},
        ),
        (
            "Timestamps",
            {"fields": ("created_at", "updated_at", "processed_at", "settled_at")},
        ),
    )

    @admin.display(description="Amount")
    def amount_display(self, obj: PaymentTransaction) -> str:
        return str(Money(minor=obj.amount_minor, currency=obj.currency))


@admin.register(FleetSubscription)
class FleetSubscriptionAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "fleet_id",
        "tier",
        "billing_cycle",
        "status",
        "next_billing_date",
        "failed_payment_count",
        "auto_renew",
    ]
    list_filter = ["status", "tier", "billing_cycle", "fee_basis", "auto_renew"]
    search_fields = ["id", "fleet_id"]
    ordering = ["next_billing_date"]


@admin.register(RefundRequest)
class RefundRequestAdmin(ReadOnlyAdmin):
    """
    Admin configuration for RefundRequest.

    Approve and reject through PaymentOrchestrator so the escrow is
    refunded and the decision is audited.
    """

    list_display = [
        "id",
        "shipment_id",
        "request_type",
        "status",
        "amount_requested_minor",
        "amount_approved_minor",
        "created_at",
    ]
    list_filter = ["status", "request_type", "created_at"]
    search_fields = ["id", "shipment_id", "requester_id", "approver_id"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]


@admin.register(DeliveryConfirmation)
class DeliveryConfirmationAdmin(ReadOnlyAdmin):
    list_display = ["shipment_id", "confirmed_at", "proof_reference", "confirmed_by"]
    search_fields = ["shipment_id", "proof_reference"]
    ordering = ["-confirmed_at"]


@admin.register(AuditEntry)
class AuditEntryAdmin(ReadOnlyAdmin):
    """Audit entries are append-only - no add, edit or delete through admin."""

    list_display = ["created_at", "action", "entity_type", "payment_id", "actor_type", "actor_id"]
    list_filter = ["entity_type", "actor_type", "created_at"]
    search_fields = ["payment_id", "action", "actor_id"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]


@admin.register(PaymentConfig)
class PaymentConfigAdmin(admin.ModelAdmin):
    list_display = ["key", "category", "value", "version", "is_active", "updated_at"]
    list_filter = ["category", "is_active"]
    search_fields = ["key", "description"]
    readonly_fields = ["id", "version", "updated_by", "created_at", "updated_at"]
    ordering = ["category", "key"]

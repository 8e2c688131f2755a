"""
PaymentTransaction model: every money movement the engine initiates.

One row per leg. A shipment escrow produces an ESCROW_IN (net amount held)
and a COMMISSION leg; release adds a SETTLEMENT; refunds add REFUND legs.
Subscription billing produces SUBSCRIPTION legs.

Usage:
    from payments.models import PaymentTransaction
    from payments.state_machines import TransactionKind

    txn = PaymentTransaction.objects.create(
        shipment_id=shipment_id,
        payer_id=shipper_id,
        payee_id=fleet_id,
        amount_minor=1_395_000,
        kind=TransactionKind.ESCROW_IN,
    )

    txn.submit()      # pending -> processing
    txn.save()
    txn.mark_held()   # processing -> held
    txn.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel

from payments.exceptions import InvalidAmountError
from payments.ledger.models import WalletKind
from payments.state_machines import (
    LIVE_ESCROW_STATUSES,
    TransactionKind,
    TransactionStatus,
)

TERMINAL_STATUSES = (
    TransactionStatus.SETTLED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
)


class PaymentTransactionQuerySet(models.QuerySet):
    def escrow_in(self):
        return self.filter(kind=TransactionKind.ESCROW_IN)

    def for_shipment(self, shipment_id):
        return self.filter(shipment_id=shipment_id)

    def live(self):
        return self.filter(status__in=LIVE_ESCROW_STATUSES)


class PaymentTransaction(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A single money movement and its lifecycle.

    State Flow (gateway legs):
        PENDING -> PROCESSING -> HELD (escrow-in) | COMPLETE (others)
        PENDING -> PROCESSING -> FAILED
        PENDING -> CANCELLED

    State Flow (escrow-in after capture):
        HELD -> SETTLED | REFUNDED | DISPUTED
        DISPUTED -> SETTLED | REFUNDED

    Internal legs (settlement, dispute hold, refunds paid from a wallet)
    skip the gateway: PENDING -> COMPLETE or PENDING -> HELD.

    Reversal:
        COMPLETE -> REFUNDED

    Note:
        amount_minor cannot change once the transaction has left PENDING.
        The status field is protected; change it only through transitions.
    """

    # ==========================================================================
    # Parties & Reference
    # ==========================================================================

    shipment_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Shipment this movement belongs to (empty for subscriptions)",
    )
    payer_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Shipper or fleet paying",
    )
    payee_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Fleet or driver receiving the settlement",
    )
    payee_wallet_kind = models.CharField(
        max_length=30,
        choices=[
            (WalletKind.FLEET, WalletKind.FLEET.label),
            (WalletKind.DRIVER, WalletKind.DRIVER.label),
        ],
        default=WalletKind.FLEET,
        help_text="Wallet kind settlements are paid into",
    )

    # ==========================================================================
    # Amount & Classification
    # ==========================================================================

    amount_minor = models.PositiveBigIntegerField(
        help_text="Amount in smallest currency unit (e.g., paise)",
    )
    currency = models.CharField(
        max_length=3,
        default="inr",
        help_text="ISO 4217 currency code (lowercase)",
    )
    kind = models.CharField(
        max_length=20,
        choices=TransactionKind.choices,
        db_index=True,
        help_text="Kind of money movement",
    )
    status = FSMField(
        default=TransactionStatus.PENDING,
        choices=TransactionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current lifecycle state (managed by FSM)",
    )
    commission_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Commission percentage applied when the escrow was created",
    )

    # ==========================================================================
    # Relationships
    # ==========================================================================

    escrow_wallet = models.ForeignKey(
        "payments.Wallet",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="escrow_transactions",
        help_text="Platform escrow wallet holding the funds",
    )
    related_transaction = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="derived_transactions",
        help_text="Source transaction (escrow-in for settlements, refunds and reversals)",
    )
    subscription = models.ForeignKey(
        "payments.FleetSubscription",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
        help_text="Subscription billed by this transaction",
    )
    refund_request = models.ForeignKey(
        "payments.RefundRequest",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
        help_text="Refund or dispute request this transaction belongs to",
    )

    # ==========================================================================
    # Provider
    # ==========================================================================

    provider_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Transaction id returned by the payment gateway",
    )
    provider_response = models.JSONField(
        default=dict,
        blank=True,
        help_text="Last raw response received from the gateway",
    )

    # ==========================================================================
    # Timestamps & Errors
    # ==========================================================================

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the gateway accepted the movement",
    )
    settled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the funds reached their final state",
    )
    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Why the movement failed",
    )
    refund_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Reason recorded for refund legs",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata for extensibility",
    )

    objects = PaymentTransactionQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Transaction"
        verbose_name_plural = "Payment Transactions"
        indexes = [
            models.Index(fields=["shipment_id", "kind"], name="payments_pa_shipmen_3e7b10_idx"),
            models.Index(fields=["status", "updated_at"], name="payments_pa_status_9c42d1_idx"),
            models.Index(fields=["kind", "status"], name="payments_pa_kind_5f0a87_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                check=Q(amount_minor__gt=0),
                name="payment_transaction_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["shipment_id"],
                condition=Q(
                    kind=TransactionKind.ESCROW_IN,
                    status__in=LIVE_ESCROW_STATUSES,
                ),
                name="unique_live_escrow_in_per_shipment",
            ),
            models.UniqueConstraint(
                fields=["shipment_id"],
                condition=Q(kind=TransactionKind.SETTLEMENT),
                name="unique_settlement_per_shipment",
            ),
        ]

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._remember_persisted_values()

    def __str__(self) -> str:
        amount_display = f"{self.amount_minor / 100:.2f} {self.currency.upper()}"
        return f"PaymentTransaction({self.id}, {self.kind}, {self.status}, {amount_display})"

    def _remember_persisted_values(self) -> None:
        # Read through __dict__: touching a deferred field reloads the row,
        # and refresh_from_db builds partial instances through __init__
        self._persisted_amount_minor = self.__dict__.get("amount_minor")
        self._persisted_status = self.__dict__.get("status")

    def save(self, *args, **kwargs):
        if (
            not self._state.adding
            and self._persisted_amount_minor is not None
            and self._persisted_status != TransactionStatus.PENDING
            and self.amount_minor != self._persisted_amount_minor
        ):
            raise InvalidAmountError(
                "Amount cannot change after the transaction left pending",
                details={
                    "transaction_id": str(self.id),
                    "status": self._persisted_status,
                },
            )
        super().save(*args, **kwargs)
        self._remember_persisted_values()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ==========================================================================
    # Gateway Transitions
    # ==========================================================================

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.PROCESSING,
    )
    def submit(self):
        """Handed to the gateway; outcome unknown until it answers."""

    @transition(
        field=status,
        source=TransactionStatus.PROCESSING,
        target=TransactionStatus.HELD,
    )
    def mark_held(self):
        """Gateway captured an escrow-in; funds now sit in escrow."""
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.PROCESSING,
        target=TransactionStatus.COMPLETE,
    )
    def mark_complete(self):
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=[TransactionStatus.PENDING, TransactionStatus.PROCESSING],
        target=TransactionStatus.FAILED,
    )
    def fail(self, reason: str = ""):
        self.failure_reason = reason or None

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        """The paired leg failed before this one was submitted."""
        self.failure_reason = reason or None

    # ==========================================================================
    # Internal Transitions
    # ==========================================================================

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.COMPLETE,
    )
    def complete_internal(self):
        """Wallet-to-wallet movement that never touches the gateway."""
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.HELD,
    )
    def hold_internal(self):
        """Marker rows (dispute holds) that freeze funds without moving them."""
        self.processed_at = timezone.now()

    # ==========================================================================
    # Escrow Transitions
    # ==========================================================================

    @transition(
        field=status,
        source=TransactionStatus.HELD,
        target=TransactionStatus.DISPUTED,
    )
    def dispute(self):
        pass

    @transition(
        field=status,
        source=[TransactionStatus.HELD, TransactionStatus.DISPUTED],
        target=TransactionStatus.SETTLED,
    )
    def settle(self):
        self.settled_at = timezone.now()

    @transition(
        field=status,
        source=[
            TransactionStatus.HELD,
            TransactionStatus.DISPUTED,
            TransactionStatus.COMPLETE,
        ],
        target=TransactionStatus.REFUNDED,
    )
    def mark_refunded(self, reason: str = ""):
        """
        Full refund of held funds, or reversal of a completed leg.
        """
        self.settled_at = timezone.now()
        if reason:
            self.refund_reason = reason

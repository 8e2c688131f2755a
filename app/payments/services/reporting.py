"""
Read-only reporting over transactions and wallets.

Usage:
    reports = ReportingService()
    reports.payment_history(shipment_id=shipment_id)
    reports.wallet_balance(fleet_id, WalletKind.FLEET)
    reports.payment_analytics(start=month_start, end=now)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from django.db.models import Count, Q, Sum
from django.db.models.functions import Coalesce, TruncDate

from core.services import BaseService

from payments.ledger import LedgerService, Money, WalletKind
from payments.models import PaymentTransaction
from payments.state_machines import TransactionKind, TransactionStatus


@dataclass
class PaymentAnalytics:
    """Totals in minor units over a period."""

    total_commission_minor: int = 0
    total_escrow_held_minor: int = 0
    total_settlements_minor: int = 0
    total_refunds_minor: int = 0
    subscription_revenue_minor: int = 0
    payment_failures: int = 0
    transaction_count: int = 0
    daily: list[dict] = field(default_factory=list)


def _sum_where(**conditions):
    return Coalesce(Sum("amount_minor", filter=Q(**conditions)), 0)


class ReportingService(BaseService):
    @staticmethod
    def payment_history(
        shipment_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[PaymentTransaction]:
        """Transactions for a shipment and/or a party (payer or payee), newest first."""
        queryset = PaymentTransaction.objects.all()
        if shipment_id is not None:
            queryset = queryset.filter(shipment_id=shipment_id)
        if user_id is not None:
            queryset = queryset.filter(Q(payer_id=user_id) | Q(payee_id=user_id))
        return list(queryset.order_by("-created_at")[:limit])

    @staticmethod
    def wallet_balance(
        owner_id: uuid.UUID | None,
        kind: WalletKind | str,
        currency: str = "inr",
    ) -> Money:
        """Balance of a wallet; a wallet that was never created reads as zero."""
        wallet = LedgerService.get_wallet_by_owner(kind, owner_id, currency)
        if wallet is None:
            return Money(minor=0, currency=currency)
        return Money(minor=wallet.balance_minor, currency=wallet.currency)

    @classmethod
    def payment_analytics(
        cls,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> PaymentAnalytics:
        """
        Aggregate money movements created within [start, end].

        Escrow held counts escrow-ins still HELD or DISPUTED; the rest count
        completed movements of each kind.
        """
        queryset = PaymentTransaction.objects.all()
        if start is not None:
            queryset = queryset.filter(created_at__gte=start)
        if end is not None:
            queryset = queryset.filter(created_at__lte=end)

        metrics = {
            "commission": _sum_where(
                kind=TransactionKind.COMMISSION, status=TransactionStatus.COMPLETE
            ),
            "escrow_held": _sum_where(
                kind=TransactionKind.ESCROW_IN,
                status__in=[TransactionStatus.HELD, TransactionStatus.DISPUTED],
            ),
            "settlements": _sum_where(
                kind=TransactionKind.SETTLEMENT, status=TransactionStatus.COMPLETE
            ),
            "refunds": _sum_where(
                kind=TransactionKind.REFUND, status=TransactionStatus.COMPLETE
            ),
            "subscription_revenue": _sum_where(
                kind=TransactionKind.SUBSCRIPTION, status=TransactionStatus.COMPLETE
            ),
            "failures": Count("id", filter=Q(status=TransactionStatus.FAILED)),
            "count": Count("id"),
        }
        totals = queryset.aggregate(**metrics)
        daily = list(
            queryset.annotate(date=TruncDate("created_at"))
            .values("date")
            .annotate(**metrics)
            .order_by("date")
        )

        cls.get_logger().debug(
            "Payment analytics computed",
            extra={"transaction_count": totals["count"], "days": len(daily)},
        )
        return PaymentAnalytics(
            total_commission_minor=totals["commission"],
            total_escrow_held_minor=totals["escrow_held"],
            total_settlements_minor=totals["settlements"],
            total_refunds_minor=totals["refunds"],
            subscription_revenue_minor=totals["subscription_revenue"],
            payment_failures=totals["failures"],
            transaction_count=totals["count"],
            daily=daily,
        )

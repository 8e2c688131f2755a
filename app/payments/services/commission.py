"""
Commission calculation.

Pure function of (amount, tier, configured rates): no writes, no gateway.
A broken or missing rate table never blocks a payment; the compiled
defaults apply and the problem is logged.

Usage:
    quote = CommissionCalculator(ConfigStore()).calculate_commission(
        1_500_000, SubscriptionTier.BASIC
    )
    quote.commission_minor  # 105000 (7%)
    quote.net_minor         # 1395000
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal

from payments.exceptions import InvalidAmountError
from payments.state_machines import SubscriptionTier

from .config_store import ConfigStore

logger = logging.getLogger(__name__)

RATES_KEY = "commission.rates"

DEFAULT_COMMISSION_RATES: dict[str, Decimal] = {
    SubscriptionTier.BASIC: Decimal("7.0"),
    SubscriptionTier.PREMIUM: Decimal("5.0"),
    SubscriptionTier.ENTERPRISE: Decimal("3.0"),
}

SOURCE_CONFIG = "config"
SOURCE_DEFAULT = "default"


@dataclass(frozen=True)
class CommissionQuote:
    """
    Result of a commission calculation.

    Attributes:
        amount_minor: Gross amount quoted
        commission_minor: Platform share, rounded half-even
        net_minor: amount_minor - commission_minor
        rate: Percentage applied
        tier: Tier the rate was taken for
        source: "config" or "default"
    """

    amount_minor: int
    commission_minor: int
    net_minor: int
    rate: Decimal
    tier: str
    source: str


class CommissionCalculator:
    def __init__(self, config_store: ConfigStore | None = None) -> None:
        self.config_store = config_store or ConfigStore()

    def calculate_commission(
        self,
        amount_minor: int,
        tier: SubscriptionTier | str | None,
    ) -> CommissionQuote:
        """
        Split a gross amount into commission and net.

        Unknown or missing tiers are charged at the lowest tier (basic).

        Raises:
            InvalidAmountError: amount_minor is not a positive integer
        """
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise InvalidAmountError(
                "Amount must be a positive integer in minor units",
                details={"amount_minor": amount_minor},
            )

        resolved_tier = self._resolve_tier(tier)
        rate, source = self._rate_for(resolved_tier)

        commission = (Decimal(amount_minor) * rate / Decimal(100)).quantize(
            Decimal(1), rounding=ROUND_HALF_EVEN
        )
        commission_minor = min(int(commission), amount_minor)

        return CommissionQuote(
            amount_minor=amount_minor,
            commission_minor=commission_minor,
            net_minor=amount_minor - commission_minor,
            rate=rate,
            tier=resolved_tier,
            source=source,
        )

    @staticmethod
    def _resolve_tier(tier: SubscriptionTier | str | None) -> str:
        try:
            return SubscriptionTier(str(tier).lower()).value
        except ValueError:
            logger.warning(
                "Unknown subscription tier, using basic rate",
                extra={"tier": tier},
            )
            return SubscriptionTier.BASIC.value

    def _rate_for(self, tier: str) -> tuple[Decimal, str]:
        try:
            rates = self.config_store.get(RATES_KEY)
            rate = Decimal(str(rates[tier]))
        except Exception:
            logger.warning(
                "Commission rate lookup failed, using compiled default",
                extra={"tier": tier},
                exc_info=True,
            )
            return DEFAULT_COMMISSION_RATES[tier], SOURCE_DEFAULT

        if not rate.is_finite() or rate < 0 or rate > 100:
            logger.warning(
                "Configured commission rate out of range, using compiled default",
                extra={"tier": tier, "rate": str(rate)},
            )
            return DEFAULT_COMMISSION_RATES[tier], SOURCE_DEFAULT

        return rate, SOURCE_CONFIG

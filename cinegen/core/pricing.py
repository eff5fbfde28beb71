"""
Plan tiers and token pricing.

Fixed table of plan tiers with their balance ceilings, grants and prices.
Amounts are in minor currency units as charged by the payment provider.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class PlanTier(Enum):
    """Subscription tiers, ordered from lowest to highest."""
    FREE = "free"
    PRO_STANDARD = "pro_standard"
    PRO_PREMIUM = "pro_premium"


@dataclass(frozen=True)
class PlanPricing:
    """Token economics for a single plan tier."""
    ceiling: int
    grant_tokens: int
    price: int
    topup_tokens: Optional[int] = None

    def __post_init__(self):
        if self.ceiling <= 0:
            raise ValueError("ceiling must be > 0")
        if self.grant_tokens < 0:
            raise ValueError("grant_tokens must be >= 0")
        if self.price < 0:
            raise ValueError("price must be >= 0")
        if self.topup_tokens is not None and self.topup_tokens <= 0:
            raise ValueError("topup_tokens must be > 0")


@dataclass(frozen=True)
class PricingTable:
    """Plan table plus the fixed top-up and refund conversion rates."""
    plans: Dict[PlanTier, PlanPricing]
    topup_price: int = 100000
    refund_amount_per_block: int = 100000
    refund_tokens_per_block: int = 1000

    def get_plan(self, tier: PlanTier) -> PlanPricing:
        """Get pricing for a plan tier.

        Raises:
            ValueError: If the tier is not configured
        """
        if tier not in self.plans:
            raise ValueError(f"Unsupported plan tier: {tier.value}")
        return self.plans[tier]

    def ceiling_for(self, tier: PlanTier) -> int:
        return self.get_plan(tier).ceiling

    def refund_tokens(self, amount_refunded: int) -> int:
        """Convert a refunded provider amount to whole token blocks (floored)."""
        if amount_refunded <= 0:
            return 0
        return (amount_refunded // self.refund_amount_per_block) * self.refund_tokens_per_block


def parse_plan_tier(value: str) -> PlanTier:
    """Parse a plan tier name, case-insensitively."""
    try:
        return PlanTier(value.strip().lower())
    except ValueError:
        valid = [tier.value for tier in PlanTier]
        raise ValueError(f"Unknown plan tier '{value}', expected one of: {valid}")


DEFAULT_PRICING_TABLE = PricingTable({
    PlanTier.FREE: PlanPricing(ceiling=100, grant_tokens=100, price=0),
    PlanTier.PRO_STANDARD: PlanPricing(
        ceiling=10000,
        grant_tokens=5000,
        price=498000,
        topup_tokens=1000
    ),
    PlanTier.PRO_PREMIUM: PlanPricing(
        ceiling=60000,
        grant_tokens=30000,
        price=980000,
        topup_tokens=3000
    ),
})


def clip_credit(balance_before: int, amount: int, ceiling: int) -> int:
    """Return the part of ``amount`` that fits under ``ceiling``.

    The excess is dropped, not carried forward. Never negative, even when the
    balance already exceeds the ceiling after a plan change.
    """
    return max(0, min(amount, ceiling - balance_before))

"""
Effective tier resolution.

Resolution order:
1. Free-tier customers always get free-tier limits
2. A tier locked in this billing month wins over any requested tier
3. A requested tier, if configured
4. Otherwise unresolved: the customer has to pick a tier first
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from meetingsync_pricing.config.loader import PaygTierConfig, PricingConfiguration
from .clock import Clock, utc_now
from .tier_lock import TierLockState, can_change_tier

FREE_TIER_ID = "free"


@dataclass(frozen=True)
class EffectiveTierLimits:
    """Limits and rates that apply to one session."""
    tier_id: Optional[str]
    translation_limit: int
    total_language_limit: int
    base_rate_per_hour: Optional[Decimal]  # None for free tier and unresolved
    overage_rate_per_hour: Decimal
    is_free_tier: bool = False

    @property
    def is_resolved(self) -> bool:
        return self.is_free_tier or self.base_rate_per_hour is not None


UNRESOLVED = EffectiveTierLimits(
    tier_id=None,
    translation_limit=0,
    total_language_limit=1,
    base_rate_per_hour=None,
    overage_rate_per_hour=Decimal("0")
)


@dataclass(frozen=True)
class CustomerContext:
    """What the engine needs to know about a customer to resolve a tier."""
    customer_id: str
    is_free_tier: bool = False
    tier_lock: TierLockState = field(default_factory=TierLockState)


def free_tier_limits(config: PricingConfiguration) -> EffectiveTierLimits:
    return EffectiveTierLimits(
        tier_id=FREE_TIER_ID,
        translation_limit=config.free_tier.translation_limit,
        total_language_limit=config.free_tier.total_language_limit,
        base_rate_per_hour=None,
        overage_rate_per_hour=Decimal("0"),
        is_free_tier=True
    )


def payg_tier_limits(tier: PaygTierConfig) -> EffectiveTierLimits:
    return EffectiveTierLimits(
        tier_id=tier.tier_id,
        translation_limit=tier.translation_limit,
        total_language_limit=tier.total_language_limit,
        base_rate_per_hour=tier.base_rate_per_hour,
        overage_rate_per_hour=tier.overage_rate_per_hour
    )


class TierResolver:
    """Resolves the tier that applies to a customer's next session."""

    def __init__(self, config: PricingConfiguration, clock: Clock = utc_now):
        self.config = config
        self._clock = clock

    def resolve(self, customer: CustomerContext,
                requested_tier_id: Optional[str] = None) -> EffectiveTierLimits:
        """Resolve effective limits for a customer.

        Args:
            customer: Customer context (free-tier flag and tier lock state)
            requested_tier_id: Tier the caller would like to use, if any

        A lock only pins the tier during the billing month it was made in.
        Once it expires, the stored ``current_tier_id`` is not used on its
        own: hosts that keep customers on their previous tier pass it again
        as ``requested_tier_id``, otherwise the result is UNRESOLVED and the
        customer has to pick a tier.

        Returns:
            EffectiveTierLimits, or UNRESOLVED when no tier applies yet

        Raises:
            UnknownTierError: If the requested or locked tier is not configured
        """
        if customer.is_free_tier:
            return free_tier_limits(self.config)

        if requested_tier_id is not None:
            requested = self.config.get_tier(requested_tier_id)
        else:
            requested = None

        lock = customer.tier_lock
        if lock.current_tier_id is not None and not can_change_tier(
                lock.tier_selected_date, self._clock(), self.config.billing_timezone):
            return payg_tier_limits(self.config.get_tier(lock.current_tier_id))

        if requested is not None:
            return payg_tier_limits(requested)
        return UNRESOLVED

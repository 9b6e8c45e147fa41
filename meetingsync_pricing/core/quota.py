"""
Quota enforcement for session starts.

Two checks gate every session:
- Language count: the number of target languages must match the tier's
  translation limit exactly
- Free-tier usage: free-tier customers need minutes left in the current
  reset window

The free-tier counter resets on the configured schedule. Resetting is
idempotent: the counter records the reset boundary it was refilled at, so
applying the reset again inside the same window changes nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AbstractSet, Optional

from dateutil import tz
from dateutil.relativedelta import MO, relativedelta

from meetingsync_pricing.config.loader import FreeTierConfig, PricingConfiguration, ResetSchedule
from .clock import Clock, ensure_aware, utc_now
from .errors import DailyQuotaExhausted, TierNotSelected, TooFewLanguages, TooManyLanguages
from .tiers import EffectiveTierLimits

logger = logging.getLogger(__name__)

_RESET_PERIODS = {
    ResetSchedule.DAILY: relativedelta(days=1),
    ResetSchedule.WEEKLY: relativedelta(weeks=1),
    ResetSchedule.MONTHLY: relativedelta(months=1),
}


@dataclass(frozen=True)
class FreeTierUsage:
    """Externally stored free-tier minute counter for one customer."""
    minutes_remaining: int
    last_reset_at: Optional[datetime] = None

    def __post_init__(self):
        if self.minutes_remaining < 0:
            raise ValueError("minutes_remaining cannot be negative")


@dataclass(frozen=True)
class QuotaCheck:
    """Result of a passing quota check.

    ``free_tier_usage`` is the counter after any due reset was applied; the
    caller persists it when it differs from what was passed in.
    """
    limits: EffectiveTierLimits
    free_tier_usage: Optional[FreeTierUsage] = None


def last_reset_boundary(now: datetime, free_tier: FreeTierConfig) -> datetime:
    """Most recent scheduled reset at or before ``now``.

    Weekly resets happen on Mondays and monthly resets on the 1st, both at
    the configured reset time in the configured timezone.
    """
    local_now = ensure_aware(now).astimezone(tz.gettz(free_tier.reset_timezone))
    at_reset_time = relativedelta(
        hour=free_tier.reset_time.hour,
        minute=free_tier.reset_time.minute,
        second=0,
        microsecond=0
    )
    if free_tier.reset_schedule == ResetSchedule.WEEKLY:
        candidate = local_now + relativedelta(weekday=MO(-1)) + at_reset_time
    elif free_tier.reset_schedule == ResetSchedule.MONTHLY:
        candidate = local_now + relativedelta(day=1) + at_reset_time
    else:
        candidate = local_now + at_reset_time

    if candidate > local_now:
        candidate -= _RESET_PERIODS[free_tier.reset_schedule]
    return candidate


def next_reset_at(now: datetime, free_tier: FreeTierConfig) -> datetime:
    return last_reset_boundary(now, free_tier) + _RESET_PERIODS[free_tier.reset_schedule]


def apply_reset(usage: FreeTierUsage, now: datetime, free_tier: FreeTierConfig) -> FreeTierUsage:
    """Refill the counter if a reset boundary passed since its last reset."""
    boundary = last_reset_boundary(now, free_tier)
    if usage.last_reset_at is not None and ensure_aware(usage.last_reset_at) >= boundary:
        return usage
    return FreeTierUsage(minutes_remaining=free_tier.daily_minutes, last_reset_at=boundary)


def check_language_count(target_languages: AbstractSet[str], limits: EffectiveTierLimits) -> None:
    """Require exactly ``limits.translation_limit`` target languages.

    Raises:
        TooFewLanguages: With the number of languages still to select
        TooManyLanguages: With the number of languages to remove
    """
    selected = len(target_languages)
    required = limits.translation_limit
    if selected < required:
        raise TooFewLanguages(required, selected)
    if selected > required:
        raise TooManyLanguages(required, selected)


class QuotaEnforcer:
    """Validates a proposed session against tier and free-tier quotas."""

    def __init__(self, config: PricingConfiguration, clock: Clock = utc_now):
        self.config = config
        self._clock = clock

    def apply_reset(self, usage: FreeTierUsage) -> FreeTierUsage:
        return apply_reset(usage, self._clock(), self.config.free_tier)

    def next_reset_at(self) -> datetime:
        return next_reset_at(self._clock(), self.config.free_tier)

    def check(self, limits: EffectiveTierLimits, target_languages: AbstractSet[str],
              free_tier_usage: Optional[FreeTierUsage] = None) -> QuotaCheck:
        """Check whether a session may start.

        Args:
            limits: Resolved tier limits
            target_languages: Distinct target language codes selected
            free_tier_usage: Remaining-minutes counter (required for free tier)

        Returns:
            QuotaCheck with the possibly reset free-tier counter

        Raises:
            TierNotSelected: If limits are unresolved
            DailyQuotaExhausted: If a free-tier customer has no minutes left
            TooFewLanguages / TooManyLanguages: On language count mismatch
        """
        if not limits.is_resolved:
            raise TierNotSelected()

        usage = None
        if limits.is_free_tier:
            if free_tier_usage is None:
                raise ValueError("free_tier_usage is required for free-tier quota checks")
            now = self._clock()
            usage = apply_reset(free_tier_usage, now, self.config.free_tier)
            if usage.minutes_remaining <= 0:
                logger.debug("Free-tier minutes exhausted until next reset")
                raise DailyQuotaExhausted(next_reset_at(now, self.config.free_tier))

        check_language_count(target_languages, limits)
        return QuotaCheck(limits=limits, free_tier_usage=usage)

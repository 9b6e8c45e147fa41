"""
Monthly tier lock-in.

A customer may pick a PAYG tier once per calendar month (in the billing
timezone). The selection unlocks on the first day of the following month.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from meetingsync_pricing.config.loader import PricingConfiguration
from .clock import Clock, local_date, utc_now
from .errors import TierLocked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierLockState:
    """Persisted tier selection for one customer."""
    current_tier_id: Optional[str] = None
    tier_selected_date: Optional[datetime] = None


@dataclass(frozen=True)
class TierChange:
    """Outcome of a successful tier change.

    ``clear_language_selection`` tells the caller the customer's current
    language picks no longer fit the new tier; the caller is responsible for
    clearing them and re-running quota checks.
    """
    state: TierLockState
    previous_tier_id: Optional[str]
    clear_language_selection: bool = False


def can_change_tier(last_selected: Optional[Union[date, datetime]], now: datetime,
                    timezone: str = "UTC") -> bool:
    """True if no tier was ever selected, or it was selected before this month."""
    if last_selected is None:
        return True
    first_of_month = local_date(now, timezone).replace(day=1)
    return local_date(last_selected, timezone) < first_of_month


def next_change_date(now: datetime, timezone: str = "UTC") -> date:
    """First day of the month following ``now``."""
    return local_date(now, timezone) + relativedelta(months=1, day=1)


class TierLockManager:
    """Gates tier changes against the once-per-month rule."""

    def __init__(self, config: PricingConfiguration, clock: Clock = utc_now):
        self.config = config
        self._clock = clock

    def can_change_tier(self, last_selected_date: Optional[Union[date, datetime]]) -> bool:
        return can_change_tier(last_selected_date, self._clock(), self.config.billing_timezone)

    def next_change_date(self) -> date:
        return next_change_date(self._clock(), self.config.billing_timezone)

    def days_until_change(self, state: TierLockState) -> int:
        """Days until the customer may pick a new tier (0 when unlocked)."""
        now = self._clock()
        if can_change_tier(state.tier_selected_date, now, self.config.billing_timezone):
            return 0
        today = local_date(now, self.config.billing_timezone)
        return (next_change_date(now, self.config.billing_timezone) - today).days

    def lock_message(self, state: TierLockState) -> str:
        """User-facing explanation of when the next change is allowed."""
        if self.can_change_tier(state.tier_selected_date):
            return ""
        unlock = self.next_change_date()
        return f"You can select a new tier starting {unlock:%B} {unlock.day}, {unlock.year}"

    def change_tier(self, state: TierLockState, new_tier_id: str,
                    selected_language_count: int = 0) -> TierChange:
        """Select a new tier for the customer.

        Args:
            state: Customer's current tier selection
            new_tier_id: Tier to switch to
            selected_language_count: Number of target languages the customer
                currently has selected

        Returns:
            TierChange with the new state to persist

        Raises:
            UnknownTierError: If the tier is not configured
            TierLocked: If a different tier was already selected this month
        """
        tier = self.config.get_tier(new_tier_id)
        now = self._clock()

        if not can_change_tier(state.tier_selected_date, now, self.config.billing_timezone):
            if state.current_tier_id == new_tier_id:
                return TierChange(state=state, previous_tier_id=state.current_tier_id)
            raise TierLocked(
                next_change_date(now, self.config.billing_timezone),
                state.current_tier_id
            )

        logger.info("Tier changed from %s to %s", state.current_tier_id, new_tier_id)
        return TierChange(
            state=TierLockState(current_tier_id=new_tier_id, tier_selected_date=now),
            previous_tier_id=state.current_tier_id,
            clear_language_selection=selected_language_count > tier.translation_limit
        )

"""
Host-facing pricing engine.

Bundles the engine components over one configuration version. Hosts build a
new engine when a new configuration version is activated, typically from a
``ConfigStore.subscribe`` listener.
"""

from datetime import date, datetime
from typing import AbstractSet, Optional, Union

from meetingsync_pricing.config.loader import ConfigStore, PricingConfiguration
from .clock import Clock, utc_now
from .invoice import Invoice, add_charge, finalize
from .pricing import CostCalculator, SessionCharge, SessionFacts
from .quota import FreeTierUsage, QuotaCheck, QuotaEnforcer
from .tier_lock import TierChange, TierLockManager, TierLockState
from .tiers import CustomerContext, EffectiveTierLimits, TierResolver


class PricingEngine:
    """Synchronous pricing operations for the UI/session layer."""

    def __init__(self, config: PricingConfiguration, clock: Clock = utc_now):
        self.config = config
        self._clock = clock
        self.resolver = TierResolver(config, clock)
        self.quota = QuotaEnforcer(config, clock)
        self.calculator = CostCalculator(config)
        self.tier_lock = TierLockManager(config, clock)

    @classmethod
    def from_store(cls, store: ConfigStore, clock: Clock = utc_now) -> "PricingEngine":
        return cls(store.get(), clock)

    def resolve_tier(self, customer: CustomerContext,
                     requested_tier_id: Optional[str] = None) -> EffectiveTierLimits:
        return self.resolver.resolve(customer, requested_tier_id)

    def check_quota(self, customer: CustomerContext, target_languages: AbstractSet[str],
                    requested_tier_id: Optional[str] = None,
                    free_tier_usage: Optional[FreeTierUsage] = None) -> QuotaCheck:
        """Resolve the customer's tier and check a proposed session against it."""
        limits = self.resolver.resolve(customer, requested_tier_id)
        return self.quota.check(limits, target_languages, free_tier_usage)

    def compute_cost(self, facts: SessionFacts, limits: EffectiveTierLimits) -> SessionCharge:
        return self.calculator.compute(facts, limits)

    def can_change_tier(self, last_selected_date: Optional[Union[date, datetime]]) -> bool:
        return self.tier_lock.can_change_tier(last_selected_date)

    def change_tier(self, state: TierLockState, new_tier_id: str,
                    selected_language_count: int = 0) -> TierChange:
        return self.tier_lock.change_tier(state, new_tier_id, selected_language_count)

    def add_charge(self, invoice: Invoice, charge: SessionCharge) -> Invoice:
        return add_charge(invoice, charge)

    def finalize_invoice(self, invoice: Invoice, paid_at: Optional[datetime] = None) -> Invoice:
        return finalize(invoice, paid_at or self._clock())

"""
Session cost calculation.

total = (base + overage) * participant multiplier, rounded half-up to cents.

- base: hourly tier rate times session duration (0 on the free tier)
- overage: target languages beyond the tier's included count, billed per
  active minute at the tier's overage rate
- multiplier: +multiplier_rate per started bracket of participants above
  the base threshold, optionally capped
"""

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import AbstractSet, Dict, Mapping, Optional, Tuple

from meetingsync_pricing.config.loader import ParticipantScalingConfig, PricingConfiguration
from .errors import InvalidDuration, TierNotSelected, TooFewLanguages
from .tiers import EffectiveTierLimits

CENT = Decimal("0.01")
MINUTES_PER_HOUR = Decimal("60")


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class SessionFacts:
    """Immutable facts about a finished session, supplied by the session layer."""
    session_id: str
    session_date: date
    duration_hours: Decimal
    source_language: str
    target_languages: AbstractSet[str]
    participant_count: int
    # Minutes each target language was actually active; missing languages
    # are taken to have been active for the whole session
    per_language_active_minutes: Mapping[str, Decimal] = field(default_factory=dict)
    tier_id: Optional[str] = None
    is_free_tier: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'duration_hours', _to_decimal(self.duration_hours))
        object.__setattr__(self, 'target_languages', frozenset(self.target_languages))
        object.__setattr__(self, 'per_language_active_minutes', MappingProxyType({
            lang: _to_decimal(minutes)
            for lang, minutes in self.per_language_active_minutes.items()
        }))

        if self.participant_count < 0:
            raise ValueError("participant_count cannot be negative")
        if self.source_language in self.target_languages:
            raise ValueError("source_language cannot also be a target language")
        for lang, minutes in self.per_language_active_minutes.items():
            if minutes < 0:
                raise ValueError(f"Active minutes for {lang} cannot be negative")


@dataclass(frozen=True)
class SessionCharge:
    """Computed charge for one session. Never mutated; corrections create a
    new revision that supersedes the previous one."""
    session_id: str
    session_date: date
    tier_used: str
    duration_hours: Decimal
    base_cost: Decimal
    overage_cost: Decimal
    participant_multiplier: Decimal
    total_cost: Decimal
    overage_languages: Tuple[str, ...] = ()
    revision: int = 1
    supersedes: Optional[int] = None


def participant_multiplier(participant_count: int, scaling: ParticipantScalingConfig) -> Decimal:
    """Step multiplier for a participant count.

    With threshold 100, increment 100 and rate 0.25: 100 -> 1.00,
    101..200 -> 1.25, 201..300 -> 1.50.
    """
    over_threshold = max(0, participant_count - scaling.base_threshold)
    brackets = -(-over_threshold // scaling.increment_size)
    multiplier = Decimal(1) + brackets * scaling.multiplier_rate
    if scaling.max_multiplier is not None:
        multiplier = min(multiplier, scaling.max_multiplier)
    return multiplier


def active_minutes(facts: SessionFacts) -> Dict[str, Decimal]:
    """Active minutes per target language, capped at the session length."""
    session_minutes = facts.duration_hours * MINUTES_PER_HOUR
    return {
        lang: min(facts.per_language_active_minutes.get(lang, session_minutes), session_minutes)
        for lang in facts.target_languages
    }


def select_overage_languages(minutes: Mapping[str, Decimal], included: int) -> Tuple[str, ...]:
    """Languages billed as overage.

    The most-used languages count as included, so only the least-used ones
    are billed. Ties rank by language code to keep the choice deterministic.
    """
    ranked = sorted(minutes, key=lambda lang: (-minutes[lang], lang))
    return tuple(ranked[included:])


def upgrade_break_even_hours(config: PricingConfiguration, from_tier_id: str,
                             to_tier_id: str) -> Optional[Decimal]:
    """Hours of one overage language on ``from_tier`` that cost the same as
    the hourly rate difference to ``to_tier``.

    Returns None when the lower tier has no overage charge, in which case
    upgrading never pays off.

    Raises:
        UnknownTierError: If either tier is not configured
    """
    from_tier = config.get_tier(from_tier_id)
    to_tier = config.get_tier(to_tier_id)
    if from_tier.overage_rate_per_hour <= 0:
        return None
    difference = to_tier.base_rate_per_hour - from_tier.base_rate_per_hour
    return (difference / from_tier.overage_rate_per_hour).quantize(CENT, rounding=ROUND_HALF_UP)


class CostCalculator:
    """Computes session charges from session facts and resolved limits."""

    def __init__(self, config: PricingConfiguration):
        self.config = config

    def compute(self, facts: SessionFacts, limits: EffectiveTierLimits) -> SessionCharge:
        """Compute the charge for a session.

        Args:
            facts: Immutable session facts
            limits: Limits the session ran under

        Returns:
            SessionCharge with components and total rounded to cents

        Raises:
            InvalidDuration: If duration_hours <= 0
            TierNotSelected: If limits are unresolved
            TooFewLanguages: If no target languages were used on a tier
                that includes some
        """
        if facts.duration_hours <= 0:
            raise InvalidDuration(facts.duration_hours)
        if not limits.is_resolved:
            raise TierNotSelected()
        if facts.is_free_tier != limits.is_free_tier:
            raise ValueError("Session facts and tier limits disagree on free-tier status")
        if facts.tier_id is not None and not facts.is_free_tier and facts.tier_id != limits.tier_id:
            raise ValueError(f"Session ran on tier {facts.tier_id}, limits are for {limits.tier_id}")
        if not facts.target_languages and limits.translation_limit > 0:
            raise TooFewLanguages(limits.translation_limit, 0)

        minutes = active_minutes(facts)
        overage_languages = select_overage_languages(minutes, limits.translation_limit)

        if limits.is_free_tier:
            base_cost = Decimal(0)
        else:
            base_cost = limits.base_rate_per_hour * facts.duration_hours

        overage_cost = sum(
            (limits.overage_rate_per_hour * minutes[lang] / MINUTES_PER_HOUR
             for lang in overage_languages),
            Decimal(0)
        )

        multiplier = participant_multiplier(facts.participant_count,
                                            self.config.participant_scaling)
        total_cost = ((base_cost + overage_cost) * multiplier).quantize(CENT, rounding=ROUND_HALF_UP)

        return SessionCharge(
            session_id=facts.session_id,
            session_date=facts.session_date,
            tier_used=limits.tier_id,
            duration_hours=facts.duration_hours,
            base_cost=base_cost.quantize(CENT, rounding=ROUND_HALF_UP),
            overage_cost=overage_cost.quantize(CENT, rounding=ROUND_HALF_UP),
            participant_multiplier=multiplier,
            total_cost=total_cost,
            overage_languages=overage_languages
        )

    def correct(self, previous: SessionCharge, facts: SessionFacts,
                limits: EffectiveTierLimits) -> SessionCharge:
        """Recompute a charge from corrected facts as a new revision."""
        if facts.session_id != previous.session_id:
            raise ValueError(
                f"Correction for session {facts.session_id} cannot supersede "
                f"a charge for session {previous.session_id}"
            )
        charge = self.compute(facts, limits)
        return replace(charge, revision=previous.revision + 1, supersedes=previous.revision)

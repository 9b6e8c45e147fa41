"""
Pricing configuration loading and validation.

Parses a YAML (or already-decoded) pricing document into immutable, versioned
configuration objects. Validation collects every violated invariant before
failing so a single run reports the complete diagnostic.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml
from dateutil import tz

from meetingsync_pricing.core.errors import UnknownTierError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("default_pricing.yaml")


class ResetSchedule(Enum):
    """How often the free-tier minute allowance is replenished."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class FreeTierConfig:
    """Daily free allowance available to qualifying accounts."""
    daily_minutes: int
    translation_limit: int
    total_language_limit: int
    reset_schedule: ResetSchedule
    reset_time: time
    reset_timezone: str


@dataclass(frozen=True)
class PaygTierConfig:
    """A pay-as-you-go tier with hourly and overage rates."""
    tier_id: str
    name: str
    base_rate_per_hour: Decimal
    translation_limit: int
    total_language_limit: int
    overage_rate_per_hour: Decimal
    recommended: bool = False


@dataclass(frozen=True)
class ParticipantScalingConfig:
    """Step-function surcharge applied above a participant threshold."""
    base_threshold: int
    increment_size: int
    multiplier_rate: Decimal
    max_multiplier: Optional[Decimal] = None


@dataclass(frozen=True)
class PricingConfiguration:
    """Complete, validated pricing configuration for one version."""
    version: str
    free_tier: FreeTierConfig
    payg_tiers: Mapping[str, PaygTierConfig]
    participant_scaling: ParticipantScalingConfig
    currency: str = "USD"
    billing_timezone: str = "UTC"

    def get_tier(self, tier_id: str) -> PaygTierConfig:
        """Get a PAYG tier by id.

        Raises:
            UnknownTierError: If the tier is not configured
        """
        if tier_id not in self.payg_tiers:
            raise UnknownTierError(tier_id)
        return self.payg_tiers[tier_id]

    def recommended_tier(self) -> Optional[PaygTierConfig]:
        """The tier flagged as recommended, if any."""
        for tier in self.payg_tiers.values():
            if tier.recommended:
                return tier
        return None


ConfigListener = Callable[[PricingConfiguration], None]


class ConfigStore:
    """Holds the active pricing configuration snapshot.

    A new version replaces the snapshot atomically; readers always see either
    the previous or the new fully validated configuration. Listeners are
    called with the new configuration after every activation.
    """

    def __init__(self, config: Optional[PricingConfiguration] = None):
        self._lock = threading.Lock()
        self._current = config
        self._listeners: List[ConfigListener] = []

    def load(self, raw: Any) -> PricingConfiguration:
        """Validate a raw configuration document and make it active.

        Raises:
            ValidationError: If any invariant is violated; the active
                snapshot is left untouched
        """
        config = load_pricing_data(raw)
        self._swap(config)
        return config

    def load_file(self, path: str) -> PricingConfiguration:
        """Validate a YAML configuration file and make it active."""
        config = load_pricing_config(path)
        self._swap(config)
        return config

    def get(self) -> PricingConfiguration:
        """Return the active configuration.

        Raises:
            LookupError: If no configuration has been loaded yet
        """
        with self._lock:
            if self._current is None:
                raise LookupError("No pricing configuration has been loaded")
            return self._current

    @property
    def version(self) -> Optional[str]:
        with self._lock:
            return self._current.version if self._current else None

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        """Register a listener for configuration activations.

        Returns:
            A function that unsubscribes the listener; calling it twice is
            harmless
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _swap(self, config: PricingConfiguration) -> None:
        with self._lock:
            previous = self._current.version if self._current else None
            self._current = config
            listeners = list(self._listeners)
        logger.info("Pricing configuration %s activated (previous: %s)", config.version, previous)
        for listener in listeners:
            listener(config)


def load_pricing_config(path: str) -> PricingConfiguration:
    """Load and validate pricing configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PricingConfiguration object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValidationError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pricing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    return load_pricing_data(raw_config)


def load_default_config() -> PricingConfiguration:
    """Load the pricing configuration shipped with the package."""
    return load_pricing_config(str(DEFAULT_CONFIG_PATH))


_TOP_KEYS = {'version', 'currency', 'billing_timezone', 'free_tier', 'payg_tiers',
             'participant_scaling'}
_FREE_TIER_KEYS = {'daily_minutes', 'translation_limit', 'total_language_limit',
                   'reset_schedule', 'reset_time', 'reset_timezone', 'description'}
_TIER_KEYS = {'name', 'base_rate_per_hour', 'translation_limit', 'total_language_limit',
              'overage_rate_per_hour', 'recommended', 'description', 'features'}
_SCALING_KEYS = {'base_threshold', 'increment_size', 'multiplier_rate', 'max_multiplier',
                 'formula'}


def load_pricing_data(raw_config: Any) -> PricingConfiguration:
    """Validate a decoded configuration document.

    Args:
        raw_config: Mapping matching the pricing configuration shape

    Returns:
        Validated PricingConfiguration object

    Raises:
        ValidationError: Listing every violated invariant
    """
    if not raw_config:
        raise ValidationError(["Configuration is empty"])
    if not isinstance(raw_config, dict):
        raise ValidationError(["Configuration must be a mapping"])

    errors: List[str] = []
    _check_keys(raw_config, _TOP_KEYS, "configuration", errors)

    version = raw_config.get('version')
    if version is None or not str(version).strip():
        errors.append("Missing required 'version'")
        version = None

    currency = raw_config.get('currency', 'USD')
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        errors.append(f"'currency' must be a 3-letter currency code, got {currency!r}")

    billing_timezone = _timezone_field(raw_config, 'billing_timezone', "configuration",
                                       errors, default="UTC")

    free_tier = _parse_free_tier(_section(raw_config, 'free_tier', errors), errors)
    payg_tiers = _parse_payg_tiers(_section(raw_config, 'payg_tiers', errors), errors)
    scaling = _parse_scaling(_section(raw_config, 'participant_scaling', errors), errors)

    if errors:
        logger.warning("Rejected pricing configuration with %d violation(s)", len(errors))
        raise ValidationError(errors)

    return PricingConfiguration(
        version=str(version),
        free_tier=free_tier,
        payg_tiers=MappingProxyType(payg_tiers),
        participant_scaling=scaling,
        currency=currency.upper(),
        billing_timezone=billing_timezone
    )


def _section(data: Dict, key: str, errors: List[str]) -> Optional[Dict]:
    if key not in data:
        errors.append(f"Missing required '{key}' section")
        return None
    section = data[key]
    if not isinstance(section, dict):
        errors.append(f"'{key}' must be a dictionary")
        return None
    return section


def _check_keys(data: Dict, allowed: set, path: str, errors: List[str]) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        errors.append(f"Unknown keys in {path}: {sorted(unknown)}")


def _parse_free_tier(data: Optional[Dict], errors: List[str]) -> Optional[FreeTierConfig]:
    if data is None:
        return None
    path = "free_tier"
    _check_keys(data, _FREE_TIER_KEYS, path, errors)

    daily_minutes = _int_field(data, 'daily_minutes', path, errors, minimum=1)
    translation_limit, total_limit = _language_limits(data, path, errors)

    schedule = None
    schedule_str = data.get('reset_schedule', ResetSchedule.DAILY.value)
    try:
        schedule = ResetSchedule(str(schedule_str).lower())
    except ValueError:
        valid = [s.value for s in ResetSchedule]
        errors.append(f"'reset_schedule' in {path} must be one of: {valid}")

    reset_time = None
    raw_time = data.get('reset_time', "00:00")
    if not isinstance(raw_time, str):
        errors.append(f"'reset_time' in {path} must be a quoted 'HH:MM' string")
    else:
        try:
            reset_time = datetime.strptime(raw_time, "%H:%M").time()
        except ValueError:
            errors.append(f"'reset_time' in {path} must be formatted 'HH:MM', got {raw_time!r}")

    reset_timezone = _timezone_field(data, 'reset_timezone', path, errors, default="UTC")

    if None in (daily_minutes, translation_limit, total_limit, schedule, reset_time,
                reset_timezone):
        return None
    return FreeTierConfig(
        daily_minutes=daily_minutes,
        translation_limit=translation_limit,
        total_language_limit=total_limit,
        reset_schedule=schedule,
        reset_time=reset_time,
        reset_timezone=reset_timezone
    )


def _parse_payg_tiers(data: Optional[Dict], errors: List[str]) -> Dict[str, PaygTierConfig]:
    if data is None:
        return {}
    if not data:
        errors.append("'payg_tiers' must define at least one tier")
        return {}

    tiers = {}
    for tier_id, tier_data in data.items():
        path = f"payg_tiers.{tier_id}"
        if not isinstance(tier_data, dict):
            errors.append(f"Tier '{tier_id}' must be a dictionary")
            continue
        _check_keys(tier_data, _TIER_KEYS, path, errors)

        base_rate = _decimal_field(tier_data, 'base_rate_per_hour', path, errors, positive=True)
        overage_rate = _decimal_field(tier_data, 'overage_rate_per_hour', path, errors)
        translation_limit, total_limit = _language_limits(tier_data, path, errors)

        recommended = tier_data.get('recommended', False)
        if not isinstance(recommended, bool):
            errors.append(f"'recommended' in {path} must be true or false")

        if None in (base_rate, overage_rate, translation_limit, total_limit):
            continue
        tiers[str(tier_id)] = PaygTierConfig(
            tier_id=str(tier_id),
            name=str(tier_data.get('name', tier_id)),
            base_rate_per_hour=base_rate,
            translation_limit=translation_limit,
            total_language_limit=total_limit,
            overage_rate_per_hour=overage_rate,
            recommended=bool(recommended)
        )
    return tiers


def _parse_scaling(data: Optional[Dict], errors: List[str]) -> Optional[ParticipantScalingConfig]:
    if data is None:
        return None
    path = "participant_scaling"
    _check_keys(data, _SCALING_KEYS, path, errors)

    base_threshold = _int_field(data, 'base_threshold', path, errors, minimum=1)
    increment_size = _int_field(data, 'increment_size', path, errors, minimum=1)
    multiplier_rate = _decimal_field(data, 'multiplier_rate', path, errors)

    max_multiplier = None
    if data.get('max_multiplier') is not None:
        max_multiplier = _decimal_field(data, 'max_multiplier', path, errors)
        if max_multiplier is not None and max_multiplier < 1:
            errors.append(f"'max_multiplier' in {path} must be >= 1")
            max_multiplier = None

    if None in (base_threshold, increment_size, multiplier_rate):
        return None
    return ParticipantScalingConfig(
        base_threshold=base_threshold,
        increment_size=increment_size,
        multiplier_rate=multiplier_rate,
        max_multiplier=max_multiplier
    )


def _language_limits(data: Dict, path: str, errors: List[str]) -> Tuple[Optional[int], Optional[int]]:
    """Parse translation_limit and total_language_limit (= translations + source)."""
    translation_limit = _int_field(data, 'translation_limit', path, errors, minimum=0)
    if 'total_language_limit' not in data:
        return translation_limit, (translation_limit + 1 if translation_limit is not None else None)

    total_limit = _int_field(data, 'total_language_limit', path, errors, minimum=1)
    if (translation_limit is not None and total_limit is not None
            and total_limit != translation_limit + 1):
        errors.append(
            f"'total_language_limit' in {path} must equal translation_limit + 1 "
            f"({translation_limit + 1}), got {total_limit}"
        )
        return translation_limit, None
    return translation_limit, total_limit


def _int_field(data: Dict, key: str, path: str, errors: List[str], minimum: int) -> Optional[int]:
    if key not in data:
        errors.append(f"Missing required '{key}' in {path}")
        return None
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"'{key}' in {path} must be an integer")
        return None
    if value < minimum:
        comparison = "> 0" if minimum == 1 else f">= {minimum}"
        errors.append(f"'{key}' in {path} must be {comparison}")
        return None
    return value


def _decimal_field(data: Dict, key: str, path: str, errors: List[str],
                   positive: bool = False) -> Optional[Decimal]:
    if key not in data:
        errors.append(f"Missing required '{key}' in {path}")
        return None
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        errors.append(f"'{key}' in {path} must be a number")
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        errors.append(f"'{key}' in {path} must be a number")
        return None
    if not amount.is_finite():
        errors.append(f"'{key}' in {path} must be a finite number")
        return None
    if positive and amount <= 0:
        errors.append(f"'{key}' in {path} must be > 0")
        return None
    if amount < 0:
        errors.append(f"'{key}' in {path} cannot be negative")
        return None
    return amount


def _timezone_field(data: Dict, key: str, path: str, errors: List[str],
                    default: str) -> Optional[str]:
    name = data.get(key, default)
    # gettz("") resolves to the host's local zone, which is never what a config means
    if not isinstance(name, str) or not name.strip() or tz.gettz(name) is None:
        errors.append(f"'{key}' in {path} must be a known timezone name, got {name!r}")
        return None
    return name

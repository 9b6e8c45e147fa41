"""
Unit tests for pricing configuration loading and validation.

Tests strict validation, complete error reporting and the config store.
"""

import os
import tempfile
from datetime import time
from decimal import Decimal

import pytest
import yaml

from meetingsync_pricing.config.loader import (
    ConfigStore,
    ResetSchedule,
    load_default_config,
    load_pricing_config,
    load_pricing_data
)
from meetingsync_pricing.core.errors import UnknownTierError, ValidationError


class TestConfigLoading:
    """Test configuration loading from YAML files."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "pricing.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self, raw_config):
        """Test that a valid configuration loads correctly."""
        config = load_pricing_config(self._write_config(raw_config))

        assert config.version == "test-1"
        assert config.currency == "USD"

        assert config.free_tier.daily_minutes == 15
        assert config.free_tier.translation_limit == 2
        assert config.free_tier.total_language_limit == 3
        assert config.free_tier.reset_schedule == ResetSchedule.DAILY
        assert config.free_tier.reset_time == time(0, 0)

        professional = config.get_tier("professional")
        assert professional.base_rate_per_hour == Decimal("75")
        assert professional.overage_rate_per_hour == Decimal("8")
        assert professional.translation_limit == 5
        assert professional.total_language_limit == 6

        assert config.participant_scaling.multiplier_rate == Decimal("0.25")
        assert config.participant_scaling.max_multiplier is None

    def test_recommended_tier(self, pricing_config):
        """Test the recommended tier lookup."""
        assert pricing_config.recommended_tier().tier_id == "professional"

    def test_unknown_tier_lookup_raises(self, pricing_config):
        """Test that looking up an unconfigured tier raises."""
        with pytest.raises(UnknownTierError, match="Unknown pricing tier: platinum"):
            pricing_config.get_tier("platinum")

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Pricing config file not found"):
            load_pricing_config("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        """Test that empty config file raises error."""
        config_path = self._write_config({})

        with pytest.raises(ValidationError, match="Configuration is empty"):
            load_pricing_config(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_pricing_config(config_path)

    def test_unquoted_reset_time_is_rejected(self, raw_config):
        """Test that YAML's base-60 reading of an unquoted time is caught."""
        raw_config["free_tier"]["reset_time"] = yaml.safe_load("reset_time: 12:30")["reset_time"]

        with pytest.raises(ValidationError) as excinfo:
            load_pricing_data(raw_config)

        assert any("quoted 'HH:MM'" in error for error in excinfo.value.errors)

    def test_default_config_loads(self):
        """Test that the bundled configuration is valid."""
        config = load_default_config()

        assert config.version == "1.0.0"
        assert set(config.payg_tiers) == {"starter", "professional", "enterprise"}
        assert config.free_tier.daily_minutes == 15
        assert config.recommended_tier().tier_id == "professional"


class TestConfigValidation:
    """Test invariant validation and complete error reporting."""

    def test_every_violation_is_reported(self, raw_config):
        """Test that all violations are collected, not just the first."""
        raw_config["payg_tiers"]["starter"]["base_rate_per_hour"] = 0
        raw_config["payg_tiers"]["professional"]["total_language_limit"] = 7
        raw_config["payg_tiers"]["enterprise"]["overage_rate_per_hour"] = -1
        raw_config["participant_scaling"]["base_threshold"] = 0
        raw_config["participant_scaling"]["multiplier_rate"] = -0.5

        with pytest.raises(ValidationError) as excinfo:
            load_pricing_data(raw_config)

        errors = excinfo.value.errors
        assert len(errors) == 5
        assert "'base_rate_per_hour' in payg_tiers.starter must be > 0" in errors
        assert ("'total_language_limit' in payg_tiers.professional must equal "
                "translation_limit + 1 (6), got 7") in errors
        assert "'overage_rate_per_hour' in payg_tiers.enterprise cannot be negative" in errors
        assert "'base_threshold' in participant_scaling must be > 0" in errors
        assert "'multiplier_rate' in participant_scaling cannot be negative" in errors

    def test_negative_translation_limit(self, raw_config):
        """Test that negative translation limits are rejected."""
        raw_config["free_tier"]["translation_limit"] = -1
        del raw_config["free_tier"]["total_language_limit"]

        with pytest.raises(ValidationError) as excinfo:
            load_pricing_data(raw_config)

        assert excinfo.value.errors == ["'translation_limit' in free_tier must be >= 0"]

    def test_total_language_limit_is_derived_when_omitted(self, raw_config):
        """Test that total_language_limit defaults to translation_limit + 1."""
        del raw_config["payg_tiers"]["starter"]["total_language_limit"]

        config = load_pricing_data(raw_config)

        assert config.get_tier("starter").total_language_limit == 2

    def test_total_language_limit_invariant_holds_for_all_tiers(self, pricing_config):
        """Test translation_limit + 1 == total_language_limit everywhere."""
        assert (pricing_config.free_tier.translation_limit + 1
                == pricing_config.free_tier.total_language_limit)
        for tier in pricing_config.payg_tiers.values():
            assert tier.translation_limit + 1 == tier.total_language_limit

    def test_zero_daily_minutes(self, raw_config):
        """Test that the free tier must grant some minutes."""
        raw_config["free_tier"]["daily_minutes"] = 0

        with pytest.raises(ValidationError, match="'daily_minutes' in free_tier must be > 0"):
            load_pricing_data(raw_config)

    def test_boolean_is_not_an_integer(self, raw_config):
        """Test that YAML booleans are not accepted as counts."""
        raw_config["free_tier"]["daily_minutes"] = True

        with pytest.raises(ValidationError, match="must be an integer"):
            load_pricing_data(raw_config)

    def test_missing_section(self, raw_config):
        """Test that a missing section is reported."""
        del raw_config["participant_scaling"]

        with pytest.raises(ValidationError) as excinfo:
            load_pricing_data(raw_config)

        assert "Missing required 'participant_scaling' section" in excinfo.value.errors

    def test_unknown_keys_are_rejected(self, raw_config):
        """Test that unknown keys are reported at every level."""
        raw_config["bogus"] = 1
        raw_config["payg_tiers"]["starter"]["discount"] = 5

        with pytest.raises(ValidationError) as excinfo:
            load_pricing_data(raw_config)

        assert "Unknown keys in configuration: ['bogus']" in excinfo.value.errors
        assert "Unknown keys in payg_tiers.starter: ['discount']" in excinfo.value.errors

    def test_unknown_timezone(self, raw_config):
        """Test that unresolvable timezones are rejected."""
        raw_config["free_tier"]["reset_timezone"] = "Mars/Olympus_Mons"

        with pytest.raises(ValidationError, match="must be a known timezone name"):
            load_pricing_data(raw_config)

    def test_invalid_reset_schedule(self, raw_config):
        """Test that unknown reset schedules are rejected."""
        raw_config["free_tier"]["reset_schedule"] = "hourly"

        with pytest.raises(ValidationError, match="'reset_schedule' in free_tier must be one of"):
            load_pricing_data(raw_config)

    def test_max_multiplier_below_one(self, raw_config):
        """Test that a multiplier cap below 1 is rejected."""
        raw_config["participant_scaling"]["max_multiplier"] = 0.5

        with pytest.raises(ValidationError, match="'max_multiplier' in participant_scaling must be >= 1"):
            load_pricing_data(raw_config)

    def test_empty_tier_map(self, raw_config):
        """Test that at least one PAYG tier is required."""
        raw_config["payg_tiers"] = {}

        with pytest.raises(ValidationError, match="must define at least one tier"):
            load_pricing_data(raw_config)

    def test_missing_version(self, raw_config):
        """Test that configurations must be versioned."""
        del raw_config["version"]

        with pytest.raises(ValidationError, match="Missing required 'version'"):
            load_pricing_data(raw_config)


class TestConfigStore:
    """Test the versioned configuration snapshot holder."""

    def test_get_before_load_raises(self):
        """Test that reading an empty store fails loudly."""
        store = ConfigStore()

        with pytest.raises(LookupError):
            store.get()
        assert store.version is None

    def test_load_activates_new_version(self, raw_config):
        """Test that a new version replaces the previous snapshot."""
        store = ConfigStore()
        store.load(raw_config)

        raw_config["version"] = "test-2"
        raw_config["payg_tiers"]["starter"]["base_rate_per_hour"] = 50
        store.load(raw_config)

        assert store.version == "test-2"
        assert store.get().get_tier("starter").base_rate_per_hour == Decimal("50")

    def test_failed_load_keeps_previous_snapshot(self, raw_config):
        """Test that an invalid document never replaces the active config."""
        store = ConfigStore()
        first = store.load(raw_config)

        raw_config["version"] = "broken"
        raw_config["participant_scaling"]["increment_size"] = 0
        with pytest.raises(ValidationError):
            store.load(raw_config)

        assert store.get() is first

    def test_snapshot_is_immutable(self, pricing_config):
        """Test that loaded configuration cannot be mutated."""
        with pytest.raises(TypeError):
            pricing_config.payg_tiers["starter"] = None
        with pytest.raises(AttributeError):
            pricing_config.version = "changed"

    def test_listeners_notified_on_activation(self, raw_config):
        """Test that subscribers see each new version until they unsubscribe."""
        store = ConfigStore()
        seen = []
        unsubscribe = store.subscribe(lambda config: seen.append((config.version, store.version)))

        store.load(raw_config)
        raw_config["version"] = "test-2"
        store.load(raw_config)
        unsubscribe()
        raw_config["version"] = "test-3"
        store.load(raw_config)
        unsubscribe()

        assert seen == [("test-1", "test-1"), ("test-2", "test-2")]

    def test_listener_not_called_on_failed_load(self, raw_config):
        store = ConfigStore()
        seen = []
        store.subscribe(seen.append)

        raw_config["free_tier"]["daily_minutes"] = 0
        with pytest.raises(ValidationError):
            store.load(raw_config)

        assert seen == []

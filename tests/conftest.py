"""
Shared fixtures for pricing engine tests.
"""

import copy
from datetime import datetime

import pytest
from dateutil import tz

from meetingsync_pricing.config.loader import load_pricing_data

RAW_CONFIG = {
    "version": "test-1",
    "currency": "USD",
    "billing_timezone": "UTC",
    "free_tier": {
        "daily_minutes": 15,
        "translation_limit": 2,
        "total_language_limit": 3,
        "reset_schedule": "daily",
        "reset_time": "00:00",
        "reset_timezone": "UTC",
    },
    "payg_tiers": {
        "starter": {
            "name": "Starter",
            "base_rate_per_hour": 45,
            "translation_limit": 1,
            "total_language_limit": 2,
            "overage_rate_per_hour": 10,
        },
        "professional": {
            "name": "Professional",
            "base_rate_per_hour": 75,
            "translation_limit": 5,
            "total_language_limit": 6,
            "overage_rate_per_hour": 8,
            "recommended": True,
        },
        "enterprise": {
            "name": "Enterprise",
            "base_rate_per_hour": 105,
            "translation_limit": 15,
            "total_language_limit": 16,
            "overage_rate_per_hour": 6,
        },
    },
    "participant_scaling": {
        "base_threshold": 100,
        "increment_size": 100,
        "multiplier_rate": 0.25,
    },
}


@pytest.fixture
def raw_config():
    """A fresh, mutable copy of a valid raw configuration."""
    return copy.deepcopy(RAW_CONFIG)


@pytest.fixture
def pricing_config(raw_config):
    return load_pricing_data(raw_config)


@pytest.fixture
def clock_at():
    """Factory for fixed clocks returning an aware UTC datetime."""
    def _clock_at(*args):
        moment = datetime(*args, tzinfo=tz.UTC)
        return lambda: moment
    return _clock_at

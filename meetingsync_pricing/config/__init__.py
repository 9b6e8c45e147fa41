"""Pricing configuration loading and validation."""

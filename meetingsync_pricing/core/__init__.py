"""
Core modules for the MeetingSync pricing engine.

This package contains tier resolution, quota enforcement, cost calculation,
tier lock-in and invoice aggregation.
"""

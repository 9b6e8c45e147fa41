"""
MeetingSync pricing engine.

Tier resolution, quota enforcement, session costing, tier lock-in and
invoice aggregation over a versioned pricing configuration.
"""

__version__ = "0.1.0"

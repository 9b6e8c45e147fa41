"""
Database connection management.

Provides SQLite connections for the billing state the engine reads and writes.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "meetingsync_pricing.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    # Concurrent writers wait for BEGIN IMMEDIATE locks instead of failing fast
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

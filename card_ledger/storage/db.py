"""
Database connection management.

Provides SQLite connections for data persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "card_ledger.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    The connection runs in autocommit mode: callers open write
    transactions explicitly with BEGIN IMMEDIATE so that the
    read-check-write of a balance happens under the database write lock.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def is_lock_error(error: sqlite3.OperationalError) -> bool:
    """True if the error means another connection holds the write lock."""
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message

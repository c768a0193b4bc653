"""
Database connection management.

Provides SQLite connections and timestamp helpers for data persistence.
"""

import sqlite3
from datetime import datetime
from pathlib import Path

DEFAULT_DB_PATH = "usage_meter.db"

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Rows are returned as ``sqlite3.Row`` so columns can be read by name.
    Concurrent writers wait up to ``BUSY_TIMEOUT_SECONDS`` for the write lock.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime so stored timestamps sort lexicographically.

    Only naive datetimes are accepted: a UTC offset in the string would
    break the text ordering that window queries rely on.

    Raises:
        ValueError: If ``value`` is timezone-aware
    """
    if value.tzinfo is not None:
        raise ValueError("timestamps must be naive datetimes")
    return value.isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)

"""
SQLite connection handling for the profile store.

Connections are short-lived: one per repository call, opened in the
worker thread that uses it.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "quota_guard.db"

# Seconds to wait on a locked database before a write fails
BUSY_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create a SQLite connection whose rows can be read by column name.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection using sqlite3.Row rows
    """
    conn = sqlite3.connect(str(Path(db_path)), timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Open a connection, commit on success, roll back on error, always close."""
    conn = get_connection(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()

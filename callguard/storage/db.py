"""
SQLite connection handling for the call processing store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "callguard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Rows are returned as ``sqlite3.Row`` so columns can be read by name.
    A busy timeout lets several worker processes share one database file.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

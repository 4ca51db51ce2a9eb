"""
Database connection management.

Provides SQLite connections for job and quota persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "songjobs.db"

# Seconds a writer waits on a locked database before giving up.
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Statements outside an explicit ``BEGIN`` commit immediately, so a
    single conditional ``UPDATE`` is atomic on its own. Multi-statement
    work opens ``BEGIN IMMEDIATE`` to take the write lock up front.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled and rows
        addressable by column name
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

"""
Database connection management.

Provides SQLite connections for data persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "ai_spend_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; multi-statement writes go
    through ``transaction`` so they are serialized at the database.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer's lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE``.

    The write lock is taken up front, so a read-modify-write inside the
    block cannot interleave with another writer.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except Exception:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")

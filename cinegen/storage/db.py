"""
Database connection management.

Provides SQLite connection for the account store.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def get_connection(db_path: str = "cinegen.db") -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(db_path: str = "cinegen.db") -> Iterator[sqlite3.Connection]:
    """Open a connection holding the database write lock until commit.

    ``BEGIN IMMEDIATE`` serializes writers, so a read followed by a write
    inside the block cannot interleave with another writer.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

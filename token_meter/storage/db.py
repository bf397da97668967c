"""
Database connection management.

Provides the SQLite connection behind the file-backed key-value store.
"""

import sqlite3
from pathlib import Path


DEFAULT_DB_PATH = "token_meter.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    return sqlite3.connect(str(path))


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_record table if it doesn't exist.

    Each row is one independently keyed record. No multi-row transaction
    is ever issued against this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_record (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
        """)
        conn.commit()
    finally:
        conn.close()

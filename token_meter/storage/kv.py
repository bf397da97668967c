"""
Key-value store adapters.

The metering core only ever calls ``get`` and ``put``. Neither adapter offers
increment-and-fetch or compare-and-swap to the core, and callers must not
assume read-after-write consistency across replicas.
"""

import logging
import sqlite3
import time
from typing import Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

from .db import DEFAULT_DB_PATH, get_connection

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Transient read/write failure in the backing store."""


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal store capability used by the metering core."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent or expired."""
        ...

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Write a value, optionally expiring after ``ttl`` seconds."""
        ...


class InMemoryKeyValueStore:
    """Process-local store with TTL support.

    Useful for tests and single-process deployments. The clock is injectable
    so window expiry can be driven deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: Dict[str, Tuple[str, Optional[float]]] = {}

    def get(self, key: str) -> Optional[str]:
        record = self._records.get(key)
        if record is None:
            return None
        value, expires_at = record
        if expires_at is not None and expires_at <= self._clock():
            del self._records[key]
            return None
        return value

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._records[key] = (value, expires_at)

    def __len__(self) -> int:
        return len(self._records)


class SqliteKeyValueStore:
    """File-backed store over a single SQLite table.

    Each call opens its own connection, mirroring a remote store where every
    operation is an independent round trip. Expired rows are hidden on read
    and overwritten on the next put; they are never swept.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], float] = time.time
    ):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file (schema must already exist)
            clock: Time source for TTL expiry
        """
        self.db_path = db_path
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    "SELECT value, expires_at FROM kv_record WHERE key = ?",
                    (key,)
                )
                row = cursor.fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"read failed for {key}: {e}") from e

        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and expires_at <= self._clock():
            return None
        return value

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO kv_record (key, value, expires_at) "
                    "VALUES (?, ?, ?)",
                    (key, value, expires_at)
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"write failed for {key}: {e}") from e
        logger.debug(f"Wrote {key} (ttl={ttl})")

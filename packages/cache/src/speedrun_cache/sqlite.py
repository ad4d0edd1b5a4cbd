"""SQLiteCache: the persistent cache behind every networked read.

Why SQLite:
- Batteries included: ships with Python, no extra dependencies.
- One file at a configured path. Deleting it is always safe and equivalent
  to a cold start.
- Indexed expiry makes cleanup a single DELETE.

Schema:
  cache_entries: one row per key; ``data`` is the JSON-encoded value,
                  ``created_at``/``expires_at`` are Unix timestamps.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable

from speedrun_cache.base import BaseCache
from speedrun_cache.models import CacheStats

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 7 * 24 * 60 * 60

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key         TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    created_at  REAL NOT NULL,
    expires_at  REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_expires_at ON cache_entries (expires_at);
"""


class SQLiteCache(BaseCache):
    """Stores cache entries in a local SQLite database file.

    A single connection is shared by all threads and guarded by a lock, so
    concurrent get/set/delete calls from the enrichment workers are
    serialized rather than racing on the connection.
    """

    def __init__(
        self,
        db_path: str,
        max_age: float = DEFAULT_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("Opening cache at %s (max_age=%ss)", path, max_age)

        self._db_path = str(path)
        self._max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    @property
    def db_path(self) -> str:
        return self._db_path

    def get(self, key: str) -> Any | None:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT data, expires_at FROM cache_entries WHERE key=?",
                    (key,),
                ).fetchone()
            except sqlite3.Error as e:
                logger.warning("Cache get failed for %s: %s", key, e)
                return None

            if row is None:
                logger.debug("Cache miss: %s", key)
                return None

            data, expires_at = row
            if expires_at <= self._clock():
                logger.debug("Cache entry expired: %s", key)
                self._delete_locked(key)
                return None

            try:
                value = json.loads(data)
            except (json.JSONDecodeError, TypeError) as e:
                logger.debug("Deleting undecodable cache entry %s: %s", key, e)
                self._delete_locked(key)
                return None

        logger.debug("Cache hit: %s (%d bytes)", key, len(data))
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if value is None:
            logger.debug("Refusing to cache None for %s", key)
            return
        ttl = self._max_age if ttl is None else ttl
        if ttl <= 0:
            return

        try:
            data = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("Cache set skipped for %s: value is not JSON-serializable: %s", key, e)
            return
        now = self._clock()
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO cache_entries (key, data, created_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (key, data, now, now + ttl),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                # A failed write only costs a future cache miss.
                logger.warning("Cache set failed for %s: %s", key, e)
                return
        logger.debug("Cache set: %s (%d bytes)", key, len(data))

    def delete(self, key: str) -> None:
        with self._lock:
            self._delete_locked(key)

    def cleanup(self) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?",
                (self._clock(),),
            )
            removed = cursor.rowcount
            self._conn.commit()
            if removed > 0:
                try:
                    self._conn.execute("VACUUM")
                except sqlite3.Error as e:
                    logger.warning("Failed to vacuum cache database: %s", e)
        logger.debug("Cache cleanup removed %d entries", removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM cache_entries")
            self._conn.commit()

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]
            expired = self._conn.execute(
                "SELECT COUNT(*) FROM cache_entries WHERE expires_at <= ?",
                (self._clock(),),
            ).fetchone()[0]
        return CacheStats(total_entries=total, expired_entries=expired, database_path=self._db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _delete_locked(self, key: str) -> None:
        try:
            self._conn.execute("DELETE FROM cache_entries WHERE key=?", (key,))
            self._conn.commit()
        except sqlite3.Error as e:
            logger.warning("Cache delete failed for %s: %s", key, e)

# stream_sync_API/app/core/Sync/local_cache.py
# Description: Device-side key/value storage used by the sync client.
#
# Imports
import sqlite3
import threading
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union
#
# Local Imports
from .exceptions import CacheError
#
#######################################################################################################################

logger = logging.getLogger(__name__)

CACHE_BACKENDS = ("sqlite", "memory")


class LocalCache(ABC):
    """
    Minimal key/value interface over the device's persistent storage.

    The merge engine and scheduler only ever talk to this interface; exactly one
    concrete backend is built at startup (see `create_local_cache`).
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    def close(self) -> None:
        """Releases backend resources. No-op by default."""


class InMemoryLocalCache(LocalCache):
    """Process-lifetime cache, for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise CacheError(f"Cache values must be strings, got {type(value).__name__} for '{key}'")
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class SQLiteLocalCache(LocalCache):
    """Durable local-only cache backed by a single-table SQLite file in WAL mode."""

    _SCHEMA_SQL = """
        CREATE TABLE IF NOT EXISTS local_cache(
          cache_key TEXT PRIMARY KEY NOT NULL,
          value     TEXT NOT NULL
        );
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path_str = str(db_path) if str(db_path) == ":memory:" else str(Path(db_path).expanduser().resolve())
        self._lock = threading.RLock()
        try:
            if self.db_path_str != ":memory:":
                Path(self.db_path_str).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15)
            if self.db_path_str != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.executescript(self._SCHEMA_SQL)
            self._conn.commit()
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to open local cache at {self.db_path_str}: {e}", exc_info=True)
            raise CacheError(f"Failed to open local cache '{self.db_path_str}': {e}") from e
        logger.info(f"SQLite local cache ready at {self.db_path_str}")

    def get(self, key: str) -> Optional[str]:
        try:
            with self._lock:
                row = self._conn.execute("SELECT value FROM local_cache WHERE cache_key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise CacheError(f"Failed to read '{key}' from local cache: {e}") from e
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise CacheError(f"Cache values must be strings, got {type(value).__name__} for '{key}'")
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO local_cache(cache_key, value) VALUES (?, ?) "
                    "ON CONFLICT(cache_key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )
        except sqlite3.Error as e:
            raise CacheError(f"Failed to write '{key}' to local cache: {e}") from e

    def remove(self, key: str) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute("DELETE FROM local_cache WHERE cache_key = ?", (key,))
        except sqlite3.Error as e:
            raise CacheError(f"Failed to remove '{key}' from local cache: {e}") from e

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing local cache {self.db_path_str}: {e}")


def create_local_cache(backend: str = "sqlite", path: Optional[Union[str, Path]] = None) -> LocalCache:
    """Builds the one cache backend used for this session."""
    backend = (backend or "sqlite").lower()
    if backend == "memory":
        return InMemoryLocalCache()
    if backend == "sqlite":
        if not path:
            raise CacheError("The sqlite cache backend needs a path.")
        return SQLiteLocalCache(path)
    raise CacheError(f"Unknown cache backend '{backend}'. Expected one of {', '.join(CACHE_BACKENDS)}.")

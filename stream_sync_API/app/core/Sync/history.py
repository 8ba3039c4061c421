# stream_sync_API/app/core/Sync/history.py
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import CacheError
from .local_cache import LocalCache
from .models import now_ms
from .state import SYNC_HISTORY_KEY

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 15
BACKUP_SUFFIX = "_backup"


class SnapshotHistory:
    """
    Bounded, newest-first ring buffer of recent values for selected keys,
    shared by all those keys and stored in the local cache.

    Each recorded value is also mirrored into `<key>_backup`. Recording is
    best-effort: cache failures are logged and never block the write that
    triggered them.
    """

    def __init__(self, cache: LocalCache, keys: Iterable[str], limit: int = DEFAULT_HISTORY_LIMIT):
        if limit < 1:
            raise ValueError(f"History limit must be positive, got {limit}")
        self.cache = cache
        self.keys = frozenset(keys)
        self.limit = limit

    def supports(self, key: str) -> bool:
        return key in self.keys

    def _load(self) -> List[Dict[str, Any]]:
        try:
            raw = self.cache.get(SYNC_HISTORY_KEY)
        except CacheError as e:
            logger.warning(f"Could not read snapshot history: {e}")
            return []
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Snapshot history is unreadable; starting a new one.")
            return []
        return [entry for entry in parsed if isinstance(entry, dict)] if isinstance(parsed, list) else []

    def record(self, key: str, value: Optional[str]) -> bool:
        """Records `value` (None for a removal) as the newest snapshot of `key`."""
        if not self.supports(key):
            return False

        backup_key = f"{key}{BACKUP_SUFFIX}"
        try:
            if value is None:
                self.cache.remove(backup_key)
            else:
                self.cache.set(backup_key, value)
        except CacheError as e:
            logger.warning(f"Could not update backup copy '{backup_key}': {e}")

        entries = self._load()
        entries.insert(0, {"key": key, "value": value, "timestamp": now_ms()})
        del entries[self.limit:]
        try:
            self.cache.set(SYNC_HISTORY_KEY, json.dumps(entries, separators=(",", ":")))
        except CacheError as e:
            logger.warning(f"Could not save snapshot history: {e}")
            return False
        return True

    def entries(self, key: Optional[str] = None) -> List[Dict[str, Any]]:
        """All snapshots, newest first, optionally only those of `key`."""
        entries = self._load()
        if not key:
            return entries
        return [entry for entry in entries if entry.get("key") == key]

    def find(self, key: str, timestamp: int) -> Optional[Dict[str, Any]]:
        if not self.supports(key):
            raise ValueError(f"Cannot restore snapshot for unsupported key: {key}")
        for entry in self._load():
            if entry.get("key") == key and entry.get("timestamp") == timestamp:
                return entry
        return None

# stream_sync_API/app/core/Sync/state.py
import json
import uuid
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from .exceptions import StateError, CacheError
from .local_cache import LocalCache
from .models import now_ms

logger = logging.getLogger(__name__)

# Reserved cache keys; applications must not use these as document keys.
SYNC_META_KEY = "stream-sync-meta"
SYNC_KEY_KEY = "stream-sync-key"
SYNC_PENDING_KEY = "stream-sync-pending"
SYNC_HISTORY_KEY = "stream-sync-history"
RESERVED_KEYS = frozenset({SYNC_META_KEY, SYNC_KEY_KEY, SYNC_PENDING_KEY, SYNC_HISTORY_KEY})


@dataclass(frozen=True)
class PendingMark:
    """A key changed locally and not yet confirmed by a push."""
    rev: int
    marked_at: int
    deleted: bool = False


class SyncMetadataTracker:
    """
    Persists the per-device sync metadata inside the local cache:
    the watermark (`lastSyncedAt`), the sync key, and the set of dirty keys.

    The watermark belongs to one sync key; reading it under a different key yields 0.
    """

    def __init__(self, cache: LocalCache):
        self.cache = cache
        self._lock = threading.RLock()

    # --- Raw persistence ---
    def _load_json(self, cache_key: str) -> Optional[dict]:
        try:
            raw = self.cache.get(cache_key)
        except CacheError as e:
            raise StateError(f"Failed to read sync state '{cache_key}': {e}") from e
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable sync state under '{cache_key}'.")
            return None
        return parsed if isinstance(parsed, dict) else None

    def _save_json(self, cache_key: str, data: dict):
        try:
            self.cache.set(cache_key, json.dumps(data, separators=(",", ":")))
        except CacheError as e:
            logger.error(f"Error saving sync state '{cache_key}': {e}", exc_info=True)
            raise StateError(f"Failed to save sync state: {e}") from e

    # --- Sync key ---
    @property
    def sync_key(self) -> str:
        try:
            return (self.cache.get(SYNC_KEY_KEY) or "").strip()
        except CacheError as e:
            raise StateError(f"Failed to read sync key: {e}") from e

    def ensure_sync_key(self, user_id: Optional[str] = None) -> str:
        """
        Returns the owner identifier to sync under.

        An authenticated user id always wins; switching to a different id resets the
        watermark. Without one, the stored device key is reused or a random one is created.
        """
        with self._lock:
            current = self.sync_key
            if user_id:
                if current and current != user_id:
                    logger.info("Sync key changed to a different user; resetting watermark.")
                    self._remove(SYNC_META_KEY)
                if current != user_id:
                    self._set_sync_key(user_id)
                return user_id
            if current:
                return current
            new_key = str(uuid.uuid4())
            self._set_sync_key(new_key)
            logger.info("Generated a new device sync key.")
            return new_key

    def _set_sync_key(self, value: str):
        try:
            self.cache.set(SYNC_KEY_KEY, value)
        except CacheError as e:
            raise StateError(f"Failed to save sync key: {e}") from e

    # --- Watermark ---
    @property
    def last_synced_at(self) -> int:
        meta = self._load_json(SYNC_META_KEY)
        if not meta or meta.get("key") != self.sync_key:
            return 0
        try:
            return max(int(meta.get("lastSyncedAt") or 0), 0)
        except (TypeError, ValueError):
            return 0

    def advance(self, timestamp: int) -> int:
        """Moves the watermark forward to `timestamp`. Never moves it backwards."""
        if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp < 0:
            raise ValueError(f"Invalid watermark timestamp: {timestamp!r}")
        with self._lock:
            current = self.last_synced_at
            if timestamp <= current:
                logger.debug(f"Watermark {current} already at or past {timestamp}; not moving it.")
                return current
            self._save_json(SYNC_META_KEY, {"key": self.sync_key, "lastSyncedAt": timestamp})
            logger.info(f"Advanced lastSyncedAt from {current} to {timestamp}.")
            return timestamp

    # --- Dirty keys ---
    def get_pending(self) -> Dict[str, PendingMark]:
        data = self._load_json(SYNC_PENDING_KEY) or {}
        pending = {}
        for key, mark in data.items():
            if not isinstance(mark, dict):
                continue
            pending[key] = PendingMark(
                rev=int(mark.get("rev", 0)),
                marked_at=int(mark.get("markedAt", 0)),
                deleted=bool(mark.get("deleted", False)),
            )
        return pending

    def _save_pending(self, pending: Dict[str, PendingMark]):
        self._save_json(SYNC_PENDING_KEY, {
            key: {"rev": mark.rev, "markedAt": mark.marked_at, "deleted": mark.deleted}
            for key, mark in pending.items()
        })

    def mark_dirty(self, key: str, deleted: bool = False, marked_at: Optional[int] = None) -> PendingMark:
        with self._lock:
            pending = self.get_pending()
            previous = pending.get(key)
            mark = PendingMark(
                rev=(previous.rev + 1) if previous else 1,
                marked_at=marked_at if marked_at is not None else now_ms(),
                deleted=deleted,
            )
            pending[key] = mark
            self._save_pending(pending)
            return mark

    def discard_pending(self, key: str):
        with self._lock:
            pending = self.get_pending()
            if pending.pop(key, None) is not None:
                self._save_pending(pending)

    def clear_pending(self, pushed: Dict[str, PendingMark]) -> None:
        """Drops marks that were pushed, unless the key was marked again since."""
        with self._lock:
            pending = self.get_pending()
            changed = False
            for key, pushed_mark in pushed.items():
                current = pending.get(key)
                if current is not None and current.rev == pushed_mark.rev:
                    del pending[key]
                    changed = True
            if changed:
                self._save_pending(pending)

    # --- Reset ---
    def _remove(self, cache_key: str):
        try:
            self.cache.remove(cache_key)
        except CacheError as e:
            raise StateError(f"Failed to remove sync state '{cache_key}': {e}") from e

    def reset(self):
        """Forgets the watermark, dirty marks and sync key (local reset / sign-out)."""
        with self._lock:
            for cache_key in (SYNC_META_KEY, SYNC_PENDING_KEY, SYNC_KEY_KEY):
                self._remove(cache_key)
        logger.info("Sync metadata reset.")

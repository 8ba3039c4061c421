# stream_sync_API/app/core/Sync/scheduler.py
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import get_cache_path, get_key_list, get_setting
from .events import SyncEventBus
from .exceptions import SyncError
from .history import SnapshotHistory, DEFAULT_HISTORY_LIMIT
from .local_cache import LocalCache, create_local_cache
from .merge import merge_collection_value
from .models import SyncDocument, SyncEvent, SyncStatus, CycleResult, now_ms
from .state import SyncMetadataTracker, PendingMark, RESERVED_KEYS
from .transport import SyncTransport, HttpApiTransport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60


class SyncScheduler:
    """Drives pull -> merge -> push cycles for a set of tracked keys."""

    def __init__(self,
                 cache: LocalCache,
                 transport: Optional[SyncTransport],
                 tracked_keys: Iterable[str],
                 collection_keys: Iterable[str] = (),
                 user_id: Optional[str] = None,
                 interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
                 enabled: bool = True,
                 event_bus: Optional[SyncEventBus] = None,
                 history: Optional[SnapshotHistory] = None):
        """
        Initializes the SyncScheduler.

        Args:
            cache: The device's local cache backend.
            transport: Remote endpoint; None means sync is not configured.
            tracked_keys: Logical keys that are synchronized.
            collection_keys: Tracked keys whose values are JSON arrays of records with `id`/`createdAt`.
            user_id: Authenticated user id, if any. Otherwise a device key is generated.
            interval_seconds: Period of the background timer.
            enabled: Master switch for syncing.
            event_bus: Channel for status and cycle notifications.
            history: Snapshot ring buffer for selected keys.
        """
        if not isinstance(cache, LocalCache): raise TypeError("cache must be a LocalCache object")
        if transport is not None and not isinstance(transport, SyncTransport):
            raise TypeError("transport must be a SyncTransport object")
        if interval_seconds <= 0: raise ValueError("interval_seconds must be positive")

        self.cache = cache
        self.transport = transport
        self.tracked_keys: Set[str] = set(tracked_keys)
        self.collection_keys: Set[str] = set(collection_keys)
        reserved = (self.tracked_keys | self.collection_keys) & RESERVED_KEYS
        if reserved:
            raise ValueError(f"Reserved keys cannot be tracked: {sorted(reserved)}")
        unknown = self.collection_keys - self.tracked_keys
        if unknown:
            raise ValueError(f"Collection keys must also be tracked: {sorted(unknown)}")

        self.user_id = user_id
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.events = event_bus or SyncEventBus()
        self.history = history
        self.metadata = SyncMetadataTracker(cache)

        self._status = SyncStatus.IDLE if self.is_sync_enabled() else SyncStatus.LOCAL
        self._last_error: Optional[str] = None
        self._cycle_lock = threading.Lock()  # single flight
        self._key_locks: Dict[str, threading.RLock] = {}
        self._key_locks_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._cycle_thread: Optional[int] = None
        self._reset_requested = False

        logger.info(f"SyncScheduler initialized: tracked={sorted(self.tracked_keys)} status={self._status.value}")

    # --- Observers ---
    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_synced_at(self) -> int:
        return self.metadata.last_synced_at

    def is_sync_enabled(self) -> bool:
        return bool(self.enabled and self.transport is not None)

    def _set_status(self, status: SyncStatus, error: Optional[str] = None):
        self._status = status
        self._last_error = error
        self.events.publish(SyncEvent(kind="status", status=status, error=error))

    # --- Identity ---
    def set_user(self, user_id: Optional[str]) -> str:
        """Switches the owner identity. A different user starts from an empty watermark."""
        self.user_id = user_id
        return self.metadata.ensure_sync_key(user_id)

    def reset(self):
        """
        Local reset / sign-out: forgets the watermark, dirty marks and sync key.

        Called from an event listener during a cycle, the reset runs once that cycle ends.
        """
        if self._cycle_thread == threading.get_ident():
            logger.info("Reset requested during a sync cycle; applying it when the cycle ends.")
            self._reset_requested = True
            return
        with self._cycle_lock:
            self.metadata.reset()
            self.user_id = None
        self._set_status(SyncStatus.IDLE if self.is_sync_enabled() else SyncStatus.LOCAL)

    # --- Per-key serialization ---
    @contextmanager
    def key_lock(self, key: str):
        with self._key_locks_guard:
            lock = self._key_locks.setdefault(key, threading.RLock())
        with lock:
            yield

    # --- Application-facing storage ---
    def _check_key(self, key: str):
        if not isinstance(key, str) or not key:
            raise ValueError("key must be a non-empty string")
        if key in RESERVED_KEYS:
            raise ValueError(f"'{key}' is reserved for sync metadata")

    def get_item(self, key: str) -> Optional[str]:
        self._check_key(key)
        with self.key_lock(key):
            return self.cache.get(key)

    def set_item(self, key: str, value: str):
        """Writes a value locally and queues it for the next push if the key is tracked."""
        self._check_key(key)
        if not isinstance(value, str):
            raise TypeError(f"value for '{key}' must be a string")
        with self.key_lock(key):
            self.cache.set(key, value)
            if key in self.tracked_keys:
                self.metadata.mark_dirty(key)
            if self.history:
                self.history.record(key, value)

    def remove_item(self, key: str):
        """Removes a value locally; tracked keys are pushed as tombstones."""
        self._check_key(key)
        with self.key_lock(key):
            self.cache.remove(key)
            if key in self.tracked_keys:
                self.metadata.mark_dirty(key, deleted=True)
            if self.history:
                self.history.record(key, None)

    # --- Snapshot history ---
    def get_history(self, key: Optional[str] = None) -> List[Dict[str, Any]]:
        if not self.history:
            return []
        return self.history.entries(key)

    def create_snapshot(self, key: str) -> bool:
        if not self.history or not self.history.supports(key):
            return False
        with self.key_lock(key):
            return self.history.record(key, self.cache.get(key))

    def restore_snapshot(self, key: str, timestamp: int) -> bool:
        """
        Restores `key` to the snapshot taken at `timestamp`. The restore is a normal
        write, so it is synced like any other edit.

        Raises:
            ValueError: if snapshots are not kept for `key`.
        """
        if not self.history:
            raise ValueError(f"Cannot restore snapshot for unsupported key: {key}")
        entry = self.history.find(key, timestamp)
        if entry is None:
            logger.warning(f"No snapshot of '{key}' at {timestamp}")
            return False
        value = entry.get("value")
        if value is None:
            self.remove_item(key)
        else:
            self.set_item(key, value)
        logger.info(f"Restored '{key}' from snapshot {timestamp}")
        return True

    # --- Cycle ---
    def _queue_initial_upload(self):
        pending = self.metadata.get_pending()
        queued = 0
        for key in sorted(self.tracked_keys):
            with self.key_lock(key):
                if key not in pending and self.cache.get(key) is not None:
                    # Oldest possible mark: a remote copy of a plain key wins over it.
                    self.metadata.mark_dirty(key, marked_at=0)
                    queued += 1
        if queued:
            logger.info(f"No previous sync for this key; queued {queued} local keys for upload.")

    def _record_history(self, key: str, value: Optional[str]):
        if self.history:
            self.history.record(key, value)

    def _apply_remote(self, doc: SyncDocument, last_synced_at: int) -> Tuple[bool, bool]:
        """Applies one pulled document under its key lock. Returns (local_changed, should_push)."""
        key = doc.key
        with self.key_lock(key):
            mark = self.metadata.get_pending().get(key)

            if doc.is_tombstone:
                if mark is not None and mark.marked_at > doc.deleted_at:
                    logger.debug(f"Local change to '{key}' is newer than its remote deletion; keeping it.")
                    return False, True
                changed = False
                if self.cache.get(key) is not None:
                    self.cache.remove(key)
                    self._record_history(key, None)
                    changed = True
                if mark is not None:
                    self.metadata.discard_pending(key)
                return changed, False

            if doc.value is None:
                logger.warning(f"Pulled document for '{key}' has no value and no deletedAt; ignoring it.")
                return False, False

            if key in self.collection_keys:
                try:
                    result = merge_collection_value(self.cache, key, doc.value, last_synced_at)
                except ValueError as e:
                    logger.warning(f"{e}; applying it as a plain value.")
                else:
                    if result.local_changed:
                        self._record_history(key, result.merged_value)
                    return result.local_changed, result.should_push

            if mark is not None and mark.marked_at > doc.updated_at:
                logger.debug(f"Local change to '{key}' is newer than the remote copy; keeping it.")
                return False, True
            changed = False
            if self.cache.get(key) != doc.value:
                self.cache.set(key, doc.value)
                self._record_history(key, doc.value)
                changed = True
            if mark is not None:
                self.metadata.discard_pending(key)
            return changed, False

    def _collect_outgoing(self, keys: Iterable[str]) -> Tuple[List[SyncDocument], Dict[str, PendingMark]]:
        stamp = now_ms()
        documents: List[SyncDocument] = []
        marks: Dict[str, PendingMark] = {}
        for key in sorted(keys):
            with self.key_lock(key):
                mark = self.metadata.get_pending().get(key)
                value = self.cache.get(key)
                if value is None:
                    documents.append(SyncDocument(key=key, value=None, updated_at=stamp, deleted_at=stamp))
                else:
                    documents.append(SyncDocument(key=key, value=value, updated_at=stamp))
                if mark is not None:
                    marks[key] = mark
        return documents, marks

    def _run_cycle(self) -> CycleResult:
        self._set_status(SyncStatus.SYNCING)
        try:
            owner = self.metadata.ensure_sync_key(self.user_id)
            since = self.metadata.last_synced_at
            logger.info(f"Starting sync cycle since {since}")
            if since == 0:
                self._queue_initial_upload()

            pulled = self.transport.pull(owner, since)
            updated_keys: List[str] = []
            push_keys: Set[str] = set()
            for doc in pulled.documents:
                if doc.key not in self.tracked_keys:
                    logger.debug(f"Ignoring pulled document for untracked key '{doc.key}'")
                    continue
                changed, should_push = self._apply_remote(doc, since)
                if changed:
                    updated_keys.append(doc.key)
                if should_push:
                    push_keys.add(doc.key)

            push_keys.update(k for k in self.metadata.get_pending() if k in self.tracked_keys)
            pushed_keys: List[str] = []
            if push_keys:
                documents, marks = self._collect_outgoing(push_keys)
                self.transport.push(owner, documents)
                self.metadata.clear_pending(marks)
                pushed_keys = [doc.key for doc in documents]

            # Only after the push is confirmed.
            self.metadata.advance(pulled.server_time)
            logger.info(
                f"Sync cycle complete: pulled={len(pulled.documents)} updated={len(updated_keys)} "
                f"pushed={len(pushed_keys)}"
            )
            self._set_status(SyncStatus.SYNCED)
            self.events.publish(SyncEvent(kind="cycle_complete", status=SyncStatus.SYNCED, keys=tuple(updated_keys)))
            return CycleResult(status=SyncStatus.SYNCED, updated_keys=updated_keys, pushed_keys=pushed_keys)

        except SyncError as e:
            logger.error(f"Sync cycle failed: {type(e).__name__} - {e}")
            message = str(e)
        except Exception as e:
            logger.critical(f"Unexpected error during sync cycle: {e}", exc_info=True)
            message = f"Unexpected sync failure: {e}"
        self._set_status(SyncStatus.ERROR, error=message)
        return CycleResult(status=SyncStatus.ERROR, error=message)

    def sync_now(self) -> Optional[CycleResult]:
        """
        Runs one cycle in the calling thread.

        Returns None when sync is not enabled or a cycle is already running.
        Never raises on sync failure; see `status` and `last_error`.
        """
        if not self.is_sync_enabled():
            logger.debug("Sync not enabled; skipping cycle.")
            return None
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Sync cycle already in progress. Skipping this run.")
            return None
        self._cycle_thread = threading.get_ident()
        try:
            return self._run_cycle()
        finally:
            self._cycle_thread = None
            self._cycle_lock.release()
            if self._reset_requested:
                self._reset_requested = False
                self.reset()

    def trigger(self) -> bool:
        """Starts a cycle on a worker thread. Returns False if none was started."""
        if not self.is_sync_enabled() or self._cycle_lock.locked():
            return False
        threading.Thread(target=self.sync_now, name="stream-sync-trigger", daemon=True).start()
        return True

    # --- Timer ---
    def _timer_loop(self):
        self.sync_now()
        while not self._stop_event.wait(self.interval_seconds):
            self.sync_now()

    def start(self) -> bool:
        """Runs a cycle now and then every `interval_seconds` until `stop()`."""
        if not self.is_sync_enabled():
            logger.info("Sync not enabled; timer not started.")
            return False
        if self._timer_thread and self._timer_thread.is_alive():
            return True
        self._stop_event.clear()
        self._timer_thread = threading.Thread(target=self._timer_loop, name="stream-sync-timer", daemon=True)
        self._timer_thread.start()
        logger.info(f"Sync timer started (every {self.interval_seconds}s)")
        return True

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        thread, self._timer_thread = self._timer_thread, None
        if thread and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Sync timer stopped")


def create_scheduler(config: Dict[str, Any], user_id: Optional[str] = None,
                     cache: Optional[LocalCache] = None,
                     transport: Optional[SyncTransport] = None) -> SyncScheduler:
    """Builds a scheduler, its cache backend and its transport from a loaded client config."""
    if cache is None:
        backend = get_setting(config, "cache", "backend", "sqlite")
        cache = create_local_cache(backend, get_cache_path(config) if backend == "sqlite" else None)

    enabled = bool(get_setting(config, "sync", "enabled", False))
    endpoint = get_setting(config, "sync", "endpoint")
    if transport is None and enabled and endpoint:
        transport = HttpApiTransport(endpoint, timeout=get_setting(config, "sync", "timeout_seconds", 15))

    history_keys = get_key_list(config, "history", "keys")
    history = SnapshotHistory(
        cache, history_keys, limit=get_setting(config, "history", "limit", DEFAULT_HISTORY_LIMIT)
    ) if history_keys else None

    return SyncScheduler(
        cache=cache,
        transport=transport,
        tracked_keys=get_key_list(config, "sync", "tracked_keys"),
        collection_keys=get_key_list(config, "sync", "collection_keys"),
        user_id=user_id,
        interval_seconds=get_setting(config, "sync", "interval_seconds", DEFAULT_INTERVAL_SECONDS),
        enabled=enabled,
        history=history,
    )

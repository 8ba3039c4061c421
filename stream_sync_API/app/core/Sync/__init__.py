# stream_sync_API/app/core/Sync/__init__.py
from .scheduler import SyncScheduler, create_scheduler
from .models import SyncDocument, SyncEvent, SyncStatus, PullResult, MergeResult, CycleResult
from .exceptions import SyncError, TransportError, StateError, CacheError
from .transport import SyncTransport, HttpApiTransport
from .merge import merge_collection_value
from .local_cache import LocalCache, InMemoryLocalCache, SQLiteLocalCache, create_local_cache
from .state import SyncMetadataTracker
from .events import SyncEventBus, Subscription
from .history import SnapshotHistory
from .config import load_client_config

__all__ = [
    "SyncScheduler",
    "create_scheduler",
    "SyncDocument",
    "SyncEvent",
    "SyncStatus",
    "PullResult",
    "MergeResult",
    "CycleResult",
    "SyncError",
    "TransportError",
    "StateError",
    "CacheError",
    "SyncTransport",
    "HttpApiTransport",
    "merge_collection_value",
    "LocalCache",
    "InMemoryLocalCache",
    "SQLiteLocalCache",
    "create_local_cache",
    "SyncMetadataTracker",
    "SyncEventBus",
    "Subscription",
    "SnapshotHistory",
    "load_client_config",
]

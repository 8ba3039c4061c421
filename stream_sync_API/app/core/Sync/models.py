# stream_sync_API/app/core/Sync/models.py
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


class SyncStatus(str, Enum):
    LOCAL = "local"      # sync not configured
    IDLE = "idle"        # configured, no cycle run yet
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class SyncDocument:
    key: str
    value: Optional[str]
    updated_at: int
    deleted_at: Optional[int] = None

    @property
    def is_tombstone(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serializes the document with the wire field names."""
        data = {"key": self.key, "value": self.value, "updatedAt": self.updated_at}
        if self.deleted_at is not None:
            data["deletedAt"] = self.deleted_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncDocument":
        """Creates a document from a wire dict. Raises ValueError on malformed input."""
        key = data.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError(f"Document without a valid key: {data!r}")
        updated_at = data.get("updatedAt")
        if isinstance(updated_at, bool) or not isinstance(updated_at, int):
            raise ValueError(f"Document '{key}' has a non-integer updatedAt: {updated_at!r}")
        deleted_at = data.get("deletedAt")
        if deleted_at is not None and (isinstance(deleted_at, bool) or not isinstance(deleted_at, int)):
            raise ValueError(f"Document '{key}' has a non-integer deletedAt: {deleted_at!r}")
        value = data.get("value")
        if value is not None and not isinstance(value, str):
            raise ValueError(f"Document '{key}' has a non-string value")
        return cls(key=key, value=value, updated_at=updated_at, deleted_at=deleted_at)


@dataclass
class PullResult:
    documents: List[SyncDocument]
    server_time: int


@dataclass
class MergeResult:
    merged_value: str
    local_changed: bool
    should_push: bool


@dataclass
class SyncEvent:
    """Published on the event bus. `kind` is 'status' or 'cycle_complete'."""
    kind: str
    status: SyncStatus
    keys: Tuple[str, ...] = ()
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)


@dataclass
class CycleResult:
    status: SyncStatus
    updated_keys: List[str] = field(default_factory=list)
    pushed_keys: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SYNCED

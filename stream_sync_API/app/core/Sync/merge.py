# stream_sync_API/app/core/Sync/merge.py
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .local_cache import LocalCache
from .models import MergeResult

logger = logging.getLogger(__name__)


def dump_records(records: List[Dict[str, Any]]) -> str:
    """Serializes a record array the way the cache and the server store it (compact JSON)."""
    return json.dumps(records, separators=(",", ":"), ensure_ascii=False)


def parse_records(raw: Optional[str]) -> Optional[List[Any]]:
    """Returns the JSON array held in `raw`, or None when absent, unparsable, or not an array."""
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, list) else None


def _is_record(item: Any) -> bool:
    return isinstance(item, dict) and item.get("id") is not None


def _created_after(record: Dict[str, Any], last_synced_at: int) -> bool:
    created_at = record.get("createdAt")
    if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
        # No creation stamp: cannot prove it was synced before, so keep it.
        return True
    return created_at > last_synced_at


def merge_records(local: List[Any], remote: List[Any], last_synced_at: int) -> Tuple[List[Any], int, int]:
    """
    Reconciles a local record array against the remote snapshot.

    Remote records are authoritative for every id they contain. A local record
    missing from the remote snapshot survives only if it was created after the
    last successful sync; otherwise it was deleted elsewhere and is dropped.

    Returns:
        (merged, retained_count, dropped_count)
    """
    remote_ids = {item.get("id") for item in remote if _is_record(item)}
    retained: List[Dict[str, Any]] = []
    dropped = 0
    for record in local:
        if not _is_record(record):
            logger.debug(f"Skipping malformed local record: {record!r}")
            continue
        if record["id"] in remote_ids:
            continue
        if _created_after(record, last_synced_at):
            retained.append(record)
        else:
            dropped += 1
    return list(remote) + retained, len(retained), dropped


def merge_collection_value(cache: LocalCache, key: str, remote_value: str, last_synced_at: int) -> MergeResult:
    """
    Merges the pulled array-valued document `remote_value` into the cached value of `key`.

    The cache is written only if the merged array differs from what it already holds.

    Raises:
        ValueError: if `remote_value` is not a JSON array.
    """
    remote = parse_records(remote_value)
    if remote is None:
        raise ValueError(f"Remote value for '{key}' is not a JSON array")

    stored_raw = cache.get(key)
    stored = parse_records(stored_raw)
    if stored_raw is not None and stored is None:
        logger.warning(f"Local value for '{key}' is not a JSON array; treating it as empty.")

    merged, retained, dropped = merge_records(stored or [], remote, last_synced_at)

    if stored_raw is None:
        local_changed = len(merged) > 0
    else:
        local_changed = stored is None or merged != stored

    merged_value = dump_records(merged)
    if local_changed:
        cache.set(key, merged_value)

    logger.debug(
        f"Merged '{key}': remote={len(remote)} retained_local={retained} dropped_local={dropped} "
        f"changed={local_changed}"
    )
    return MergeResult(merged_value=merged_value, local_changed=local_changed, should_push=retained > 0)

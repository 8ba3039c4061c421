# stream_sync_API/app/core/Sync/exceptions.py

class SyncError(Exception):
    """Base exception for the sync client library."""
    pass


class TransportError(SyncError):
    """Represents an error during data transport (pull/push): network, timeout, HTTP status or bad response."""
    def __init__(self, message, status_code=None, error_code=None, *args):
        super().__init__(message, *args)
        self.status_code = status_code
        self.error_code = error_code

    def __str__(self):
        base = super().__str__()
        details = []
        if self.status_code: details.append(f"HTTP {self.status_code}")
        if self.error_code: details.append(self.error_code)
        return f"{base} ({', '.join(details)})" if details else base


class StateError(SyncError):
    """Represents an error reading/writing sync metadata."""
    pass


class CacheError(SyncError):
    """Represents a failure of the local cache backend."""
    pass

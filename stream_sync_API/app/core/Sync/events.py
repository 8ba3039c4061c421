# stream_sync_API/app/core/Sync/events.py
import logging
import threading
from typing import Callable, List

from .models import SyncEvent

logger = logging.getLogger(__name__)

SyncListener = Callable[[SyncEvent], None]


class Subscription:
    """Handle returned by `SyncEventBus.subscribe`. Call `unsubscribe()` when the consumer goes away."""

    def __init__(self, bus: "SyncEventBus", callback: SyncListener):
        self._bus = bus
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        self._bus.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unsubscribe()


class SyncEventBus:
    """In-process publish/subscribe channel for sync notifications."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: SyncListener) -> Subscription:
        if not callable(callback):
            raise TypeError("callback must be callable")
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Removes a subscription. Returns False if it was not registered."""
        with self._lock:
            subscription.active = False
            try:
                self._subscriptions.remove(subscription)
                return True
            except ValueError:
                return False

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: SyncEvent) -> int:
        """Delivers `event` to every current listener. Returns how many were called."""
        with self._lock:
            listeners = list(self._subscriptions)
        delivered = 0
        for subscription in listeners:
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Sync event listener failed on '{event.kind}' event: {e}", exc_info=True)
        return delivered

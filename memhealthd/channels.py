"""
Typed observer channels.

Each component exposes one Channel per event category (samples, leak
signals, alerts, recommendations, ...). Subscribers are plain callables;
a failing subscriber is logged and never prevents delivery to the others.
"""

import logging
import threading
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Channel(Generic[T]):
    """Synchronous publish/subscribe channel for one event type."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            self.unsubscribe(callback)
        return unsubscribe

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event: T) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in {self.name} subscriber: {e}", exc_info=True)

    def __len__(self) -> int:
        return len(self._subscribers)

    def __repr__(self) -> str:
        return f"Channel({self.name!r}, subscribers={len(self)})"

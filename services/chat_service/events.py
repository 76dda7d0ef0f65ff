"""
Observer channels owned by a chat session.

Components subscribe to the channels they care about (state changes, reply
requests from quick replies) instead of listening on a page-global event bus.
"""

import threading
from typing import Any, Callable, List

from utils.logging_config import get_logger


class EventChannel:
    """A named list of subscribers; publishing calls each one in order"""

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(__name__)
        self._subscribers: List[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it"""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: Callable[..., Any]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, *args, **kwargs) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(*args, **kwargs)
            except Exception as e:
                # A broken subscriber must not break the session
                self.logger.error(f"Subscriber of '{self.name}' failed: {e}", exc_info=True)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)

"""
Per-key subscriber registry with isolated fan-out.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .core import CacheUpdate

logger = logging.getLogger("cache.subscribers")

Subscriber = Callable[[CacheUpdate], None]
Unsubscribe = Callable[[], None]


class SubscriberRegistry:
    """
    Maps cache key -> set of callbacks.

    A key's set is dropped from the registry as soon as it becomes empty.
    One failing callback never prevents the others from being notified.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[Subscriber]] = {}

    def subscribe(self, key: str, callback: Subscriber) -> Unsubscribe:
        """
        Register a callback for updates to `key`.

        Returns:
            Function removing this subscription; safe to call more than once
        """
        self._subscribers.setdefault(key, set()).add(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks is None:
                return
            callbacks.discard(callback)
            if not callbacks:
                del self._subscribers[key]

        return unsubscribe

    def notify(
        self,
        key: str,
        data: Any,
        error: Optional[Exception] = None,
        is_validating: bool = False,
    ) -> int:
        """
        Deliver an update to every subscriber of `key`.

        Returns:
            Number of callbacks that completed without raising
        """
        callbacks = self._subscribers.get(key)
        if not callbacks:
            return 0

        update = CacheUpdate(data=data, error=error, is_validating=is_validating)
        delivered = 0
        # Copy: a callback may unsubscribe itself while we iterate
        for callback in list(callbacks):
            try:
                callback(update)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber callback error for {key}: {e}", exc_info=True)
        return delivered

    def notify_all(
        self,
        data: Any,
        error: Optional[Exception] = None,
        is_validating: bool = False,
    ) -> int:
        """Deliver the same update to the subscribers of every key."""
        return sum(
            self.notify(key, data, error, is_validating) for key in self.active_keys()
        )

    def has_subscribers(self, key: str) -> bool:
        return bool(self._subscribers.get(key))

    def active_keys(self) -> List[str]:
        """Keys with at least one subscriber."""
        return [key for key, callbacks in self._subscribers.items() if callbacks]

    def count(self, key: Optional[str] = None) -> int:
        """Subscriber count for one key, or across all keys."""
        if key is not None:
            return len(self._subscribers.get(key, ()))
        return sum(len(callbacks) for callbacks in self._subscribers.values())

    def clear(self) -> None:
        self._subscribers.clear()

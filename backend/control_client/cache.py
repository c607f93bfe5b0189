"""Per-entity cache with an explicit staleness bound and change subscribers."""

import time
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("gatehouse.client.cache")


class EntityCache:

    def __init__(self, max_age_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self._values: dict[str, tuple[float, Any]] = {}
        self._subscribers: dict[str, list[Callable[[Any], None]]] = {}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or older than the bound."""
        if self.is_stale(key):
            return None
        return self._values[key][1]

    def put(self, key: str, value: Any) -> None:
        self._values[key] = (self.clock(), value)
        for callback in list(self._subscribers.get(key, [])):
            callback(value)

    def invalidate(self, key: str) -> None:
        self._values.pop(key, None)

    def age(self, key: str) -> Optional[float]:
        if key not in self._values:
            return None
        return self.clock() - self._values[key][0]

    def is_stale(self, key: str) -> bool:
        age = self.age(key)
        return age is None or age > self.max_age_seconds

    def subscribe(self, key: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

"""A small synchronous publish/subscribe event bus."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable

BLOCKING_ENABLED = "blocking:enabledEvent"
BLOCKING_CACHE_GROUP_CHANGED = "blocking:cachingGroupChanged"
CACHING_DOMAIN_PREFETCHED = "caching:prefetched"
CACHING_RESULT_CACHE_CHANGED = "caching:resultCacheChanged"
CACHING_PREFETCH_CACHE_HIT = "caching:prefetchHit"
CACHING_RESULT_CACHE_HIT = "caching:cacheHit"
CACHING_RESULT_CACHE_MISS = "caching:cacheMiss"
CACHING_DOMAINS_TO_PREFETCH_COUNT_CHANGED = "caching:domainsToPrefetchCountChanged"


class EventBus:
    """Dispatches published events to the handlers subscribed to a topic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[tuple[Callable[..., Any], bool]]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Callable[..., Any]) -> None:
        with self._lock:
            self._handlers[topic].append((handler, False))

    def subscribe_once(self, topic: str, handler: Callable[..., Any]) -> None:
        with self._lock:
            self._handlers[topic].append((handler, True))

    def unsubscribe(self, topic: str, handler: Callable[..., Any]) -> None:
        with self._lock:
            entries = self._handlers.get(topic, [])
            remaining = [e for e in entries if e[0] is not handler]
            if len(remaining) == len(entries):
                raise KeyError(f"handler not subscribed to topic '{topic}'")
            self._handlers[topic] = remaining

    def publish(self, topic: str, *args: Any) -> None:
        with self._lock:
            entries = list(self._handlers.get(topic, []))
            self._handlers[topic] = [e for e in entries if not e[1]]
        for handler, _ in entries:
            handler(*args)


_BUS = EventBus()


def bus() -> EventBus:
    """Return the process-wide event bus."""
    return _BUS
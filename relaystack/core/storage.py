"""Narrow storage interface used for event types, results and health records.

The engine never depends on a specific store: anything implementing
``Storage`` (SQL, key-value, in-memory) can be passed in.
"""

from collections.abc import Callable
from typing import Any, Protocol

from cachetools import Cache, LRUCache, TTLCache

# Namespaces written by the engine
EVENT_TYPES = "event_types"
EMISSIONS = "emissions"
NOTIFICATION_RESULTS = "notification_results"
PROVIDER_HEALTH = "provider_health"


class Storage(Protocol):
    """get/put/delete/query over namespaced keys."""

    async def get(self, namespace: str, key: str) -> Any | None: ...

    async def put(self, namespace: str, key: str, value: Any) -> None: ...

    async def delete(self, namespace: str, key: str) -> None: ...

    async def query(
        self, namespace: str, predicate: Callable[[Any], bool] | None = None
    ) -> list[Any]: ...


class InMemoryStorage:
    """Bounded in-memory store, one cache per namespace.

    Each namespace holds at most ``max_entries`` values; the least recently
    used entry is evicted first. With ``ttl`` set, entries also expire after
    that many seconds.

    Args:
        max_entries: Per-namespace capacity.
        ttl: Optional time-to-live in seconds.
    """

    def __init__(self, max_entries: int = 10_000, ttl: float | None = None) -> None:
        self._max_entries = max_entries
        self._ttl = ttl
        self._namespaces: dict[str, Cache] = {}

    def _cache(self, namespace: str) -> Cache:
        cache = self._namespaces.get(namespace)
        if cache is None:
            if self._ttl is not None:
                cache = TTLCache(maxsize=self._max_entries, ttl=self._ttl)
            else:
                cache = LRUCache(maxsize=self._max_entries)
            self._namespaces[namespace] = cache
        return cache

    async def get(self, namespace: str, key: str) -> Any | None:
        return self._cache(namespace).get(key)

    async def put(self, namespace: str, key: str, value: Any) -> None:
        self._cache(namespace)[key] = value

    async def delete(self, namespace: str, key: str) -> None:
        self._cache(namespace).pop(key, None)

    async def query(
        self, namespace: str, predicate: Callable[[Any], bool] | None = None
    ) -> list[Any]:
        values = list(self._cache(namespace).values())
        if predicate is None:
            return values
        return [v for v in values if predicate(v)]

    def __len__(self) -> int:
        return sum(len(c) for c in self._namespaces.values())

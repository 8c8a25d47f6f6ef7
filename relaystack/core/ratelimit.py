"""Fixed-window admission control keyed by event type (+ payload fields)."""

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from relaystack.core.logging import get_logger
from relaystack.core.models import EventTypeDefinition, RateLimitPolicy


@dataclass
class _Window:
    started_at: float
    count: int
    length: float


class RateLimiter:
    """Counter + window-start per key, reset when the window elapses.

    Sliding-window precision is not attempted: a burst straddling a window
    boundary may admit up to twice ``max_requests``.

    Args:
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()
        self._log = get_logger("ratelimit")

    @staticmethod
    def build_key(definition: EventTypeDefinition, payload: Mapping[str, Any]) -> str:
        """Event type name joined with the policy's ``key_fields`` values."""
        policy = definition.rate_limit
        if policy is None or not policy.key_fields:
            return definition.name
        parts = [str(payload.get(field, "")) for field in policy.key_fields]
        return ":".join([definition.name, *parts])

    async def try_admit(self, key: str, policy: RateLimitPolicy) -> bool:
        """Count one request against ``key``; False if the window is full."""
        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now - window.started_at >= policy.window:
                self._windows[key] = _Window(started_at=now, count=1, length=policy.window)
                return True
            if window.count >= policy.max_requests:
                self._log.info(
                    f"Rate limit reached for {key}",
                    extra={"key": key, "count": window.count, "max_requests": policy.max_requests},
                )
                return False
            window.count += 1
            return True

    async def reset(self, key: str | None = None) -> None:
        async with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    async def prune(self) -> int:
        """Drop windows that have already elapsed. Returns how many."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, w in self._windows.items() if now - w.started_at >= w.length]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._windows)

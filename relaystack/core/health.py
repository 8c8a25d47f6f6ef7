"""Per-provider health tracking with a background reconciliation loop."""

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from relaystack.core.logging import get_logger
from relaystack.core.models import ProviderHealthRecord
from relaystack.core.storage import PROVIDER_HEALTH, Storage

if TYPE_CHECKING:
    from relaystack.core.routing import ProviderRegistry

DEFAULT_FAILURE_THRESHOLD = 5


class ProviderHealthTracker:
    """Tracks consecutive failures/successes per (channel, provider).

    A provider becomes unhealthy once its consecutive failures reach
    ``failure_threshold`` and healthy again on the next success. Health is
    advisory: it steers provider selection, it never blocks emission.

    Args:
        failure_threshold: Consecutive failures that flip a provider to unhealthy.
        check_interval: Seconds between background ``health_check()`` sweeps.
        check_timeout: Per-provider bound on a single ``health_check()`` call.
        storage: Optional store records are written through to.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        check_interval: float = 30.0,
        check_timeout: float = 5.0,
        storage: Storage | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.check_interval = check_interval
        self.check_timeout = check_timeout
        self._storage = storage
        self._records: dict[tuple[str, str], ProviderHealthRecord] = {}
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._log = get_logger("health")

    def _record(self, channel: str, provider: str) -> ProviderHealthRecord:
        key = (channel, provider)
        record = self._records.get(key)
        if record is None:
            record = ProviderHealthRecord(channel=channel, provider=provider)
            self._records[key] = record
        return record

    async def _persist(self, record: ProviderHealthRecord) -> None:
        if self._storage is not None:
            await self._storage.put(
                PROVIDER_HEALTH, f"{record.channel}:{record.provider}", record.model_copy()
            )

    async def record_success(self, channel: str, provider: str) -> ProviderHealthRecord:
        async with self._lock:
            record = self._record(channel, provider)
            was_healthy = record.is_healthy
            record.consecutive_failures = 0
            record.consecutive_successes += 1
            record.total_successes += 1
            record.is_healthy = True
            record.last_check_at = datetime.now(UTC)
            snapshot = record.model_copy()
            await self._persist(snapshot)
        if not was_healthy:
            self._log.info(
                f"Provider {provider} on {channel} recovered",
                extra={"channel": channel, "provider": provider},
            )
        return snapshot

    async def record_failure(
        self, channel: str, provider: str, error: BaseException | str | None = None
    ) -> ProviderHealthRecord:
        async with self._lock:
            record = self._record(channel, provider)
            was_healthy = record.is_healthy
            record.consecutive_failures += 1
            record.consecutive_successes = 0
            record.total_failures += 1
            record.last_error = str(error) if error is not None else None
            record.last_check_at = datetime.now(UTC)
            if record.consecutive_failures >= self.failure_threshold:
                record.is_healthy = False
            snapshot = record.model_copy()
            await self._persist(snapshot)
        if was_healthy and not snapshot.is_healthy:
            self._log.warning(
                f"Provider {provider} on {channel} marked unhealthy after "
                f"{snapshot.consecutive_failures} consecutive failures",
                extra={
                    "channel": channel,
                    "provider": provider,
                    "consecutive_failures": snapshot.consecutive_failures,
                    "error": snapshot.last_error,
                },
            )
        return snapshot

    async def mark(
        self, channel: str, provider: str, healthy: bool, error: str | None = None
    ) -> ProviderHealthRecord:
        """Set health directly, as the result of an out-of-band check."""
        async with self._lock:
            record = self._record(channel, provider)
            changed = record.is_healthy != healthy
            record.is_healthy = healthy
            record.last_check_at = datetime.now(UTC)
            if healthy:
                record.consecutive_failures = 0
            else:
                record.last_error = error
            snapshot = record.model_copy()
            await self._persist(snapshot)
        if changed:
            self._log.info(
                f"Health check set {provider} on {channel} to "
                f"{'healthy' if healthy else 'unhealthy'}",
                extra={"channel": channel, "provider": provider, "error": error},
            )
        return snapshot

    def is_healthy(self, channel: str, provider: str) -> bool:
        """Unknown providers are presumed healthy."""
        record = self._records.get((channel, provider))
        return record is None or record.is_healthy

    def get(self, channel: str, provider: str) -> ProviderHealthRecord | None:
        record = self._records.get((channel, provider))
        return record.model_copy() if record is not None else None

    def records(self) -> list[ProviderHealthRecord]:
        return [r.model_copy() for r in self._records.values()]

    async def check_all(self, providers: "ProviderRegistry") -> dict[str, bool]:
        """Run every provider's ``health_check()`` once and reconcile state."""
        results: dict[str, bool] = {}
        for channel, provider in providers.items():
            error: str | None = None
            try:
                healthy = bool(
                    await asyncio.wait_for(provider.health_check(), timeout=self.check_timeout)
                )
            except TimeoutError:
                healthy = False
                error = f"health check timed out after {self.check_timeout}s"
            except Exception as e:
                healthy = False
                error = str(e)
            if not healthy and error is None:
                error = "health check returned False"
            await self.mark(channel, provider.name, healthy, error)
            results[f"{channel}:{provider.name}"] = healthy
        return results

    async def _run(self, providers: "ProviderRegistry") -> None:
        while True:
            try:
                await self.check_all(providers)
            except Exception as e:
                self._log.error(f"Health check sweep failed: {e}", extra={"error": str(e)})
            await asyncio.sleep(self.check_interval)

    def start(self, providers: "ProviderRegistry") -> None:
        """Start the background sweep. Idempotent."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(providers), name="relaystack-health")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

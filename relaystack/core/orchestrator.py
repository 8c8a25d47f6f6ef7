"""Notification orchestrator: delivers one event across its channels.

Two entry points share one attempt function (``deliver_once``):
- ``deliver``: the sync path, every channel concurrently with an inline
  retry loop, bounded by an overall timeout.
- ``process_job``: the async path, one queue job per channel; retries are
  rescheduled through the queue via ``retry_delay``.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Any

from relaystack.core.errors import ProviderFailureError, RetryExhaustedError
from relaystack.core.event import Event
from relaystack.core.logging import get_logger
from relaystack.core.metrics import (
    DELIVERY_DURATION_SECONDS,
    NOTIFICATIONS_TOTAL,
    MetricsSink,
    NullMetrics,
)
from relaystack.core.models import (
    DeliveryContext,
    DeliveryStatus,
    EventTypeDefinition,
    NotificationResult,
    QueuedJob,
    Recipient,
)
from relaystack.core.retry import RetryPolicyExecutor, is_retryable
from relaystack.core.storage import NOTIFICATION_RESULTS, Storage
from relaystack.recipients import RecipientLoader, for_channel

if TYPE_CHECKING:
    from relaystack.core.health import ProviderHealthTracker
    from relaystack.core.queue import QueueManager
    from relaystack.core.registry import EventTypeRegistry
    from relaystack.core.routing import ProviderRegistry

JOB_TYPE = "notification"
DEFAULT_SEND_TIMEOUT = 10.0


class _FailedAttempt(ProviderFailureError):
    """Carries a failed attempt's result through the inline retry loop."""

    def __init__(self, result: NotificationResult):
        self.result = result
        super().__init__(
            result.error or "delivery failed",
            channel=result.channel,
            provider=result.provider,
            retryable=result.metadata.get("retryable", True),
        )


class NotificationOrchestrator:
    """Routes an event to a provider per channel and records every outcome.

    Args:
        registry: Event type definitions, used to rebuild context for jobs.
        providers: Channel -> provider routing table.
        health: Receives the outcome of every attempt.
        retry: Backoff arithmetic and the inline retry loop.
        recipient_loader: Optional; when set, a channel with no addressable
            recipient is skipped.
        storage: Optional; every result is appended under the correlation id.
        metrics: Counter and histogram sink.
        send_timeout: Bound on a single ``provider.send`` call, in seconds.
        continue_after_timeout: When a sync ``deliver`` times out, keep the
            pending channels running in the background (True) or cancel them.
    """

    def __init__(
        self,
        registry: "EventTypeRegistry",
        providers: "ProviderRegistry",
        health: "ProviderHealthTracker",
        retry: RetryPolicyExecutor | None = None,
        recipient_loader: RecipientLoader | None = None,
        storage: Storage | None = None,
        metrics: MetricsSink | None = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        continue_after_timeout: bool = True,
    ) -> None:
        self.registry = registry
        self.providers = providers
        self.health = health
        self.retry = retry if retry is not None else RetryPolicyExecutor()
        self.recipient_loader = recipient_loader
        self.storage = storage
        self.metrics = metrics if metrics is not None else NullMetrics()
        self.send_timeout = send_timeout
        self.continue_after_timeout = continue_after_timeout
        self._background: set[asyncio.Task] = set()
        self._persist_lock = asyncio.Lock()
        self._log = get_logger("orchestrator")

    # -------------------------------------------------------------------------
    # Queue wiring
    # -------------------------------------------------------------------------

    def attach(self, queue: "QueueManager") -> None:
        """Register ``process_job`` and ``retry_delay`` on ``queue``."""
        queue.register_processor(JOB_TYPE, self.process_job, on_failure=self.retry_delay)

    @staticmethod
    def job_payload(event: Event, channel: str) -> dict[str, Any]:
        return {"event": event.model_dump(mode="json"), "channel": channel}

    def max_attempts(self, definition: EventTypeDefinition) -> int:
        return self.retry.max_attempts(definition.retry_policy)

    # -------------------------------------------------------------------------
    # Sync path
    # -------------------------------------------------------------------------

    async def deliver(
        self,
        definition: EventTypeDefinition,
        event: Event,
        timeout: float | None = None,
    ) -> list[NotificationResult]:
        """Deliver ``event`` on every channel of ``definition`` concurrently.

        Returns when every channel is terminal or ``timeout`` elapses. A
        channel still pending at the deadline is reported as failed with
        ``timed_out=True``.

        Returns:
            One result per channel, in channel order.
        """
        if not definition.channels:
            return []

        recipients = await self._try_resolve(definition, event)
        tasks = {
            channel: asyncio.create_task(
                self._deliver_channel(definition, event, channel, recipients),
                name=f"relaystack-deliver-{event.id}-{channel}",
            )
            for channel in definition.channels
        }
        done, pending = await asyncio.wait(tasks.values(), timeout=timeout)

        results: list[NotificationResult] = []
        for channel, task in tasks.items():
            if task in done:
                results.append(task.result())
                continue
            timed_out = NotificationResult(
                channel=channel,
                provider="",
                status=DeliveryStatus.FAILED,
                error=f"Delivery did not finish within {timeout}s",
                timed_out=True,
            )
            await self._persist(event, timed_out)
            results.append(timed_out)

        if pending:
            self._log.warning(
                f"{len(pending)} channel(s) still pending after {timeout}s for {event.event_type}"
                f" ({'continuing' if self.continue_after_timeout else 'cancelled'})",
                extra=self._extra(event),
            )
            if self.continue_after_timeout:
                for task in pending:
                    self._background.add(task)
                    task.add_done_callback(self._background.discard)
            else:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        return results

    async def _deliver_channel(
        self,
        definition: EventTypeDefinition,
        event: Event,
        channel: str,
        recipients: list[Recipient] | None,
    ) -> NotificationResult:
        """Inline retry loop for one channel. Never raises."""

        async def attempt(n: int) -> NotificationResult:
            result = await self.deliver_once(definition, event, channel, n, recipients)
            if result.status is DeliveryStatus.FAILED:
                raise _FailedAttempt(result)
            return result

        try:
            return await self.retry.execute(
                attempt, definition.retry_policy, context=self._extra(event, channel=channel)
            )
        except RetryExhaustedError as e:
            cause = e.__cause__
            if isinstance(cause, _FailedAttempt):
                return cause.result.model_copy(update={"error": str(e)})
            return self._failed(channel, "", e.attempts, str(e))
        except Exception as e:
            self._log.exception(
                f"Unexpected error delivering {event.event_type} on {channel}: {e}",
                extra=self._extra(event, channel=channel),
            )
            return self._failed(channel, "", 1, str(e))

    # -------------------------------------------------------------------------
    # Single attempt
    # -------------------------------------------------------------------------

    async def deliver_once(
        self,
        definition: EventTypeDefinition,
        event: Event,
        channel: str,
        attempt: int = 1,
        recipients: list[Recipient] | None = None,
    ) -> NotificationResult:
        """Make one delivery attempt on ``channel``. Never raises.

        The attempt is persisted, counted and reported to the health tracker
        (when a provider was selected).
        """
        start = time.monotonic()
        provider = self.providers.select(channel, self.health)

        if provider is None:
            if channel in self.providers:
                result = self._result(
                    channel, "", DeliveryStatus.SKIPPED, attempt, "All providers are unhealthy"
                )
            else:
                result = self._failed(
                    channel, "", attempt, f"No provider registered for channel '{channel}'"
                )
                result.metadata["retryable"] = False
        else:
            result = await self._send(definition, event, channel, attempt, recipients, provider)

        duration = time.monotonic() - start
        self.metrics.increment(
            NOTIFICATIONS_TOTAL,
            {"event_type": event.event_type, "channel": channel, "status": result.status.value},
        )
        self.metrics.observe(
            DELIVERY_DURATION_SECONDS,
            duration,
            {"event_type": event.event_type, "channel": channel},
        )
        await self._persist(event, result)

        extra = self._extra(event, channel=channel, provider=result.provider, attempt=attempt)
        if result.status is DeliveryStatus.SENT:
            self._log.info(f"Delivered {event.event_type} on {channel}", extra=extra)
        elif result.status is DeliveryStatus.SKIPPED:
            self._log.info(f"Skipped {channel} for {event.event_type}: {result.error}", extra=extra)
        else:
            self._log.warning(
                f"Delivery of {event.event_type} on {channel} failed: {result.error}",
                extra={**extra, "error": result.error},
            )
        return result

    async def _send(
        self,
        definition: EventTypeDefinition,
        event: Event,
        channel: str,
        attempt: int,
        recipients: list[Recipient] | None,
        provider: Any,
    ) -> NotificationResult:
        if recipients is None and self.recipient_loader is not None:
            try:
                recipients = await self.recipient_loader.resolve(event.event_type, event.payload)
            except Exception as e:
                return self._failed(
                    channel, provider.name, attempt, f"Recipient resolution failed: {e}"
                )

        addressed: list[Recipient] = []
        if self.recipient_loader is not None:
            addressed = for_channel(recipients or [], channel)
            if not addressed:
                return self._result(
                    channel,
                    provider.name,
                    DeliveryStatus.SKIPPED,
                    attempt,
                    f"No recipients with a {channel} address",
                )

        context = DeliveryContext(
            event_id=event.id,
            correlation_id=event.correlation_id,
            event_type=event.event_type,
            channel=channel,
            attempt=attempt,
            recipients=addressed,
            template_id=definition.templates.get(channel),
            metadata={"priority": definition.priority.value},
        )

        try:
            result = await asyncio.wait_for(
                provider.send(event.payload, context), timeout=self.send_timeout
            )
            if not isinstance(result, NotificationResult):
                raise TypeError(
                    f"{provider.name}.send must return NotificationResult, "
                    f"got {type(result).__name__}"
                )
            result = result.model_copy(
                update={"channel": channel, "provider": provider.name, "attempts": attempt}
            )
        except TimeoutError:
            result = self._failed(
                channel, provider.name, attempt, f"Send timed out after {self.send_timeout}s"
            )
        except Exception as e:
            result = self._failed(channel, provider.name, attempt, str(e))
            result.metadata["retryable"] = is_retryable(e)

        if result.status is DeliveryStatus.SENT:
            await self.health.record_success(channel, provider.name)
        elif result.status is DeliveryStatus.FAILED:
            await self.health.record_failure(channel, provider.name, result.error)
        return result

    # -------------------------------------------------------------------------
    # Async path
    # -------------------------------------------------------------------------

    async def process_job(self, job: QueuedJob) -> NotificationResult:
        """Queue processor for one channel of one event.

        Raises:
            ProviderFailureError: If the attempt failed; the queue then asks
                ``retry_delay`` whether to try again.
        """
        event = Event.model_validate(job.payload["event"])
        channel = job.payload["channel"]
        definition = self.registry.get(event.event_type)
        result = await self.deliver_once(definition, event, channel, attempt=job.attempts)
        if result.status is DeliveryStatus.FAILED:
            raise ProviderFailureError(
                result.error or "delivery failed",
                channel=channel,
                provider=result.provider,
                retryable=result.metadata.get("retryable", True),
            )
        return result

    async def retry_delay(self, job: QueuedJob, error: Exception) -> float | None:
        """Queue failure callback: backoff delay, or None to dead-letter."""
        event_type = job.payload.get("event", {}).get("event_type", "")
        policy = None
        if event_type in self.registry:
            policy = self.registry.get(event_type).retry_policy
        decision = self.retry.next_retry(job.attempts, policy, error)
        if not decision.exhausted and job.attempts < job.max_attempts:
            return decision.delay

        exhausted = RetryExhaustedError(job.attempts, str(error))
        channel = job.payload.get("channel", "")
        self._log.error(
            f"Delivery of {event_type} on {channel} gave up: {exhausted}",
            extra={
                "event_type": event_type,
                "channel": channel,
                "job_id": job.id,
                "correlation_id": job.correlation_id,
                "attempt": job.attempts,
            },
        )
        final = self._failed(
            channel, getattr(error, "provider", None) or "", job.attempts, str(exhausted)
        )
        final.metadata["exhausted"] = True
        await self._append(job.correlation_id, final)
        return None

    # -------------------------------------------------------------------------
    # Health & lifecycle
    # -------------------------------------------------------------------------

    async def health_check_all(self) -> dict[str, dict[str, bool]]:
        """Run every provider's health check now; channel -> provider -> healthy."""
        await self.health.check_all(self.providers)
        report: dict[str, dict[str, bool]] = {}
        for channel, provider in self.providers.items():
            report.setdefault(channel, {})[provider.name] = self.health.is_healthy(
                channel, provider.name
            )
        return report

    def available_channels(self) -> list[str]:
        """Channels with at least one healthy provider."""
        return [
            channel
            for channel in self.providers.channels()
            if self.providers.select(channel, self.health) is not None
        ]

    async def wait_background(self, timeout: float | None = None) -> None:
        """Wait for channels that outlived a sync timeout."""
        if self._background:
            await asyncio.wait(list(self._background), timeout=timeout)

    async def close(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for _, provider in self.providers.items():
            try:
                await provider.close()
            except Exception as e:
                self._log.error(
                    f"Error closing provider {provider.name}: {e}",
                    extra={"provider": provider.name, "error": str(e)},
                )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _try_resolve(
        self, definition: EventTypeDefinition, event: Event
    ) -> list[Recipient] | None:
        """Resolve recipients once per event; None leaves it to each attempt."""
        if self.recipient_loader is None:
            return []
        try:
            return await self.recipient_loader.resolve(event.event_type, event.payload)
        except Exception as e:
            self._log.error(
                f"Recipient resolution failed for {event.event_type}: {e}",
                extra={**self._extra(event), "error": str(e)},
            )
            return None

    async def _persist(self, event: Event, result: NotificationResult) -> None:
        await self._append(event.correlation_id, result)

    async def _append(self, correlation_id: str | None, result: NotificationResult) -> None:
        if self.storage is None or not correlation_id:
            return
        async with self._persist_lock:
            existing = await self.storage.get(NOTIFICATION_RESULTS, correlation_id) or []
            await self.storage.put(NOTIFICATION_RESULTS, correlation_id, [*existing, result])

    @staticmethod
    def _result(
        channel: str,
        provider: str,
        status: DeliveryStatus,
        attempt: int,
        error: str | None = None,
    ) -> NotificationResult:
        return NotificationResult(
            channel=channel, provider=provider, status=status, attempts=attempt, error=error
        )

    def _failed(self, channel: str, provider: str, attempt: int, error: str) -> NotificationResult:
        return self._result(channel, provider, DeliveryStatus.FAILED, attempt, error)

    @staticmethod
    def _extra(event: Event, **fields: Any) -> dict[str, Any]:
        return {
            "event_id": event.id,
            "event_type": event.event_type,
            "correlation_id": event.correlation_id,
            **fields,
        }

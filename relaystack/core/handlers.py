"""Business handlers and the per-handler queues that run them.

Each registered handler gets its own QueueManager and worker pool, so a slow
or failing handler never delays another handler, the emitter, or
notification delivery.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar, Protocol

from relaystack.backends.memory import InMemoryQueueBackend
from relaystack.core.errors import ConfigurationError, HandlerError
from relaystack.core.event import Event
from relaystack.core.logging import get_logger
from relaystack.core.metrics import HANDLER_ERRORS_TOTAL, MetricsSink, NullMetrics
from relaystack.core.models import BackoffKind, QueuedJob, QueueStats, RetryPolicy
from relaystack.core.queue import QueueManager
from relaystack.core.retry import RetryPolicyExecutor

if TYPE_CHECKING:
    from relaystack.backends.base import QueueBackend

WILDCARD = "*"
NO_RETRY = RetryPolicy(attempts=1, delay=0, backoff=BackoffKind.NONE)


class Handler(ABC):
    """Base class for business event handlers.

    Handlers react to emitted events independently of notification delivery.
    Each declares the event types it listens to via ``listens_to``; ``"*"``
    matches every event type.

    Class attributes:
        listens_to: Event type names, or ``["*"]``.
        concurrency: Maximum simultaneous ``handle`` calls for this handler.
        retry_policy: Retries for a failing ``handle``; no retries if None.
        timeout: Per-call bound in seconds; the manager default if None.
    """

    listens_to: ClassVar[list[str]] = []
    concurrency: ClassVar[int] = 1
    retry_policy: ClassVar[RetryPolicy | None] = None
    timeout: ClassVar[float | None] = None

    def __init__(self, name: str | None = None) -> None:
        """Initialize the Handler.

        Args:
            name: Optional name for the handler. Defaults to the class name.
        """
        self.name = name or self.__class__.__name__

    def matches(self, event_type: str) -> bool:
        return WILDCARD in self.listens_to or event_type in self.listens_to

    @abstractmethod
    def handle(self, event: Event) -> None | Awaitable[None]:
        """Handle an emitted event.

        Args:
            event: The event to handle.
        """
        ...


class FailedEventStore(Protocol):
    """Protocol for storing events a handler gave up on."""

    async def store(self, event: Event, error: Exception) -> None: ...
    def get_failed_events(self) -> list[tuple[Event, Exception]]: ...
    def clear(self) -> None: ...


class InMemoryFailedEventStore:
    """Simple in-memory failed event store with bounded size."""

    def __init__(self, max_size: int = 10_000) -> None:
        self._events: list[tuple[Event, Exception]] = []
        self._max_size = max_size
        self._dropped_count = 0

    def __bool__(self) -> bool:
        """Always truthy so 'store or default' works correctly."""
        return True

    async def store(self, event: Event, error: Exception) -> None:
        if len(self._events) >= self._max_size:
            # Drop oldest to make room (FIFO eviction)
            self._events.pop(0)
            self._dropped_count += 1
        self._events.append((event, error))

    def get_failed_events(self) -> list[tuple[Event, Exception]]:
        return list(self._events)

    def for_handler(self, handler: str) -> list[tuple[Event, Exception]]:
        return [
            (event, error)
            for event, error in self._events
            if isinstance(error, HandlerError) and error.handler == handler
        ]

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

    @property
    def dropped_count(self) -> int:
        """Number of events dropped due to size limit."""
        return self._dropped_count


@dataclass
class HandlerStats:
    """Counters across every handler queue."""

    events_submitted: int = 0
    events_handled: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    handler_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    dead_lettered: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    submit_failures: int = 0


@dataclass
class _HandlerSlot:
    handler: Handler
    queue: QueueManager
    semaphore: asyncio.Semaphore
    policy: RetryPolicy


def _memory_backend(name: str) -> "QueueBackend":
    return InMemoryQueueBackend(name=name)


class HandlerQueueManager:
    """Fans events out to matching handlers, one queue per handler.

    Args:
        concurrency: Worker tasks per handler queue.
        handler_timeout: Default per-call bound for handlers, in seconds.
        backend_factory: Builds the backend for a handler queue from its name
            (``handler-{handler name}``). In-memory by default.
        failed_event_store: Receives events a handler gave up on.
        retry: Backoff arithmetic for handler retries.
        metrics: Counter sink.
        poll_interval: Seconds a worker blocks in one claim.
    """

    def __init__(
        self,
        concurrency: int = 2,
        handler_timeout: float = 30.0,
        backend_factory: Callable[[str], "QueueBackend"] = _memory_backend,
        failed_event_store: FailedEventStore | None = None,
        retry: RetryPolicyExecutor | None = None,
        metrics: MetricsSink | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.concurrency = concurrency
        self.handler_timeout = handler_timeout
        self.backend_factory = backend_factory
        if failed_event_store is None:
            failed_event_store = InMemoryFailedEventStore()
        self.failed_event_store = failed_event_store
        self.retry = retry if retry is not None else RetryPolicyExecutor()
        self.metrics = metrics if metrics is not None else NullMetrics()
        self.poll_interval = poll_interval
        self._slots: dict[str, _HandlerSlot] = {}
        self._stats = HandlerStats()
        self._running = False
        self._log = get_logger("handlers")

    @property
    def is_running(self) -> bool:
        return self._running

    @staticmethod
    def _validate(handler: Handler) -> None:
        if not isinstance(handler.listens_to, list):
            raise TypeError(
                f"{handler.name}.listens_to must be a list[str], "
                f"got {type(handler.listens_to).__name__}"
            )
        for item in handler.listens_to:
            if not isinstance(item, str):
                raise TypeError(
                    f"{handler.name}.listens_to must contain only strings, "
                    f"found {type(item).__name__}: {item!r}"
                )
        if handler.concurrency < 1:
            raise ConfigurationError(f"{handler.name}.concurrency must be >= 1")

    def register_handler(self, handler: Handler) -> None:
        """Add a handler with its own queue. Names must be unique.

        Workers start on the next ``start()``; calling it again on a running
        manager only starts the new queues.
        """
        self._validate(handler)
        if handler.name in self._slots:
            raise ConfigurationError(f"Handler '{handler.name}' is already registered")

        queue = QueueManager(
            self.backend_factory(f"handler-{handler.name}"),
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
            metrics=self.metrics,
        )
        slot = _HandlerSlot(
            handler=handler,
            queue=queue,
            semaphore=asyncio.Semaphore(handler.concurrency),
            policy=handler.retry_policy or NO_RETRY,
        )
        queue.register_processor(
            self._job_type(handler),
            lambda job: self._run(slot, job),
            on_failure=lambda job, error: self._on_failure(slot, job, error),
        )
        self._slots[handler.name] = slot

    @staticmethod
    def _job_type(handler: Handler) -> str:
        return f"handler:{handler.name}"

    def handlers_for(self, event_type: str) -> list[Handler]:
        return [s.handler for s in self._slots.values() if s.handler.matches(event_type)]

    async def submit(self, event: Event) -> list[str]:
        """Enqueue one job per matching handler.

        A failing enqueue for one handler is logged and does not stop the
        others.

        Returns:
            Ids of the jobs that were enqueued.
        """
        job_ids: list[str] = []
        for slot in self._slots.values():
            if not slot.handler.matches(event.event_type):
                continue
            try:
                job = await slot.queue.enqueue(
                    self._job_type(slot.handler),
                    {"event": event.model_dump(mode="json")},
                    max_attempts=self.retry.max_attempts(slot.policy),
                    correlation_id=event.correlation_id,
                )
            except Exception as e:
                self._stats.submit_failures += 1
                self._log.error(
                    f"Failed to enqueue {event.event_type} for handler {slot.handler.name}: {e}",
                    extra={
                        "event_id": event.id,
                        "event_type": event.event_type,
                        "correlation_id": event.correlation_id,
                        "handler": slot.handler.name,
                        "error": str(e),
                    },
                )
                continue
            job_ids.append(job.id)
        self._stats.events_submitted += 1
        return job_ids

    async def _invoke(self, handler: Handler, event: Event) -> None:
        """Invoke handler with timeout.

        Sync handlers run in a worker thread so they never hold the event
        loop. A timed-out sync handler is abandoned, not interrupted.
        """
        if inspect.iscoroutinefunction(handler.handle):
            call = handler.handle(event)
        else:
            call = asyncio.to_thread(handler.handle, event)
        timeout = handler.timeout or self.handler_timeout
        try:
            await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError:
            raise TimeoutError(f"Handler {handler.name} timed out after {timeout}s")

    async def _run(self, slot: _HandlerSlot, job: QueuedJob) -> None:
        event = Event.model_validate(job.payload["event"])
        handler = slot.handler
        self._log.info(
            f"Dispatching {event.event_type} to {handler.name}",
            extra={
                "event_id": event.id,
                "event_type": event.event_type,
                "handler": handler.name,
                "attempt": job.attempts,
            },
        )
        async with slot.semaphore:
            try:
                await self._invoke(handler, event)
            except Exception as e:
                raise HandlerError(handler.name, e) from e
        self._stats.events_handled[handler.name] += 1

    async def _on_failure(
        self, slot: _HandlerSlot, job: QueuedJob, error: Exception
    ) -> float | None:
        handler = slot.handler
        event = Event.model_validate(job.payload["event"])
        self._stats.handler_errors[handler.name] += 1
        self.metrics.increment(HANDLER_ERRORS_TOTAL, {"handler": handler.name})
        original = error.original if isinstance(error, HandlerError) else error
        extra = {
            "event_id": event.id,
            "event_type": event.event_type,
            "correlation_id": event.correlation_id,
            "handler": handler.name,
            "attempt": job.attempts,
            "error": str(original),
        }

        decision = self.retry.next_retry(job.attempts, slot.policy, original)
        if not decision.exhausted:
            self._log.warning(
                f"Handler {handler.name} raised exception, retrying in {decision.delay}s: "
                f"{original}",
                extra=extra,
            )
            return decision.delay

        self._log.error(f"Handler {handler.name} raised exception: {original}", extra=extra)
        if not isinstance(error, HandlerError):
            error = HandlerError(handler.name, error)
        await self.failed_event_store.store(event, error)
        self._stats.dead_lettered[handler.name] += 1
        return None

    def get_stats(self) -> HandlerStats:
        """Return a copy of current statistics."""
        return HandlerStats(
            events_submitted=self._stats.events_submitted,
            events_handled=defaultdict(int, self._stats.events_handled),
            handler_errors=defaultdict(int, self._stats.handler_errors),
            dead_lettered=defaultdict(int, self._stats.dead_lettered),
            submit_failures=self._stats.submit_failures,
        )

    async def stats(self) -> dict[str, QueueStats]:
        """Queue stats per handler name."""
        return {name: await slot.queue.stats() for name, slot in self._slots.items()}

    async def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every handler queue is empty."""
        results = await asyncio.gather(
            *(slot.queue.drain(timeout=timeout) for slot in self._slots.values())
        )
        return all(results)

    async def start(self) -> None:
        """Start every handler queue. Idempotent."""
        self._running = True
        for slot in self._slots.values():
            await slot.queue.start()

    async def close(self) -> None:
        self._running = False
        for slot in self._slots.values():
            await slot.queue.close()

    def __len__(self) -> int:
        return len(self._slots)

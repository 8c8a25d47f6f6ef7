"""EventEmitter: the public emission surface.

``emit`` validates, admits and routes a single event, then returns without
waiting (async mode) or after delivery finishes or times out (sync mode).
Business handlers are fed independently and never affect the result.
"""

import asyncio
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from relaystack.core.errors import EventNotFoundError, PayloadValidationError
from relaystack.core.event import Event
from relaystack.core.logging import get_logger
from relaystack.core.metrics import EVENTS_EMITTED_TOTAL, MetricsSink, NullMetrics
from relaystack.core.models import (
    EmissionResult,
    EmissionStatus,
    EmitOptions,
    EventTypeDefinition,
    NotificationResult,
    ProcessingMode,
)
from relaystack.core.orchestrator import JOB_TYPE
from relaystack.core.ratelimit import RateLimiter
from relaystack.core.schema import validate_payload
from relaystack.core.storage import EMISSIONS, NOTIFICATION_RESULTS, Storage

if TYPE_CHECKING:
    from relaystack.core.handlers import HandlerQueueManager
    from relaystack.core.orchestrator import NotificationOrchestrator
    from relaystack.core.queue import QueueManager
    from relaystack.core.registry import EventTypeRegistry

DEFAULT_TIMEOUT = 30.0


class EventEmitter:
    """Entry point applications call to emit events.

    Args:
        registry: Event type definitions.
        orchestrator: Delivers sync emissions and processes queued jobs.
        queue: Notification queue for async emissions.
        handlers: Optional handler fan-out.
        rate_limiter: Admission control; a fresh limiter if None.
        storage: Optional; emission history and results are read/written here.
        metrics: Counter sink.
        default_timeout: Sync timeout when neither the call nor the event type
            sets one, in seconds.
        raise_on_rejection: Raise EventNotFoundError/PayloadValidationError
            (True) or return a ``rejected`` result (False).
    """

    def __init__(
        self,
        registry: "EventTypeRegistry",
        orchestrator: "NotificationOrchestrator",
        queue: "QueueManager",
        handlers: "HandlerQueueManager | None" = None,
        rate_limiter: RateLimiter | None = None,
        storage: Storage | None = None,
        metrics: MetricsSink | None = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        raise_on_rejection: bool = True,
    ) -> None:
        self.registry = registry
        self.orchestrator = orchestrator
        self.queue = queue
        self.handlers = handlers
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.storage = storage
        self.metrics = metrics if metrics is not None else NullMetrics()
        self.default_timeout = default_timeout
        self.raise_on_rejection = raise_on_rejection
        self._history_lock = asyncio.Lock()
        self._log = get_logger("emitter")

    @staticmethod
    def resolve_mode(definition: EventTypeDefinition, options: EmitOptions) -> ProcessingMode:
        """Option beats definition; ``auto`` becomes sync only when waiting for results."""
        mode = options.mode or definition.default_mode
        if mode is ProcessingMode.AUTO:
            wait = (
                options.wait_for_result
                if options.wait_for_result is not None
                else definition.wait_for_result
            )
            return ProcessingMode.SYNC if wait else ProcessingMode.ASYNC
        return mode

    async def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
        options: EmitOptions | None = None,
    ) -> EmissionResult:
        """Emit one event.

        Raises:
            EventNotFoundError: Unknown or disabled event type (when
                ``raise_on_rejection``).
            PayloadValidationError: Payload does not match the schema (when
                ``raise_on_rejection``).
            QueueBackendError: An async emission could not be enqueued.
        """
        start = time.monotonic()
        options = options or EmitOptions()
        payload = dict(payload or {})

        try:
            definition = self.registry.get_enabled(event_type)
        except EventNotFoundError as e:
            self._log.warning(str(e), extra={"event_type": event_type})
            if self.raise_on_rejection:
                raise
            return self._rejected(event_type, options, start, errors=None)

        errors = validate_payload(definition.fields, payload)
        if errors:
            error = PayloadValidationError(event_type, errors)
            self._log.warning(
                str(error),
                extra={"event_type": event_type, "fields": error.fields},
            )
            if self.raise_on_rejection:
                raise error
            return self._rejected(event_type, options, start, errors=errors)

        event_kwargs: dict[str, Any] = {
            "event_type": definition.name,
            "payload": to_jsonable_python(payload),
        }
        if options.correlation_id:
            event_kwargs["correlation_id"] = options.correlation_id
        try:
            event = Event(**event_kwargs)
        except ValidationError as e:
            error = PayloadValidationError(event_type, [], detail=str(e.errors()[0]["msg"]))
            self._log.warning(str(error), extra={"event_type": event_type})
            if self.raise_on_rejection:
                raise error from e
            return self._rejected(event_type, options, start, errors=[])
        mode = self.resolve_mode(definition, options)
        extra = {
            "event_id": event.id,
            "event_type": event.event_type,
            "correlation_id": event.correlation_id,
            "mode": mode.value,
        }

        if definition.rate_limit is not None:
            key = self.rate_limiter.build_key(definition, payload)
            if not await self.rate_limiter.try_admit(key, definition.rate_limit):
                self._log.warning(f"Rate limited {event.event_type}", extra={**extra, "key": key})
                result = self._result(EmissionStatus.RATE_LIMITED, event, mode, start)
                await self._record(result)
                return result

        if not definition.channels:
            result = self._result(EmissionStatus.ACCEPTED, event, mode, start)
        elif mode is ProcessingMode.SYNC:
            timeout = options.timeout or definition.timeout or self.default_timeout
            results = await self.orchestrator.deliver(definition, event, timeout)
            result = self._result(EmissionStatus.COMPLETED, event, mode, start, results=results)
        else:
            job_ids = await self._enqueue(definition, event, options)
            result = self._result(EmissionStatus.QUEUED, event, mode, start, job_ids=job_ids)

        await self._submit_to_handlers(event)

        self.metrics.increment(
            EVENTS_EMITTED_TOTAL,
            {"event_type": event.event_type, "mode": mode.value, "status": result.status.value},
        )
        self._log.info(
            f"Emitted {event.event_type} ({result.status.value})",
            extra={**extra, "status": result.status.value, "duration": result.duration},
        )
        await self._record(result)
        return result

    async def _enqueue(
        self, definition: EventTypeDefinition, event: Event, options: EmitOptions
    ) -> list[str]:
        priority = options.priority or definition.priority
        delay = options.delay if options.delay is not None else definition.delay
        max_attempts = self.orchestrator.max_attempts(definition)
        job_ids = []
        for channel in definition.channels:
            job = await self.queue.enqueue(
                JOB_TYPE,
                self.orchestrator.job_payload(event, channel),
                priority=priority,
                delay=delay,
                max_attempts=max_attempts,
                correlation_id=event.correlation_id,
            )
            job_ids.append(job.id)
        return job_ids

    async def _submit_to_handlers(self, event: Event) -> None:
        if self.handlers is None:
            return
        try:
            await self.handlers.submit(event)
        except Exception as e:
            self._log.error(
                f"Handler submission failed for {event.event_type}: {e}",
                extra={
                    "event_id": event.id,
                    "event_type": event.event_type,
                    "correlation_id": event.correlation_id,
                    "error": str(e),
                },
            )

    # -------------------------------------------------------------------------
    # Convenience wrappers
    # -------------------------------------------------------------------------

    async def emit_sync(
        self, event_type: str, payload: Mapping[str, Any] | None = None, **options: Any
    ) -> EmissionResult:
        """Emit and wait for delivery, regardless of the event type default."""
        return await self.emit(
            event_type, payload, EmitOptions(mode=ProcessingMode.SYNC, **options)
        )

    async def emit_async(
        self, event_type: str, payload: Mapping[str, Any] | None = None, **options: Any
    ) -> EmissionResult:
        """Queue delivery and return immediately, regardless of the event type default."""
        return await self.emit(
            event_type, payload, EmitOptions(mode=ProcessingMode.ASYNC, **options)
        )

    async def emit_and_wait(
        self,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        **options: Any,
    ) -> EmissionResult:
        """Emit synchronously with an explicit timeout."""
        return await self.emit(
            event_type,
            payload,
            EmitOptions(
                mode=ProcessingMode.SYNC, wait_for_result=True, timeout=timeout, **options
            ),
        )

    async def get_results(self, correlation_id: str) -> list[NotificationResult]:
        """Every persisted delivery attempt for an emission."""
        if self.storage is None:
            return []
        return list(await self.storage.get(NOTIFICATION_RESULTS, correlation_id) or [])

    async def get_emissions(self, correlation_id: str) -> list[EmissionResult]:
        """Every emission made under ``correlation_id``, oldest first."""
        if self.storage is None:
            return []
        return list(await self.storage.get(EMISSIONS, correlation_id) or [])

    async def get_emission(self, correlation_id: str) -> EmissionResult | None:
        """The latest emission made under ``correlation_id``."""
        emissions = await self.get_emissions(correlation_id)
        return emissions[-1] if emissions else None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _result(
        status: EmissionStatus,
        event: Event,
        mode: ProcessingMode,
        start: float,
        results: list[NotificationResult] | None = None,
        job_ids: list[str] | None = None,
    ) -> EmissionResult:
        return EmissionResult(
            status=status,
            event_id=event.id,
            event_type=event.event_type,
            correlation_id=event.correlation_id,
            mode=mode,
            results=results,
            job_ids=job_ids or [],
            duration=time.monotonic() - start,
        )

    def _rejected(
        self, event_type: str, options: EmitOptions, start: float, errors: list | None
    ) -> EmissionResult:
        return EmissionResult(
            status=EmissionStatus.REJECTED,
            event_id="",
            event_type=event_type,
            correlation_id=options.correlation_id or "",
            errors=errors,
            duration=time.monotonic() - start,
        )

    async def _record(self, result: EmissionResult) -> None:
        if self.storage is None or not result.correlation_id:
            return
        async with self._history_lock:
            existing = await self.storage.get(EMISSIONS, result.correlation_id) or []
            await self.storage.put(EMISSIONS, result.correlation_id, [*existing, result])

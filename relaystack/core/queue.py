"""Queue manager: enqueue API plus a worker pool over a QueueBackend.

IMPORTANT: the manager keeps no job state of its own. Every job lives in the
backend from enqueue until it completes or is dead-lettered.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from relaystack.core.errors import QueueBackendError
from relaystack.core.logging import get_logger
from relaystack.core.metrics import ACTIVE_WORKERS, QUEUE_DEPTH, MetricsSink, NullMetrics
from relaystack.core.models import Priority, QueuedJob, QueueStats

if TYPE_CHECKING:
    from relaystack.backends.base import QueueBackend

# Circuit breaker defaults
DEFAULT_MAX_CONSECUTIVE_FAILURES = 10
MAX_PULL_BACKOFF = 30.0

Processor = Callable[[QueuedJob], Awaitable[Any]]
FailureCallback = Callable[[QueuedJob, Exception], Awaitable[float | None] | float | None]


@dataclass
class _Registration:
    fn: Processor
    on_failure: FailureCallback | None


class QueueManager:
    """Runs ``concurrency`` workers that claim jobs and dispatch them by type.

    Args:
        backend: Where jobs live.
        concurrency: Number of worker tasks.
        poll_interval: Seconds a worker blocks in one claim.
        max_consecutive_backend_failures: Claim failures after which the
            queue reports itself unhealthy. Workers keep retrying.
        metrics: Sink for queue depth and active worker gauges.
        pull_backoff_base: First backoff after a failed claim; doubles per failure.
        shutdown_timeout: Seconds ``stop`` waits for busy workers.
    """

    def __init__(
        self,
        backend: "QueueBackend",
        concurrency: int = 3,
        poll_interval: float = 1.0,
        max_consecutive_backend_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        metrics: MetricsSink | None = None,
        pull_backoff_base: float = 0.1,
        shutdown_timeout: float = 10.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.backend = backend
        self.name = getattr(backend, "name", "default")
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.max_consecutive_backend_failures = max_consecutive_backend_failures
        self.pull_backoff_base = pull_backoff_base
        self.shutdown_timeout = shutdown_timeout
        self.metrics = metrics if metrics is not None else NullMetrics()
        self._processors: dict[str, _Registration] = {}
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._active = 0
        self._consecutive_pull_failures = 0
        self._last_backend_error: str | None = None
        self._log = get_logger("queue")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_healthy(self) -> bool:
        """False once claims have failed ``max_consecutive_backend_failures`` times in a row."""
        return self._consecutive_pull_failures < self.max_consecutive_backend_failures

    @property
    def last_backend_error(self) -> str | None:
        return self._last_backend_error

    def register_processor(
        self,
        job_type: str,
        fn: Processor,
        *,
        on_failure: FailureCallback | None = None,
    ) -> None:
        """Register the single processor for ``job_type``.

        Args:
            job_type: Job type the processor handles.
            fn: ``async fn(job)``; raising counts as a failed attempt.
            on_failure: ``fn(job, error)`` returning a delay in seconds to
                retry after, or None to dead-letter. Without it, a failed job
                is retried immediately until ``max_attempts``.

        Raises:
            ValueError: If ``job_type`` already has a processor.
        """
        if job_type in self._processors:
            raise ValueError(f"A processor is already registered for job type '{job_type}'")
        self._processors[job_type] = _Registration(fn=fn, on_failure=on_failure)

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: Priority = Priority.NORMAL,
        delay: float = 0.0,
        max_attempts: int = 1,
        correlation_id: str | None = None,
    ) -> QueuedJob:
        """Hand a new job to the backend.

        Raises:
            QueueBackendError: If the backend rejects or cannot store the job.
        """
        job = QueuedJob(
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            correlation_id=correlation_id,
        )
        if delay > 0:
            job.scheduled_for = job.enqueued_at + timedelta(seconds=delay)
        try:
            await self.backend.push(job)
        except Exception as e:
            self._log.error(
                f"Enqueue to {self.name} failed: {e}",
                extra={
                    "job_id": job.id,
                    "job_type": job_type,
                    "correlation_id": correlation_id,
                    "error": str(e),
                },
            )
            raise QueueBackendError(e) from e
        self._log.debug(
            f"Enqueued {job_type} job {job.id} on {self.name}",
            extra={"job_id": job.id, "job_type": job_type, "correlation_id": correlation_id},
        )
        await self._report_depth()
        return job

    async def _report_depth(self) -> None:
        try:
            stats = await self.backend.stats()
        except Exception as e:
            self._log.debug(f"Could not read stats for {self.name}: {e}")
            return
        self.metrics.gauge(QUEUE_DEPTH, stats.depth, {"queue": self.name})

    async def start(self) -> None:
        """Launch the worker pool. Idempotent."""
        if self._running:
            return
        await self.backend.open()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"relaystack-{self.name}-{i}")
            for i in range(self.concurrency)
        ]
        self._log.info(
            f"Started {self.concurrency} workers on {self.name}",
            extra={"queue": self.name, "concurrency": self.concurrency},
        )

    async def _worker(self, index: int) -> None:
        while self._running:
            try:
                job = await self.backend.claim(timeout=self.poll_interval)
                self._consecutive_pull_failures = 0
                self._last_backend_error = None
            except Exception as e:
                self._consecutive_pull_failures += 1
                self._last_backend_error = str(e)
                delay = min(
                    self.pull_backoff_base * (2 ** (self._consecutive_pull_failures - 1)),
                    MAX_PULL_BACKOFF,
                )
                self._log.error(
                    f"Backend claim failed on {self.name} ({self._consecutive_pull_failures}/"
                    f"{self.max_consecutive_backend_failures}): {e}",
                    extra={
                        "queue": self.name,
                        "worker": index,
                        "error": str(e),
                        "consecutive_failures": self._consecutive_pull_failures,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if job is None:
                continue

            self._active += 1
            self.metrics.gauge(ACTIVE_WORKERS, self._active, {"queue": self.name})
            try:
                await self._process(job)
            finally:
                self._active -= 1
                self.metrics.gauge(ACTIVE_WORKERS, self._active, {"queue": self.name})
                await self._report_depth()

    async def _process(self, job: QueuedJob) -> None:
        registration = self._processors.get(job.job_type)
        if registration is None:
            self._log.error(
                f"No processor registered for job type {job.job_type}",
                extra={"job_id": job.id, "job_type": job.job_type},
            )
            await self._settle(job, self.backend.dead_letter, job, "no processor registered")
            return

        try:
            await registration.fn(job)
        except Exception as e:
            await self._handle_failure(job, registration, e)
            return

        await self._settle(job, self.backend.complete, job)

    async def _handle_failure(
        self, job: QueuedJob, registration: _Registration, error: Exception
    ) -> None:
        if registration.on_failure is not None:
            try:
                delay = registration.on_failure(job, error)
                if asyncio.iscoroutine(delay):
                    delay = await delay
            except Exception as cb_error:
                self._log.error(
                    f"Failure callback raised for job {job.id}: {cb_error}",
                    extra={"job_id": job.id, "job_type": job.job_type, "error": str(cb_error)},
                )
                delay = None
        elif job.attempts < job.max_attempts:
            delay = 0.0
        else:
            delay = None

        extra = {
            "job_id": job.id,
            "job_type": job.job_type,
            "correlation_id": job.correlation_id,
            "attempt": job.attempts,
            "error": str(error),
        }
        if delay is None or job.attempts >= job.max_attempts:
            self._log.error(
                f"Job {job.id} failed permanently after {job.attempts} attempt(s): {error}",
                extra=extra,
            )
            await self._settle(job, self.backend.dead_letter, job, str(error))
        else:
            self._log.warning(
                f"Job {job.id} failed, retrying in {delay}s "
                f"({job.attempts}/{job.max_attempts}): {error}",
                extra=extra,
            )
            await self._settle(job, self.backend.reschedule, job, delay, str(error))

    async def _settle(self, job: QueuedJob, op: Callable[..., Awaitable[None]], *args: Any) -> None:
        """Report a job outcome to the backend; failures are logged, the job stays recoverable."""
        try:
            await op(*args)
        except Exception as e:
            self._log.error(
                f"Backend {op.__name__} failed for job {job.id}: {e}",
                extra={"job_id": job.id, "job_type": job.job_type, "error": str(e)},
            )

    async def stats(self) -> QueueStats:
        return await self.backend.stats()

    async def clean(self, older_than: float) -> int:
        return await self.backend.clean(older_than)

    async def dead_letters(self) -> list[QueuedJob]:
        return await self.backend.dead_letters()

    async def drain(self, timeout: float = 5.0, poll: float = 0.01) -> bool:
        """Wait until no job is waiting, delayed or active.

        Returns:
            True if the queue drained before ``timeout``.
        """
        deadline = datetime.now(UTC) + timedelta(seconds=timeout)
        while datetime.now(UTC) < deadline:
            stats = await self.backend.stats()
            if stats.depth == 0:
                return True
            await asyncio.sleep(poll)
        return False

    async def stop(self) -> None:
        """Stop workers after their current job.

        Workers still busy after ``shutdown_timeout`` are cancelled; their
        jobs stay active in the backend.
        """
        self._running = False
        workers, self._workers = self._workers, []
        if not workers:
            return
        _, pending = await asyncio.wait(workers, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if pending:
            self._log.warning(
                f"Cancelled {len(pending)} busy workers on {self.name} at shutdown",
                extra={"queue": self.name},
            )

    async def close(self) -> None:
        await self.stop()
        await self.backend.close()

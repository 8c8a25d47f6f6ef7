"""In-memory job queue with priority tiers and delayed jobs."""

import asyncio
import heapq
import itertools
import logging
from collections import deque
from datetime import UTC, datetime, timedelta

from relaystack.core.models import JobState, Priority, QueuedJob, QueueStats

logger = logging.getLogger("relaystack.backends.memory")

# Claim order, highest tier first
_TIERS = sorted(Priority, key=lambda p: p.rank, reverse=True)


class InMemoryQueueBackend:
    """Job queue held entirely in process memory.

    Suitable for development, tests and single-process deployments that can
    afford to lose queued work on exit. Ready jobs sit in one deque per
    priority tier; delayed jobs sit in a heap keyed by due time and are
    promoted to their tier when due. Claims are serialized by an
    asyncio.Condition so each job is handed to exactly one worker.

    Args:
        name: Queue name, used in logs and metrics labels.
        max_retained: Finished jobs kept for inspection; oldest dropped first.
    """

    def __init__(self, name: str = "default", max_retained: int = 10_000) -> None:
        self.name = name
        self._max_retained = max_retained
        self._jobs: dict[str, QueuedJob] = {}
        self._ready: dict[Priority, deque[str]] = {p: deque() for p in Priority}
        self._delayed: list[tuple[float, int, str]] = []
        self._finished: deque[str] = deque()
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._closed = False

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    async def _changed(self) -> None:
        """Called after every mutation, outside the condition lock."""

    def _make_ready(self, job: QueuedJob) -> None:
        job.state = JobState.WAITING
        self._ready[job.priority].append(job.id)

    def _make_delayed(self, job: QueuedJob, due: datetime) -> None:
        job.state = JobState.DELAYED
        job.scheduled_for = due
        heapq.heappush(self._delayed, (due.timestamp(), next(self._seq), job.id))

    def _place(self, job: QueuedJob) -> None:
        if job.scheduled_for is not None and job.scheduled_for > self._now():
            self._make_delayed(job, job.scheduled_for)
        else:
            self._make_ready(job)

    def _promote_due(self) -> None:
        now = self._now().timestamp()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.state is JobState.DELAYED:
                self._make_ready(job)

    def _pop_ready(self) -> QueuedJob | None:
        for tier in _TIERS:
            queue = self._ready[tier]
            while queue:
                job = self._jobs.get(queue.popleft())
                if job is not None and job.state is JobState.WAITING:
                    return job
        return None

    def _next_due_in(self) -> float | None:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - self._now().timestamp())

    def _finish(self, job: QueuedJob, state: JobState, error: str | None) -> None:
        job.state = state
        job.finished_at = self._now()
        if error is not None:
            job.last_error = error
        self._finished.append(job.id)
        while len(self._finished) > self._max_retained:
            self._jobs.pop(self._finished.popleft(), None)

    def _lookup(self, job: QueuedJob, operation: str) -> QueuedJob | None:
        stored = self._jobs.get(job.id)
        if stored is None:
            logger.warning(
                f"Cannot {operation} unknown job {job.id} on {self.name}",
                extra={"job_id": job.id},
            )
        return stored

    async def push(self, job: QueuedJob) -> None:
        if self._closed:
            raise RuntimeError(f"Queue {self.name} is closed")
        async with self._cond:
            stored = job.model_copy()
            self._jobs[stored.id] = stored
            self._place(stored)
            job.state = stored.state
            self._cond.notify()
        logger.debug(f"Pushed job {job.id} to {self.name}", extra={"job_id": job.id})
        await self._changed()

    async def claim(self, timeout: float = 1.0) -> QueuedJob | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        claimed = None
        expired = 0
        async with self._cond:
            while True:
                self._promote_due()
                job = self._pop_ready()
                if job is not None and job.attempts >= job.max_attempts:
                    self._expire(job)
                    expired += 1
                    continue
                if job is not None:
                    job.state = JobState.ACTIVE
                    job.attempts += 1
                    claimed = job.model_copy()
                    break
                remaining = deadline - loop.time()
                if remaining <= 0 or self._closed:
                    break
                due_in = self._next_due_in()
                wait = remaining if due_in is None else min(remaining, due_in)
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except TimeoutError:
                    pass
        if claimed is not None or expired:
            await self._changed()
        return claimed

    def _expire(self, job: QueuedJob) -> None:
        """Dead-letter a job whose final attempt was interrupted before it settled."""
        error = f"Interrupted during final attempt {job.attempts}/{job.max_attempts}"
        self._finish(job, JobState.DEAD_LETTERED, error)
        logger.warning(
            f"Dead-lettered job {job.id} on {self.name}: {error}",
            extra={"job_id": job.id, "job_type": job.job_type, "error": error},
        )

    async def complete(self, job: QueuedJob) -> None:
        async with self._cond:
            stored = self._lookup(job, "complete")
            if stored is None:
                return
            self._finish(stored, JobState.COMPLETED, None)
        await self._changed()

    async def reschedule(self, job: QueuedJob, delay: float, error: str | None = None) -> None:
        async with self._cond:
            stored = self._lookup(job, "reschedule")
            if stored is None:
                return
            stored.last_error = error
            if delay > 0:
                self._make_delayed(stored, self._now() + timedelta(seconds=delay))
            else:
                stored.scheduled_for = None
                self._make_ready(stored)
            self._cond.notify()
        await self._changed()

    async def dead_letter(self, job: QueuedJob, error: str | None = None) -> None:
        async with self._cond:
            stored = self._lookup(job, "dead-letter")
            if stored is None:
                return
            self._finish(stored, JobState.DEAD_LETTERED, error)
        logger.warning(
            f"Dead-lettered job {job.id} on {self.name}: {error}",
            extra={"job_id": job.id, "job_type": job.job_type, "error": error},
        )
        await self._changed()

    async def get(self, job_id: str) -> QueuedJob | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job is not None else None

    async def stats(self) -> QueueStats:
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state] += 1
        return QueueStats(
            waiting=counts[JobState.WAITING],
            delayed=counts[JobState.DELAYED],
            active=counts[JobState.ACTIVE],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.DEAD_LETTERED],
        )

    async def clean(self, older_than: float) -> int:
        cutoff = self._now() - timedelta(seconds=older_than)
        async with self._cond:
            stale = {
                job_id
                for job_id in self._finished
                if (job := self._jobs.get(job_id)) is not None
                and job.finished_at is not None
                and job.finished_at < cutoff
            }
            for job_id in stale:
                del self._jobs[job_id]
            self._finished = deque(j for j in self._finished if j not in stale)
        if stale:
            logger.info(f"Cleaned {len(stale)} finished jobs from {self.name}")
            await self._changed()
        return len(stale)

    async def dead_letters(self) -> list[QueuedJob]:
        return [
            job.model_copy()
            for job in self._jobs.values()
            if job.state is JobState.DEAD_LETTERED
        ]

    async def open(self) -> None:
        """Nothing to restore for a memory-only queue."""

    async def close(self) -> None:
        self._closed = True
        async with self._cond:
            self._cond.notify_all()

    def _restore(self, jobs: list[QueuedJob]) -> int:
        """Load jobs from a snapshot. Active jobs become waiting again.

        Returns:
            How many jobs were recovered from the active state.
        """
        recovered = 0
        for job in sorted(jobs, key=lambda j: j.enqueued_at):
            self._jobs[job.id] = job
            if job.finished:
                self._finished.append(job.id)
                continue
            if job.state is JobState.ACTIVE:
                recovered += 1
            self._place(job)
        return recovered

    def __len__(self) -> int:
        return sum(1 for job in self._jobs.values() if not job.finished)

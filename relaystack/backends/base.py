"""Queue backend protocol.

The QueueManager owns no queue state: every job lives in the backend from
``push`` until it is completed or dead-lettered. Backends decide claim order
(priority tier, then FIFO) and hide delayed jobs until they are due.
"""

from typing import Protocol

from relaystack.core.models import QueuedJob, QueueStats

__all__ = ["QueueBackend", "QueueStats"]


class QueueBackend(Protocol):
    """Protocol defining the interface for job queue backends."""

    name: str

    async def push(self, job: QueuedJob) -> None:
        """Store a new job. A job with ``scheduled_for`` in the future stays
        invisible to ``claim`` until then.
        """
        ...

    async def claim(self, timeout: float = 1.0) -> QueuedJob | None:
        """Hand the next due job to exactly one caller.

        The returned job is ``active`` and its ``attempts`` has been
        incremented.

        Args:
            timeout: Maximum seconds to wait for a job.

        Returns:
            The claimed job, or None if the timeout expired.
        """
        ...

    async def complete(self, job: QueuedJob) -> None:
        """Mark a claimed job as successfully processed."""
        ...

    async def reschedule(self, job: QueuedJob, delay: float, error: str | None = None) -> None:
        """Put a claimed job back, due ``delay`` seconds from now."""
        ...

    async def dead_letter(self, job: QueuedJob, error: str | None = None) -> None:
        """Finish a claimed job as failed. It is never claimed again."""
        ...

    async def open(self) -> None:
        """Load persisted state, if the backend has any. Idempotent."""
        ...

    async def stats(self) -> QueueStats: ...

    async def clean(self, older_than: float) -> int:
        """Drop finished jobs that finished more than ``older_than`` seconds ago."""
        ...

    async def dead_letters(self) -> list[QueuedJob]: ...

    async def close(self) -> None: ...

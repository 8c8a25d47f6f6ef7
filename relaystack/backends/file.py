"""Single-process durable queue: in-memory structure plus a JSON snapshot."""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from relaystack.backends.memory import InMemoryQueueBackend
from relaystack.core.models import QueuedJob, QueueStats

logger = logging.getLogger("relaystack.backends.file")

SNAPSHOT_VERSION = 1


class FileQueueBackend(InMemoryQueueBackend):
    """In-memory queue that snapshots itself to ``{data_dir}/{name}-queue.json``.

    Every mutation rewrites the snapshot atomically (temp file + rename), so a
    crash leaves either the previous or the new state on disk, never a torn
    file. On ``open()`` the snapshot is restored; jobs that were active when
    the process died are waiting again, so delivery is at-least-once.

    Args:
        name: Queue name; also the snapshot file prefix.
        data_dir: Directory holding snapshots. Created if missing.
        max_retained: Finished jobs kept in memory and on disk.
    """

    def __init__(
        self,
        name: str = "default",
        data_dir: str | os.PathLike[str] = "./queue-data",
        max_retained: int = 10_000,
    ) -> None:
        super().__init__(name=name, max_retained=max_retained)
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / f"{name}-queue.json"
        self._write_lock = asyncio.Lock()
        self._opened = False

    async def open(self) -> None:
        """Restore the snapshot, if any. Idempotent."""
        if self._opened:
            return
        self._opened = True
        data = await asyncio.to_thread(self._read)
        if data is None:
            return
        jobs = [QueuedJob.model_validate(item) for item in data.get("jobs", [])]
        recovered = self._restore(jobs)
        logger.info(
            f"Restored {len(jobs)} jobs for {self.name} from {self.path} "
            f"({recovered} recovered from active)",
            extra={"queue": self.name, "jobs": len(jobs), "recovered": recovered},
        )
        await self._changed()

    def _read(self) -> dict[str, Any] | None:
        try:
            with self.path.open(encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            # Keep the unreadable file around for inspection
            corrupt = self.path.with_suffix(".json.corrupt")
            os.replace(self.path, corrupt)
            logger.error(
                f"Queue snapshot {self.path} is unreadable, moved to {corrupt}: {e}",
                extra={"queue": self.name, "error": str(e)},
            )
            return None

    def _snapshot(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "name": self.name,
            "jobs": [job.model_dump(mode="json") for job in self._jobs.values()],
        }

    def _write(self, data: dict[str, Any]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    async def _changed(self) -> None:
        # Snapshot inside the lock so the last write always carries the latest state
        async with self._write_lock:
            await asyncio.to_thread(self._write, self._snapshot())

    async def push(self, job: QueuedJob) -> None:
        await self.open()
        await super().push(job)

    async def claim(self, timeout: float = 1.0) -> QueuedJob | None:
        await self.open()
        return await super().claim(timeout)

    async def stats(self) -> QueueStats:
        await self.open()
        return await super().stats()

    async def dead_letters(self) -> list[QueuedJob]:
        await self.open()
        return await super().dead_letters()

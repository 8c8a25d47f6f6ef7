"""Multi-process job queue on Redis sorted sets.

Layout, all keys under ``{prefix}:{name}``:
- ``jobs``: hash of job id -> job JSON
- ``state`` / ``attempts`` / ``tier``: hashes of job id -> current state,
  claim count and priority tier index; they override the JSON copy
- ``ready:high`` / ``ready:normal`` / ``ready:low``: zsets scored by enqueue
  sequence
- ``delayed``: zset scored by due time (ms)
- ``active``: zset scored by claim time (ms)
- ``completed`` / ``dead``: zsets scored by finish time (ms)

Every move of a job id between sets runs as one Lua script, so a crash or a
dropped connection never leaves a job outside all of them.

Features:
- Atomic claims, so each job goes to exactly one consumer
- Atomic delayed job promotion
- Stalled job recovery (active longer than ``stall_timeout``)
- Connection pooling
- Automatic reconnection
- Health checks
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlparse, urlunparse

from redis.asyncio import ConnectionPool, Redis

from relaystack.core.models import JobState, Priority, QueuedJob, QueueStats

logger = logging.getLogger("relaystack.redis")

# Claim order, highest tier first; a job's tier index is its 1-based position
_TIERS = sorted(Priority, key=lambda p: p.rank, reverse=True)

# KEYS: ready tiers (3), active, state, attempts. ARGV: now (ms).
# Returns {job id, claim count} or nil.
_CLAIM = """
for i = 1, 3 do
    local popped = redis.call('ZPOPMIN', KEYS[i])
    if #popped > 0 then
        local id = popped[1]
        redis.call('ZADD', KEYS[4], ARGV[1], id)
        redis.call('HSET', KEYS[5], id, 'active')
        local attempts = redis.call('HINCRBY', KEYS[6], id, 1)
        return {id, attempts}
    end
end
return false
"""

# KEYS: ready tiers (3), source zset, seq, state, tier. ARGV: max score, limit.
# Moves due members of the source zset to their ready tier; returns their ids.
_MAKE_READY = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[4], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[4], id)
    local tier = tonumber(redis.call('HGET', KEYS[7], id)) or 2
    redis.call('ZADD', KEYS[tier], redis.call('INCR', KEYS[5]), id)
    redis.call('HSET', KEYS[6], id, 'waiting')
end
return ids
"""


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _ms(dt: datetime | None = None) -> int:
    return int((dt or datetime.now(UTC)).timestamp() * 1000)


@dataclass
class BackendHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


@dataclass
class RedisMetrics:
    """Redis backend metrics."""

    jobs_pushed: int = 0
    jobs_claimed: int = 0
    jobs_completed: int = 0
    jobs_rescheduled: int = 0
    jobs_dead_lettered: int = 0
    jobs_reclaimed: int = 0
    reconnections: int = 0


class RedisQueueBackend:
    """Redis-backed job queue shared by any number of worker processes."""

    def __init__(
        self,
        redis_url: str,
        name: str = "default",
        prefix: str = "relaystack:queue",
        pool_size: int = 10,
        stall_timeout: float = 300.0,
        poll_interval: float = 0.1,
    ) -> None:
        """Initialize Redis backend.

        Args:
            redis_url: Redis connection URL.
            name: Queue name.
            prefix: Key prefix; keys live under ``{prefix}:{name}``.
            pool_size: Connection pool size.
            stall_timeout: Seconds an active job may go unacknowledged
                before another consumer reclaims it.
            poll_interval: Sleep between claim polls while the queue is
                idle; bounds how late a delayed or stalled job is noticed.
        """
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.name = name
        self.namespace = f"{prefix}:{name}"
        self._pool_size = pool_size
        self.stall_timeout = stall_timeout
        self.poll_interval = poll_interval

        self._redis: Redis | None = None
        self._connected = False
        self._metrics = RedisMetrics()
        self._conn_lock = asyncio.Lock()
        self._claim_script: Any = None
        self._make_ready_script: Any = None

    def _key(self, part: str) -> str:
        return f"{self.namespace}:{part}"

    @property
    def redis_url(self) -> str:
        return self._url

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics

    async def _get_client(self) -> Redis:
        """Get Redis client with connection pooling.

        Reconnection happens under ``_conn_lock`` so concurrent callers
        never create two pools or leak the old one.
        """
        if self._redis is not None:
            try:
                await self._redis.ping()
                return self._redis
            except Exception as e:
                logger.warning(f"Redis connection lost: {e}, reconnecting...")

        async with self._conn_lock:
            # Another coroutine may have reconnected while we waited
            if self._redis is not None:
                try:
                    await self._redis.ping()
                    return self._redis
                except Exception:
                    pass

            old_redis = self._redis
            if old_redis is not None:
                try:
                    await old_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing old connection: {close_err}")

            is_reconnection = self._connected

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            new_redis = Redis(connection_pool=pool)
            try:
                await new_redis.ping()
            except Exception:
                try:
                    await new_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing failed connection: {close_err}")
                raise

            self._redis = new_redis
            self._claim_script = new_redis.register_script(_CLAIM)
            self._make_ready_script = new_redis.register_script(_MAKE_READY)
            self._connected = True
            if is_reconnection:
                self._metrics.reconnections += 1
                logger.info(f"Reconnected to Redis at {self._url_safe}")
            else:
                logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    def _ready_keys(self) -> list[str]:
        return [self._key(f"ready:{tier.value}") for tier in _TIERS]

    async def _load(self, redis: Redis, job_id: str) -> QueuedJob | None:
        async with redis.pipeline(transaction=False) as pipe:
            pipe.hget(self._key("jobs"), job_id)
            pipe.hget(self._key("state"), job_id)
            pipe.hget(self._key("attempts"), job_id)
            raw, state, attempts = await pipe.execute()
        if raw is None:
            return None
        try:
            job = QueuedJob.model_validate_json(raw)
        except Exception as e:
            logger.error(f"Failed to deserialize job {job_id}: {e}", extra={"job_id": job_id})
            return None
        if state is not None:
            job.state = JobState(state)
        if attempts is not None:
            job.attempts = int(attempts)
        return job

    def _write(self, pipe: Any, job: QueuedJob) -> None:
        pipe.hset(self._key("jobs"), job.id, job.model_dump_json())
        pipe.hset(self._key("state"), job.id, job.state.value)
        pipe.hset(self._key("attempts"), job.id, job.attempts)

    async def open(self) -> None:
        await self._get_client()

    async def push(self, job: QueuedJob) -> None:
        """Store the job and index it as ready or delayed."""
        redis = await self._get_client()
        now = datetime.now(UTC)
        delayed = job.scheduled_for is not None and job.scheduled_for > now
        job.state = JobState.DELAYED if delayed else JobState.WAITING
        seq = None if delayed else await redis.incr(self._key("seq"))

        async with redis.pipeline(transaction=True) as pipe:
            self._write(pipe, job)
            pipe.hset(self._key("tier"), job.id, _TIERS.index(job.priority) + 1)
            if delayed:
                pipe.zadd(self._key("delayed"), {job.id: _ms(job.scheduled_for)})
            else:
                pipe.zadd(self._key(f"ready:{job.priority.value}"), {job.id: seq})
            await pipe.execute()
        self._metrics.jobs_pushed += 1
        logger.debug(f"Pushed job {job.id} to {self.namespace}", extra={"job_id": job.id})

    async def _make_ready(self, source: str, max_score: int) -> list[str]:
        keys = [
            *self._ready_keys(),
            self._key(source),
            self._key("seq"),
            self._key("state"),
            self._key("tier"),
        ]
        return await self._make_ready_script(keys=keys, args=[max_score, 100])

    async def _promote_due(self) -> int:
        """Move due delayed jobs to their ready tier."""
        return len(await self._make_ready("delayed", _ms()))

    async def _reclaim_stalled(self) -> int:
        cutoff = _ms() - int(self.stall_timeout * 1000)
        reclaimed = await self._make_ready("active", cutoff)
        for job_id in reclaimed:
            logger.warning(
                f"Reclaimed stalled job {job_id} on {self.namespace}",
                extra={"job_id": job_id},
            )
        self._metrics.jobs_reclaimed += len(reclaimed)
        return len(reclaimed)

    async def _claim_one(self, redis: Redis) -> QueuedJob | None:
        keys = [
            *self._ready_keys(),
            self._key("active"),
            self._key("state"),
            self._key("attempts"),
        ]
        claimed = await self._claim_script(keys=keys, args=[_ms()])
        if not claimed:
            return None
        job_id, _ = claimed
        job = await self._load(redis, job_id)
        if job is None:
            await redis.zrem(self._key("active"), job_id)
            return None
        if job.attempts > job.max_attempts:
            # Its final attempt was already handed out and never settled
            job.attempts = job.max_attempts
            await self.dead_letter(
                job, job.last_error or f"Interrupted during final attempt {job.attempts}"
            )
            return None
        self._metrics.jobs_claimed += 1
        return job

    async def claim(self, timeout: float = 1.0) -> QueuedJob | None:
        redis = await self._get_client()
        deadline = time.monotonic() + timeout
        while True:
            await self._promote_due()
            await self._reclaim_stalled()

            job = await self._claim_one(redis)
            if job is not None:
                return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _finish(
        self, job: QueuedJob, state: JobState, index: str, error: str | None
    ) -> None:
        redis = await self._get_client()
        stored = await self._load(redis, job.id) or job
        stored.state = state
        stored.attempts = job.attempts
        stored.finished_at = datetime.now(UTC)
        if error is not None:
            stored.last_error = error
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("active"), job.id)
            self._write(pipe, stored)
            pipe.zadd(self._key(index), {job.id: _ms(stored.finished_at)})
            await pipe.execute()

    async def complete(self, job: QueuedJob) -> None:
        await self._finish(job, JobState.COMPLETED, "completed", None)
        self._metrics.jobs_completed += 1

    async def dead_letter(self, job: QueuedJob, error: str | None = None) -> None:
        await self._finish(job, JobState.DEAD_LETTERED, "dead", error)
        self._metrics.jobs_dead_lettered += 1
        logger.warning(
            f"Dead-lettered job {job.id} on {self.namespace}: {error}",
            extra={"job_id": job.id, "job_type": job.job_type, "error": error},
        )

    async def reschedule(self, job: QueuedJob, delay: float, error: str | None = None) -> None:
        redis = await self._get_client()
        stored = await self._load(redis, job.id) or job
        stored.last_error = error
        if delay > 0:
            stored.state = JobState.DELAYED
            stored.scheduled_for = datetime.now(UTC) + timedelta(seconds=delay)
            target, score = self._key("delayed"), _ms(stored.scheduled_for)
        else:
            stored.state = JobState.WAITING
            stored.scheduled_for = None
            target = self._key(f"ready:{stored.priority.value}")
            score = await redis.incr(self._key("seq"))
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("active"), job.id)
            self._write(pipe, stored)
            pipe.zadd(target, {job.id: score})
            await pipe.execute()
        self._metrics.jobs_rescheduled += 1

    async def get(self, job_id: str) -> QueuedJob | None:
        redis = await self._get_client()
        return await self._load(redis, job_id)

    async def stats(self) -> QueueStats:
        redis = await self._get_client()
        async with redis.pipeline(transaction=False) as pipe:
            for key in self._ready_keys():
                pipe.zcard(key)
            for part in ("delayed", "active", "completed", "dead"):
                pipe.zcard(self._key(part))
            *ready, delayed, active, completed, dead = await pipe.execute()
        return QueueStats(
            waiting=sum(ready), delayed=delayed, active=active, completed=completed, failed=dead
        )

    async def clean(self, older_than: float) -> int:
        redis = await self._get_client()
        cutoff = _ms() - int(older_than * 1000)
        removed = 0
        for part in ("completed", "dead"):
            ids = await redis.zrangebyscore(self._key(part), 0, cutoff)
            if not ids:
                continue
            async with redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._key(part), *ids)
                for table in ("jobs", "state", "attempts", "tier"):
                    pipe.hdel(self._key(table), *ids)
                await pipe.execute()
            removed += len(ids)
        if removed:
            logger.info(f"Cleaned {removed} finished jobs from {self.namespace}")
        return removed

    async def dead_letters(self) -> list[QueuedJob]:
        redis = await self._get_client()
        ids = await redis.zrange(self._key("dead"), 0, -1)
        jobs = [await self._load(redis, job_id) for job_id in ids]
        return [job for job in jobs if job is not None]

    async def health(self) -> BackendHealth:
        """Check backend health."""
        start = time.monotonic()
        try:
            redis = await self._get_client()
            await redis.ping()
            stats = await self.stats()
            latency = (time.monotonic() - start) * 1000
            return BackendHealth(
                healthy=True,
                latency_ms=latency,
                details={
                    "queue": self.namespace,
                    "waiting": stats.waiting,
                    "delayed": stats.delayed,
                    "active": stats.active,
                    "metrics": {
                        "pushed": self._metrics.jobs_pushed,
                        "claimed": self._metrics.jobs_claimed,
                        "completed": self._metrics.jobs_completed,
                        "dead_lettered": self._metrics.jobs_dead_lettered,
                    },
                },
            )
        except Exception as e:
            return BackendHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    async def delete_queue(self) -> None:
        """Delete every key of this queue (for testing)."""
        redis = await self._get_client()
        parts = ("jobs", "state", "attempts", "tier", "seq")
        parts += ("delayed", "active", "completed", "dead")
        keys = [self._key(p) for p in parts] + self._ready_keys()
        await redis.delete(*keys)

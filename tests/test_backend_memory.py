"""Tests for InMemoryQueueBackend."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from relaystack.backends.memory import InMemoryQueueBackend
from relaystack.core.models import JobState, Priority, QueuedJob


def make_job(priority: Priority = Priority.NORMAL, **kwargs) -> QueuedJob:
    return QueuedJob(job_type="notification", priority=priority, **kwargs)


@settings(max_examples=50)
@given(priorities=st.lists(st.sampled_from(list(Priority)), min_size=1, max_size=20))
async def test_claim_order_is_priority_then_fifo(priorities: list[Priority]):
    """Jobs come out highest tier first and in push order within a tier."""
    backend = InMemoryQueueBackend()
    jobs = [make_job(p) for p in priorities]
    for job in jobs:
        await backend.push(job)

    claimed = []
    for _ in jobs:
        job = await backend.claim(timeout=0.1)
        assert job is not None, "Expected job but got None"
        claimed.append(job.id)

    expected = [
        job.id
        for job in sorted(jobs, key=lambda j: -j.priority.rank)  # stable sort keeps FIFO
    ]
    assert claimed == expected
    assert await backend.claim(timeout=0.01) is None

    await backend.close()


async def test_claim_times_out_on_empty_queue():
    backend = InMemoryQueueBackend()
    assert await backend.claim(timeout=0.05) is None


async def test_claim_marks_active_and_counts_attempt():
    backend = InMemoryQueueBackend()
    job = make_job()
    await backend.push(job)

    claimed = await backend.claim(timeout=0.1)

    assert claimed.id == job.id
    assert claimed.state is JobState.ACTIVE
    assert claimed.attempts == 1
    assert (await backend.stats()).active == 1


@pytest.mark.timeout(5)
async def test_claim_wakes_on_push():
    backend = InMemoryQueueBackend()
    waiter = asyncio.create_task(backend.claim(timeout=2.0))
    await asyncio.sleep(0.01)

    await backend.push(make_job())

    assert (await waiter) is not None


async def test_delayed_job_is_invisible_until_due():
    backend = InMemoryQueueBackend()
    job = make_job(scheduled_for=datetime.now(UTC) + timedelta(seconds=0.2))
    await backend.push(job)

    assert job.state is JobState.DELAYED
    assert (await backend.stats()).delayed == 1
    assert await backend.claim(timeout=0.01) is None

    claimed = await backend.claim(timeout=2.0)
    assert claimed is not None
    assert claimed.id == job.id


@pytest.mark.timeout(5)
async def test_concurrent_claims_hand_out_each_job_once():
    backend = InMemoryQueueBackend()
    jobs = [make_job() for _ in range(20)]
    for job in jobs:
        await backend.push(job)

    results = await asyncio.gather(*(backend.claim(timeout=0.2) for _ in range(25)))

    claimed = [job.id for job in results if job is not None]
    assert sorted(claimed) == sorted(job.id for job in jobs)


async def test_complete_and_dead_letter():
    backend = InMemoryQueueBackend()
    first, second = make_job(), make_job()
    await backend.push(first)
    await backend.push(second)

    await backend.complete(await backend.claim(timeout=0.1))
    await backend.dead_letter(await backend.claim(timeout=0.1), "HTTP 400")

    stats = await backend.stats()
    assert (stats.completed, stats.failed, stats.depth) == (1, 1, 0)
    dead = await backend.dead_letters()
    assert [j.id for j in dead] == [second.id]
    assert dead[0].last_error == "HTTP 400"
    assert dead[0].finished_at is not None


async def test_reschedule_with_and_without_delay():
    backend = InMemoryQueueBackend()
    await backend.push(make_job(max_attempts=3))

    job = await backend.claim(timeout=0.1)
    await backend.reschedule(job, 0, "timeout")
    again = await backend.claim(timeout=0.1)
    assert again.id == job.id
    assert again.attempts == 2
    assert again.last_error == "timeout"

    await backend.reschedule(again, 60, "timeout")
    stored = await backend.get(job.id)
    assert stored.state is JobState.DELAYED
    assert await backend.claim(timeout=0.01) is None


async def test_clean_drops_old_finished_jobs():
    backend = InMemoryQueueBackend()
    await backend.push(make_job())
    await backend.push(make_job())
    await backend.complete(await backend.claim(timeout=0.1))

    await asyncio.sleep(0.01)
    assert await backend.clean(older_than=0) == 1
    assert await backend.clean(older_than=0) == 0
    assert len(backend) == 1


async def test_retention_limit():
    backend = InMemoryQueueBackend(max_retained=2)
    for _ in range(4):
        await backend.push(make_job())
        await backend.complete(await backend.claim(timeout=0.1))

    assert (await backend.stats()).completed == 2


async def test_unknown_job_is_ignored():
    backend = InMemoryQueueBackend()
    await backend.complete(make_job())
    assert (await backend.stats()).completed == 0


async def test_closed_backend():
    backend = InMemoryQueueBackend()
    await backend.close()

    assert await backend.claim(timeout=1.0) is None
    with pytest.raises(RuntimeError):
        await backend.push(make_job())

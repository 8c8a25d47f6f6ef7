"""Tests for business handlers and their per-handler queues."""

import asyncio
import time

import pytest

from relaystack.core.errors import ConfigurationError, HandlerError
from relaystack.core.event import Event
from relaystack.core.handlers import (
    Handler,
    HandlerQueueManager,
    InMemoryFailedEventStore,
)
from relaystack.core.metrics import HANDLER_ERRORS_TOTAL, InMemoryMetrics
from relaystack.core.models import RetryPolicy
from tests.conftest import RecordingHandler


class SyncHandler(Handler):
    listens_to = ["order.created"]

    def __init__(self):
        super().__init__()
        self.seen = []

    def handle(self, event: Event) -> None:
        self.seen.append(event.id)


class WildcardHandler(RecordingHandler):
    listens_to = ["*"]


class FailingHandler(Handler):
    listens_to = ["order.created"]

    def __init__(self, fail_times: int = 100, name: str | None = None):
        super().__init__(name=name)
        self.fail_times = fail_times
        self.calls = 0

    async def handle(self, event: Event) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ValueError(f"failure {self.calls}")


class RetryingHandler(FailingHandler):
    retry_policy = RetryPolicy(attempts=3, delay=0.01, backoff="linear")


class SlowHandler(RecordingHandler):
    timeout = 0.05

    async def handle(self, event: Event) -> None:
        await asyncio.sleep(1)


@pytest.fixture
async def manager():
    handlers = HandlerQueueManager(poll_interval=0.02, metrics=InMemoryMetrics())
    yield handlers
    await handlers.close()


def created(**payload) -> Event:
    return Event(event_type="order.created", payload=payload)


@pytest.mark.timeout(5)
async def test_matching_handlers_receive_event(manager):
    recorder, wildcard = RecordingHandler(), WildcardHandler()
    manager.register_handler(recorder)
    manager.register_handler(wildcard)
    await manager.start()

    await manager.submit(created(order_id="o-1"))
    await manager.submit(Event(event_type="user.login"))

    assert await manager.drain(timeout=2.0)
    assert [e.event_type for e in recorder.events] == ["order.created"]
    assert sorted(e.event_type for e in wildcard.events) == ["order.created", "user.login"]


async def test_submit_without_match_enqueues_nothing(manager):
    manager.register_handler(RecordingHandler())

    assert await manager.submit(Event(event_type="user.login")) == []
    assert manager.handlers_for("user.login") == []


@pytest.mark.timeout(5)
async def test_sync_handler(manager):
    handler = SyncHandler()
    manager.register_handler(handler)
    await manager.start()

    event = created()
    await manager.submit(event)

    assert await manager.drain(timeout=2.0)
    assert handler.seen == [event.id]


@pytest.mark.timeout(5)
async def test_failure_goes_to_failed_event_store():
    store = InMemoryFailedEventStore()
    manager = HandlerQueueManager(poll_interval=0.02, failed_event_store=store)
    handler = FailingHandler(name="billing")
    manager.register_handler(handler)
    await manager.start()

    event = created()
    await manager.submit(event)

    assert await manager.drain(timeout=2.0)
    await manager.close()
    assert handler.calls == 1
    [(failed_event, error)] = store.for_handler("billing")
    assert failed_event.id == event.id
    assert isinstance(error, HandlerError)
    assert str(error.original) == "failure 1"
    assert manager.get_stats().dead_lettered["billing"] == 1


@pytest.mark.timeout(5)
async def test_retry_policy_retries_handler(manager):
    handler = RetryingHandler(fail_times=2)
    manager.register_handler(handler)
    await manager.start()

    await manager.submit(created())

    assert await manager.drain(timeout=2.0)
    stats = manager.get_stats()
    assert handler.calls == 3
    assert stats.events_handled["RetryingHandler"] == 1
    assert stats.handler_errors["RetryingHandler"] == 2
    assert len(manager.failed_event_store) == 0
    assert manager.metrics.counter(HANDLER_ERRORS_TOTAL, handler="RetryingHandler") == 2


@pytest.mark.timeout(5)
async def test_handler_timeout(manager):
    manager.register_handler(SlowHandler())
    await manager.start()

    await manager.submit(created())

    assert await manager.drain(timeout=2.0)
    [(_, error)] = manager.failed_event_store.get_failed_events()
    assert isinstance(error.original, TimeoutError)
    assert "timed out after 0.05s" in str(error)


@pytest.mark.timeout(5)
async def test_slow_handler_does_not_block_others(manager, eventually):
    release = asyncio.Event()

    class BlockedHandler(RecordingHandler):
        async def handle(self, event: Event) -> None:
            await release.wait()
            self.events.append(event)

    blocked, fast = BlockedHandler(), RecordingHandler("fast")
    manager.register_handler(blocked)
    manager.register_handler(fast)
    await manager.start()

    await manager.submit(created())

    await eventually(lambda: len(fast.events) == 1)
    assert blocked.events == []
    release.set()
    assert await manager.drain(timeout=2.0)
    assert len(blocked.events) == 1


@pytest.mark.timeout(5)
async def test_sync_handler_runs_off_the_event_loop(manager):
    started = asyncio.Event()
    loop = asyncio.get_running_loop()

    class BlockingHandler(SyncHandler):
        def handle(self, event: Event) -> None:
            loop.call_soon_threadsafe(started.set)
            time.sleep(0.5)
            super().handle(event)

    handler = BlockingHandler()
    manager.register_handler(handler)
    await manager.start()
    await manager.submit(created())
    await started.wait()

    begin = time.monotonic()
    await asyncio.sleep(0.05)
    lag = time.monotonic() - begin

    assert lag < 0.3
    assert await manager.drain(timeout=2.0)
    assert len(handler.seen) == 1


@pytest.mark.timeout(5)
async def test_sync_handler_timeout(manager):
    class StuckHandler(SyncHandler):
        timeout = 0.05

        def handle(self, event: Event) -> None:
            time.sleep(0.3)

    manager.register_handler(StuckHandler())
    await manager.start()

    await manager.submit(created())

    assert await manager.drain(timeout=2.0)
    [(_, error)] = manager.failed_event_store.get_failed_events()
    assert isinstance(error.original, TimeoutError)


async def test_register_after_start_starts_queue(manager):
    await manager.start()
    handler = RecordingHandler()
    manager.register_handler(handler)
    await manager.start()

    assert manager.is_running
    assert len(manager) == 1
    assert set(await manager.stats()) == {"RecordingHandler"}


class TestRegistration:
    def test_listens_to_must_be_list(self):
        class BadHandler(Handler):
            listens_to = "order.created"

            async def handle(self, event):
                pass

        with pytest.raises(TypeError, match="must be a list"):
            HandlerQueueManager().register_handler(BadHandler())

    def test_listens_to_must_hold_strings(self):
        class BadHandler(Handler):
            listens_to = ["order.created", 42]

            async def handle(self, event):
                pass

        with pytest.raises(TypeError, match="only strings"):
            HandlerQueueManager().register_handler(BadHandler())

    def test_duplicate_name_rejected(self):
        manager = HandlerQueueManager()
        manager.register_handler(RecordingHandler())

        with pytest.raises(ConfigurationError):
            manager.register_handler(RecordingHandler())

    def test_concurrency_must_be_positive(self):
        class Zero(RecordingHandler):
            concurrency = 0

        with pytest.raises(ConfigurationError):
            HandlerQueueManager().register_handler(Zero())


class TestFailedEventStore:
    async def test_fifo_eviction(self):
        store = InMemoryFailedEventStore(max_size=2)
        events = [created(n=i) for i in range(3)]
        for event in events:
            await store.store(event, ValueError("x"))

        assert [e.id for e, _ in store.get_failed_events()] == [events[1].id, events[2].id]
        assert store.dropped_count == 1

    def test_empty_store_is_truthy(self):
        store = InMemoryFailedEventStore()
        assert store
        assert len(store) == 0

    async def test_clear(self):
        store = InMemoryFailedEventStore()
        await store.store(created(), ValueError("x"))
        store.clear()
        assert store.get_failed_events() == []

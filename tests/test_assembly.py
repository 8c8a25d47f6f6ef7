"""Tests for build_engine wiring and the Engine lifecycle."""

import pytest

from relaystack import Engine, build_backend, build_engine
from relaystack.backends.file import FileQueueBackend
from relaystack.backends.memory import InMemoryQueueBackend
from relaystack.backends.redis_backend import RedisQueueBackend
from relaystack.core.errors import ConfigurationError
from relaystack.core.models import EmissionStatus, EventTypeDefinition
from relaystack.core.storage import EVENT_TYPES, InMemoryStorage
from relaystack.recipients import StaticRecipientLoader
from tests.conftest import EVENT_TYPES as ORDER_EVENTS
from tests.conftest import ChatRecorder, RecordingHandler, RecordingProvider

ORDER = {"order_id": "o-1", "total": 5}


class TestBuildBackend:
    def test_memory(self, engine_settings):
        backend = build_backend(engine_settings(), "alerts")

        assert isinstance(backend, InMemoryQueueBackend)
        assert backend.name == "alerts"

    def test_file(self, engine_settings, tmp_path):
        backend = build_backend(engine_settings(queue_backend="file"), "alerts")

        assert isinstance(backend, FileQueueBackend)
        assert backend.path.parent == tmp_path / "queue-data"

    async def test_redis(self, engine_settings):
        backend = build_backend(
            engine_settings(queue_backend="redis", redis_url="redis://cache:6380/1"), "alerts"
        )

        assert isinstance(backend, RedisQueueBackend)
        await backend.close()


class TestBuildEngine:
    def test_wires_components(self, make_engine):
        storage = InMemoryStorage()
        engine = make_engine(
            providers=[RecordingProvider(), ChatRecorder()],
            handlers=[RecordingHandler()],
            storage=storage,
        )

        assert isinstance(engine, Engine)
        assert engine.registry.names() == list(ORDER_EVENTS)
        assert engine.providers.channels() == ["webhook", "chat"]
        assert len(engine.handlers) == 1
        assert engine.emitter.queue is engine.queue
        assert engine.orchestrator.storage is storage
        assert engine.retry.default_policy.delay == 0.01

    def test_empty_components_passed_in_are_kept(self, make_engine):
        backend = InMemoryQueueBackend(name="custom")
        storage = InMemoryStorage()
        assert len(backend) == 0 and len(storage) == 0

        engine = make_engine(queue_backend=backend, storage=storage)

        assert engine.queue.backend is backend
        assert engine.orchestrator.storage is storage
        assert engine.emitter.rate_limiter is engine.rate_limiter

    async def test_engine_rate_limiter_reset_reaches_emitter(self, make_engine):
        engine = make_engine()
        for _ in range(2):
            await engine.emit("user.login", {"user_id": "u-1"})
        limited = await engine.emit("user.login", {"user_id": "u-1"})
        assert limited.status is EmissionStatus.RATE_LIMITED

        engine.rate_limiter.reset()

        result = await engine.emit("user.login", {"user_id": "u-1"})
        assert result.status is EmissionStatus.ACCEPTED

    def test_invalid_event_type(self, make_engine):
        with pytest.raises(ConfigurationError, match="bad"):
            make_engine({"bad": {"schema": {"x": {"type": "uuid"}}}})

    def test_duplicate_provider(self, make_engine):
        with pytest.raises(ConfigurationError):
            make_engine(providers=[RecordingProvider(), RecordingProvider()])

    def test_event_types_as_list(self, make_engine):
        engine = make_engine([EventTypeDefinition(name="ping"), {"name": "pong"}])

        assert engine.registry.names() == ["ping", "pong"]

    async def test_register_provider_under_other_channel(self, make_engine):
        engine = make_engine({"alert": {"channels": ["pager"], "default_mode": "sync"}})
        provider = RecordingProvider(name="pager-http")
        engine.register_provider("pager", provider)

        result = await engine.emit("alert", {})

        assert result.results[0].channel == "pager"
        assert provider.sent[0][1].channel == "pager"

    async def test_recipient_loader_is_used(self, make_engine):
        provider = RecordingProvider()
        loader = StaticRecipientLoader(
            {"order.created": [{"id": "ops", "addresses": {"webhook": "https://ops"}}]}
        )
        engine = make_engine(providers=[provider], recipient_loader=loader)

        await engine.emit("order.created", ORDER)

        context = provider.sent[0][1]
        assert [r.id for r in context.recipients] == ["ops"]


class TestLifecycle:
    @pytest.mark.timeout(5)
    async def test_async_with_starts_and_closes(self, engine_settings):
        provider = RecordingProvider()
        storage = InMemoryStorage()

        async with build_engine(
            ORDER_EVENTS,
            settings=engine_settings(),
            providers=[provider],
            storage=storage,
            health_checks=False,
        ) as engine:
            assert engine.queue.is_running
            assert engine.handlers.is_running
            stored = await storage.get(EVENT_TYPES, "order.created")
            assert stored.name == "order.created"

        assert not engine.queue.is_running
        assert provider.closed

    async def test_start_is_idempotent(self, make_engine):
        engine = make_engine()

        await engine.start()
        await engine.start()

        assert engine.queue.is_running

    @pytest.mark.timeout(5)
    async def test_register_handler_after_start(self, make_engine):
        engine = make_engine(providers=[RecordingProvider()])
        await engine.start()
        handler = RecordingHandler()

        await engine.register_handler(handler)
        await engine.emit("order.created", ORDER)

        assert await engine.handlers.drain(timeout=2.0)
        assert len(handler.events) == 1

    @pytest.mark.timeout(5)
    async def test_health_loop_runs_when_enabled(self, make_engine, eventually):
        provider = RecordingProvider(healthy=False)
        engine = make_engine(
            providers=[provider],
            health_checks=True,
            settings={"health_check_interval": 0.02},
        )
        await engine.start()

        await eventually(lambda: not engine.health.is_healthy("webhook", "recording"))


class TestFileBackedEngine:
    @pytest.mark.timeout(10)
    async def test_queued_jobs_survive_restart(self, engine_settings):
        settings = engine_settings(queue_backend="file")

        first = build_engine(ORDER_EVENTS, settings=settings, health_checks=False)
        result = await first.emit("order.shipped", {"order_id": "o-1"})
        await first.close()
        assert result.status is EmissionStatus.QUEUED

        webhook, chat = RecordingProvider(), ChatRecorder()
        second = build_engine(
            ORDER_EVENTS, settings=settings, providers=[webhook, chat], health_checks=False
        )
        try:
            await second.start()
            assert await second.queue.drain(timeout=3.0)
        finally:
            await second.close()

        assert [p[0] for p in webhook.sent] == [{"order_id": "o-1"}]
        assert len(chat.sent) == 1


class TestProcessModes:
    def test_split_modes_need_a_shared_queue(self, make_engine):
        with pytest.raises(ConfigurationError, match="redis"):
            make_engine(settings={"mode": "api"})
        with pytest.raises(ConfigurationError, match="redis"):
            make_engine(settings={"mode": "worker", "queue_backend": "file"})

    def test_redis_settings_accepted_for_split_modes(self, make_engine):
        engine = make_engine(settings={"mode": "worker", "queue_backend": "redis"})

        assert isinstance(engine.queue.backend, RedisQueueBackend)

    @pytest.mark.timeout(10)
    async def test_api_engine_queues_and_worker_engine_delivers(self, make_engine):
        shared = InMemoryQueueBackend(name="shared")
        handler = RecordingHandler()
        api_webhook = RecordingProvider()
        api = make_engine(
            settings={"mode": "api"},
            queue_backend=shared,
            providers=[api_webhook],
            handlers=[handler],
        )
        await api.start()

        queued = await api.emit("order.shipped", {"order_id": "o-1"})
        sync = await api.emit("order.created", ORDER)
        assert await api.handlers.drain(timeout=2.0)

        assert queued.status is EmissionStatus.QUEUED
        assert sync.status is EmissionStatus.COMPLETED
        assert not api.queue.is_running
        assert (await shared.stats()).waiting == 2
        assert [p[0] for p in api_webhook.sent] == [ORDER]
        assert len(handler.events) == 2

        webhook, chat = RecordingProvider(), ChatRecorder()
        worker_handler = RecordingHandler()
        worker = make_engine(
            settings={"mode": "worker"},
            queue_backend=shared,
            providers=[webhook, chat],
            handlers=[worker_handler],
        )
        await worker.start()

        assert await worker.queue.drain(timeout=3.0)
        assert [p[0] for p in webhook.sent] == [{"order_id": "o-1"}]
        assert len(chat.sent) == 1
        assert not worker.handlers.is_running
        assert worker_handler.events == []

    async def test_worker_engine_rejects_emissions(self, make_engine):
        engine = make_engine(
            settings={"mode": "worker"}, queue_backend=InMemoryQueueBackend()
        )

        with pytest.raises(ConfigurationError, match="worker"):
            await engine.emit("order.created", ORDER)
        with pytest.raises(ConfigurationError):
            await engine.emit_and_wait("order.created", ORDER, timeout=1.0)

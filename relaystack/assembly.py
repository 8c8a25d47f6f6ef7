"""Explicit wiring of every engine component.

``build_engine`` is the only place components are constructed and connected;
nothing is discovered implicitly. Providers and handlers are registered
explicitly, before or after the engine starts.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from relaystack.backends.base import QueueBackend
from relaystack.backends.file import FileQueueBackend
from relaystack.backends.memory import InMemoryQueueBackend
from relaystack.backends.redis_backend import RedisQueueBackend
from relaystack.config import EngineSettings
from relaystack.core.emitter import EventEmitter
from relaystack.core.errors import ConfigurationError
from relaystack.core.handlers import FailedEventStore, Handler, HandlerQueueManager
from relaystack.core.health import ProviderHealthTracker
from relaystack.core.logging import configure_logging, get_logger
from relaystack.core.metrics import MetricsSink, NullMetrics
from relaystack.core.models import EmissionResult, EmitOptions, NotificationResult
from relaystack.core.orchestrator import NotificationOrchestrator
from relaystack.core.queue import QueueManager
from relaystack.core.ratelimit import RateLimiter
from relaystack.core.registry import EventTypeRegistry
from relaystack.core.retry import RetryPolicyExecutor
from relaystack.core.routing import ProviderRegistry
from relaystack.core.storage import InMemoryStorage, Storage
from relaystack.providers.base import ChannelProvider
from relaystack.recipients import RecipientLoader


def build_backend(settings: EngineSettings, name: str) -> QueueBackend:
    """Queue backend of the kind named by ``settings.queue_backend``."""
    if settings.queue_backend == "memory":
        return InMemoryQueueBackend(name=name)
    if settings.queue_backend == "redis":
        return RedisQueueBackend(
            settings.redis_url, name=name, poll_interval=settings.poll_interval
        )
    return FileQueueBackend(name=name, data_dir=settings.data_dir)


@dataclass
class Engine:
    """Every wired component, plus lifecycle and the emission surface."""

    settings: EngineSettings
    registry: EventTypeRegistry
    providers: ProviderRegistry
    health: ProviderHealthTracker
    retry: RetryPolicyExecutor
    rate_limiter: RateLimiter
    storage: Storage
    metrics: MetricsSink
    queue: QueueManager
    orchestrator: NotificationOrchestrator
    handlers: HandlerQueueManager
    emitter: EventEmitter
    health_checks: bool = True
    _running: bool = field(default=False, init=False, repr=False)

    def register_provider(self, channel: str, provider: ChannelProvider) -> None:
        self.providers.register(channel, provider)

    async def register_handler(self, handler: Handler) -> None:
        self.handlers.register_handler(handler)
        if self._running and self.settings.mode != "worker":
            await self.handlers.start()

    def _accepts_emissions(self) -> None:
        if self.settings.mode == "worker":
            raise ConfigurationError(
                "A worker-mode engine only delivers queued jobs; emit from an api or hybrid engine"
            )

    async def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
        options: EmitOptions | None = None,
    ) -> EmissionResult:
        self._accepts_emissions()
        return await self.emitter.emit(event_type, payload, options)

    async def emit_sync(
        self, event_type: str, payload: Mapping[str, Any] | None = None, **options: Any
    ) -> EmissionResult:
        self._accepts_emissions()
        return await self.emitter.emit_sync(event_type, payload, **options)

    async def emit_async(
        self, event_type: str, payload: Mapping[str, Any] | None = None, **options: Any
    ) -> EmissionResult:
        self._accepts_emissions()
        return await self.emitter.emit_async(event_type, payload, **options)

    async def emit_and_wait(
        self,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        **options: Any,
    ) -> EmissionResult:
        self._accepts_emissions()
        return await self.emitter.emit_and_wait(event_type, payload, timeout, **options)

    async def get_results(self, correlation_id: str) -> list[NotificationResult]:
        return await self.emitter.get_results(correlation_id)

    async def start(self) -> None:
        """Start queue workers, handler workers and health checks. Idempotent.

        An ``api`` engine only opens the notification queue; a ``worker``
        engine starts no handler workers.
        """
        if self._running:
            return
        mode = self.settings.mode
        await self.registry.persist()
        if mode == "api":
            await self.queue.backend.open()
        else:
            await self.queue.start()
        if mode != "worker":
            await self.handlers.start()
        if self.health_checks:
            self.health.start(self.providers)
        self._running = True
        get_logger("engine").info(
            "Engine started",
            extra={
                "mode": mode,
                "event_types": len(self.registry),
                "channels": self.providers.channels(),
                "handlers": len(self.handlers),
            },
        )

    async def close(self) -> None:
        self._running = False
        await self.health.stop()
        await self.queue.close()
        await self.handlers.close()
        await self.orchestrator.close()

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def build_engine(
    event_types: Iterable[Mapping[str, Any]] | Mapping[str, Mapping[str, Any]],
    *,
    settings: EngineSettings | None = None,
    providers: Iterable[ChannelProvider] = (),
    handlers: Iterable[Handler] = (),
    recipient_loader: RecipientLoader | None = None,
    storage: Storage | None = None,
    metrics: MetricsSink | None = None,
    queue_backend: QueueBackend | None = None,
    failed_event_store: FailedEventStore | None = None,
    health_checks: bool = True,
) -> Engine:
    """Construct and connect every component.

    Args:
        event_types: Event type definitions (see ``EventTypeRegistry.from_config``).
        settings: Engine settings; read from the environment if None.
        providers: Registered on their own ``channel``. Use
            ``Engine.register_provider`` for another channel name.
        handlers: Business handlers.
        recipient_loader: Optional recipient resolution.
        storage: Results, emissions and health records; in-memory if None.
        metrics: Metrics sink; discarded if None.
        queue_backend: Notification queue backend; built from settings if None.
        failed_event_store: Where handler failures end up.
        health_checks: Run the background provider health loop.

    Raises:
        ConfigurationError: On invalid event types or provider configuration,
            or an api/worker mode without a shared queue backend.
    """
    settings = settings if settings is not None else EngineSettings()
    if settings.mode != "hybrid" and queue_backend is None and settings.queue_backend != "redis":
        raise ConfigurationError(
            f"Engine mode '{settings.mode}' needs the redis queue backend shared with "
            f"other processes, not '{settings.queue_backend}'"
        )
    configure_logging(settings.log_level)
    storage = storage if storage is not None else InMemoryStorage()
    metrics = metrics if metrics is not None else NullMetrics()

    registry = EventTypeRegistry.from_config(event_types, storage=storage)
    provider_registry = ProviderRegistry()
    for provider in providers:
        provider_registry.register(provider.channel, provider)

    retry = RetryPolicyExecutor(default_policy=settings.default_retry_policy)
    health = ProviderHealthTracker(
        failure_threshold=settings.health_failure_threshold,
        check_interval=settings.health_check_interval,
        check_timeout=settings.health_check_timeout,
        storage=storage,
    )
    if queue_backend is None:
        queue_backend = build_backend(settings, settings.queue_name)
    queue = QueueManager(
        queue_backend,
        concurrency=settings.notification_concurrency,
        poll_interval=settings.poll_interval,
        metrics=metrics,
    )
    orchestrator = NotificationOrchestrator(
        registry,
        provider_registry,
        health,
        retry=retry,
        recipient_loader=recipient_loader,
        storage=storage,
        metrics=metrics,
        send_timeout=settings.provider_send_timeout,
        continue_after_timeout=settings.continue_after_timeout,
    )
    orchestrator.attach(queue)

    handler_manager = HandlerQueueManager(
        concurrency=settings.handler_concurrency,
        handler_timeout=settings.handler_timeout,
        backend_factory=lambda name: build_backend(settings, name),
        failed_event_store=failed_event_store,
        retry=retry,
        metrics=metrics,
        poll_interval=settings.poll_interval,
    )
    for handler in handlers:
        handler_manager.register_handler(handler)

    rate_limiter = RateLimiter()
    emitter = EventEmitter(
        registry,
        orchestrator,
        queue,
        handlers=handler_manager,
        rate_limiter=rate_limiter,
        storage=storage,
        metrics=metrics,
        default_timeout=settings.default_timeout,
        raise_on_rejection=settings.raise_on_rejection,
    )
    return Engine(
        settings=settings,
        registry=registry,
        providers=provider_registry,
        health=health,
        retry=retry,
        rate_limiter=rate_limiter,
        storage=storage,
        metrics=metrics,
        queue=queue,
        orchestrator=orchestrator,
        handlers=handler_manager,
        emitter=emitter,
        health_checks=health_checks,
    )

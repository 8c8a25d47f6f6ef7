"""Pytest configuration, Hypothesis profiles and shared test doubles."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from hypothesis import settings

from relaystack import build_engine
from relaystack.config import EngineSettings
from relaystack.core.errors import ProviderFailureError
from relaystack.core.handlers import Handler
from relaystack.core.models import (
    BackoffKind,
    DeliveryContext,
    NotificationResult,
    RetryPolicy,
)
from relaystack.providers.base import ChannelProvider

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")

FAST_RETRY = RetryPolicy(
    attempts=3, delay=0.01, backoff=BackoffKind.EXPONENTIAL, max_delay=0.05
)

EVENT_TYPES: dict[str, dict[str, Any]] = {
    "order.created": {
        "description": "A customer placed an order",
        "schema": {
            "order_id": {"type": "string"},
            "total": {"type": "number"},
            "note": {"type": "string", "required": False},
        },
        "channels": ["webhook"],
        "default_mode": "sync",
        "retry_policy": {"attempts": 3, "delay": 0.01, "backoff": "exponential"},
    },
    "order.shipped": {
        "schema": {"order_id": {"type": "string"}},
        "channels": ["webhook", "chat"],
        "default_mode": "async",
        "retry_policy": {"attempts": 3, "delay": 0.01, "backoff": "linear"},
    },
    "user.login": {
        "schema": {"user_id": {"type": "string"}},
        "channels": [],
        "default_mode": "sync",
        "rate_limit": {"window": 60, "max_requests": 2, "key_fields": ["user_id"]},
    },
    "audit.legacy": {"channels": ["webhook"], "enabled": False},
}


class RecordingProvider(ChannelProvider):
    """Records every delivered payload.

    Fails the first ``fail_times`` calls with ``error`` and sleeps ``delay``
    seconds before answering.
    """

    channel = "webhook"

    def __init__(
        self,
        name: str | None = None,
        fail_times: int = 0,
        error: Exception | None = None,
        delay: float = 0.0,
        healthy: bool = True,
    ):
        super().__init__(name or "recording")
        self.fail_times = fail_times
        self.error = error or ProviderFailureError("upstream unavailable")
        self.delay = delay
        self.healthy = healthy
        self.calls = 0
        self.sent: list[tuple[dict[str, Any], DeliveryContext]] = []
        self.closed = False

    async def send(self, payload: dict[str, Any], context: DeliveryContext) -> NotificationResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise self.error
        self.sent.append((payload, context))
        return self.result(context)

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self.closed = True


class ChatRecorder(RecordingProvider):
    channel = "chat"


class RecordingHandler(Handler):
    """Collects every event it receives."""

    listens_to = ["order.created", "order.shipped"]

    def __init__(self, name: str | None = None):
        super().__init__(name=name)
        self.events = []

    async def handle(self, event):
        self.events.append(event)


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self) -> list[str]:
        return [r.getMessage() for r in self.records]

    def clear(self) -> None:
        self.records.clear()


@pytest.fixture
def log_capture():
    """Attach a LogCapture to the package root logger at DEBUG level."""
    logger = logging.getLogger("relaystack")
    capture = LogCapture()
    previous = logger.level
    logger.addHandler(capture)
    logger.setLevel(logging.DEBUG)
    yield capture
    logger.removeHandler(capture)
    logger.setLevel(previous)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds, failing after ``timeout`` seconds."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return wait


@pytest.fixture
def engine_settings(tmp_path) -> Callable[..., EngineSettings]:
    def make(**overrides: Any) -> EngineSettings:
        values: dict[str, Any] = {
            "queue_backend": "memory",
            "data_dir": tmp_path / "queue-data",
            "poll_interval": 0.02,
            "health_check_interval": 60.0,
            "default_retry_policy": FAST_RETRY,
            "log_level": "WARNING",
        }
        values.update(overrides)
        return EngineSettings(**values)

    return make


@pytest.fixture
async def make_engine(engine_settings):
    """Factory for fully wired engines; every engine built is closed afterwards."""
    engines = []

    def factory(event_types=None, *, settings: dict[str, Any] | None = None, **kwargs: Any):
        kwargs.setdefault("health_checks", False)
        engine = build_engine(
            EVENT_TYPES if event_types is None else event_types,
            settings=engine_settings(**(settings or {})),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.close()

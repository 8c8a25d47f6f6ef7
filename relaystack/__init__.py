"""RelayStack - Async-first event notification engine for Python."""

from relaystack.assembly import Engine, build_backend, build_engine
from relaystack.backends import (
    FileQueueBackend,
    InMemoryQueueBackend,
    QueueBackend,
    RedisQueueBackend,
)
from relaystack.config import EngineSettings, load_event_types
from relaystack.core import (
    ConfigurationError,
    DeliveryContext,
    DeliveryStatus,
    EmissionResult,
    EmissionStatus,
    EmitOptions,
    Event,
    EventEmitter,
    EventNotFoundError,
    EventTypeDefinition,
    FailedEventStore,
    Handler,
    HandlerError,
    InMemoryFailedEventStore,
    InMemoryMetrics,
    InMemoryStorage,
    NotificationResult,
    PayloadValidationError,
    Priority,
    ProcessingMode,
    ProviderFailureError,
    QueueBackendError,
    RateLimitedError,
    Recipient,
    RelayStackError,
    RetryExhaustedError,
    RetryPolicy,
    TemplateNotFoundError,
)
from relaystack.providers import ChannelProvider
from relaystack.recipients import RecipientLoader, StaticRecipientLoader
from relaystack.templates import TemplateRenderer

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "build_engine",
    "build_backend",
    "EngineSettings",
    "load_event_types",
    "Event",
    "EventEmitter",
    "EventTypeDefinition",
    "EmitOptions",
    "EmissionResult",
    "EmissionStatus",
    "DeliveryContext",
    "DeliveryStatus",
    "NotificationResult",
    "Priority",
    "ProcessingMode",
    "Recipient",
    "RetryPolicy",
    "Handler",
    "ChannelProvider",
    "RecipientLoader",
    "StaticRecipientLoader",
    "TemplateRenderer",
    "QueueBackend",
    "InMemoryQueueBackend",
    "FileQueueBackend",
    "RedisQueueBackend",
    "FailedEventStore",
    "InMemoryFailedEventStore",
    "InMemoryMetrics",
    "InMemoryStorage",
    "RelayStackError",
    "ConfigurationError",
    "EventNotFoundError",
    "PayloadValidationError",
    "RateLimitedError",
    "ProviderFailureError",
    "RetryExhaustedError",
    "QueueBackendError",
    "HandlerError",
    "TemplateNotFoundError",
]

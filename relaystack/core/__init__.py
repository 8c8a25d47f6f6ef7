"""Core components for the RelayStack notification engine.

This module exposes the primary types, constants, and utilities:

Types:
    Event: Immutable, validated emission with UUID, timestamp, type, payload
        and correlation id.
    EventTypeDefinition: Per-event-type configuration (schema, channels,
        mode, priority, retry and rate-limit policies).
    EmitOptions / EmissionResult: Per-call overrides and the emit outcome.
    NotificationResult: Outcome of one delivery on one channel.
    QueuedJob: Unit of work owned by a queue backend.

Components:
    EventTypeRegistry: Event type definitions loaded at startup.
    EventEmitter: Public emission surface.
    NotificationOrchestrator: Routes an event to a provider per channel.
    QueueManager: Worker pool over a queue backend.
    HandlerQueueManager: Per-handler queues for business handlers.
    RetryPolicyExecutor: Backoff arithmetic and the inline retry loop.
    RateLimiter: Fixed-window admission control.
    ProviderHealthTracker: Consecutive-failure health per provider.

Failure Handling:
    RelayStackError and its subclasses (see ``relaystack.core.errors``).
    FailedEventStore: Protocol for storing events a handler gave up on.
    InMemoryFailedEventStore: Simple in-memory implementation.

Constants:
    MAX_PAYLOAD_SIZE: Maximum payload size in bytes (1MB).
"""

from relaystack.core.emitter import EventEmitter
from relaystack.core.errors import (
    ConfigurationError,
    EventNotFoundError,
    HandlerError,
    PayloadValidationError,
    ProviderFailureError,
    QueueBackendError,
    RateLimitedError,
    RelayStackError,
    RetryExhaustedError,
    TemplateNotFoundError,
)
from relaystack.core.event import MAX_PAYLOAD_SIZE, Event
from relaystack.core.handlers import (
    FailedEventStore,
    Handler,
    HandlerQueueManager,
    HandlerStats,
    InMemoryFailedEventStore,
)
from relaystack.core.health import ProviderHealthTracker
from relaystack.core.metrics import InMemoryMetrics, MetricsSink, NullMetrics
from relaystack.core.models import (
    BackoffKind,
    DeliveryContext,
    DeliveryStatus,
    EmissionResult,
    EmissionStatus,
    EmitOptions,
    EventTypeDefinition,
    FieldError,
    FieldSchema,
    FieldType,
    JobState,
    NotificationResult,
    Priority,
    ProcessingMode,
    ProviderHealthRecord,
    QueuedJob,
    RateLimitPolicy,
    Recipient,
    RetryPolicy,
)
from relaystack.core.orchestrator import NotificationOrchestrator
from relaystack.core.queue import QueueManager
from relaystack.core.ratelimit import RateLimiter
from relaystack.core.registry import EventTypeRegistry
from relaystack.core.retry import DEFAULT_RETRY_POLICY, RetryDecision, RetryPolicyExecutor
from relaystack.core.routing import ProviderRegistry
from relaystack.core.storage import InMemoryStorage, Storage

__all__ = [
    # Model
    "Event",
    "MAX_PAYLOAD_SIZE",
    "BackoffKind",
    "DeliveryContext",
    "DeliveryStatus",
    "EmissionResult",
    "EmissionStatus",
    "EmitOptions",
    "EventTypeDefinition",
    "FieldError",
    "FieldSchema",
    "FieldType",
    "JobState",
    "NotificationResult",
    "Priority",
    "ProcessingMode",
    "ProviderHealthRecord",
    "QueuedJob",
    "RateLimitPolicy",
    "Recipient",
    "RetryPolicy",
    # Components
    "EventEmitter",
    "EventTypeRegistry",
    "NotificationOrchestrator",
    "QueueManager",
    "HandlerQueueManager",
    "Handler",
    "HandlerStats",
    "RetryPolicyExecutor",
    "RetryDecision",
    "DEFAULT_RETRY_POLICY",
    "RateLimiter",
    "ProviderHealthTracker",
    "ProviderRegistry",
    "Storage",
    "InMemoryStorage",
    "MetricsSink",
    "InMemoryMetrics",
    "NullMetrics",
    # Failure handling
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
    "FailedEventStore",
    "InMemoryFailedEventStore",
]

"""Data model for event types, emissions, deliveries and queue jobs."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProcessingMode(str, Enum):
    """How an emission is delivered."""

    SYNC = "sync"
    ASYNC = "async"
    AUTO = "auto"


class Priority(str, Enum):
    """Queue priority tier. Higher rank is drained first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.NORMAL: 1, Priority.HIGH: 2}


class BackoffKind(str, Enum):
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class FieldType(str, Enum):
    """Primitive kinds a payload field may declare."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"


class EmissionStatus(str, Enum):
    ACCEPTED = "accepted"
    QUEUED = "queued"
    COMPLETED = "completed"
    REJECTED = "rejected"
    RATE_LIMITED = "rate_limited"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"


class FieldSchema(BaseModel):
    """Declared type of a single payload field."""

    type: FieldType
    required: bool = True
    description: str = ""

    model_config = {"extra": "forbid", "frozen": True}


class RetryPolicy(BaseModel):
    """Retry budget and backoff for failed deliveries.

    Attributes:
        attempts: Total attempts including the first one (>= 1).
        delay: Initial delay in seconds.
        backoff: Delay growth strategy. ``none`` disallows retries.
        max_delay: Optional cap on any single delay, in seconds.
    """

    attempts: int = Field(default=3, ge=1)
    delay: float = Field(default=1.0, ge=0)
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    max_delay: float | None = Field(default=None, gt=0)

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def check_cap(self) -> "RetryPolicy":
        if self.max_delay is not None and self.delay > self.max_delay:
            raise ValueError("delay cannot be greater than max_delay")
        return self


class RateLimitPolicy(BaseModel):
    """Fixed-window admission policy.

    ``key_fields`` is required: it names the payload fields that are joined
    onto the event type name to form the limiter key. An empty list limits
    the event type as a whole.
    """

    window: float = Field(gt=0)
    max_requests: int = Field(ge=1)
    key_fields: list[str]

    model_config = {"extra": "forbid", "frozen": True}


class EventTypeDefinition(BaseModel):
    """Immutable configuration for one event type."""

    name: str
    description: str = ""
    schema_: dict[str, FieldSchema] = Field(default_factory=dict, alias="schema")
    channels: list[str] = Field(default_factory=list)
    default_mode: ProcessingMode = ProcessingMode.ASYNC
    wait_for_result: bool = False
    priority: Priority = Priority.NORMAL
    retry_policy: RetryPolicy | None = None
    rate_limit: RateLimitPolicy | None = None
    timeout: float | None = Field(default=None, gt=0)
    delay: float = Field(default=0.0, ge=0)
    templates: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event type name must not be empty")
        return v

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError(f"channels must be unique, got {v}")
        return v

    @property
    def fields(self) -> dict[str, FieldSchema]:
        return self.schema_


class EmitOptions(BaseModel):
    """Per-call overrides for an emission."""

    mode: ProcessingMode | None = None
    wait_for_result: bool | None = None
    priority: Priority | None = None
    delay: float | None = Field(default=None, ge=0)
    correlation_id: str | None = None
    timeout: float | None = Field(default=None, gt=0)

    model_config = {"extra": "forbid"}


class FieldError(BaseModel):
    """One offending payload field."""

    field: str
    reason: str  # "missing" or "type"
    expected: FieldType
    actual: str | None = None

    def __str__(self) -> str:
        if self.reason == "missing":
            return f"{self.field}: required {self.expected.value} field is missing"
        return f"{self.field}: expected {self.expected.value}, got {self.actual}"


class Recipient(BaseModel):
    """Addressee of a notification, with one address per channel."""

    id: str
    name: str = ""
    addresses: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def address_for(self, channel: str) -> str | None:
        return self.addresses.get(channel)


class DeliveryContext(BaseModel):
    """What a provider knows about the attempt it is serving."""

    event_id: str
    correlation_id: str
    event_type: str
    channel: str
    attempt: int = 1
    recipients: list[Recipient] = Field(default_factory=list)
    template_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class NotificationResult(BaseModel):
    """Outcome of delivering one event on one channel."""

    channel: str
    provider: str
    status: DeliveryStatus
    attempts: int = 1
    timestamp: datetime = Field(default_factory=_utcnow)
    error: str | None = None
    timed_out: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is DeliveryStatus.SENT


class EmissionResult(BaseModel):
    """What ``emit`` returns to the caller."""

    status: EmissionStatus
    event_id: str
    event_type: str
    correlation_id: str
    mode: ProcessingMode | None = None
    results: list[NotificationResult] | None = None
    errors: list[FieldError] | None = None
    job_ids: list[str] = Field(default_factory=list)
    duration: float = 0.0
    created_at: datetime = Field(default_factory=_utcnow)


class QueuedJob(BaseModel):
    """A unit of work owned by a queue backend from enqueue until it finishes."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=_utcnow)
    attempts: int = 0
    max_attempts: int = Field(default=1, ge=1)
    scheduled_for: datetime | None = None
    priority: Priority = Priority.NORMAL
    state: JobState = JobState.WAITING
    last_error: str | None = None
    finished_at: datetime | None = None
    correlation_id: str | None = None

    @property
    def finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.DEAD_LETTERED)


class QueueStats(BaseModel):
    """Job counts per state. ``failed`` counts dead-lettered jobs."""

    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    model_config = {"frozen": True}

    @property
    def depth(self) -> int:
        """Jobs not yet finished."""
        return self.waiting + self.delayed + self.active


class ProviderHealthRecord(BaseModel):
    """Health of one provider on one channel."""

    channel: str
    provider: str
    is_healthy: bool = True
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_check_at: datetime | None = None
    last_error: str | None = None

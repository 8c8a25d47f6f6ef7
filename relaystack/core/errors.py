"""Exception taxonomy for RelayStack."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from relaystack.core.models import FieldError


class RelayStackError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(RelayStackError):
    """Raised at startup when configuration is inconsistent."""

    retryable = False


class EventNotFoundError(RelayStackError):
    """Raised when an event type is unknown or disabled."""

    retryable = False

    def __init__(self, event_type: str, disabled: bool = False):
        self.event_type = event_type
        self.disabled = disabled
        reason = "is disabled" if disabled else "is not registered"
        super().__init__(f"Event type '{event_type}' {reason}")


class PayloadValidationError(RelayStackError):
    """Raised when a payload does not satisfy its event type schema.

    Attributes:
        event_type: The event type the payload was emitted for.
        errors: Every offending field, in schema order.
    """

    def __init__(
        self, event_type: str, errors: list["FieldError"], detail: str | None = None
    ):
        self.event_type = event_type
        self.errors = errors
        details = detail or "; ".join(str(e) for e in errors)
        super().__init__(f"Invalid payload for '{event_type}': {details}")

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


class RateLimitedError(RelayStackError):
    """Raised by callers that prefer an exception to a rate_limited result."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Rate limit exceeded for '{key}'")


class ProviderFailureError(RelayStackError):
    """A single delivery attempt failed.

    Attributes:
        channel: Channel the attempt was made on.
        provider: Provider name, if one was selected.
        retryable: False when retrying cannot help (e.g. a 4xx response).
    """

    def __init__(
        self,
        message: str,
        channel: str | None = None,
        provider: str | None = None,
        retryable: bool = True,
    ):
        self.channel = channel
        self.provider = provider
        self.retryable = retryable
        super().__init__(message)


class RetryExhaustedError(RelayStackError):
    """Terminal failure after the retry policy ran out of attempts."""

    def __init__(self, attempts: int, last_error: str | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry exhausted after {attempts} attempt(s)")

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base


class QueueBackendError(RelayStackError):
    """Infrastructure failure while talking to a queue backend."""

    def __init__(self, original: Exception, operation: str = "enqueue"):
        self.original = original
        self.operation = operation
        super().__init__(f"Queue backend {operation} failed: {original}")


class HandlerError(RelayStackError):
    """A business handler raised. Caught at the handler boundary."""

    def __init__(self, handler: str, original: Exception):
        self.handler = handler
        self.original = original
        super().__init__(f"Handler {handler} failed: {original}")


class TemplateNotFoundError(RelayStackError, KeyError):
    """Raised when rendering a template id that was never registered."""

    retryable = False

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template '{template_id}' is not registered")

    def __str__(self) -> str:
        return self.args[0]

"""ChannelProvider base class for RelayStack delivery integrations."""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from relaystack.core.models import DeliveryContext, DeliveryStatus, NotificationResult


class ChannelProvider(ABC):
    """Base class for delivery integrations.

    A provider delivers one event on one channel. It is registered by name
    at startup (``Engine.register_provider(channel, provider)``); several
    providers may serve the same channel, in which case the first healthy
    one is used.

    Subclasses set ``channel`` and implement ``send``. ``send`` either returns
    a NotificationResult or raises; a returned ``failed`` result and a raised
    exception are both treated as a failed attempt.
    """

    channel: ClassVar[str] = ""

    def __init__(self, name: str | None = None) -> None:
        """Initialize the provider.

        Args:
            name: Optional provider name. Defaults to the class name.
        """
        self.name = name or self.__class__.__name__

    @abstractmethod
    async def send(self, payload: dict[str, Any], context: DeliveryContext) -> NotificationResult:
        """Deliver ``payload`` for the attempt described by ``context``."""
        ...

    async def health_check(self) -> bool:
        """Return True if the provider can currently deliver."""
        return True

    def validate_config(self, config: Any) -> bool | list[str]:
        """Validate provider configuration; True or a list of problems."""
        return True

    async def close(self) -> None:
        """Release any held connections."""

    def result(
        self,
        context: DeliveryContext,
        status: DeliveryStatus = DeliveryStatus.SENT,
        error: str | None = None,
        **metadata: Any,
    ) -> NotificationResult:
        """Build a NotificationResult for ``context``."""
        return NotificationResult(
            channel=context.channel,
            provider=self.name,
            status=status,
            attempts=context.attempt,
            error=error,
            metadata=metadata,
        )


def template_variables(payload: dict[str, Any], context: DeliveryContext) -> dict[str, Any]:
    """Variables available to notification templates: the payload plus context."""
    return {
        **payload,
        "event_id": context.event_id,
        "event_type": context.event_type,
        "correlation_id": context.correlation_id,
        "recipients": [r.model_dump() for r in context.recipients],
    }

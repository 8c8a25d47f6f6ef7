"""Recipient resolution for notification deliveries."""

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from relaystack.core.models import Recipient


class RecipientLoader(Protocol):
    """Resolves who an event should be delivered to."""

    async def resolve(self, event_type: str, payload: Mapping[str, Any]) -> list[Recipient]: ...


class StaticRecipientLoader:
    """Fixed recipients per event type, with optional payload-derived ones.

    Args:
        recipients: Event type -> recipients. The ``"*"`` entry applies to
            every event type.
        payload_fields: Channel -> payload field holding an address for that
            channel (e.g. ``{"email": "customer_email"}``). When the field is
            present, an extra recipient is added with that address.
    """

    def __init__(
        self,
        recipients: Mapping[str, Iterable[Recipient | Mapping[str, Any]]] | None = None,
        payload_fields: Mapping[str, str] | None = None,
    ) -> None:
        self._recipients: dict[str, list[Recipient]] = {
            event_type: [
                r if isinstance(r, Recipient) else Recipient.model_validate(r) for r in items
            ]
            for event_type, items in (recipients or {}).items()
        }
        self._payload_fields = dict(payload_fields or {})

    async def resolve(self, event_type: str, payload: Mapping[str, Any]) -> list[Recipient]:
        resolved = [*self._recipients.get("*", []), *self._recipients.get(event_type, [])]
        addresses = {
            channel: str(payload[field])
            for channel, field in self._payload_fields.items()
            if payload.get(field)
        }
        if addresses:
            resolved.append(Recipient(id=f"payload:{event_type}", addresses=addresses))
        return resolved


def for_channel(recipients: Iterable[Recipient], channel: str) -> list[Recipient]:
    """Recipients that have an address on ``channel``."""
    return [r for r in recipients if r.address_for(channel)]

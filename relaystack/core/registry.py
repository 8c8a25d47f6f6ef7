"""Registry of event type definitions, loaded once at startup."""

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from pydantic import ValidationError

from relaystack.core.errors import ConfigurationError, EventNotFoundError
from relaystack.core.logging import get_logger
from relaystack.core.models import EventTypeDefinition
from relaystack.core.storage import EVENT_TYPES, Storage


class EventTypeRegistry:
    """Holds one immutable EventTypeDefinition per event type name.

    Construction fails fast with ConfigurationError if two definitions share
    a name or a definition is invalid (unknown field type, bad policy).
    ``set_enabled`` is the only runtime mutation; it swaps in a copy of the
    definition rather than changing it in place.
    """

    def __init__(
        self,
        definitions: Iterable[EventTypeDefinition | Mapping[str, Any]] = (),
        storage: Storage | None = None,
    ) -> None:
        self._definitions: dict[str, EventTypeDefinition] = {}
        self._storage = storage
        self._log = get_logger("registry")
        for item in definitions:
            self._add(item)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Mapping[str, Any]] | Iterable[Mapping[str, Any]],
        storage: Storage | None = None,
    ) -> "EventTypeRegistry":
        """Build a registry from raw configuration.

        Accepts either a mapping of name -> definition body, or a list of
        definition bodies that each carry a ``name``.
        """
        if isinstance(config, Mapping):
            items = [{"name": name, **body} for name, body in config.items()]
        else:
            items = list(config)
        return cls(items, storage=storage)

    def _add(self, item: EventTypeDefinition | Mapping[str, Any]) -> None:
        if isinstance(item, EventTypeDefinition):
            definition = item
        else:
            try:
                definition = EventTypeDefinition.model_validate(dict(item))
            except ValidationError as e:
                name = item.get("name", "<unnamed>") if isinstance(item, Mapping) else item
                raise ConfigurationError(f"Invalid event type '{name}': {e}") from e

        if definition.name in self._definitions:
            raise ConfigurationError(f"Duplicate event type name: '{definition.name}'")
        self._definitions[definition.name] = definition

    def get(self, name: str) -> EventTypeDefinition:
        """Return the definition for ``name``.

        Raises:
            EventNotFoundError: If no such event type is registered.
        """
        try:
            return self._definitions[name]
        except KeyError:
            raise EventNotFoundError(name) from None

    def get_enabled(self, name: str) -> EventTypeDefinition:
        """Like ``get``, but also rejects disabled event types."""
        definition = self.get(name)
        if not definition.enabled:
            raise EventNotFoundError(name, disabled=True)
        return definition

    def is_enabled(self, name: str) -> bool:
        definition = self._definitions.get(name)
        return definition is not None and definition.enabled

    async def set_enabled(self, name: str, enabled: bool) -> EventTypeDefinition:
        """Enable or disable an event type at runtime."""
        definition = self.get(name).model_copy(update={"enabled": enabled})
        self._definitions[name] = definition
        self._log.info(
            f"Event type {name} {'enabled' if enabled else 'disabled'}",
            extra={"event_type": name, "enabled": enabled},
        )
        if self._storage is not None:
            await self._storage.put(EVENT_TYPES, name, definition)
        return definition

    async def persist(self) -> None:
        """Write every definition to storage, if storage is configured."""
        if self._storage is None:
            return
        for name, definition in self._definitions.items():
            await self._storage.put(EVENT_TYPES, name, definition)

    def names(self) -> list[str]:
        return list(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[EventTypeDefinition]:
        return iter(list(self._definitions.values()))

    def __len__(self) -> int:
        return len(self._definitions)

"""Tests for the event type registry."""

import pytest

from relaystack.core.errors import ConfigurationError, EventNotFoundError
from relaystack.core.models import EventTypeDefinition
from relaystack.core.registry import EventTypeRegistry
from relaystack.core.storage import EVENT_TYPES, InMemoryStorage
from tests.conftest import EVENT_TYPES as CONFIG


def test_from_mapping():
    registry = EventTypeRegistry.from_config(CONFIG)

    assert len(registry) == 4
    assert "order.created" in registry
    assert registry.get("order.created").channels == ["webhook"]


def test_from_list():
    registry = EventTypeRegistry.from_config(
        [{"name": "a", "channels": ["email"]}, {"name": "b"}]
    )
    assert registry.names() == ["a", "b"]


def test_accepts_definitions():
    registry = EventTypeRegistry([EventTypeDefinition(name="a")])
    assert [d.name for d in registry] == ["a"]


def test_duplicate_name_fails():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        EventTypeRegistry.from_config([{"name": "a"}, {"name": "a"}])


def test_invalid_definition_fails():
    with pytest.raises(ConfigurationError, match="'broken'"):
        EventTypeRegistry.from_config({"broken": {"schema": {"x": {"type": "decimal"}}}})


def test_unknown_type():
    registry = EventTypeRegistry.from_config(CONFIG)

    with pytest.raises(EventNotFoundError) as exc_info:
        registry.get("order.refunded")

    assert exc_info.value.disabled is False
    assert exc_info.value.event_type == "order.refunded"


def test_disabled_type():
    registry = EventTypeRegistry.from_config(CONFIG)

    assert registry.get("audit.legacy").enabled is False
    assert not registry.is_enabled("audit.legacy")
    with pytest.raises(EventNotFoundError) as exc_info:
        registry.get_enabled("audit.legacy")
    assert exc_info.value.disabled is True


async def test_set_enabled_swaps_definition():
    storage = InMemoryStorage()
    registry = EventTypeRegistry.from_config(CONFIG, storage=storage)
    before = registry.get("audit.legacy")

    after = await registry.set_enabled("audit.legacy", True)

    assert before.enabled is False
    assert after.enabled is True
    assert registry.get_enabled("audit.legacy") is after
    assert (await storage.get(EVENT_TYPES, "audit.legacy")).enabled is True


async def test_persist_writes_every_definition():
    storage = InMemoryStorage()
    registry = EventTypeRegistry.from_config(CONFIG, storage=storage)

    await registry.persist()

    stored = await storage.query(EVENT_TYPES)
    assert sorted(d.name for d in stored) == sorted(CONFIG)

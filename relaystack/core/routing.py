"""Channel -> provider routing table."""

from typing import TYPE_CHECKING

from relaystack.core.errors import ConfigurationError

if TYPE_CHECKING:
    from relaystack.core.health import ProviderHealthTracker
    from relaystack.providers.base import ChannelProvider


class ProviderRegistry:
    """Providers registered per channel, in registration order.

    The first registered provider is the primary; later ones are fallbacks
    used when the health tracker marks the earlier ones unhealthy.
    """

    def __init__(self) -> None:
        self._providers: dict[str, list["ChannelProvider"]] = {}

    def register(self, channel: str, provider: "ChannelProvider") -> None:
        existing = self._providers.setdefault(channel, [])
        if any(p.name == provider.name for p in existing):
            raise ConfigurationError(
                f"Provider '{provider.name}' is already registered for channel '{channel}'"
            )
        problems = provider.validate_config(getattr(provider, "config", {}) or {})
        if problems is not True and problems:
            raise ConfigurationError(
                f"Provider '{provider.name}' has invalid configuration: {problems}"
            )
        existing.append(provider)

    def providers_for(self, channel: str) -> list["ChannelProvider"]:
        return list(self._providers.get(channel, []))

    def select(
        self, channel: str, health: "ProviderHealthTracker"
    ) -> "ChannelProvider | None":
        """First provider on ``channel`` the tracker considers healthy."""
        for provider in self._providers.get(channel, []):
            if health.is_healthy(channel, provider.name):
                return provider
        return None

    def channels(self) -> list[str]:
        return list(self._providers)

    def items(self) -> list[tuple[str, "ChannelProvider"]]:
        return [(c, p) for c, providers in self._providers.items() for p in providers]

    def __contains__(self, channel: object) -> bool:
        return isinstance(channel, str) and bool(self._providers.get(channel))

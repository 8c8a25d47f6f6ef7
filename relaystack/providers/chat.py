"""Chat delivery through Slack/Discord-style incoming webhooks."""

import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, HttpUrl

from relaystack.core.errors import ProviderFailureError
from relaystack.core.models import DeliveryContext, NotificationResult
from relaystack.providers.base import ChannelProvider, template_variables
from relaystack.templates import TemplateRenderer

logger = logging.getLogger("relaystack.providers.chat")


class ChatConfig(BaseModel):
    """Incoming webhook target.

    Attributes:
        webhook_url: The incoming webhook URL.
        message_key: Body key holding the text (``text`` for Slack,
            ``content`` for Discord).
        username: Optional display name override.
        timeout: Request timeout in seconds.
    """

    webhook_url: HttpUrl
    message_key: str = "text"
    username: str | None = None
    timeout: float = Field(default=10.0, gt=0)


class ChatProvider(ChannelProvider):
    """Posts a rendered message to a chat incoming webhook.

    The message is the channel's template rendered with the payload, or a
    one-line summary of the event when the event type names no template.
    """

    channel = "chat"

    def __init__(
        self,
        config: ChatConfig | dict[str, Any],
        renderer: TemplateRenderer | None = None,
        name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name or "incoming-webhook")
        self.config = config if isinstance(config, ChatConfig) else ChatConfig(**config)
        self.renderer = renderer
        self._client = httpx.AsyncClient(timeout=self.config.timeout, transport=transport)

    def render(self, payload: dict[str, Any], context: DeliveryContext) -> str:
        if context.template_id and self.renderer is not None:
            return self.renderer.render(context.template_id, template_variables(payload, context))
        return f"[{context.event_type}] {json.dumps(payload, default=str, sort_keys=True)}"

    async def send(self, payload: dict[str, Any], context: DeliveryContext) -> NotificationResult:
        text = self.render(payload, context)
        body: dict[str, Any] = {self.config.message_key: text}
        if self.config.username:
            body["username"] = self.config.username

        try:
            response = await self._client.post(str(self.config.webhook_url), json=body)
        except httpx.HTTPError as e:
            raise ProviderFailureError(
                f"Chat webhook request failed: {e}", self.channel, self.name
            ) from e

        if response.is_error:
            logger.error(
                f"Chat webhook answered {response.status_code}",
                extra={"correlation_id": context.correlation_id, "attempt": context.attempt},
            )
            raise ProviderFailureError(
                f"Chat webhook returned HTTP {response.status_code}",
                self.channel,
                self.name,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return self.result(context, status_code=response.status_code)

    async def close(self) -> None:
        await self._client.aclose()

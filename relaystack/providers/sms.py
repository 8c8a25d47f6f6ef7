"""SMS delivery through the Twilio REST API."""

import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from relaystack.core.errors import ProviderFailureError
from relaystack.core.models import DeliveryContext, NotificationResult
from relaystack.providers.base import ChannelProvider, template_variables
from relaystack.templates import TemplateRenderer

logger = logging.getLogger("relaystack.providers.sms")

TWILIO_API = "https://api.twilio.com/2010-04-01"


class SmsConfig(BaseModel):
    """Twilio account credentials and sender.

    Attributes:
        account_sid: Account SID (``AC...``).
        auth_token: Account auth token.
        from_number: Sending number in E.164 form.
        base_url: API root; override for a regional edge or a test server.
        timeout: Request timeout in seconds.
    """

    account_sid: str
    auth_token: str
    from_number: str
    base_url: str = TWILIO_API
    timeout: float = Field(default=10.0, gt=0)


class SmsProvider(ChannelProvider):
    """Sends one text message to every recipient with an SMS number.

    The body is the channel's template rendered with the payload. Without a
    template it is the payload's ``message`` field, or the payload as JSON.
    """

    channel = "sms"

    def __init__(
        self,
        config: SmsConfig | dict[str, Any],
        renderer: TemplateRenderer | None = None,
        name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name or "twilio")
        self.config = config if isinstance(config, SmsConfig) else SmsConfig(**config)
        self.renderer = renderer
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            auth=(self.config.account_sid, self.config.auth_token),
            timeout=self.config.timeout,
            transport=transport,
        )

    def validate_config(self, config: Any) -> bool | list[str]:
        problems = [
            f"{field} is required"
            for field in ("account_sid", "auth_token", "from_number")
            if not getattr(config, field, None)
        ]
        return problems or True

    def render(self, payload: dict[str, Any], context: DeliveryContext) -> str:
        if context.template_id and self.renderer is not None:
            return self.renderer.render(
                context.template_id, template_variables(payload, context)
            ).strip()
        if isinstance(payload.get("message"), str):
            return payload["message"]
        return json.dumps(payload, default=str, sort_keys=True)

    async def _send_one(self, to: str, body: str, context: DeliveryContext) -> str:
        try:
            response = await self._client.post(
                f"/Accounts/{self.config.account_sid}/Messages.json",
                data={"To": to, "From": self.config.from_number, "Body": body},
            )
        except httpx.HTTPError as e:
            raise ProviderFailureError(
                f"Twilio request failed: {e}", self.channel, self.name
            ) from e

        if response.is_error:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            logger.error(
                f"Twilio answered {response.status_code} for {to}: {detail}",
                extra={"correlation_id": context.correlation_id, "attempt": context.attempt},
            )
            raise ProviderFailureError(
                f"Twilio returned HTTP {response.status_code}: {detail}",
                self.channel,
                self.name,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response.json().get("sid", "")

    async def send(self, payload: dict[str, Any], context: DeliveryContext) -> NotificationResult:
        numbers = [r.address_for(self.channel) for r in context.recipients]
        numbers = [n for n in numbers if n]
        if not numbers:
            raise ProviderFailureError(
                "No recipient has an SMS number", self.channel, self.name, retryable=False
            )

        body = self.render(payload, context)
        sids = [await self._send_one(number, body, context) for number in numbers]
        return self.result(context, message_sids=sids)

    async def health_check(self) -> bool:
        """Healthy if the account can be fetched with the configured credentials."""
        try:
            response = await self._client.get(
                f"/Accounts/{self.config.account_sid}.json", timeout=5.0
            )
        except httpx.HTTPError as e:
            logger.warning(f"Twilio health check failed: {e}")
            return False
        return response.is_success

    async def close(self) -> None:
        await self._client.aclose()

"""HTTP webhook delivery."""

import base64
import logging
import time
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field, HttpUrl

from relaystack.core.errors import ProviderFailureError
from relaystack.core.models import DeliveryContext, NotificationResult
from relaystack.providers.base import ChannelProvider

logger = logging.getLogger("relaystack.providers.webhook")

DEFAULT_RETRYABLE_STATUS_CODES = [408, 429, 500, 502, 503, 504]
USER_AGENT = "relaystack-webhook"


class WebhookAuth(BaseModel):
    type: Literal["bearer", "basic", "apikey"]
    token: str | None = None
    username: str | None = None
    password: str | None = None
    api_key: str | None = None
    api_key_header: str = "X-API-Key"


class WebhookConfig(BaseModel):
    """Where and how to POST events.

    Attributes:
        endpoint: Target URL.
        method: HTTP method.
        headers: Extra headers sent with every request.
        timeout: Request timeout in seconds.
        retryable_status_codes: Responses worth retrying. Any other 4xx is
            terminal; any 5xx is always retried.
        auth: Optional bearer, basic or API-key authentication.
    """

    endpoint: HttpUrl
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=10.0, gt=0)
    retryable_status_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_STATUS_CODES)
    )
    auth: WebhookAuth | None = None


def _auth_headers(auth: WebhookAuth | None) -> dict[str, str]:
    if auth is None:
        return {}
    if auth.type == "bearer" and auth.token:
        return {"Authorization": f"Bearer {auth.token}"}
    if auth.type == "basic" and auth.username and auth.password:
        credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}
    if auth.type == "apikey" and auth.api_key:
        return {auth.api_key_header: auth.api_key}
    return {}


class WebhookProvider(ChannelProvider):
    """POSTs each event as JSON to a configured endpoint.

    The body is ``{"event_id", "event_type", "correlation_id", "attempt",
    "data"}`` where ``data`` is the event payload. Tracing headers
    ``X-Correlation-ID``, ``X-Event-Type`` and ``X-Attempt`` are added to
    every request.
    """

    channel = "webhook"

    def __init__(
        self,
        config: WebhookConfig | dict[str, Any],
        name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name or "http")
        self.config = config if isinstance(config, WebhookConfig) else WebhookConfig(**config)
        self._client = httpx.AsyncClient(
            timeout=self.config.timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                **self.config.headers,
                **_auth_headers(self.config.auth),
            },
        )

    def validate_config(self, config: Any) -> bool | list[str]:
        problems = []
        auth = getattr(config, "auth", None)
        if auth is not None:
            if auth.type == "bearer" and not auth.token:
                problems.append("bearer auth requires a token")
            if auth.type == "basic" and not (auth.username and auth.password):
                problems.append("basic auth requires a username and password")
            if auth.type == "apikey" and not auth.api_key:
                problems.append("apikey auth requires an api_key")
        return problems or True

    def _retryable(self, status_code: int) -> bool:
        return status_code >= 500 or status_code in self.config.retryable_status_codes

    async def send(self, payload: dict[str, Any], context: DeliveryContext) -> NotificationResult:
        url = str(self.config.endpoint)
        start = time.monotonic()
        body = {
            "event_id": context.event_id,
            "event_type": context.event_type,
            "correlation_id": context.correlation_id,
            "attempt": context.attempt,
            "data": payload,
        }
        headers = {
            "X-Correlation-ID": context.correlation_id,
            "X-Event-Type": context.event_type,
            "X-Attempt": str(context.attempt),
        }

        try:
            response = await self._client.request(
                self.config.method, url, json=body, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(
                f"Webhook request to {url} failed: {e}",
                extra={"correlation_id": context.correlation_id, "attempt": context.attempt},
            )
            raise ProviderFailureError(
                f"Webhook request failed: {e}", self.channel, self.name, retryable=True
            ) from e

        duration = time.monotonic() - start
        if response.is_error:
            retryable = self._retryable(response.status_code)
            logger.error(
                f"Webhook {url} answered {response.status_code}",
                extra={
                    "correlation_id": context.correlation_id,
                    "status_code": response.status_code,
                    "retryable": retryable,
                    "attempt": context.attempt,
                },
            )
            raise ProviderFailureError(
                f"Webhook returned HTTP {response.status_code}",
                self.channel,
                self.name,
                retryable=retryable,
            )

        logger.debug(
            f"Webhook sent to {url}",
            extra={"correlation_id": context.correlation_id, "status_code": response.status_code},
        )
        return self.result(
            context,
            url=url,
            method=self.config.method,
            status_code=response.status_code,
            duration=duration,
        )

    async def health_check(self) -> bool:
        """Reachable if a HEAD request does not answer 5xx."""
        try:
            response = await self._client.head(str(self.config.endpoint), timeout=5.0)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook health check failed: {e}")
            return False
        return response.status_code < 500

    async def close(self) -> None:
        await self._client.aclose()

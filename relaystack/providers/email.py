"""Email delivery over SMTP."""

import json
import logging
from email.message import EmailMessage
from typing import Any

import aiosmtplib
from pydantic import BaseModel, Field

from relaystack.core.errors import ProviderFailureError
from relaystack.core.models import DeliveryContext, NotificationResult
from relaystack.providers.base import ChannelProvider, template_variables
from relaystack.templates import TemplateRenderer

logger = logging.getLogger("relaystack.providers.email")

# SMTP reply codes that will not succeed on retry
PERMANENT_SMTP_CODES = frozenset({550, 551, 552, 553, 554})
SUBJECT_SUFFIX = ".subject"


class EmailConfig(BaseModel):
    hostname: str
    port: int = 587
    sender: str
    username: str | None = None
    password: str | None = None
    use_tls: bool = False
    start_tls: bool | None = None
    timeout: float = Field(default=10.0, gt=0)


class EmailProvider(ChannelProvider):
    """Sends one message per event to every recipient with an email address.

    With a template id ``T`` for the email channel, the body is template
    ``T`` and the subject is template ``T.subject`` when registered.
    """

    channel = "email"

    def __init__(
        self,
        config: EmailConfig | dict[str, Any],
        renderer: TemplateRenderer | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(name or "smtp")
        self.config = config if isinstance(config, EmailConfig) else EmailConfig(**config)
        self.renderer = renderer

    def validate_config(self, config: Any) -> bool | list[str]:
        problems = []
        if bool(config.username) != bool(config.password):
            problems.append("username and password must be set together")
        if config.use_tls and config.start_tls:
            problems.append("use_tls and start_tls are mutually exclusive")
        return problems or True

    def build_message(self, payload: dict[str, Any], context: DeliveryContext) -> EmailMessage:
        recipients = [r.address_for(self.channel) for r in context.recipients]
        recipients = [r for r in recipients if r]
        if not recipients:
            raise ProviderFailureError(
                "No recipient has an email address", self.channel, self.name, retryable=False
            )

        variables = template_variables(payload, context)
        template_id = context.template_id
        if template_id and self.renderer is not None:
            body = self.renderer.render(template_id, variables)
            subject_id = f"{template_id}{SUBJECT_SUFFIX}"
            if self.renderer.has(subject_id):
                subject = self.renderer.render(subject_id, variables).strip()
            else:
                subject = context.event_type
        else:
            body = json.dumps(payload, indent=2, default=str, sort_keys=True)
            subject = context.event_type

        message = EmailMessage()
        message["From"] = self.config.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message["X-Correlation-ID"] = context.correlation_id
        message.set_content(body)
        return message

    async def send(self, payload: dict[str, Any], context: DeliveryContext) -> NotificationResult:
        message = self.build_message(payload, context)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.config.hostname,
                port=self.config.port,
                username=self.config.username,
                password=self.config.password,
                use_tls=self.config.use_tls,
                start_tls=self.config.start_tls,
                timeout=self.config.timeout,
            )
        except aiosmtplib.SMTPResponseException as e:
            retryable = e.code not in PERMANENT_SMTP_CODES
            logger.error(
                f"SMTP error {e.code}: {e.message}",
                extra={"correlation_id": context.correlation_id, "retryable": retryable},
            )
            raise ProviderFailureError(
                f"SMTP error {e.code}: {e.message}", self.channel, self.name, retryable=retryable
            ) from e
        except aiosmtplib.SMTPException as e:
            raise ProviderFailureError(f"SMTP error: {e}", self.channel, self.name) from e

        return self.result(context, recipients=message["To"], subject=message["Subject"])

    async def health_check(self) -> bool:
        try:
            smtp = aiosmtplib.SMTP(
                hostname=self.config.hostname,
                port=self.config.port,
                use_tls=self.config.use_tls,
                start_tls=self.config.start_tls,
                timeout=self.config.timeout,
            )
            async with smtp:
                await smtp.noop()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning(f"SMTP health check failed: {e}")
            return False
        return True

"""Channel providers shipped with RelayStack."""

from relaystack.providers.base import ChannelProvider
from relaystack.providers.chat import ChatConfig, ChatProvider
from relaystack.providers.email import EmailConfig, EmailProvider
from relaystack.providers.sms import SmsConfig, SmsProvider
from relaystack.providers.webhook import WebhookAuth, WebhookConfig, WebhookProvider

__all__ = [
    "ChannelProvider",
    "ChatConfig",
    "ChatProvider",
    "EmailConfig",
    "EmailProvider",
    "SmsConfig",
    "SmsProvider",
    "WebhookAuth",
    "WebhookConfig",
    "WebhookProvider",
]

"""Communication dispatch services."""

from .backend import (
    ChannelAdapter,
    DeliveryReceipt,
    EmailChannelAdapter,
    HttpProviderAdapter,
    InMemoryChannelAdapter,
    LoggingChannelAdapter,
    SMTPEmailBackend,
    build_default_adapters,
)
from .dispatcher import CommunicationDispatcher, SendResult
from .service import CommunicationPage, CommunicationService, StatusUpdateResult
from .templates import RenderedTemplate, render_message, render_text

__all__ = [
    "ChannelAdapter",
    "CommunicationDispatcher",
    "CommunicationPage",
    "CommunicationService",
    "DeliveryReceipt",
    "EmailChannelAdapter",
    "HttpProviderAdapter",
    "InMemoryChannelAdapter",
    "LoggingChannelAdapter",
    "RenderedTemplate",
    "SMTPEmailBackend",
    "SendResult",
    "StatusUpdateResult",
    "build_default_adapters",
    "render_message",
    "render_text",
]

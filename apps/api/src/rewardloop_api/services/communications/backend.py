"""Channel adapters used by the communication dispatcher."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, List, Mapping, Optional, Protocol
from uuid import uuid4

import httpx
from loguru import logger

from rewardloop_api.core.settings import Settings
from rewardloop_api.models.communication import CommunicationChannel
from rewardloop_api.services.errors import PermanentProviderError, TransientProviderError


@dataclass(slots=True)
class DeliveryReceipt:
    """Provider acknowledgement of an accepted message."""

    provider_message_id: str | None
    response: Dict[str, Any] = field(default_factory=dict)


class ChannelAdapter(Protocol):
    """Send one rendered message or raise a provider error."""

    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryReceipt:
        ...


class EmailBackend(Protocol):
    """Minimal protocol for sending plain-text email."""

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        reply_to: str | None = None,
    ) -> str | None:
        ...


class SMTPEmailBackend:
    """SMTP-powered backend that sends emails via standard library."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        use_tls: bool,
        sender_email: str,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._sender_email = sender_email

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        reply_to: str | None = None,
    ) -> str | None:
        """Send email asynchronously by offloading blocking call."""

        message = EmailMessage()
        message_id = f"<{uuid4().hex}@rewardloop>"
        message["From"] = self._sender_email
        message["To"] = recipient
        message["Subject"] = subject
        message["Message-ID"] = message_id
        if reply_to:
            message["Reply-To"] = reply_to
        message.set_content(body_text)

        await asyncio.to_thread(self._send, message)
        return message_id

    def _send(self, message: EmailMessage) -> None:
        smtp = smtplib.SMTP(self._host, self._port, timeout=10)
        try:
            if self._use_tls:
                smtp.starttls()
            if self._username and self._password:
                smtp.login(self._username, self._password)
            smtp.send_message(message)
        finally:
            smtp.quit()


class EmailChannelAdapter:
    """Adapts an ``EmailBackend`` to the channel protocol."""

    def __init__(self, backend: EmailBackend, *, reply_to: str | None = None) -> None:
        self._backend = backend
        self._reply_to = reply_to

    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryReceipt:
        if "@" not in recipient:
            raise PermanentProviderError(f"Invalid email recipient {recipient!r}")
        try:
            message_id = await self._backend.send_email(
                recipient,
                subject or "",
                body,
                reply_to=self._reply_to,
            )
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused, smtplib.SMTPDataError) as exc:
            raise PermanentProviderError(f"SMTP rejected message: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientProviderError(f"SMTP delivery failed: {exc}") from exc
        return DeliveryReceipt(provider_message_id=message_id, response={"transport": "smtp"})


class HttpProviderAdapter:
    """JSON-over-HTTP SMS/WhatsApp gateway."""

    def __init__(
        self,
        *,
        channel: CommunicationChannel,
        url: str,
        token: str | None = None,
        sender: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.channel = channel
        self._url = url
        self._token = token
        self._sender = sender
        self._http_client = http_client
        self._timeout = timeout_seconds

    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryReceipt:
        payload: Dict[str, Any] = {"to": recipient, "body": body, "channel": self.channel.value}
        if self._sender:
            payload["from"] = self._sender
        headers: Dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout)
            close_client = True

        try:
            response = await client.post(self._url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{self.channel.value} provider timed out") from exc
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"{self.channel.value} provider unreachable: {exc}") from exc
        finally:
            if close_client:
                await client.aclose()

        data = _safe_json(response)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"{self.channel.value} provider returned {response.status_code}",
                response=data,
            )
        if response.status_code >= 400:
            raise PermanentProviderError(
                f"{self.channel.value} provider rejected message ({response.status_code})",
                response=data,
            )

        message_id = data.get("id") or data.get("message_id") or data.get("sid")
        return DeliveryReceipt(provider_message_id=str(message_id) if message_id else None, response=data)


class LoggingChannelAdapter:
    """Simulated delivery: logs the message and acknowledges it."""

    def __init__(self, channel: CommunicationChannel) -> None:
        self.channel = channel

    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryReceipt:
        message_id = f"sim-{uuid4().hex}"
        logger.info(
            "Simulated message delivery",
            channel=self.channel.value,
            recipient=recipient,
            subject=subject,
            message_id=message_id,
        )
        return DeliveryReceipt(
            provider_message_id=message_id,
            response={"simulated": True, "channel": self.channel.value},
        )


class InMemoryChannelAdapter:
    """Test adapter; pops scripted failures before succeeding."""

    def __init__(self, *, failures: List[Exception] | None = None, delay_seconds: float = 0.0) -> None:
        self.sent_messages = []
        self.failures = list(failures or [])
        self.delay_seconds = delay_seconds
        self.calls = 0

    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryReceipt:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.failures:
            raise self.failures.pop(0)
        self.sent_messages.append((recipient, subject, body))
        return DeliveryReceipt(provider_message_id=f"mem-{self.calls}", response={"accepted": True})


def build_default_adapters(settings: Settings) -> dict[CommunicationChannel, ChannelAdapter]:
    """Wire configured providers, falling back to simulated delivery."""

    adapters: dict[CommunicationChannel, ChannelAdapter] = {}
    simulate = settings.communication_simulate_delivery

    if settings.smtp_host and settings.smtp_sender_email:
        backend = SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )
        adapters[CommunicationChannel.EMAIL] = EmailChannelAdapter(backend)
    elif simulate:
        adapters[CommunicationChannel.EMAIL] = LoggingChannelAdapter(CommunicationChannel.EMAIL)

    providers: Mapping[CommunicationChannel, tuple[str | None, str | None]] = {
        CommunicationChannel.SMS: (settings.sms_provider_url, settings.sms_provider_token),
        CommunicationChannel.WHATSAPP: (settings.whatsapp_provider_url, settings.whatsapp_provider_token),
    }
    for channel, (url, token) in providers.items():
        if url:
            adapters[channel] = HttpProviderAdapter(
                channel=channel,
                url=url,
                token=token,
                sender=settings.sms_sender_id,
                timeout_seconds=settings.communication_send_timeout_seconds,
            )
        elif simulate:
            adapters[channel] = LoggingChannelAdapter(channel)

    return adapters


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"status_code": response.status_code, "text": response.text[:500]}
    if isinstance(data, dict):
        return data
    return {"status_code": response.status_code, "payload": data}


__all__ = [
    "ChannelAdapter",
    "DeliveryReceipt",
    "EmailBackend",
    "EmailChannelAdapter",
    "HttpProviderAdapter",
    "InMemoryChannelAdapter",
    "LoggingChannelAdapter",
    "SMTPEmailBackend",
    "build_default_adapters",
]

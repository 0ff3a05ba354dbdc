"""
Channel senders: the outbound transports used by the dispatcher.

Every sender implements `send(recipient, subject, content, metadata)` and
returns a SendResult. Transport failures raise ChannelDeliveryError; a
recipient with no address for the channel is returned as a failed result.
"""

import asyncio
import json
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Dict, Optional
from uuid import uuid4

import httpx
import redis.asyncio as redis

from ..config import EscalationConfig
from ..models.errors import ChannelDeliveryError
from ..models.rules import NotificationChannel
from .audit import hash_identifier
from .recipients import Recipient


@dataclass(frozen=True)
class SendResult:
    """Outcome reported by a channel sender."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class ChannelSender:
    """Base class for channel transports."""

    def __init__(self, channel: NotificationChannel):
        self.channel = channel
        self.logger = logging.getLogger(__name__)

    async def send(self, recipient: Recipient, subject: str, content: str, metadata: Dict[str, str]) -> SendResult:
        raise NotImplementedError

    def _missing_address(self, recipient: Recipient, field_name: str) -> SendResult:
        return SendResult(
            success=False,
            error=f"Recipient {recipient.recipient_id} has no {field_name} for {self.channel.value}"
        )


class SmtpEmailSender(ChannelSender):
    """Email through an SMTP relay; the blocking client runs in a worker thread."""

    def __init__(
        self,
        host: str,
        port: int = 25,
        from_address: str = "noreply@escalation.local",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False
    ):
        super().__init__(NotificationChannel.EMAIL)
        self.host = host
        self.port = port
        self.from_address = from_address
        self.username = username
        self.password = password
        self.use_tls = use_tls

    async def send(self, recipient, subject, content, metadata) -> SendResult:
        if not recipient.email:
            return self._missing_address(recipient, "email address")

        message = MIMEText(content, 'plain', 'utf-8')
        message['From'] = self.from_address
        message['To'] = recipient.email
        message['Subject'] = subject
        message_id = make_msgid(domain=self.from_address.split("@")[-1])
        message['Message-ID'] = message_id

        try:
            await asyncio.to_thread(self._send_message, message)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelDeliveryError(f"SMTP delivery failed: {e}", channel=self.channel.value)

        self.logger.info(f"Email sent to {hash_identifier(recipient.email)} ({message_id})")
        return SendResult(success=True, provider_message_id=message_id)

    def _send_message(self, message: MIMEText) -> None:
        server = smtplib.SMTP(self.host, self.port, timeout=30)
        try:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)
        finally:
            server.quit()


class HttpGatewaySender(ChannelSender):
    """SMS, push and WhatsApp delivery through a JSON HTTP gateway."""

    ADDRESS_FIELDS = {
        NotificationChannel.SMS: "phone",
        NotificationChannel.WHATSAPP: "phone",
        NotificationChannel.PUSH: "device_token",
    }

    def __init__(
        self,
        channel: NotificationChannel,
        client: httpx.AsyncClient,
        url: str,
        api_key: Optional[str] = None
    ):
        super().__init__(channel)
        if channel not in self.ADDRESS_FIELDS:
            raise ValueError(f"No gateway addressing for channel {channel.value}")
        self.client = client
        self.url = url
        self.api_key = api_key

    async def send(self, recipient, subject, content, metadata) -> SendResult:
        field_name = self.ADDRESS_FIELDS[self.channel]
        address = getattr(recipient, field_name)
        if not address:
            return self._missing_address(recipient, field_name)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "to": address,
            "title": subject,
            "message": content,
            "metadata": metadata,
        }

        try:
            response = await self.client.post(self.url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ChannelDeliveryError(
                f"{self.channel.value} gateway returned {status}",
                channel=self.channel.value,
                retryable=status >= 500
            )
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(f"{self.channel.value} gateway unreachable: {e}", channel=self.channel.value)

        message_id = _response_message_id(response)
        self.logger.info(
            f"{self.channel.value} message sent to {hash_identifier(address)} ({message_id})"
        )
        return SendResult(success=True, provider_message_id=message_id)


class WebhookSender(ChannelSender):
    """Posts the rendered notification to the recipient's webhook endpoint."""

    def __init__(self, client: httpx.AsyncClient):
        super().__init__(NotificationChannel.WEBHOOK)
        self.client = client

    async def send(self, recipient, subject, content, metadata) -> SendResult:
        url = recipient.webhook_url
        if not url:
            return self._missing_address(recipient, "webhook url")

        payload = {
            "subject": subject,
            "content": content,
            "metadata": metadata,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ChannelDeliveryError(
                f"Webhook returned {status}", channel=self.channel.value, retryable=status >= 500
            )
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(f"Webhook unreachable: {e}", channel=self.channel.value)

        return SendResult(success=True, provider_message_id=_response_message_id(response))


class RedisInAppSender(ChannelSender):
    """Publishes in-app notifications on a per-user Redis channel."""

    def __init__(self, redis_client: redis.Redis, channel_prefix: str = "escalation:in_app:"):
        super().__init__(NotificationChannel.IN_APP)
        self.redis = redis_client
        self.channel_prefix = channel_prefix

    async def send(self, recipient, subject, content, metadata) -> SendResult:
        message_id = str(uuid4())
        message = json.dumps({
            "message_id": message_id,
            "recipient_id": recipient.recipient_id,
            "subject": subject,
            "content": content,
            "metadata": metadata,
        })
        try:
            await self.redis.publish(f"{self.channel_prefix}{recipient.recipient_id}", message)
        except Exception as e:
            raise ChannelDeliveryError(f"In-app publish failed: {e}", channel=self.channel.value)
        return SendResult(success=True, provider_message_id=message_id)


class LoggingSender(ChannelSender):
    """Writes notifications to the log; stands in for channels with no transport configured."""

    async def send(self, recipient, subject, content, metadata) -> SendResult:
        message_id = f"log-{uuid4()}"
        self.logger.info(
            f"[{self.channel.value}] to {recipient.recipient_id}: {subject} ({message_id})"
        )
        return SendResult(success=True, provider_message_id=message_id)


def _response_message_id(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        value = body.get("message_id") or body.get("id")
        return str(value) if value is not None else None
    return None


def build_senders(
    config: EscalationConfig,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Optional[redis.Redis] = None
) -> Dict[NotificationChannel, ChannelSender]:
    """Create one sender per channel from configuration."""
    logger = logging.getLogger(__name__)
    senders: Dict[NotificationChannel, ChannelSender] = {}

    if config.smtp_host:
        senders[NotificationChannel.EMAIL] = SmtpEmailSender(
            config.smtp_host, config.smtp_port, config.smtp_from_address
        )

    gateways = {
        NotificationChannel.SMS: (config.sms_gateway_url, config.sms_api_key),
        NotificationChannel.PUSH: (config.push_gateway_url, config.push_api_key),
        NotificationChannel.WHATSAPP: (config.whatsapp_api_url, config.whatsapp_access_token),
    }
    if http_client is not None:
        for channel, (url, api_key) in gateways.items():
            if url:
                senders[channel] = HttpGatewaySender(channel, http_client, url, api_key)
        senders[NotificationChannel.WEBHOOK] = WebhookSender(http_client)

    if redis_client is not None:
        senders[NotificationChannel.IN_APP] = RedisInAppSender(redis_client)

    for channel in NotificationChannel:
        if channel not in senders:
            logger.warning(f"No transport configured for {channel.value}; notifications will be logged only")
            senders[channel] = LoggingSender(channel)

    return senders

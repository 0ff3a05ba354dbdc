import json
import pytest

import httpx

from incident_escalation.config import EscalationConfig
from incident_escalation.models.errors import ChannelDeliveryError
from incident_escalation.models.rules import NotificationChannel
from incident_escalation.services.channel_senders import (
    HttpGatewaySender, LoggingSender, RedisInAppSender, SmtpEmailSender, WebhookSender, build_senders
)
from incident_escalation.services.recipients import Recipient


RECIPIENT = Recipient(
    "hse_manager_1", email="dana@example.com", phone="+15550001",
    device_token="tok-1", webhook_url="http://hooks.local/escalation"
)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpGatewaySender:
    """Unit tests for SMS/push/WhatsApp gateway delivery."""

    async def test_posts_payload_with_bearer_token(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"message_id": "sms-991"})

        async with _client(handler) as client:
            sender = HttpGatewaySender(NotificationChannel.SMS, client, "http://sms.local/send", api_key="k3y")
            result = await sender.send(RECIPIENT, "Alert", "Body", {"priority": "critical"})

        assert result.success is True
        assert result.provider_message_id == "sms-991"
        body = json.loads(requests[0].content)
        assert body["to"] == "+15550001"
        assert body["message"] == "Body"
        assert requests[0].headers["Authorization"] == "Bearer k3y"

    async def test_server_error_raises_retryable_delivery_error(self):
        async with _client(lambda request: httpx.Response(503)) as client:
            sender = HttpGatewaySender(NotificationChannel.PUSH, client, "http://push.local")

            with pytest.raises(ChannelDeliveryError) as exc_info:
                await sender.send(RECIPIENT, "Alert", "Body", {})

        assert exc_info.value.retryable is True
        assert exc_info.value.channel == "push"

    async def test_client_error_is_not_retryable(self):
        async with _client(lambda request: httpx.Response(400)) as client:
            sender = HttpGatewaySender(NotificationChannel.WHATSAPP, client, "http://wa.local")

            with pytest.raises(ChannelDeliveryError) as exc_info:
                await sender.send(RECIPIENT, "Alert", "Body", {})

        assert exc_info.value.retryable is False

    async def test_missing_address_is_a_failed_result(self):
        async with _client(lambda request: httpx.Response(200)) as client:
            sender = HttpGatewaySender(NotificationChannel.PUSH, client, "http://push.local")
            result = await sender.send(Recipient("no_device"), "Alert", "Body", {})

        assert result.success is False
        assert "device_token" in result.error

    def test_channel_without_gateway_addressing(self):
        with pytest.raises(ValueError):
            HttpGatewaySender(NotificationChannel.EMAIL, None, "http://x")


class TestOtherSenders:
    """Unit tests for webhook, in-app, email and logging senders."""

    async def test_webhook_posts_to_recipient_url(self):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(202, json={"id": 7})

        async with _client(handler) as client:
            result = await WebhookSender(client).send(RECIPIENT, "Alert", "Body", {})

        assert urls == ["http://hooks.local/escalation"]
        assert result.provider_message_id == "7"

    async def test_in_app_publishes_per_user(self, mock_redis):
        result = await RedisInAppSender(mock_redis).send(RECIPIENT, "Alert", "Body", {})

        channel, message = mock_redis.publish.call_args.args
        assert channel == "escalation:in_app:hse_manager_1"
        assert json.loads(message)["message_id"] == result.provider_message_id

    async def test_in_app_publish_failure(self, mock_redis):
        mock_redis.publish.side_effect = ConnectionError("redis down")

        with pytest.raises(ChannelDeliveryError):
            await RedisInAppSender(mock_redis).send(RECIPIENT, "Alert", "Body", {})

    async def test_email_without_address(self):
        sender = SmtpEmailSender("smtp.local")

        result = await sender.send(Recipient("no_email"), "Alert", "Body", {})

        assert result.success is False

    async def test_logging_sender_always_succeeds(self):
        result = await LoggingSender(NotificationChannel.SMS).send(RECIPIENT, "Alert", "Body", {})

        assert result.success is True
        assert result.provider_message_id.startswith("log-")


class TestBuildSenders:
    """Unit tests for sender wiring from configuration."""

    def test_unconfigured_channels_fall_back_to_logging(self):
        senders = build_senders(EscalationConfig())

        assert set(senders) == set(NotificationChannel)
        assert all(isinstance(sender, LoggingSender) for sender in senders.values())

    async def test_configured_transports(self, mock_redis):
        config = EscalationConfig(smtp_host="smtp.local", sms_gateway_url="http://sms.local")

        async with httpx.AsyncClient() as client:
            senders = build_senders(config, http_client=client, redis_client=mock_redis)

        assert isinstance(senders[NotificationChannel.EMAIL], SmtpEmailSender)
        assert isinstance(senders[NotificationChannel.SMS], HttpGatewaySender)
        assert isinstance(senders[NotificationChannel.WEBHOOK], WebhookSender)
        assert isinstance(senders[NotificationChannel.IN_APP], RedisInAppSender)
        assert isinstance(senders[NotificationChannel.PUSH], LoggingSender)

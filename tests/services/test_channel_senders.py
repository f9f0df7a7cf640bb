"""
Tests for channel senders.

Covers the Brevo email sender, the Twilio SMS/WhatsApp senders and the
in-memory senders used in development.
"""

import json

import httpx
import pytest

from app.exceptions import SendError
from app.schemas.campaign import CampaignChannel
from app.services.channel_senders import (
    EmailChannelSender,
    MockChannelSender,
    SmsChannelSender,
    WhatsAppChannelSender,
    get_channel_sender,
)
from app.services.email_service import BREVO_API_URL, EmailService, MockEmailService
from app.services.twilio_service import MockTwilioService


def brevo_service(handler):
    service = EmailService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    service.api_key = "test-key"
    service.from_address = "news@example.com"
    service.from_name = "Newsletter"
    return service


class TestEmailChannelSender:
    """Tests for email delivery through Brevo."""

    @pytest.mark.asyncio
    async def test_brevo_accepts_message(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"messageId": "<brevo-1@smtp>"})

        sender = EmailChannelSender(brevo_service(handler))
        result = await sender.send("alice@example.com", "Spring sale", "Hello Alice")

        assert result.success is True
        assert result.message_id == "<brevo-1@smtp>"
        assert str(requests[0].url) == BREVO_API_URL
        assert requests[0].headers["api-key"] == "test-key"
        payload = json.loads(requests[0].content)
        assert payload["to"] == [{"email": "alice@example.com"}]
        assert payload["subject"] == "Spring sale"
        assert payload["sender"] == {"name": "Newsletter", "email": "news@example.com"}

    @pytest.mark.asyncio
    async def test_brevo_error_is_failed_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="invalid email")

        sender = EmailChannelSender(brevo_service(handler))
        result = await sender.send("not-an-email", "Subject", "Body")

        assert result.success is False
        assert "invalid email" in result.error

    @pytest.mark.asyncio
    async def test_network_error_is_failed_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        sender = EmailChannelSender(brevo_service(handler))
        result = await sender.send("alice@example.com", "Subject", "Body")

        assert result.success is False
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        service = EmailService()
        service.api_key = None

        result = await EmailChannelSender(service).send("alice@example.com", "Subject", "Body")

        assert result.success is False
        assert result.error == "Brevo API key not configured"

    @pytest.mark.asyncio
    async def test_mock_email_service(self):
        service = MockEmailService(fail_for={"bounce@example.com"})
        sender = EmailChannelSender(service)

        ok = await sender.send("alice@example.com", "Subject", "Body")
        rejected = await sender.send("bounce@example.com", "Subject", "Body")

        assert ok.success is True
        assert ok.message_id.startswith("mock-")
        assert rejected.success is False
        assert [email["to"] for email in service._sent_emails] == ["alice@example.com"]


class TestTwilioSenders:
    """Tests for SMS and WhatsApp delivery."""

    @pytest.mark.asyncio
    async def test_sms(self):
        service = MockTwilioService()

        result = await SmsChannelSender(service).send("+15551230000", None, "Flash sale today")

        assert result.success is True
        assert result.message_id.startswith("SM")
        assert service._sent_messages[0]["to"] == "+15551230000"
        assert service._sent_messages[0]["from"] == "+15555555555"
        assert service._sent_messages[0]["body"] == "Flash sale today"

    @pytest.mark.asyncio
    async def test_whatsapp_uses_whatsapp_addresses(self):
        service = MockTwilioService()

        result = await WhatsAppChannelSender(service).send("+15551230000", "Sale", "Everything 20% off")

        assert result.success is True
        message = service._sent_messages[0]
        assert message["to"] == "whatsapp:+15551230000"
        assert message["from"] == "whatsapp:+15555555555"
        assert message["body"] == "*Sale*\nEverything 20% off"

    @pytest.mark.asyncio
    async def test_unconfigured_twilio_is_failed_result(self):
        service = MockTwilioService()

        async def unavailable(to, from_, body):
            raise SendError("Twilio client not configured")

        service._create_message = unavailable

        result = await SmsChannelSender(service).send("+15551230000", None, "Hi")

        assert result.success is False
        assert result.error == "Twilio client not configured"


class TestMockChannelSender:
    """Tests for the in-memory sender."""

    @pytest.mark.asyncio
    async def test_records_and_fails(self):
        sender = MockChannelSender(fail_for=["b@example.com"], raise_for=["c@example.com"])

        assert (await sender.send("a@example.com", "S", "B")).success is True
        assert (await sender.send("b@example.com", "S", "B")).success is False
        with pytest.raises(SendError):
            await sender.send("c@example.com", "S", "B")

        assert sender.recipients == ["a@example.com"]


class TestSenderRegistry:
    """Tests for get_channel_sender."""

    def test_one_sender_per_channel(self):
        assert get_channel_sender(CampaignChannel.SMS) is get_channel_sender("sms")
        assert isinstance(get_channel_sender(CampaignChannel.WHATSAPP), WhatsAppChannelSender)

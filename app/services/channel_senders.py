"""
Channel senders.

Every channel exposes the same call, ``send(recipient, subject, body)``,
returning a SendResult. Senders report provider refusals as an unsuccessful
result; anything they raise is treated by callers as a failed send too.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from app.config import settings
from app.exceptions import SendError
from app.schemas.campaign import CampaignChannel
from app.services.email_service import EmailService, MockEmailService
from app.services.twilio_service import TwilioService, MockTwilioService

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class ChannelSender(Protocol):
    async def send(self, recipient: str, subject: Optional[str], body: str) -> SendResult:
        ...


SenderResolver = Callable[[CampaignChannel], ChannelSender]


class EmailChannelSender:
    def __init__(self, service: Optional[EmailService] = None):
        self.service = service or EmailService()

    async def send(self, recipient: str, subject: Optional[str], body: str) -> SendResult:
        result = await self.service.send_email(to=recipient, subject=subject or "", body=body)
        return SendResult(
            success=bool(result.get("success")),
            error=result.get("error"),
            message_id=result.get("message_id"),
        )


class SmsChannelSender:
    def __init__(self, service: Optional[TwilioService] = None):
        self.service = service or TwilioService()

    async def send(self, recipient: str, subject: Optional[str], body: str) -> SendResult:
        try:
            message = await self.service.send_sms(recipient, body)
        except SendError as e:
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, message_id=message.sid)


class WhatsAppChannelSender:
    def __init__(self, service: Optional[TwilioService] = None):
        self.service = service or TwilioService()

    async def send(self, recipient: str, subject: Optional[str], body: str) -> SendResult:
        text = f"*{subject}*\n{body}" if subject else body
        try:
            message = await self.service.send_whatsapp(recipient, text)
        except SendError as e:
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, message_id=message.sid)


class MockChannelSender:
    """
    In-memory sender for development and tests.

    Recipients listed in ``fail_for`` get an unsuccessful result; recipients in
    ``raise_for`` make ``send`` raise SendError.
    """

    def __init__(self, fail_for: Iterable[str] = (), raise_for: Iterable[str] = ()):
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.sent: List[Dict[str, Optional[str]]] = []

    async def send(self, recipient: str, subject: Optional[str], body: str) -> SendResult:
        if recipient in self.raise_for:
            raise SendError(f"Provider unreachable for {recipient}")
        if recipient in self.fail_for:
            return SendResult(success=False, error=f"Rejected recipient {recipient}")
        message_id = f"mock-{uuid.uuid4().hex[:16]}"
        self.sent.append({"recipient": recipient, "subject": subject, "body": body, "message_id": message_id})
        return SendResult(success=True, message_id=message_id)

    @property
    def recipients(self) -> List[str]:
        return [entry["recipient"] for entry in self.sent]


_senders: Dict[CampaignChannel, ChannelSender] = {}


def _build_sender(channel: CampaignChannel) -> ChannelSender:
    mock = settings.USE_MOCK_SENDERS
    if channel == CampaignChannel.EMAIL:
        return EmailChannelSender(MockEmailService() if mock else EmailService())
    if channel == CampaignChannel.SMS:
        return SmsChannelSender(MockTwilioService() if mock else TwilioService())
    if channel == CampaignChannel.WHATSAPP:
        return WhatsAppChannelSender(MockTwilioService() if mock else TwilioService())
    raise ValueError(f"Unsupported channel: {channel}")


def get_channel_sender(channel: CampaignChannel) -> ChannelSender:
    """Return the process-wide sender for a channel."""
    channel = CampaignChannel(channel)
    if channel not in _senders:
        _senders[channel] = _build_sender(channel)
        logger.info(f"Initialized {channel.value} sender (mock={settings.USE_MOCK_SENDERS})")
    return _senders[channel]

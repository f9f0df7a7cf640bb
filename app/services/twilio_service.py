import asyncio
import logging
from typing import Optional

from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from app.config import settings
from app.exceptions import SendError

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


def _whatsapp_address(number: str) -> str:
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"


class TwilioService:
    """Service for sending SMS and WhatsApp messages through Twilio."""

    def __init__(self):
        self.account_sid = settings.TWILIO_ACCOUNT_SID
        self.auth_token = settings.TWILIO_AUTH_TOKEN
        self.phone_number = settings.TWILIO_PHONE_NUMBER
        self.whatsapp_number = settings.TWILIO_WHATSAPP_NUMBER or settings.TWILIO_PHONE_NUMBER

        if self.account_sid and self.auth_token:
            self.client = Client(self.account_sid, self.auth_token)
        else:
            self.client = None
            logger.warning("Twilio credentials not configured")

    async def _create_message(self, to: str, from_: Optional[str], body: str):
        if not self.client:
            raise SendError("Twilio client not configured")
        try:
            # The Twilio SDK is synchronous; keep it off the event loop
            return await asyncio.to_thread(
                self.client.messages.create,
                to=to,
                from_=from_,
                body=body,
            )
        except TwilioRestException as e:
            logger.error(f"Twilio error: {e.msg}")
            raise SendError(f"Twilio error: {e.msg}") from e

    async def send_sms(self, to: str, body: str):
        """Send an SMS message via Twilio."""
        message = await self._create_message(to, self.phone_number, body)
        logger.info(f"SMS sent: {message.sid} to {to}")
        return message

    async def send_whatsapp(self, to: str, body: str):
        """Send a WhatsApp message via Twilio."""
        if not self.whatsapp_number:
            raise SendError("Twilio WhatsApp number not configured")
        message = await self._create_message(
            _whatsapp_address(to), _whatsapp_address(self.whatsapp_number), body
        )
        logger.info(f"WhatsApp message sent: {message.sid} to {to}")
        return message


class MockTwilioService(TwilioService):
    """Mock Twilio service for testing."""

    def __init__(self):
        self.phone_number = "+15555555555"
        self.whatsapp_number = "+15555555555"
        self.client = None
        self._sent_messages = []

    async def _create_message(self, to: str, from_: Optional[str], body: str):
        sid = f"SM{len(self._sent_messages):032d}"
        self._sent_messages.append({"to": to, "from": from_, "body": body, "sid": sid})
        logger.info(f"Mock Twilio message sent to {to}")
        return type("MockMessage", (), {"sid": sid, "status": "queued", "to": to, "body": body})()

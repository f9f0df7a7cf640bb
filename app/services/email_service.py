"""Email Service - Brevo (formerly Sendinblue) integration for campaign emails.

Features:
- Send transactional emails via Brevo API
- HTML and plain text support
- No external SDK required (uses httpx)
"""

from app.config import settings
import logging
import uuid
from typing import Optional, Dict, Any
import httpx

logger = logging.getLogger(__name__)

# Brevo API endpoint
BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


def _failure(error: str, status_code: Optional[int] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "error": error,
        "status_code": status_code,
        "message_id": None,
    }


class EmailService:
    """Service for sending emails via Brevo API."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.BREVO_API_KEY
        self.from_address = settings.EMAIL_FROM_ADDRESS
        self.from_name = settings.EMAIL_FROM_NAME
        self._client = client

    @property
    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.api_key) and bool(self.from_address)

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send an email via Brevo API.

        Args:
            to: Recipient email address
            subject: Email subject line
            body: Plain text body
            html_body: Optional HTML body (if not provided, plain text wrapped in basic HTML)
            reply_to: Optional reply-to address

        Returns:
            Dict with status_code, message_id, and success status
        """
        if not self.api_key:
            error_msg = "Brevo API key not configured"
            logger.error(error_msg)
            return _failure(error_msg)

        payload = {
            "sender": {
                "name": self.from_name,
                "email": self.from_address,
            },
            "to": [{"email": to}],
            "subject": subject,
            "textContent": body,
        }

        if html_body:
            payload["htmlContent"] = html_body
        else:
            payload["htmlContent"] = f"<html><body><p>{body.replace(chr(10), '<br>')}</p></body></html>"

        if reply_to:
            payload["replyTo"] = {"email": reply_to}

        headers = {
            "accept": "application/json",
            "api-key": self.api_key,
            "content-type": "application/json",
        }

        try:
            if self._client is not None:
                response = await self._client.post(BREVO_API_URL, json=payload, headers=headers, timeout=30.0)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(BREVO_API_URL, json=payload, headers=headers, timeout=30.0)

            if response.status_code in (200, 201):
                message_id = response.json().get("messageId")
                logger.info(
                    "Email sent via Brevo",
                    extra={
                        "to": to,
                        "subject": subject[:50],
                        "status_code": response.status_code,
                        "message_id": message_id,
                    },
                )
                return {
                    "success": True,
                    "status_code": response.status_code,
                    "message_id": message_id,
                }

            error_detail = response.text
            logger.error(
                "Brevo API error",
                extra={"status_code": response.status_code, "error": error_detail},
            )
            return _failure(f"Brevo API error: {error_detail}", response.status_code)

        except httpx.TimeoutException:
            error_msg = "Brevo API request timed out"
            logger.error(error_msg, extra={"to": to})
            return _failure(error_msg)
        except httpx.HTTPError as e:
            logger.error("Failed to send email via Brevo", extra={"to": to, "error": str(e)})
            return _failure(str(e))


class MockEmailService(EmailService):
    """Mock email service for testing and development."""

    def __init__(self, fail_for: Optional[set] = None):
        self.api_key = "mock-key"
        self.from_address = "test@example.com"
        self.from_name = "Test Sender"
        self._client = None
        self._fail_for = set(fail_for or ())
        self._sent_emails = []

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Mock sending an email."""
        if to in self._fail_for:
            logger.info(f"Mock email rejected for {to}")
            return _failure("Mailbox unavailable", 400)

        mock_message_id = f"mock-{uuid.uuid4().hex[:16]}"
        self._sent_emails.append(
            {
                "to": to,
                "subject": subject,
                "body": body,
                "html_body": html_body,
                "message_id": mock_message_id,
            }
        )
        logger.info(f"Mock email sent to {to}: {subject}")
        return {
            "success": True,
            "status_code": 201,
            "message_id": mock_message_id,
        }

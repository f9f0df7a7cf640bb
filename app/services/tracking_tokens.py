"""
Tracking token codec.

Tokens are base64 of ``"<eventId>|<email>"`` (open, unsubscribe) or
``"<eventId>|<email>|<url>"`` (click), where eventId is the SENT delivery
event the signal belongs to. Both the standard and URL-safe alphabets are
accepted and missing padding is tolerated.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from app.config import settings
from app.exceptions import TrackingDecodeError

SEPARATOR = "|"
_HREF_PATTERN = re.compile(r'href="(https?://[^"]+)"', re.IGNORECASE)


@dataclass(frozen=True)
class TrackingToken:
    event_id: int
    email: str
    url: Optional[str] = None


def encode_token(event_id: int, email: str, url: Optional[str] = None) -> str:
    parts = [str(event_id), email]
    if url is not None:
        parts.append(url)
    raw = SEPARATOR.join(parts).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_token(token: str, with_url: bool = False) -> TrackingToken:
    """
    Decode a tracking token.

    Raises:
        TrackingDecodeError: malformed base64, wrong field count, non-numeric
            event id, empty email, or (click tokens) a non-http(s) URL.
    """
    if not token:
        raise TrackingDecodeError("Empty tracking token")

    normalized = token.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        decoded = base64.b64decode(normalized, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise TrackingDecodeError(f"Malformed tracking token: {e}") from e

    expected = 3 if with_url else 2
    parts = decoded.split(SEPARATOR, expected - 1)
    if len(parts) != expected:
        raise TrackingDecodeError(f"Expected {expected} fields in tracking token, got {len(parts)}")

    event_part, email = parts[0], parts[1].strip()
    try:
        event_id = int(event_part)
    except ValueError as e:
        raise TrackingDecodeError(f"Invalid event id in tracking token: {event_part!r}") from e
    if not email:
        raise TrackingDecodeError("Tracking token has no email")

    url = None
    if with_url:
        url = parts[2].strip()
        if urlparse(url).scheme not in ("http", "https"):
            raise TrackingDecodeError("Tracking token URL must be http or https")

    return TrackingToken(event_id=event_id, email=email, url=url)


def open_url(event_id: int, email: str) -> str:
    return f"{settings.TRACKING_BASE_URL}/open/{encode_token(event_id, email)}"


def click_url(event_id: int, email: str, target: str) -> str:
    return f"{settings.TRACKING_BASE_URL}/click/{encode_token(event_id, email, target)}"


def unsubscribe_url(event_id: int, email: str) -> str:
    return f"{settings.TRACKING_BASE_URL}/unsubscribe/{encode_token(event_id, email)}"


def instrument_email_body(body: str, event_id: int, email: str) -> str:
    """Route links through click tracking and append the open pixel and unsubscribe link."""
    tracked = _HREF_PATTERN.sub(
        lambda match: f'href="{click_url(event_id, email, match.group(1))}"',
        body,
    )
    footer = (
        f'\n<a href="{unsubscribe_url(event_id, email)}">Unsubscribe</a>'
        f'<img src="{open_url(event_id, email)}" width="1" height="1" alt="" />'
    )
    return tracked + footer

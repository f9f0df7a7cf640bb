"""
Delivery Tracking Schemas
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class DeliveryEventType(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    UNSUBSCRIBED = "unsubscribed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    UNSUBSCRIBED = "unsubscribed"
    FAILED = "failed"


class BounceType(str, Enum):
    HARD_BOUNCE = "hard_bounce"
    SOFT_BOUNCE = "soft_bounce"
    BLOCKED = "blocked"
    SPAM = "spam"
    INVALID_EMAIL = "invalid_email"
    MAILBOX_FULL = "mailbox_full"
    UNKNOWN = "unknown"


class ProviderEventType(str, Enum):
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


class ProviderEventRequest(BaseModel):
    """Asynchronous delivery signal pushed by a channel provider."""
    event_ref: int = Field(..., description="ID of the SENT delivery event")
    email: str
    event_type: ProviderEventType
    bounce_type: Optional[BounceType] = None
    reason: Optional[str] = None


class TrackingResponse(BaseModel):
    status: str
    message: str


class DeliveryStatusResponse(BaseModel):
    event_ref: int
    status: DeliveryStatus


class BouncedEmailsResponse(BaseModel):
    hours: int
    emails: list[str]

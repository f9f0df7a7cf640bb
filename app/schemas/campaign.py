"""
Campaign Execution Schemas
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
from enum import Enum


class CampaignChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


# Requests

class SendCampaignRequest(BaseModel):
    """Start a campaign immediately. Omitted values fall back to configured defaults."""
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    rate_limit_per_minute: Optional[int] = Field(None, ge=0)


class ScheduleCampaignRequest(BaseModel):
    """Schedule a draft campaign for a future start."""
    scheduled_time: datetime
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    rate_limit_per_minute: Optional[int] = Field(None, ge=0)


# Responses

class CampaignProgressResponse(BaseModel):
    """Read model of a campaign run."""
    campaign_id: int
    status: Optional[CampaignStatus] = None
    total_recipients: int = 0
    emails_sent: int = 0
    emails_success: int = 0
    emails_failed: int = 0
    emails_in_progress: int = 0
    current_batch_number: int = 0
    total_batches: int = 0
    batch_size: int = 0
    rate_limit_per_minute: int = 0
    progress_percentage: float = 0.0
    success_rate: float = 0.0
    failure_rate: float = 0.0
    scheduled_time: Optional[datetime] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_batch_sent_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class DeliveryStatistics(BaseModel):
    """Campaign counters with derived percentages (0-100)."""
    total_sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    bounced: int = 0
    complained: int = 0
    unsubscribed: int = 0
    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0
    bounce_rate: float = 0.0
    unsubscribe_rate: float = 0.0


class CampaignAnalyticsResponse(BaseModel):
    """Progress and delivery statistics in one payload."""
    campaign_id: int
    name: Optional[str] = None
    channel: Optional[CampaignChannel] = None
    progress: CampaignProgressResponse
    statistics: DeliveryStatistics


class RetryResult(BaseModel):
    """Outcome of one retry pass over failed messages."""
    campaign_id: int
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

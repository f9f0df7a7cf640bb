"""Append-only delivery lifecycle events."""
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON

from app.database import Base
from app.utils.clock import utcnow


class DeliveryEvent(Base):
    """
    A single observed delivery signal.

    SENT events are the anchors: tracking tokens carry the SENT event id, and
    every later signal for that message points back to it via source_event_id.
    Signals whose anchor is unknown are kept with a null campaign_id.
    """

    __tablename__ = "delivery_events"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, nullable=True, index=True)
    source_event_id = Column(Integer, nullable=True, index=True)

    email = Column(String(255), nullable=False, index=True)
    # sent, delivered, opened, clicked, bounced, complained, unsubscribed
    event_type = Column(String(20), nullable=False, index=True)
    event_data = Column(JSON, nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

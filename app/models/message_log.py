"""Per-recipient send attempt log."""
from sqlalchemy import Column, Integer, String, Text, DateTime

from app.database import Base


class MessageLog(Base):
    """One row per recipient attempt; retries update the row in place."""

    __tablename__ = "message_logs"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, nullable=False, index=True)
    batch_number = Column(Integer, nullable=False, default=0)

    recipient = Column(String(255), nullable=False, index=True)
    channel = Column(String(20), nullable=False, default="email")

    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, sent, failed, delivered
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True)

    processing_time_ms = Column(Integer, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=True)

    @property
    def can_retry(self) -> bool:
        return self.status == "failed" and (self.retry_count or 0) < (self.max_retries or 0)

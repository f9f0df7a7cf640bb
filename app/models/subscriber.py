"""Campaign audience members."""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func

from app.database import Base


class Subscriber(Base):
    """Tenant-scoped recipient with a sender-reputation score (0-100)."""

    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(32), nullable=True)
    name = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False, default="active", index=True)  # active, unsubscribed, bounced, suppressed
    reputation_score = Column(Integer, nullable=False, default=100)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

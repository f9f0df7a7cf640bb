"""First open/click per recipient, used to count engagement once."""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint

from app.database import Base
from app.utils.clock import utcnow


class FirstEngagement(Base):
    """
    One row per (campaign, recipient, engagement type).

    The unique constraint decides which of several concurrent opens or clicks
    is the first one; only the insert that creates the row bumps the counter.
    """

    __tablename__ = "campaign_first_engagements"
    __table_args__ = (
        UniqueConstraint("campaign_id", "email", "event_type", name="uq_first_engagement"),
    )

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    # opened or clicked
    event_type = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

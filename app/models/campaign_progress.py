"""Campaign progress read model."""
from sqlalchemy import Column, Integer, String, Text, DateTime

from app.database import Base


def _percentage(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return part / whole * 100


class CampaignProgress(Base):
    """
    Live state of one campaign run (one row per campaign).

    Writes are optimistic: every flush checks and bumps ``version`` so a
    concurrent writer in another process surfaces as StaleDataError.
    """

    __tablename__ = "campaign_progress"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, nullable=False, unique=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    # scheduled, running, paused, completed, cancelled, failed
    status = Column(String(20), nullable=False, default="scheduled", index=True)

    total_recipients = Column(Integer, nullable=False, default=0)
    emails_sent = Column(Integer, nullable=False, default=0)
    emails_success = Column(Integer, nullable=False, default=0)
    emails_failed = Column(Integer, nullable=False, default=0)
    emails_in_progress = Column(Integer, nullable=False, default=0)

    current_batch_number = Column(Integer, nullable=False, default=0)
    total_batches = Column(Integer, nullable=False, default=0)
    batch_size = Column(Integer, nullable=False, default=50)
    rate_limit_per_minute = Column(Integer, nullable=False, default=100)

    scheduled_time = Column(DateTime(timezone=True), nullable=True, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    last_batch_sent_at = Column(DateTime(timezone=True), nullable=True)

    error_message = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def progress_percentage(self) -> float:
        return _percentage(self.emails_sent or 0, self.total_recipients or 0)

    @property
    def success_rate(self) -> float:
        return _percentage(self.emails_success or 0, self.emails_sent or 0)

    @property
    def failure_rate(self) -> float:
        return _percentage(self.emails_failed or 0, self.emails_sent or 0)

    def __repr__(self):
        return f"<CampaignProgress campaign={self.campaign_id} {self.status} {self.emails_sent}/{self.total_recipients}>"

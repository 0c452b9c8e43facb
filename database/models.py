"""SQLAlchemy models."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATUS_PENDING = "PENDING"
STATUS_BUYING = "BUYING"
STATUS_SKIPPED = "SKIPPED"
STATUS_BOUGHT = "BOUGHT"
STATUS_FAILED = "FAILED"
STATUS_EXPIRED = "EXPIRED"

TERMINAL_STATUSES = (STATUS_SKIPPED, STATUS_BOUGHT, STATUS_FAILED, STATUS_EXPIRED)


def utcnow() -> datetime:
    """Naive UTC timestamp; all queue timestamps are stored naive-UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScoutQueueItem(Base):
    __tablename__ = "scout_queue"

    id = Column(Integer, primary_key=True)
    mint = Column(String, unique=True, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    status = Column(String, default=STATUS_PENDING, nullable=False, index=True)
    buy_attempts = Column(Integer, default=0, nullable=False)
    queued_at = Column(DateTime, default=utcnow, nullable=False)
    in_progress_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    audit_trail = Column(Text, default="", nullable=False)
    tx_sig = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def age_minutes(self, now: datetime | None = None) -> float:
        started = self.in_progress_at or self.queued_at
        if started is None:
            return 0.0
        return max(0.0, ((now or utcnow()) - started).total_seconds() / 60.0)

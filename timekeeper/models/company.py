from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from timekeeper.database import Base

DEFAULT_IDLE_THRESHOLD_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)

    idle_detection_enabled = Column(Boolean, nullable=False, default=False)
    idle_threshold_seconds = Column(Integer, nullable=False, default=DEFAULT_IDLE_THRESHOLD_SECONDS)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

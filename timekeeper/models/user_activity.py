from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer

from timekeeper.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserActivity(Base):
    __tablename__ = "user_activity"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    # NULL when the row was created by the idle sweep before any heartbeat.
    last_heartbeat = Column(DateTime(timezone=True), nullable=True)
    is_idle = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

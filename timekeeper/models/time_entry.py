from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from timekeeper.database import Base


class EntryStatus:
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"

    ALL = (RUNNING, PAUSED, STOPPED)
    ACTIVE = (RUNNING, PAUSED)


class ApprovalStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    ALL = (PENDING, APPROVED, REJECTED)
    RESOLVED = (APPROVED, REJECTED)


ONE_ACTIVE_PER_USER_INDEX = "uq_time_entries_one_active_per_user"
_ACTIVE_PREDICATE = "status IN ('RUNNING', 'PAUSED')"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeEntry(Base):
    __tablename__ = "time_entries"

    __table_args__ = (
        Index(
            ONE_ACTIVE_PER_USER_INDEX,
            "user_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
        CheckConstraint("duration >= 0", name="ck_time_entries_duration_nonnegative"),
    )

    id = Column(String, primary_key=True, index=True)
    idempotency_key = Column(String, nullable=True, unique=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True, index=True)
    description = Column(Text, nullable=True)

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Integer, nullable=False, default=0)

    status = Column(String, nullable=False, index=True)

    approval_status = Column(String, nullable=False, default=ApprovalStatus.PENDING, index=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejection_comment = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

"""One active (RUNNING or PAUSED) entry per user.

The guard only means something when it runs on the same session, and in the
same transaction, as the write that follows it. The partial unique index
``uq_time_entries_one_active_per_user`` is the backstop for requests that
slip between the guard's read and the insert; ``flush_guarded`` turns that
violation into the same ``ConflictError`` the guard raises.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timekeeper.core.errors import ConflictError
from timekeeper.models.activity import ActivityType
from timekeeper.models.time_entry import ONE_ACTIVE_PER_USER_INDEX, ApprovalStatus, EntryStatus, TimeEntry
from timekeeper.services.activity_log import record_activity
from timekeeper.services.duration import effective_duration, stop_time

logger = logging.getLogger(__name__)

ACTIVE_ENTRY_MESSAGE = "User already has an active time entry"


def find_active_entry(
    db: Session,
    user_id: int,
    exclude_entry_id: Optional[str] = None,
) -> Optional[TimeEntry]:
    q = db.query(TimeEntry).filter(
        TimeEntry.user_id == int(user_id),
        TimeEntry.status.in_(EntryStatus.ACTIVE),
    )
    if exclude_entry_id is not None:
        q = q.filter(TimeEntry.id != str(exclude_entry_id))
    return q.order_by(TimeEntry.start_time.asc()).with_for_update().first()


def assert_no_active_overlap(
    db: Session,
    user_id: int,
    exclude_entry_id: Optional[str] = None,
) -> None:
    active = find_active_entry(db, user_id, exclude_entry_id)
    if active is not None:
        raise ConflictError(
            ACTIVE_ENTRY_MESSAGE,
            user_id=int(user_id),
            active_entry_id=active.id,
            active_status=active.status,
        )


def auto_stop_active_entry(db: Session, user_id: int, now: datetime) -> Optional[TimeEntry]:
    """Force-stop the user's active entry. Used by offline sync only."""
    active = find_active_entry(db, user_id)
    if active is None:
        return None

    active.duration = effective_duration(active, now)
    active.status = EntryStatus.STOPPED
    active.end_time = stop_time(active.start_time, now)
    active.approval_status = ApprovalStatus.PENDING
    record_activity(db, user_id=active.user_id, project_id=active.project_id, type=ActivityType.STOP, entry_id=active.id, at=now)
    db.flush()

    logger.info(
        "Auto-stopped active time entry before syncing a new active entry",
        extra={"entry_id": active.id, "user_id": int(user_id), "duration": int(active.duration)},
    )
    return active


def is_active_entry_violation(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc))
    return ONE_ACTIVE_PER_USER_INDEX in message or "time_entries.user_id" in message


def flush_guarded(db: Session, user_id: int) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        if is_active_entry_violation(exc):
            raise ConflictError(ACTIVE_ENTRY_MESSAGE, user_id=int(user_id)) from exc
        raise

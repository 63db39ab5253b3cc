import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Mapping, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from timekeeper.core.authorization import is_privileged, is_reviewer
from timekeeper.core.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from timekeeper.database import SessionLocal
from timekeeper.models.activity import Activity, ActivityType
from timekeeper.models.time_entry import ApprovalStatus, EntryStatus, TimeEntry
from timekeeper.models.user import User
from timekeeper.services import directory, idle_tracker
from timekeeper.services.activity_log import query_activities, record_activity
from timekeeper.services.duration import (
    as_utc,
    check_duration_bounds,
    effective_duration,
    elapsed_since,
    seconds_between,
    stop_time,
    utcnow,
)
from timekeeper.services.overlap_guard import assert_no_active_overlap, flush_guarded
from timekeeper.services.side_effects import defer_until_commit, notifier, publish_entry_change

logger = logging.getLogger(__name__)

MAX_START_AHEAD = timedelta(hours=1)

UPDATABLE_FIELDS = frozenset({"project_id", "start_time", "end_time", "duration", "description", "status"})
TIMING_FIELDS = frozenset({"start_time", "end_time", "duration", "status"})


@contextmanager
def _unit_of_work(db: Optional[Session]) -> Iterator[Session]:
    """
    If db is provided, the caller owns the transaction: no commit, no close.
    If db is None, a session is opened, committed on success and closed.
    """
    owns_db = db is None
    session = SessionLocal() if owns_db else db
    try:
        yield session
        if owns_db:
            session.commit()
    except Exception:
        if owns_db:
            session.rollback()
        raise
    finally:
        if owns_db:
            session.close()


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utcnow()


def load_entry(db: Session, entry_id: str, company_id: int, *, for_update: bool = True) -> TimeEntry:
    q = (
        db.query(TimeEntry)
        .join(User, User.id == TimeEntry.user_id)
        .filter(
            TimeEntry.id == str(entry_id),
            User.company_id == int(company_id),
        )
    )
    if for_update:
        q = q.with_for_update(of=TimeEntry)
    entry = q.first()
    if entry is None:
        raise NotFoundError(f"Time entry with ID {entry_id} not found", entry_id=str(entry_id))
    return entry


def _require_owner_or_privileged(entry: TimeEntry, actor_id: int, actor_role, action: str) -> None:
    if int(entry.user_id) == int(actor_id) or is_privileged(actor_role):
        return
    raise ForbiddenError(f"You can only {action} your own time entries", entry_id=entry.id)


def _check_start_not_in_future(start_time: datetime, now: datetime) -> None:
    if start_time > now + MAX_START_AHEAD:
        raise ValidationError(
            "Start time cannot be more than 1 hour in the future",
            start_time=start_time.isoformat(),
        )


def _check_range(entry: TimeEntry) -> None:
    if entry.end_time is not None and as_utc(entry.end_time) <= as_utc(entry.start_time):
        raise ValidationError(
            "End time must be after start time",
            start_time=as_utc(entry.start_time).isoformat(),
            end_time=as_utc(entry.end_time).isoformat(),
        )


def _notify_reviewers(db: Session, entry: TimeEntry, company_id: int) -> None:
    reviewer_ids = directory.list_reviewer_ids(db, company_id, exclude_user_id=entry.user_id)
    if not reviewer_ids:
        return
    defer_until_commit(
        db,
        "notify_reviewers",
        notifier().notify_users,
        reviewer_ids,
        "TIME_ENTRY_SUBMITTED",
        "Time entry awaiting approval",
        f"A time entry of {int(entry.duration)} seconds is waiting for review.",
        {"time_entry_id": entry.id, "user_id": entry.user_id, "project_id": entry.project_id},
    )


def create_entry(
    company_id: int,
    actor_id: int,
    actor_role,
    user_id: int,
    project_id: Optional[int] = None,
    start_time: Optional[datetime] = None,
    description: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> TimeEntry:
    now = _now(now)
    privileged = is_privileged(actor_role)

    with _unit_of_work(db) as session:
        if not privileged and int(user_id) != int(actor_id):
            raise ForbiddenError("You can only create time entries for yourself")

        directory.require_user(session, actor_id, company_id, active=True)
        if int(user_id) != int(actor_id):
            directory.require_user(session, user_id, company_id, active=True)

        if project_id is None:
            if not privileged:
                raise ValidationError("Project is required for employees")
        else:
            directory.require_project(session, project_id, company_id)

        start = as_utc(start_time) if start_time is not None else now
        _check_start_not_in_future(start, now)

        assert_no_active_overlap(session, user_id)

        entry = TimeEntry(
            id=str(uuid4()),
            user_id=int(user_id),
            project_id=int(project_id) if project_id is not None else None,
            description=description,
            start_time=start,
            end_time=None,
            duration=0,
            status=EntryStatus.RUNNING,
            approval_status=ApprovalStatus.PENDING,
        )
        session.add(entry)
        flush_guarded(session, user_id)

        record_activity(session, user_id=entry.user_id, project_id=entry.project_id, type=ActivityType.START, entry_id=entry.id, at=now)
        session.flush()
        publish_entry_change(session, entry, company_id)

        logger.info(
            "Time entry started",
            extra={"entry_id": entry.id, "user_id": entry.user_id, "company_id": int(company_id)},
        )
        return entry


def stop_entry(
    entry_id: str,
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> TimeEntry:
    now = _now(now)

    with _unit_of_work(db) as session:
        entry = load_entry(session, entry_id, company_id)
        _require_owner_or_privileged(entry, actor_id, actor_role, "stop")

        if entry.status == EntryStatus.STOPPED:
            raise InvalidStateError("Time entry is already stopped", entry_id=entry.id, status=entry.status)

        entry.duration = effective_duration(entry, now)
        entry.status = EntryStatus.STOPPED
        entry.end_time = stop_time(entry.start_time, now)
        entry.approval_status = ApprovalStatus.PENDING

        record_activity(session, user_id=entry.user_id, project_id=entry.project_id, type=ActivityType.STOP, entry_id=entry.id, at=now)
        session.flush()

        _notify_reviewers(session, entry, company_id)
        publish_entry_change(session, entry, company_id)

        logger.info(
            "Time entry stopped",
            extra={"entry_id": entry.id, "user_id": entry.user_id, "duration": int(entry.duration)},
        )
        return entry


def pause_entry(
    entry_id: str,
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> TimeEntry:
    now = _now(now)

    with _unit_of_work(db) as session:
        entry = load_entry(session, entry_id, company_id)
        _require_owner_or_privileged(entry, actor_id, actor_role, "pause")

        if entry.status != EntryStatus.RUNNING:
            raise InvalidStateError("Only running entries can be paused", entry_id=entry.id, status=entry.status)

        entry.duration = effective_duration(entry, now)
        entry.status = EntryStatus.PAUSED

        record_activity(session, user_id=entry.user_id, project_id=entry.project_id, type=ActivityType.PAUSE, entry_id=entry.id, at=now)
        session.flush()
        publish_entry_change(session, entry, company_id)

        logger.info(
            "Time entry paused",
            extra={"entry_id": entry.id, "user_id": entry.user_id, "duration": int(entry.duration)},
        )
        return entry


def resume_entry(
    entry_id: str,
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> TimeEntry:
    now = _now(now)

    with _unit_of_work(db) as session:
        entry = load_entry(session, entry_id, company_id)
        _require_owner_or_privileged(entry, actor_id, actor_role, "resume")

        if entry.status != EntryStatus.PAUSED:
            raise InvalidStateError("Only paused entries can be resumed", entry_id=entry.id, status=entry.status)

        assert_no_active_overlap(session, entry.user_id, exclude_entry_id=entry.id)

        # Next pause/stop measures only the interval that starts now.
        entry.start_time = now
        entry.status = EntryStatus.RUNNING

        record_activity(session, user_id=entry.user_id, project_id=entry.project_id, type=ActivityType.RESUME, entry_id=entry.id, at=now)
        idle_tracker.clear_idle(session, entry.user_id)
        flush_guarded(session, entry.user_id)
        publish_entry_change(session, entry, company_id)

        logger.info("Time entry resumed", extra={"entry_id": entry.id, "user_id": entry.user_id})
        return entry


def _transition_for_update(
    session: Session,
    entry: TimeEntry,
    target_status: str,
    start: datetime,
    explicit_start: bool,
    explicit_end: Optional[datetime],
    now: datetime,
) -> Optional[str]:
    previous = entry.status

    if target_status == EntryStatus.STOPPED:
        end = explicit_end or now
        if previous == EntryStatus.RUNNING:
            entry.duration = check_duration_bounds(int(entry.duration or 0) + seconds_between(start, end))
        entry.status = EntryStatus.STOPPED
        entry.end_time = end
        entry.approval_status = ApprovalStatus.PENDING
        return ActivityType.STOP

    if target_status == EntryStatus.PAUSED:
        if previous == EntryStatus.RUNNING:
            entry.duration = check_duration_bounds(int(entry.duration or 0) + elapsed_since(start, now))
        else:
            assert_no_active_overlap(session, entry.user_id, exclude_entry_id=entry.id)
            entry.end_time = None
        entry.status = EntryStatus.PAUSED
        return ActivityType.PAUSE

    assert_no_active_overlap(session, entry.user_id, exclude_entry_id=entry.id)
    if not explicit_start:
        entry.start_time = now
    entry.end_time = None
    entry.status = EntryStatus.RUNNING
    return ActivityType.RESUME if previous == EntryStatus.PAUSED else ActivityType.START


def update_entry(
    entry_id: str,
    patch: Mapping[str, Any],
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> TimeEntry:
    """
    Apply a partial edit. Only keys present in ``patch`` are touched; an
    explicit ``project_id: None`` clears the project.
    """
    now = _now(now)
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    with _unit_of_work(db) as session:
        entry = load_entry(session, entry_id, company_id)
        _require_owner_or_privileged(entry, actor_id, actor_role, "update")

        if entry.approval_status in ApprovalStatus.RESOLVED and TIMING_FIELDS & set(patch):
            raise InvalidStateError(
                "Time entry has been reviewed and its timing can no longer be changed",
                entry_id=entry.id,
                approval_status=entry.approval_status,
            )

        if "project_id" in patch:
            project_id = patch["project_id"]
            if project_id in (None, ""):
                if not is_privileged(actor_role):
                    raise ValidationError("Project is required for employees")
                entry.project_id = None
            else:
                directory.require_project(session, project_id, company_id)
                entry.project_id = int(project_id)

        if "description" in patch:
            entry.description = patch["description"]

        explicit_start = patch.get("start_time") is not None
        if "start_time" in patch and not explicit_start:
            raise ValidationError("Start time cannot be empty")
        start = as_utc(patch["start_time"]) if explicit_start else as_utc(entry.start_time)
        if explicit_start:
            _check_start_not_in_future(start, now)

        explicit_end = as_utc(patch.get("end_time")) if patch.get("end_time") is not None else None

        target_status = patch.get("status") or entry.status
        if target_status not in EntryStatus.ALL:
            raise ValidationError(f"Invalid status: {target_status}")

        explicit_duration = None
        if patch.get("duration") is not None:
            explicit_duration = check_duration_bounds(patch["duration"])

        was_stopped = entry.status == EntryStatus.STOPPED
        activity_type = None
        if target_status != entry.status:
            activity_type = _transition_for_update(session, entry, target_status, start, explicit_start, explicit_end, now)

        if explicit_start:
            entry.start_time = start

        if explicit_end is not None:
            if entry.status != EntryStatus.STOPPED:
                raise ValidationError("End time can only be set on stopped entries", entry_id=entry.id)
            entry.end_time = explicit_end

        _check_range(entry)

        if explicit_duration is not None:
            entry.duration = explicit_duration
        elif was_stopped and entry.status == EntryStatus.STOPPED and (explicit_start or explicit_end is not None):
            entry.duration = seconds_between(entry.start_time, entry.end_time)

        if activity_type is not None:
            record_activity(session, user_id=entry.user_id, project_id=entry.project_id, type=activity_type, entry_id=entry.id, at=now)
        flush_guarded(session, entry.user_id)

        if activity_type == ActivityType.STOP:
            _notify_reviewers(session, entry, company_id)
        publish_entry_change(session, entry, company_id)

        logger.info(
            "Time entry updated",
            extra={"entry_id": entry.id, "user_id": entry.user_id, "fields": sorted(patch)},
        )
        return entry


def remove_entry(
    entry_id: str,
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    with _unit_of_work(db) as session:
        entry = load_entry(session, entry_id, company_id)

        if not is_privileged(actor_role):
            if int(entry.user_id) != int(actor_id):
                raise ForbiddenError("You can only delete your own time entries", entry_id=entry.id)
            if entry.approval_status != ApprovalStatus.PENDING:
                raise InvalidStateError(
                    "Reviewed time entries cannot be deleted",
                    entry_id=entry.id,
                    approval_status=entry.approval_status,
                )

        publish_entry_change(session, entry, company_id)
        session.delete(entry)
        session.flush()

        logger.info("Time entry deleted", extra={"entry_id": entry_id, "actor_id": int(actor_id)})
        return {"id": str(entry_id), "deleted": True}


def get_entry(
    entry_id: str,
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    db: Optional[Session] = None,
) -> TimeEntry:
    with _unit_of_work(db) as session:
        entry = load_entry(session, entry_id, company_id, for_update=False)
        if int(entry.user_id) != int(actor_id) and not is_reviewer(actor_role):
            raise ForbiddenError("You can only view your own time entries", entry_id=entry.id)
        return entry


def list_entries(
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    status: Optional[str] = None,
    approval_status: Optional[str] = None,
    start_from: Optional[datetime] = None,
    start_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
    db: Optional[Session] = None,
) -> List[TimeEntry]:
    """Employees only ever see their own entries; reviewers see the company."""
    if not is_reviewer(actor_role):
        if user_id is not None and int(user_id) != int(actor_id):
            raise ForbiddenError("You can only view your own time entries")
        user_id = actor_id

    if status is not None and status not in EntryStatus.ALL:
        raise ValidationError(f"Invalid status: {status}")
    if approval_status is not None and approval_status not in ApprovalStatus.ALL:
        raise ValidationError(f"Invalid approval status: {approval_status}")

    with _unit_of_work(db) as session:
        q = (
            session.query(TimeEntry)
            .join(User, User.id == TimeEntry.user_id)
            .filter(User.company_id == int(company_id))
        )
        if user_id is not None:
            q = q.filter(TimeEntry.user_id == int(user_id))
        if project_id is not None:
            q = q.filter(TimeEntry.project_id == int(project_id))
        if status is not None:
            q = q.filter(TimeEntry.status == status)
        if approval_status is not None:
            q = q.filter(TimeEntry.approval_status == approval_status)
        if start_from is not None:
            q = q.filter(TimeEntry.start_time >= as_utc(start_from))
        if start_to is not None:
            q = q.filter(TimeEntry.start_time <= as_utc(start_to))

        return (
            q.order_by(TimeEntry.start_time.desc())
            .offset(int(offset))
            .limit(int(limit))
            .all()
        )


def list_active_entries(
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    db: Optional[Session] = None,
) -> List[TimeEntry]:
    with _unit_of_work(db) as session:
        q = (
            session.query(TimeEntry)
            .join(User, User.id == TimeEntry.user_id)
            .filter(
                User.company_id == int(company_id),
                TimeEntry.status.in_(EntryStatus.ACTIVE),
            )
        )
        if not is_reviewer(actor_role):
            q = q.filter(TimeEntry.user_id == int(actor_id))
        return q.order_by(TimeEntry.start_time.desc()).all()


def list_activities(
    company_id: int,
    actor_id: int,
    actor_role,
    *,
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
    db: Optional[Session] = None,
) -> List[Activity]:
    if not is_reviewer(actor_role):
        if user_id is not None and int(user_id) != int(actor_id):
            raise ForbiddenError("You can only view your own activities")
        user_id = actor_id

    if since is not None and until is not None and as_utc(since) > as_utc(until):
        raise ValidationError("Activity window start must not be after its end")

    with _unit_of_work(db) as session:
        if user_id is not None:
            directory.require_user(session, user_id, company_id)
        return query_activities(
            session,
            company_id,
            user_id=user_id,
            project_id=project_id,
            since=since,
            until=until,
            limit=limit,
        )

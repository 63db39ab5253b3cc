"""Batched, idempotent ingestion of entries recorded offline by the desktop client.

Each item carries a client-generated ``idempotency_key``. Replaying an item
with an identical (start_time, project_id, duration) is a no-op reported as
``skipped``; replaying it with different values is a conflict and aborts the
batch. The batch is one transaction: items are flushed in order, so a later
item's overlap check sees an earlier item's auto-stop.

Timestamps are validated strictly, exactly as for interactive creation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from timekeeper.core.authorization import is_privileged
from timekeeper.core.errors import ConflictError, ForbiddenError, ValidationError
from timekeeper.database import SessionLocal
from timekeeper.models.activity import ActivityType
from timekeeper.models.time_entry import ApprovalStatus, EntryStatus, TimeEntry
from timekeeper.models.user import User
from timekeeper.services import directory
from timekeeper.services.activity_log import record_activity
from timekeeper.services.duration import as_utc, check_duration_bounds, seconds_between, utcnow
from timekeeper.services.overlap_guard import auto_stop_active_entry, flush_guarded
from timekeeper.services.side_effects import broadcaster, defer_until_commit, publish_entry_change, stats_cache
from timekeeper.services.time_engine import MAX_START_AHEAD

logger = logging.getLogger(__name__)

MAX_SYNC_BATCH = 100

CREATED = "created"
SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncItem:
    idempotency_key: str
    user_id: int
    project_id: Optional[int]
    start_time: datetime
    end_time: Optional[datetime]
    duration: int
    description: Optional[str]
    status: str


def normalize_item(raw: Mapping[str, Any]) -> SyncItem:
    """Resolve the values that would be stored, so replays compare like with like."""
    key = raw.get("idempotency_key")
    if not key:
        raise ValidationError("idempotency_key is required")

    status = raw.get("status") or EntryStatus.STOPPED
    if status not in EntryStatus.ALL:
        raise ValidationError(f"Invalid status: {status}", idempotency_key=key)

    if raw.get("start_time") is None:
        raise ValidationError("start_time is required", idempotency_key=key)
    start = as_utc(raw["start_time"])
    end = as_utc(raw.get("end_time")) if raw.get("end_time") is not None else None
    duration = raw.get("duration")
    if duration is not None:
        duration = check_duration_bounds(duration)

    if status == EntryStatus.STOPPED:
        if end is None:
            if duration is None:
                raise ValidationError("Stopped entries need end_time or duration", idempotency_key=key)
            end = start + timedelta(seconds=duration)
        if end <= start:
            raise ValidationError("End time must be after start time", idempotency_key=key)
        if duration is None:
            duration = seconds_between(start, end)
    else:
        if end is not None:
            raise ValidationError("Active entries cannot have an end time", idempotency_key=key)
        duration = duration or 0

    if raw.get("user_id") is None:
        raise ValidationError("user_id is required", idempotency_key=key)

    project_id = raw.get("project_id")
    return SyncItem(
        idempotency_key=str(key),
        user_id=int(raw["user_id"]),
        project_id=int(project_id) if project_id not in (None, "") else None,
        start_time=start,
        end_time=end,
        duration=int(duration),
        description=raw.get("description"),
        status=status,
    )


def _existing_by_key(db: Session, key: str) -> Optional[TimeEntry]:
    return db.query(TimeEntry).filter(TimeEntry.idempotency_key == key).first()


def _same_payload(existing: TimeEntry, item: SyncItem) -> bool:
    return (
        as_utc(existing.start_time) == item.start_time
        and existing.project_id == item.project_id
        and int(existing.duration) == item.duration
    )


def _check_replay(db: Session, existing: TimeEntry, item: SyncItem, company_id: int) -> None:
    owner = db.query(User.company_id).filter(User.id == existing.user_id).scalar()
    if owner is None or int(owner) != int(company_id):
        raise ConflictError("Idempotency key is already in use", idempotency_key=item.idempotency_key)

    if not _same_payload(existing, item):
        raise ConflictError(
            "Idempotency key was already used with a different payload",
            idempotency_key=item.idempotency_key,
            existing_id=existing.id,
        )


def _validate_new(db: Session, item: SyncItem, company_id: int, actor_id: int, actor_role, now: datetime) -> None:
    privileged = is_privileged(actor_role)
    if not privileged and item.user_id != int(actor_id):
        raise ForbiddenError("You can only sync your own time entries", idempotency_key=item.idempotency_key)

    directory.require_user(db, item.user_id, company_id, active=True)

    if item.project_id is None:
        if not privileged:
            raise ValidationError("Project is required for employees", idempotency_key=item.idempotency_key)
    else:
        directory.require_project(db, item.project_id, company_id)

    if item.start_time > now + MAX_START_AHEAD:
        raise ValidationError(
            "Start time cannot be more than 1 hour in the future",
            idempotency_key=item.idempotency_key,
        )


def _insert(db: Session, item: SyncItem, company_id: int, now: datetime) -> TimeEntry:
    if item.status in EntryStatus.ACTIVE:
        # Offline state wins over whatever is still active server-side.
        stopped = auto_stop_active_entry(db, item.user_id, now)
        if stopped is not None:
            publish_entry_change(db, stopped, company_id)

    entry = TimeEntry(
        id=str(uuid4()),
        idempotency_key=item.idempotency_key,
        user_id=item.user_id,
        project_id=item.project_id,
        description=item.description,
        start_time=item.start_time,
        end_time=item.end_time,
        duration=item.duration,
        status=item.status,
        approval_status=ApprovalStatus.PENDING,
    )
    db.add(entry)
    flush_guarded(db, item.user_id)

    activity_type = ActivityType.STOP if item.status == EntryStatus.STOPPED else ActivityType.START
    record_activity(db, user_id=entry.user_id, project_id=entry.project_id, type=activity_type, entry_id=entry.id, at=now)
    db.flush()
    return entry


def sync_entries(
    company_id: int,
    actor_id: int,
    actor_role,
    items: Sequence[Mapping[str, Any]],
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    now = as_utc(now) if now is not None else utcnow()

    if not items:
        raise ValidationError("At least one entry required")
    if len(items) > MAX_SYNC_BATCH:
        raise ValidationError(f"Maximum {MAX_SYNC_BATCH} entries per request", count=len(items))

    normalized = [normalize_item(raw) for raw in items]

    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        results: List[Dict[str, Any]] = []
        for item in normalized:
            existing = _existing_by_key(db, item.idempotency_key)
            if existing is not None:
                _check_replay(db, existing, item, company_id)
                results.append({"idempotency_key": item.idempotency_key, "id": existing.id, "result": SKIPPED})
                continue

            _validate_new(db, item, company_id, actor_id, actor_role, now)
            entry = _insert(db, item, company_id, now)
            publish_entry_change(db, entry, company_id)
            results.append({"idempotency_key": item.idempotency_key, "id": entry.id, "result": CREATED})

        created = sum(1 for r in results if r["result"] == CREATED)
        if created:
            defer_until_commit(db, "broadcast_stats_invalidate", broadcaster().broadcast_stats_invalidate, company_id)
            defer_until_commit(db, "invalidate_stats", stats_cache().invalidate_stats, company_id)

        if owns_db:
            db.commit()

        logger.info(
            "Sync batch processed",
            extra={
                "company_id": int(company_id),
                "actor_id": int(actor_id),
                "created_count": created,
                "skipped_count": len(results) - created,
            },
        )
        return results

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()

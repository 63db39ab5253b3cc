import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from timekeeper.core.errors import ForbiddenError, InvalidStateError, NotFoundError
from timekeeper.database import SessionLocal
from timekeeper.models.company import Company
from timekeeper.models.time_entry import EntryStatus, TimeEntry
from timekeeper.models.user import User
from timekeeper.services import directory, idle_tracker, time_engine
from timekeeper.services.duration import as_utc, utcnow
from timekeeper.services.side_effects import broadcaster, fire_and_forget

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10

# The entry moved on between enumeration and the pause; not a failure.
_EXPECTED_RACES = (InvalidStateError, NotFoundError, ForbiddenError)


@dataclass(frozen=True)
class IdleSweepResult:
    checked: int
    paused: int
    failed: int


def _running_entry_for_update(db: Session, user_id: int) -> Optional[TimeEntry]:
    return (
        db.query(TimeEntry)
        .filter(
            TimeEntry.user_id == int(user_id),
            TimeEntry.status == EntryStatus.RUNNING,
        )
        .with_for_update()
        .first()
    )


def pause_if_idle(user_id: int, company_id: int, *, now: Optional[datetime] = None) -> bool:
    """
    Pause the user's running entry when their heartbeat is stale.

    Idle is re-evaluated against fresh reads inside the pause transaction, and
    ``is_idle`` is written only once that transaction has committed.
    """
    now = as_utc(now) if now is not None else utcnow()

    db = SessionLocal()
    try:
        company = directory.get_company(db, company_id)
        if company is None or not company.idle_detection_enabled:
            return False

        user = directory.get_user_in_company(db, user_id, company_id)
        if user is None or not user.is_active:
            return False

        threshold = idle_tracker.idle_threshold(company)
        if not idle_tracker.heartbeat_is_stale(idle_tracker.get_activity(db, user_id), threshold, now):
            return False

        entry = _running_entry_for_update(db, user_id)
        if entry is None:
            return False

        # A heartbeat may have landed since the first read.
        db.expire_all()
        if not idle_tracker.heartbeat_is_stale(idle_tracker.get_activity(db, user_id), threshold, now):
            return False

        try:
            time_engine.pause_entry(entry.id, company_id, user.id, user.role, now=now, db=db)
            db.commit()
        except _EXPECTED_RACES as exc:
            db.rollback()
            logger.debug(
                "Idle pause skipped",
                extra={"user_id": int(user_id), "entry_id": entry.id, "reason": str(exc)},
            )
            return False

        entry_id = entry.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    _mark_idle_after_pause(user_id, company_id, now)
    fire_and_forget(
        "broadcast_idle_detection",
        broadcaster().broadcast_idle_detection,
        {"user_id": int(user_id), "time_entry_id": entry_id, "action": "paused", "reason": "idle"},
        int(company_id),
    )
    logger.info(
        "Time entry automatically paused due to idle detection",
        extra={"user_id": int(user_id), "entry_id": entry_id, "company_id": int(company_id)},
    )
    return True


def _mark_idle_after_pause(user_id: int, company_id: int, now: datetime) -> None:
    db = SessionLocal()
    try:
        idle_tracker.mark_idle(db, user_id, now)
        db.commit()
    except Exception:
        db.rollback()
        logger.warning(
            "Failed to set is_idle after a successful idle pause",
            extra={"user_id": int(user_id), "company_id": int(company_id)},
            exc_info=True,
        )
    finally:
        db.close()


def _users_with_running_entries(db: Session, company_id: int) -> List[int]:
    rows = (
        db.query(TimeEntry.user_id)
        .join(User, User.id == TimeEntry.user_id)
        .filter(
            TimeEntry.status == EntryStatus.RUNNING,
            User.company_id == int(company_id),
            User.is_active.is_(True),
        )
        .distinct()
        .order_by(TimeEntry.user_id.asc())
        .all()
    )
    return [row[0] for row in rows]


def _pause_one(user_id: int, company_id: int, now: datetime) -> Optional[bool]:
    """None means the user failed; the batch continues regardless."""
    try:
        return pause_if_idle(user_id, company_id, now=now)
    except Exception:
        logger.exception(
            "Failed to check idle for user",
            extra={"user_id": int(user_id), "company_id": int(company_id)},
        )
        return None


def run_idle_sweep(*, now: Optional[datetime] = None, batch_size: int = DEFAULT_BATCH_SIZE) -> IdleSweepResult:
    now = as_utc(now) if now is not None else utcnow()
    batch_size = max(1, int(batch_size))

    checked = 0
    paused = 0
    failed = 0

    try:
        db = SessionLocal()
        try:
            company_ids = [
                row[0]
                for row in db.query(Company.id)
                .filter(Company.idle_detection_enabled.is_(True))
                .order_by(Company.id.asc())
                .all()
            ]
            work = [(company_id, _users_with_running_entries(db, company_id)) for company_id in company_ids]
        finally:
            db.close()

        for company_id, user_ids in work:
            for i in range(0, len(user_ids), batch_size):
                batch = user_ids[i : i + batch_size]
                with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                    outcomes = list(pool.map(lambda uid: _pause_one(uid, company_id, now), batch))

                checked += len(batch)
                paused += sum(1 for o in outcomes if o is True)
                failed += sum(1 for o in outcomes if o is None)

    except Exception:
        logger.exception("Idle sweep aborted", extra={"component": "idle_sweep"})

    logger.debug(
        "Idle sweep completed",
        extra={"checked": checked, "paused": paused, "failed": failed},
    )
    return IdleSweepResult(checked=checked, paused=paused, failed=failed)

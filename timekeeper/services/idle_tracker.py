import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timekeeper.core.errors import NotFoundError
from timekeeper.database import SessionLocal
from timekeeper.models.company import DEFAULT_IDLE_THRESHOLD_SECONDS, Company
from timekeeper.models.user_activity import UserActivity
from timekeeper.services import directory
from timekeeper.services.duration import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_UPSERT_ATTEMPTS = 3

_NATIVE_UPSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def idle_threshold(company: Company) -> int:
    value = company.idle_threshold_seconds
    # 0 is a valid threshold; only a missing value falls back.
    return int(value) if value is not None else DEFAULT_IDLE_THRESHOLD_SECONDS


def seconds_since(last_heartbeat: datetime, now: datetime) -> int:
    return max(0, int((as_utc(now) - as_utc(last_heartbeat)).total_seconds()))


def heartbeat_is_stale(activity: Optional[UserActivity], threshold: int, now: datetime) -> bool:
    """No heartbeat at all counts as stale so that timers never run unbounded."""
    if activity is None or activity.last_heartbeat is None:
        return True
    return seconds_since(activity.last_heartbeat, now) > threshold


def get_activity(db: Session, user_id: int) -> Optional[UserActivity]:
    return db.query(UserActivity).filter(UserActivity.user_id == int(user_id)).first()


def _native_upsert(db: Session, user_id: int, now: datetime, is_idle: bool) -> bool:
    insert = _NATIVE_UPSERT.get(db.get_bind().dialect.name)
    if insert is None:
        return False

    stmt = insert(UserActivity).values(
        user_id=int(user_id),
        last_heartbeat=now,
        is_idle=is_idle,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserActivity.user_id],
        set_={"last_heartbeat": now, "is_idle": is_idle, "updated_at": now},
    )
    db.execute(stmt)
    return True


def _fallback_upsert(db: Session, user_id: int, now: datetime, is_idle: bool) -> None:
    """update -> insert -> retry, bounded. A concurrent first heartbeat wins the insert race."""
    last_error: Optional[Exception] = None
    for attempt in range(1, MAX_UPSERT_ATTEMPTS + 1):
        updated = db.execute(
            update(UserActivity)
            .where(UserActivity.user_id == int(user_id))
            .values(last_heartbeat=now, is_idle=is_idle, updated_at=now)
        ).rowcount
        if updated:
            return

        savepoint = db.begin_nested()
        try:
            db.add(UserActivity(user_id=int(user_id), last_heartbeat=now, is_idle=is_idle, updated_at=now))
            db.flush()
            savepoint.commit()
            return
        except IntegrityError as exc:
            savepoint.rollback()
            last_error = exc
            logger.warning(
                "UserActivity insert raced with another heartbeat; retrying",
                extra={"user_id": int(user_id), "attempt": attempt},
            )
    raise RuntimeError("UserActivity upsert did not converge") from last_error


def record_heartbeat(
    user_id: int,
    company_id: int,
    is_active: Optional[bool] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = as_utc(now) if now is not None else utcnow()
    # Only an explicit "not active" marks idle; any other heartbeat clears it.
    is_idle = is_active is False

    db = SessionLocal()
    try:
        if directory.get_company(db, company_id) is None:
            raise NotFoundError("Company not found", company_id=int(company_id))

        user = directory.get_user_in_company(db, user_id, company_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found or inactive", user_id=int(user_id))

        try:
            if not _native_upsert(db, user_id, now, is_idle):
                _fallback_upsert(db, user_id, now, is_idle)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(
                "Heartbeat could not be stored; treating as a missed heartbeat",
                extra={"user_id": int(user_id), "company_id": int(company_id)},
            )
            return {"success": False, "timestamp": now}

        logger.debug(
            "Heartbeat received",
            extra={"user_id": int(user_id), "company_id": int(company_id), "is_active": is_active},
        )
        return {"success": True, "timestamp": now}
    finally:
        db.close()


def is_user_idle(
    user_id: int,
    company_id: int,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> bool:
    now = as_utc(now) if now is not None else utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        if directory.get_user_in_company(db, user_id, company_id) is None:
            return False

        company = directory.get_company(db, company_id)
        if company is None or not company.idle_detection_enabled:
            return False

        return heartbeat_is_stale(get_activity(db, user_id), idle_threshold(company), now)
    finally:
        if owns_db:
            db.close()


def get_user_activity_status(
    user_id: int,
    company_id: int,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = as_utc(now) if now is not None else utcnow()

    db = SessionLocal()
    try:
        user = directory.get_user_in_company(db, user_id, company_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found in your company or inactive", user_id=int(user_id))

        activity = get_activity(db, user_id)
        if activity is None or activity.last_heartbeat is None:
            return {
                "is_idle": True,
                "last_heartbeat": None,
                "seconds_since_last_heartbeat": None,
                "idle_threshold": None,
            }

        company = directory.get_company(db, company_id)
        threshold = idle_threshold(company)
        elapsed = seconds_since(activity.last_heartbeat, now)
        return {
            "is_idle": bool(company.idle_detection_enabled) and elapsed > threshold,
            "last_heartbeat": as_utc(activity.last_heartbeat),
            "seconds_since_last_heartbeat": elapsed,
            "idle_threshold": threshold,
        }
    finally:
        db.close()


def mark_idle(db: Session, user_id: int, now: Optional[datetime] = None) -> None:
    """Set is_idle on the user's row, creating it (without a heartbeat) if missing."""
    activity = get_activity(db, user_id)
    if activity is None:
        db.add(UserActivity(user_id=int(user_id), last_heartbeat=None, is_idle=True, updated_at=now or utcnow()))
    else:
        activity.is_idle = True
    db.flush()


def clear_idle(db: Session, user_id: int) -> None:
    db.execute(
        update(UserActivity)
        .where(UserActivity.user_id == int(user_id), UserActivity.is_idle.is_(True))
        .values(is_idle=False)
    )

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from timekeeper.core.errors import ForbiddenError, InvalidStateError
from timekeeper.database import SessionLocal
from timekeeper.models.time_entry import ApprovalStatus, EntryStatus, TimeEntry
from timekeeper.models.user import User
from timekeeper.services import directory
from timekeeper.services.duration import as_utc, utcnow
from timekeeper.services.side_effects import (
    broadcaster,
    defer_until_commit,
    notifier,
    publish_entry_change,
    stats_cache,
)
from timekeeper.services.time_engine import load_entry

logger = logging.getLogger(__name__)

_EVENT_TYPES = {
    ApprovalStatus.APPROVED: "TIME_ENTRY_APPROVED",
    ApprovalStatus.REJECTED: "TIME_ENTRY_REJECTED",
}

_VERBS = {
    ApprovalStatus.APPROVED: "approve",
    ApprovalStatus.REJECTED: "reject",
}


def find_pending(
    company_id: int,
    user_id: Optional[int] = None,
    limit: int = 100,
    *,
    db: Optional[Session] = None,
) -> List[TimeEntry]:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        q = (
            db.query(TimeEntry)
            .join(User, User.id == TimeEntry.user_id)
            .filter(
                User.company_id == int(company_id),
                TimeEntry.status == EntryStatus.STOPPED,
                TimeEntry.approval_status == ApprovalStatus.PENDING,
            )
        )
        if user_id is not None:
            directory.require_user(db, user_id, company_id)
            q = q.filter(TimeEntry.user_id == int(user_id))

        return q.order_by(TimeEntry.start_time.desc()).limit(int(limit)).all()
    finally:
        if owns_db:
            db.close()


def _notify_owner(db: Session, entry: TimeEntry, decision: str, approver_id: int, comment: Optional[str]) -> None:
    payload = {
        "time_entry_id": entry.id,
        "actor_id": int(approver_id),
        "project_id": entry.project_id,
    }
    if comment:
        payload["rejection_comment"] = comment
    defer_until_commit(db, "notify_owner", notifier().notify_user, entry.user_id, _EVENT_TYPES[decision], payload)


def _apply_decision(entry: TimeEntry, decision: str, approver_id: int, comment: Optional[str], now: datetime) -> None:
    entry.approval_status = decision
    entry.approved_by = int(approver_id)
    entry.approved_at = now
    # Approval clears any comment left by an earlier rejection.
    entry.rejection_comment = comment if decision == ApprovalStatus.REJECTED else None


def _decide(
    entry_id: str,
    company_id: int,
    approver_id: int,
    decision: str,
    comment: Optional[str],
    now: Optional[datetime],
) -> TimeEntry:
    now = as_utc(now) if now is not None else utcnow()
    verb = _VERBS[decision]

    db = SessionLocal()
    try:
        entry = load_entry(db, entry_id, company_id)

        if int(entry.user_id) == int(approver_id):
            raise ForbiddenError(
                f"You cannot {verb} your own time entries. Another approver is required.",
                entry_id=entry.id,
            )

        if entry.status != EntryStatus.STOPPED or entry.approval_status != ApprovalStatus.PENDING:
            raise InvalidStateError(
                f"Time entry is not pending approval (current status: {entry.approval_status})",
                entry_id=entry.id,
                status=entry.status,
                approval_status=entry.approval_status,
            )

        _apply_decision(entry, decision, approver_id, comment, now)
        db.flush()

        _notify_owner(db, entry, decision, approver_id, comment)
        publish_entry_change(db, entry, company_id)
        db.commit()

        logger.info(
            "Time entry reviewed",
            extra={"entry_id": entry.id, "decision": decision, "approver_id": int(approver_id)},
        )
        return entry
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def approve(entry_id: str, company_id: int, approver_id: int, *, now: Optional[datetime] = None) -> TimeEntry:
    return _decide(entry_id, company_id, approver_id, ApprovalStatus.APPROVED, None, now)


def reject(
    entry_id: str,
    company_id: int,
    approver_id: int,
    comment: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> TimeEntry:
    return _decide(entry_id, company_id, approver_id, ApprovalStatus.REJECTED, comment, now)


def _bulk_decide(
    ids: Sequence[str],
    company_id: int,
    approver_id: int,
    decision: str,
    comment: Optional[str],
    now: Optional[datetime],
) -> int:
    now = as_utc(now) if now is not None else utcnow()
    verb = _VERBS[decision]
    ids = [str(i) for i in dict.fromkeys(ids)]
    if not ids:
        return 0

    db = SessionLocal()
    try:
        targeted = (
            db.query(TimeEntry)
            .join(User, User.id == TimeEntry.user_id)
            .filter(
                TimeEntry.id.in_(ids),
                User.company_id == int(company_id),
            )
            .with_for_update(of=TimeEntry)
            .all()
        )

        # Fail closed: one own entry rejects the whole call.
        if any(int(e.user_id) == int(approver_id) for e in targeted):
            raise ForbiddenError(f"You cannot {verb} your own time entries. Another approver is required.")

        pending = [
            e for e in targeted
            if e.status == EntryStatus.STOPPED and e.approval_status == ApprovalStatus.PENDING
        ]
        for entry in pending:
            _apply_decision(entry, decision, approver_id, comment, now)
            _notify_owner(db, entry, decision, approver_id, comment)
        db.flush()

        defer_until_commit(db, "broadcast_stats_invalidate", broadcaster().broadcast_stats_invalidate, company_id)
        defer_until_commit(db, "invalidate_stats", stats_cache().invalidate_stats, company_id)
        db.commit()

        logger.info(
            "Time entries reviewed in bulk",
            extra={
                "decision": decision,
                "approver_id": int(approver_id),
                "requested": len(ids),
                "updated": len(pending),
            },
        )
        return len(pending)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def bulk_approve(ids: Sequence[str], company_id: int, approver_id: int, *, now: Optional[datetime] = None) -> int:
    return _bulk_decide(ids, company_id, approver_id, ApprovalStatus.APPROVED, None, now)


def bulk_reject(
    ids: Sequence[str],
    company_id: int,
    approver_id: int,
    comment: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    return _bulk_decide(ids, company_id, approver_id, ApprovalStatus.REJECTED, comment, now)

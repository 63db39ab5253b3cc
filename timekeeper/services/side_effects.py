"""Fire-and-forget collaborators: notifications, real-time broadcast, stats cache.

Transitions never call these directly. They queue calls on the session with
``defer_until_commit``; the queue runs after the session commits and is
dropped when the transaction ends any other way. A failing sink is logged and
swallowed: side effects are not part of a transition's contract.

The default sinks only log. Deployments plug in real transports with
``configure_side_effects``.
"""

import logging
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from timekeeper.database import SessionLocal
from timekeeper.models.time_entry import TimeEntry
from timekeeper.services.duration import as_utc

logger = logging.getLogger(__name__)

_PENDING_KEY = "timekeeper_after_commit"


class NotificationSink:
    def notify_user(self, user_id: int, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info("Notification", extra={"user_id": user_id, "event_type": event_type, "payload": payload})

    def notify_users(
        self,
        user_ids: Iterable[int],
        event_type: str,
        title: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> None:
        logger.info(
            "Notification",
            extra={"user_ids": list(user_ids), "event_type": event_type, "title": title, "metadata": metadata},
        )


class BroadcastSink:
    def broadcast_entry_change(self, entry: Dict[str, Any], company_id: int) -> None:
        logger.debug("Broadcast time entry change", extra={"entry_id": entry.get("id"), "company_id": company_id})

    def broadcast_stats_invalidate(self, company_id: int) -> None:
        logger.debug("Broadcast stats invalidation", extra={"company_id": company_id})

    def broadcast_idle_detection(self, payload: Dict[str, Any], company_id: int) -> None:
        logger.debug("Broadcast idle detection", extra={"company_id": company_id, "payload": payload})


class StatsCache:
    def invalidate_stats(self, company_id: int) -> None:
        logger.debug("Stats cache invalidated", extra={"company_id": company_id})


_notifier: NotificationSink = NotificationSink()
_broadcaster: BroadcastSink = BroadcastSink()
_stats_cache: StatsCache = StatsCache()


def configure_side_effects(
    *,
    notifier: Optional[NotificationSink] = None,
    broadcaster: Optional[BroadcastSink] = None,
    stats_cache: Optional[StatsCache] = None,
) -> None:
    global _notifier, _broadcaster, _stats_cache
    _notifier = notifier or NotificationSink()
    _broadcaster = broadcaster or BroadcastSink()
    _stats_cache = stats_cache or StatsCache()


def notifier() -> NotificationSink:
    return _notifier


def broadcaster() -> BroadcastSink:
    return _broadcaster


def stats_cache() -> StatsCache:
    return _stats_cache


def fire_and_forget(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.warning("Side effect failed", extra={"side_effect": label}, exc_info=True)


def defer_until_commit(db: Session, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    db.info.setdefault(_PENDING_KEY, []).append((label, fn, args, kwargs))


@event.listens_for(SessionLocal, "after_commit")
def _run_after_commit(session: Session) -> None:
    for label, fn, args, kwargs in session.info.pop(_PENDING_KEY, []):
        fire_and_forget(label, fn, *args, **kwargs)


@event.listens_for(SessionLocal, "after_transaction_end")
def _drop_uncommitted(session: Session, transaction) -> None:
    if transaction.parent is None:
        session.info.pop(_PENDING_KEY, None)


def entry_snapshot(entry: TimeEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "project_id": entry.project_id,
        "status": entry.status,
        "approval_status": entry.approval_status,
        "start_time": as_utc(entry.start_time).isoformat() if entry.start_time else None,
        "end_time": as_utc(entry.end_time).isoformat() if entry.end_time else None,
        "duration": int(entry.duration or 0),
    }


def publish_entry_change(db: Session, entry: TimeEntry, company_id: int) -> None:
    snapshot = entry_snapshot(entry)
    defer_until_commit(db, "broadcast_entry_change", broadcaster().broadcast_entry_change, snapshot, company_id)
    defer_until_commit(db, "broadcast_stats_invalidate", broadcaster().broadcast_stats_invalidate, company_id)
    defer_until_commit(db, "invalidate_stats", stats_cache().invalidate_stats, company_id)

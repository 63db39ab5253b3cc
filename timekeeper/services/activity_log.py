from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from timekeeper.models.activity import Activity
from timekeeper.models.user import User
from timekeeper.services.duration import as_utc

MAX_ACTIVITY_PAGE = 500


def record_activity(
    db: Session,
    *,
    user_id: int,
    project_id: Optional[int],
    type: str,
    entry_id: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Activity:
    """Append to the activity log inside the caller's transaction."""
    row = Activity(
        user_id=int(user_id),
        project_id=int(project_id) if project_id is not None else None,
        time_entry_id=entry_id,
        type=type,
    )
    if at is not None:
        row.timestamp = at
    db.add(row)
    return row


def query_activities(
    db: Session,
    company_id: int,
    *,
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
) -> List[Activity]:
    """Newest first; ``since`` and ``until`` are both inclusive."""
    q = (
        db.query(Activity)
        .join(User, User.id == Activity.user_id)
        .filter(User.company_id == int(company_id))
    )
    if user_id is not None:
        q = q.filter(Activity.user_id == int(user_id))
    if project_id is not None:
        q = q.filter(Activity.project_id == int(project_id))
    if since is not None:
        q = q.filter(Activity.timestamp >= as_utc(since))
    if until is not None:
        q = q.filter(Activity.timestamp <= as_utc(until))

    limit = min(max(1, int(limit)), MAX_ACTIVITY_PAGE)
    return q.order_by(Activity.timestamp.desc(), Activity.id.desc()).limit(limit).all()

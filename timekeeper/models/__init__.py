from timekeeper.models.activity import Activity
from timekeeper.models.company import Company
from timekeeper.models.project import Project
from timekeeper.models.time_entry import TimeEntry
from timekeeper.models.user import User
from timekeeper.models.user_activity import UserActivity

__all__ = [
    "Activity",
    "Company",
    "Project",
    "TimeEntry",
    "User",
    "UserActivity",
]

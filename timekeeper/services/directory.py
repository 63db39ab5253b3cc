"""Company, user and project lookups scoped to one company.

A row that exists in another company is indistinguishable from a missing
one; callers raise ``NotFoundError`` for both.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from timekeeper.core.authorization import REVIEWER_ROLES
from timekeeper.core.errors import NotFoundError, ValidationError
from timekeeper.models.company import Company
from timekeeper.models.project import Project
from timekeeper.models.user import User


def get_company(db: Session, company_id: int) -> Optional[Company]:
    return db.query(Company).filter(Company.id == int(company_id)).first()


def get_user_in_company(db: Session, user_id: int, company_id: int) -> Optional[User]:
    return (
        db.query(User)
        .filter(
            User.id == int(user_id),
            User.company_id == int(company_id),
        )
        .first()
    )


def get_project_in_company(db: Session, project_id: int, company_id: int) -> Optional[Project]:
    return (
        db.query(Project)
        .filter(
            Project.id == int(project_id),
            Project.company_id == int(company_id),
        )
        .first()
    )


def require_user(db: Session, user_id: int, company_id: int, *, active: bool = False) -> User:
    user = get_user_in_company(db, user_id, company_id)
    if user is None:
        raise NotFoundError(f"User with ID {user_id} not found in your company", user_id=int(user_id))
    if active and not user.is_active:
        raise ValidationError("User is not active", user_id=int(user_id))
    return user


def require_project(db: Session, project_id: int, company_id: int) -> Project:
    project = get_project_in_company(db, project_id, company_id)
    if project is None:
        raise NotFoundError(f"Project with ID {project_id} not found in your company", project_id=int(project_id))
    if project.is_archived:
        raise ValidationError("Project is archived", project_id=int(project_id))
    return project


def list_reviewer_ids(db: Session, company_id: int, *, exclude_user_id: Optional[int] = None) -> List[int]:
    q = db.query(User.id).filter(
        User.company_id == int(company_id),
        User.is_active.is_(True),
        User.role.in_([r.value for r in REVIEWER_ROLES]),
    )
    if exclude_user_id is not None:
        q = q.filter(User.id != int(exclude_user_id))
    return [row[0] for row in q.order_by(User.id.asc()).all()]

from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from timekeeper.core.authorization import Role, require_role
from timekeeper.database import SessionLocal
from timekeeper.deps.auth import require_auth
from timekeeper.models.project import Project
from timekeeper.schemas.project import ProjectCreate, ProjectResponse

router = APIRouter(prefix="/projects", tags=["Projects"])


@router.post("", response_model=ProjectResponse)
def create_project(
    payload: ProjectCreate,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.ADMIN)),
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    db = SessionLocal()
    try:
        row = Project(
            company_id=int(request.state.company_id),
            name=payload.name,
            is_archived=False,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.get("", response_model=List[ProjectResponse])
def list_projects(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
    include_archived: bool = False,
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    db = SessionLocal()
    try:
        q = db.query(Project).filter(Project.company_id == int(request.state.company_id))
        if not include_archived:
            q = q.filter(Project.is_archived.is_(False))
        return q.order_by(Project.id.asc()).all()
    finally:
        db.close()


@router.put("/{project_id}/archive", response_model=ProjectResponse)
def archive_project(
    project_id: int,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.ADMIN)),
):
    """Archived projects stay on existing entries but accept no new ones."""
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    db = SessionLocal()
    try:
        row = (
            db.query(Project)
            .filter(
                Project.id == int(project_id),
                Project.company_id == int(request.state.company_id),
            )
            .first()
        )
        if row is None:
            raise HTTPException(status_code=404, detail="Project not found")
        row.is_archived = True
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()

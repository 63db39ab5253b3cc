from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from timekeeper.core.authorization import ROLE_RANK, Role, parse_role, require_role
from timekeeper.database import SessionLocal
from timekeeper.deps.auth import require_auth
from timekeeper.models.user import User
from timekeeper.schemas.user import UserCreate, UserResponse

router = APIRouter(prefix="/users", tags=["Users"])


@router.post("", response_model=UserResponse)
def create_user(
    payload: UserCreate,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    actor_role: Role = Depends(require_role(Role.ADMIN)),
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    if ROLE_RANK[payload.role] > ROLE_RANK[parse_role(actor_role)]:
        raise HTTPException(status_code=403, detail="Cannot grant a role above your own")

    db = SessionLocal()
    try:
        row = User(
            company_id=int(request.state.company_id),
            name=payload.name,
            role=payload.role.value,
            is_active=True,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.get("", response_model=List[UserResponse])
def list_users(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    db = SessionLocal()
    try:
        rows = (
            db.query(User)
            .filter(User.company_id == int(request.state.company_id))
            .order_by(User.id.asc())
            .all()
        )
        return rows
    finally:
        db.close()


@router.get("/{user_id}", response_model=UserResponse)
def get_user(
    user_id: int,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    db = SessionLocal()
    try:
        row = (
            db.query(User)
            .filter(
                User.id == int(user_id),
                User.company_id == int(request.state.company_id),
            )
            .first()
        )
        if row is None:
            raise HTTPException(status_code=404, detail="User not found")
        return row
    finally:
        db.close()

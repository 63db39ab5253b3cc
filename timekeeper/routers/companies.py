import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from timekeeper.core.authorization import Role, require_role
from timekeeper.database import SessionLocal
from timekeeper.deps.auth import require_auth
from timekeeper.models.company import Company
from timekeeper.schemas.company import IdleSettingsResponse, IdleSettingsUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/companies", tags=["Companies"])


def _load_company(db, company_id: int) -> Company:
    row = db.query(Company).filter(Company.id == int(company_id)).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Company not found")
    return row


@router.get("/settings/idle", response_model=IdleSettingsResponse)
def get_idle_settings(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    db = SessionLocal()
    try:
        return _load_company(db, request.state.company_id)
    finally:
        db.close()


@router.put("/settings/idle", response_model=IdleSettingsResponse)
def update_idle_settings(
    payload: IdleSettingsUpdate,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.ADMIN)),
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    db = SessionLocal()
    try:
        row = _load_company(db, request.state.company_id)
        row.idle_detection_enabled = payload.idle_detection_enabled
        row.idle_threshold_seconds = payload.idle_threshold_seconds
        db.commit()
        db.refresh(row)

        logger.info(
            "Idle detection settings updated",
            extra={
                "company_id": row.id,
                "enabled": row.idle_detection_enabled,
                "threshold_seconds": row.idle_threshold_seconds,
            },
        )
        return row
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from timekeeper.core.authorization import is_reviewer
from timekeeper.core.errors import TimeEntryError
from timekeeper.deps.auth import require_auth
from timekeeper.schemas.idle import ActivityStatusResponse, HeartbeatRequest, HeartbeatResponse
from timekeeper.services import idle_tracker

router = APIRouter(prefix="/idle", tags=["Idle Detection"])


@router.post("/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    payload: HeartbeatRequest,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    try:
        return idle_tracker.record_heartbeat(
            int(request.state.user_id),
            int(x_company_id),
            payload.is_active,
        )
    except TimeEntryError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


@router.get("/status", response_model=ActivityStatusResponse)
def activity_status(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
    user_id: Optional[int] = None,
):
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")

    actor_id = int(request.state.user_id)
    target_id = actor_id if user_id is None else int(user_id)
    if target_id != actor_id and not is_reviewer(request.state.role):
        raise HTTPException(status_code=403, detail="Insufficient role")

    try:
        return idle_tracker.get_user_activity_status(target_id, int(x_company_id))
    except TimeEntryError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc

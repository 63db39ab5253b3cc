from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from timekeeper.core.authorization import Role, require_role
from timekeeper.core.errors import TimeEntryError
from timekeeper.database import SessionLocal
from timekeeper.deps.auth import require_auth
from timekeeper.schemas.time_entry import (
    ActivityResponse,
    BulkApproveRequest,
    BulkRejectRequest,
    BulkResultResponse,
    RejectRequest,
    SyncRequest,
    SyncResponse,
    TimeEntryCreate,
    TimeEntryResponse,
    TimeEntryUpdate,
)
from timekeeper.services import approval_service, sync_service, time_engine

router = APIRouter(
    prefix="/time_entries",
    tags=["Time Entries"],
)


def _check_company(request: Request, x_company_id: int) -> int:
    if int(x_company_id) != int(request.state.company_id):
        raise HTTPException(status_code=403, detail="Company mismatch")
    return int(x_company_id)


def _http_error(exc: TimeEntryError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _actor(request: Request) -> tuple[int, str]:
    return int(request.state.user_id), request.state.role


@router.get("", response_model=List[TimeEntryResponse])
def list_time_entries(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    status: Optional[str] = None,
    approval_status: Optional[str] = None,
    start_from: Optional[datetime] = None,
    start_to: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)

    try:
        return time_engine.list_entries(
            company_id,
            actor_id,
            actor_role,
            user_id=user_id,
            project_id=project_id,
            status=status,
            approval_status=approval_status,
            start_from=start_from,
            start_to=start_to,
            limit=limit,
            offset=offset,
        )
    except TimeEntryError as exc:
        raise _http_error(exc) from exc


@router.get("/active", response_model=List[TimeEntryResponse])
def list_active_time_entries(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)
    return time_engine.list_active_entries(company_id, actor_id, actor_role)


@router.get("/pending", response_model=List[TimeEntryResponse])
def list_pending_time_entries(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.MANAGER)),
    user_id: Optional[int] = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    company_id = _check_company(request, x_company_id)
    try:
        return approval_service.find_pending(company_id, user_id=user_id, limit=limit)
    except TimeEntryError as exc:
        raise _http_error(exc) from exc


@router.get("/activities", response_model=List[ActivityResponse])
def list_time_entry_activities(
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)
    try:
        return time_engine.list_activities(
            company_id,
            actor_id,
            actor_role,
            user_id=user_id,
            project_id=project_id,
            since=since,
            until=until,
            limit=limit,
        )
    except TimeEntryError as exc:
        raise _http_error(exc) from exc


@router.post("", response_model=TimeEntryResponse, status_code=201)
def create_time_entry(
    payload: TimeEntryCreate,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)

    db = SessionLocal()
    try:
        entry = time_engine.create_entry(
            company_id,
            actor_id,
            actor_role,
            user_id=payload.user_id,
            project_id=payload.project_id,
            start_time=payload.start_time,
            description=payload.description,
            db=db,
        )
        db.commit()
        return entry
    except TimeEntryError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.post("/sync", response_model=SyncResponse)
def sync_time_entries(
    payload: SyncRequest,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)

    db = SessionLocal()
    try:
        results = sync_service.sync_entries(
            company_id,
            actor_id,
            actor_role,
            [item.model_dump() for item in payload.entries],
            db=db,
        )
        db.commit()
        return {"results": results}
    except TimeEntryError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.post("/bulk_approve", response_model=BulkResultResponse)
def bulk_approve_time_entries(
    payload: BulkApproveRequest,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    company_id = _check_company(request, x_company_id)
    try:
        count = approval_service.bulk_approve(payload.ids, company_id, int(request.state.user_id))
    except TimeEntryError as exc:
        raise _http_error(exc) from exc
    return {"count": count}


@router.post("/bulk_reject", response_model=BulkResultResponse)
def bulk_reject_time_entries(
    payload: BulkRejectRequest,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    company_id = _check_company(request, x_company_id)
    try:
        count = approval_service.bulk_reject(
            payload.ids,
            company_id,
            int(request.state.user_id),
            payload.rejection_comment,
        )
    except TimeEntryError as exc:
        raise _http_error(exc) from exc
    return {"count": count}


@router.get("/{entry_id}", response_model=TimeEntryResponse)
def get_time_entry(
    entry_id: str,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)
    try:
        return time_engine.get_entry(entry_id, company_id, actor_id, actor_role)
    except TimeEntryError as exc:
        raise _http_error(exc) from exc


@router.patch("/{entry_id}", response_model=TimeEntryResponse)
def update_time_entry(
    entry_id: str,
    payload: TimeEntryUpdate,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)

    # Only fields the client actually sent; an explicit null clears.
    patch = payload.model_dump(include=payload.model_fields_set)

    db = SessionLocal()
    try:
        entry = time_engine.update_entry(entry_id, patch, company_id, actor_id, actor_role, db=db)
        db.commit()
        return entry
    except TimeEntryError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _transition(operation, entry_id: str, request: Request, company_id: int):
    actor_id, actor_role = _actor(request)

    db = SessionLocal()
    try:
        entry = operation(entry_id, company_id, actor_id, actor_role, db=db)
        db.commit()
        return entry
    except TimeEntryError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.put("/{entry_id}/stop", response_model=TimeEntryResponse)
def stop_time_entry(
    entry_id: str,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    return _transition(time_engine.stop_entry, entry_id, request, company_id)


@router.put("/{entry_id}/pause", response_model=TimeEntryResponse)
def pause_time_entry(
    entry_id: str,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    return _transition(time_engine.pause_entry, entry_id, request, company_id)


@router.put("/{entry_id}/resume", response_model=TimeEntryResponse)
def resume_time_entry(
    entry_id: str,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    return _transition(time_engine.resume_entry, entry_id, request, company_id)


@router.delete("/{entry_id}")
def delete_time_entry(
    entry_id: str,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _auth: tuple[int, int] = Depends(require_auth),
):
    company_id = _check_company(request, x_company_id)
    actor_id, actor_role = _actor(request)
    try:
        return time_engine.remove_entry(entry_id, company_id, actor_id, actor_role)
    except TimeEntryError as exc:
        raise _http_error(exc) from exc


@router.post("/{entry_id}/approve", response_model=TimeEntryResponse)
def approve_time_entry(
    entry_id: str,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    company_id = _check_company(request, x_company_id)
    try:
        return approval_service.approve(entry_id, company_id, int(request.state.user_id))
    except TimeEntryError as exc:
        raise _http_error(exc) from exc


@router.post("/{entry_id}/reject", response_model=TimeEntryResponse)
def reject_time_entry(
    entry_id: str,
    payload: RejectRequest,
    request: Request,
    x_company_id: int = Header(..., alias="X-Company-Id"),
    _role: Role = Depends(require_role(Role.MANAGER)),
):
    company_id = _check_company(request, x_company_id)
    try:
        return approval_service.reject(
            entry_id,
            company_id,
            int(request.state.user_id),
            payload.rejection_comment,
        )
    except TimeEntryError as exc:
        raise _http_error(exc) from exc

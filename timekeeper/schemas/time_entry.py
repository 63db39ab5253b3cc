from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timekeeper.services.duration import MAX_DURATION_SECONDS, as_utc

StatusLiteral = Literal["RUNNING", "PAUSED", "STOPPED"]


class TimeEntryCreate(BaseModel):
    user_id: int
    project_id: Optional[int] = None
    start_time: Optional[datetime] = Field(
        default=None,
        description="If omitted, server uses current UTC time.",
    )
    description: Optional[str] = Field(default=None, max_length=5000)


class TimeEntryUpdate(BaseModel):
    project_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, ge=0, le=MAX_DURATION_SECONDS)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: Optional[StatusLiteral] = None


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    idempotency_key: Optional[str]
    user_id: int
    project_id: Optional[int]
    description: Optional[str]
    start_time: datetime
    end_time: Optional[datetime]
    duration: int
    status: str
    approval_status: str
    approved_by: Optional[int]
    approved_at: Optional[datetime]
    rejection_comment: Optional[str]

    @field_validator("start_time", "end_time", "approved_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class SyncItemRequest(BaseModel):
    idempotency_key: UUID
    user_id: int
    project_id: Optional[int] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, ge=0, le=MAX_DURATION_SECONDS)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: StatusLiteral = "STOPPED"


class SyncRequest(BaseModel):
    entries: List[SyncItemRequest] = Field(min_length=1, max_length=100)


class SyncItemResult(BaseModel):
    idempotency_key: str
    id: str
    result: Literal["created", "skipped"]


class SyncResponse(BaseModel):
    results: List[SyncItemResult]


class RejectRequest(BaseModel):
    rejection_comment: Optional[str] = Field(default=None, max_length=500)


class BulkApproveRequest(BaseModel):
    ids: List[str] = Field(min_length=1)


class BulkRejectRequest(BulkApproveRequest):
    rejection_comment: Optional[str] = Field(default=None, max_length=500)


class BulkResultResponse(BaseModel):
    count: int


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    project_id: Optional[int]
    time_entry_id: Optional[str]
    type: str
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

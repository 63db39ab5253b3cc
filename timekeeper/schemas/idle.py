from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class HeartbeatRequest(BaseModel):
    is_active: Optional[bool] = None


class HeartbeatResponse(BaseModel):
    success: bool
    timestamp: datetime


class ActivityStatusResponse(BaseModel):
    is_idle: bool
    last_heartbeat: Optional[datetime]
    seconds_since_last_heartbeat: Optional[int]
    idle_threshold: Optional[int]

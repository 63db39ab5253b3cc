from datetime import datetime

from pydantic import BaseModel, ConfigDict

from timekeeper.core.authorization import Role


class UserCreate(BaseModel):
    name: str
    role: Role = Role.EMPLOYEE


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    name: str
    role: str
    is_active: bool
    created_at: datetime

from pydantic import BaseModel, ConfigDict, Field


class IdleSettingsUpdate(BaseModel):
    idle_detection_enabled: bool
    idle_threshold_seconds: int = Field(default=300, ge=0, le=86400)


class IdleSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    idle_detection_enabled: bool
    idle_threshold_seconds: int

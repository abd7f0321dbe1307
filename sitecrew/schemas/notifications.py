from typing import Optional
from pydantic import BaseModel, field_validator
from datetime import time


class QuietHours(BaseModel):
    start: str  # HH:MM
    end: str  # HH:MM
    timezone: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def _valid_time(cls, v: str) -> str:
        time.fromisoformat(v)
        return v


class NotificationPreferenceUpdate(BaseModel):
    push: Optional[bool] = None
    quiet_hours: Optional[QuietHours] = None
    clear_quiet_hours: bool = False

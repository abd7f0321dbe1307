from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field


class GpsPoint(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)  # meters


class GeofenceValidateRequest(GpsPoint):
    project_id: int


class GeofenceValidateResponse(BaseModel):
    inside_geofence: bool
    distance: float
    can_proceed: bool
    strict_mode: bool
    is_risk: bool
    message: str
    accuracy: Optional[float] = None


class AttendanceEventRequest(GpsPoint):
    project_id: int


class AttendanceResponse(BaseModel):
    id: int
    employee_id: int
    project_id: int
    date: date
    check_in: Optional[datetime] = None
    check_out: Optional[datetime] = None
    inside_geofence_at_checkin: bool
    inside_geofence_at_checkout: Optional[bool] = None

    class Config:
        from_attributes = True


class EligibilityResponse(BaseModel):
    employee_id: int
    project_id: int
    eligible: bool

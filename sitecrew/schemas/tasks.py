from datetime import date
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator


class AssignTasksRequest(BaseModel):
    employee_id: int
    project_id: int
    task_ids: List[int] = Field(min_length=1)
    date: date


class AssignmentChanges(BaseModel):
    """Editable, non-state fields of a task assignment."""
    model_config = ConfigDict(extra="forbid")

    priority: Optional[str] = None  # low|medium|high|critical
    work_area: Optional[str] = None
    floor: Optional[str] = None
    zone: Optional[str] = None
    time_estimate: Optional[Dict[str, Any]] = None
    daily_target: Optional[Dict[str, Any]] = None
    supervisor_id: Optional[int] = None

    @field_validator("priority")
    @classmethod
    def _normalize_priority(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class DailyTargetUpdate(BaseModel):
    assignment_id: int
    daily_target: Dict[str, Any]


class DailyTargetsRequest(BaseModel):
    assignment_updates: List[DailyTargetUpdate] = Field(min_length=1)


class ProgressReportRequest(BaseModel):
    progress_percent: int = Field(ge=0, le=100)
    description: str = Field(min_length=1, max_length=1000)
    notes: Optional[str] = Field(default=None, max_length=500)
    completed_quantity: Optional[float] = Field(default=None, ge=0)

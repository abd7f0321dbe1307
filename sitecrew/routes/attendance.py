"""
Attendance API routes.
Handles geofence validation, check-in/out, location pings, eligibility
and attendance history.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from ..auth.security import get_current_user, require_employee
from ..db import get_db, run_transaction
from ..errors import PreconditionFailedError
from ..models.models import Attendance, User
from ..schemas.attendance import (
    AttendanceEventRequest,
    AttendanceResponse,
    EligibilityResponse,
    GeofenceValidateRequest,
    GeofenceValidateResponse,
)
from ..services import attendance as attendance_service
from ..services.geofence import GeoPoint, resolve_geofence
from ..services.notifications import EventOutbox, dispatch_events, schedule_dispatch
from ..services.permissions import can_act_for_employee

router = APIRouter(prefix="/attendance", tags=["attendance"])


def _attendance_to_dict(record: Attendance, result=None) -> dict:
    data = AttendanceResponse.model_validate(record).model_dump(mode="json")
    if result is not None:
        data["distance"] = round(result.distance_m, 1)
        data["geofence_message"] = result.message
    return data


@router.post("/geofence/validate", response_model=GeofenceValidateResponse)
def validate_geofence(
    payload: GeofenceValidateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    result = attendance_service.check_geofence(
        db, payload.project_id, GeoPoint(payload.latitude, payload.longitude), payload.accuracy
    )
    return GeofenceValidateResponse(
        inside_geofence=result.inside,
        distance=round(result.distance_m, 1),
        can_proceed=result.can_proceed,
        strict_mode=result.enforced,
        is_risk=result.is_risk,
        message=result.message,
        accuracy=payload.accuracy,
    )


@router.get("/eligibility", response_model=EligibilityResponse)
def get_eligibility(
    employee_id: int = Query(...),
    project_id: int = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not can_act_for_employee(user, employee_id, db):
        raise HTTPException(status_code=403, detail="Access denied")
    eligible = attendance_service.is_eligible_to_work(db, employee_id, project_id)
    return EligibilityResponse(employee_id=employee_id, project_id=project_id, eligible=eligible)


@router.post("/check-in")
def check_in(
    payload: AttendanceEventRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    """
    Worker checks in on a project.
    Rejected outside a strict geofence; the supervisor is alerted.
    """
    outbox = EventOutbox()
    point = GeoPoint(payload.latitude, payload.longitude)

    def work(session: Session):
        outbox.clear()
        return attendance_service.check_in(
            session,
            employee_id=user.employee_id,
            project_id=payload.project_id,
            point=point,
            accuracy_m=payload.accuracy,
            outbox=outbox,
            actor_id=user.id,
        )

    try:
        record, result = run_transaction(db, work)
    except PreconditionFailedError as exc:
        # The rejection still alerts the supervisor
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            background=BackgroundTask(dispatch_events, outbox.drain()),
        )
    schedule_dispatch(background_tasks, outbox)
    return {"message": "Check-in successful", "attendance": _attendance_to_dict(record, result)}


@router.post("/check-out")
def check_out(
    payload: AttendanceEventRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    record, result = run_transaction(db, lambda session: attendance_service.check_out(
        session,
        employee_id=user.employee_id,
        project_id=payload.project_id,
        point=GeoPoint(payload.latitude, payload.longitude),
        accuracy_m=payload.accuracy,
        actor_id=user.id,
    ))
    return {"message": "Check-out successful", "attendance": _attendance_to_dict(record, result)}


@router.post("/location")
def log_location(
    payload: AttendanceEventRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    outbox = EventOutbox()

    def work(session: Session):
        outbox.clear()
        return attendance_service.log_location(
            session,
            employee_id=user.employee_id,
            project_id=payload.project_id,
            point=GeoPoint(payload.latitude, payload.longitude),
            accuracy_m=payload.accuracy,
            outbox=outbox,
        )

    entry, result = run_transaction(db, work)
    schedule_dispatch(background_tasks, outbox)
    return {"inside_geofence": result.inside, "distance": round(result.distance_m, 1), "id": entry.id}


@router.get("/today")
def get_today(
    project_id: int = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    record: Optional[Attendance] = attendance_service.get_today_attendance(db, user.employee_id, project_id)
    return {
        "attendance": _attendance_to_dict(record) if record else None,
        "eligible_to_work": attendance_service.is_eligible_to_work(db, user.employee_id, project_id),
    }


@router.get("/history")
def get_history(
    employee_id: Optional[int] = None,
    project_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(30, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    employee_id = employee_id if employee_id is not None else user.employee_id
    if employee_id is None or not can_act_for_employee(user, employee_id, db):
        raise HTTPException(status_code=403, detail="Access denied")
    records, total = attendance_service.attendance_history(
        db, employee_id,
        project_id=project_id, from_date=from_date, to_date=to_date, page=page, limit=limit,
    )
    return {
        "employee_id": employee_id,
        "records": [_attendance_to_dict(r) for r in records],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@router.get("/geofence/{project_id}")
def get_project_geofence(
    project_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """The geofence a project's check-ins are evaluated against."""
    project = attendance_service.get_project(db, project_id)
    return {"project_id": project.id, "project_name": project.name, "geofence": resolve_geofence(project).to_dict()}

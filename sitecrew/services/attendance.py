"""
Attendance ledger and work-eligibility gate.
Check-in records whether the worker was inside the project geofence; the
task sequencer reads that flag before letting a task start.
"""
from datetime import date, datetime
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from ..models.models import Attendance, Employee, LocationLog, Project
from .audit import create_audit_log
from .geofence import GeoPoint, GeofenceResult, evaluate, resolve_geofence
from .notifications import GEOFENCE_VIOLATION, EventOutbox
from .time_rules import as_utc, local_today, utc_now

logger = structlog.get_logger(__name__)


def get_project(db: Session, project_id: int) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project not found")
    return project


def get_active_employee(db: Session, employee_id: int) -> Employee:
    employee = db.query(Employee).filter(Employee.id == employee_id).first()
    if not employee or (employee.status or "").lower() != "active":
        raise NotFoundError("Employee not found or inactive")
    return employee


def get_open_attendance(db: Session, employee_id: int, project_id: int, day: date) -> Optional[Attendance]:
    return db.query(Attendance).filter(
        Attendance.employee_id == employee_id,
        Attendance.project_id == project_id,
        Attendance.date == day,
        Attendance.check_in.isnot(None),
        Attendance.check_out.is_(None),
    ).first()


def is_eligible_to_work(db: Session, employee_id: int, project_id: int, today: Optional[date] = None) -> bool:
    """
    Whether the worker is on site and may work on the project right now.

    Requires an open attendance record for today. The result is the
    record's inside-geofence flag, except that a project whose geofence is
    not strict accepts any checked-in worker. Pure read.
    """
    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None:
        return False
    day = today or local_today(project.timezone)
    record = get_open_attendance(db, employee_id, project_id, day)
    if record is None:
        return False
    if record.inside_geofence_at_checkin:
        return True
    return not resolve_geofence(project).strict_mode


def check_geofence(
    db: Session, project_id: int, point: GeoPoint, accuracy_m: Optional[float] = None
) -> GeofenceResult:
    project = get_project(db, project_id)
    return evaluate(point, resolve_geofence(project), accuracy_m)


def check_in(
    db: Session,
    *,
    employee_id: int,
    project_id: int,
    point: GeoPoint,
    accuracy_m: Optional[float] = None,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
    now: Optional[datetime] = None,
) -> Tuple[Attendance, GeofenceResult]:
    """
    Record a check-in for today.

    Raises:
        NotFoundError: unknown project or inactive employee
        PreconditionFailedError: outside a strict geofence
        ConflictError: already checked in today on this project
    """
    employee = get_active_employee(db, employee_id)
    project = get_project(db, project_id)
    now = now or utc_now()
    today = local_today(project.timezone, now)

    result = evaluate(point, resolve_geofence(project), accuracy_m)
    if not result.can_proceed:
        logger.warning(
            "checkin_outside_geofence",
            employee_id=employee_id,
            project_id=project_id,
            distance_m=round(result.distance_m, 1),
        )
        if outbox is not None:
            outbox.emit(GEOFENCE_VIOLATION, [employee.supervisor_id], _violation_payload(employee, project, point, result))
        raise PreconditionFailedError(result.message)

    existing = db.query(Attendance).filter(
        Attendance.employee_id == employee_id,
        Attendance.project_id == project_id,
        Attendance.date == today,
    ).first()
    if existing and existing.check_in:
        raise ConflictError("Already checked in today")

    record = existing or Attendance(employee_id=employee_id, project_id=project_id, date=today)
    record.check_in = now
    record.inside_geofence_at_checkin = result.inside
    record.checkin_lat = point.lat
    record.checkin_lng = point.lng
    record.checkin_distance_m = result.distance_m
    record.gps_accuracy_m = accuracy_m
    if existing is None:
        db.add(record)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("Already checked in today")

    create_audit_log(
        db, "attendance", record.id, "CHECK_IN", actor_id=actor_id,
        context={"employee_id": employee_id, "project_id": project_id, "inside_geofence": result.inside,
                 "distance_m": round(result.distance_m, 1)},
    )
    logger.info("checked_in", employee_id=employee_id, project_id=project_id, inside_geofence=result.inside)
    return record, result


def check_out(
    db: Session,
    *,
    employee_id: int,
    project_id: int,
    point: GeoPoint,
    accuracy_m: Optional[float] = None,
    actor_id=None,
    now: Optional[datetime] = None,
) -> Tuple[Attendance, GeofenceResult]:
    """
    Close today's open attendance record.
    The checkout geofence flag is recorded but does not block.
    """
    project = get_project(db, project_id)
    now = now or utc_now()
    today = local_today(project.timezone, now)

    record = get_open_attendance(db, employee_id, project_id, today)
    if record is None:
        raise ValidationError("Cannot check out before checking in")
    if as_utc(now) <= as_utc(record.check_in):
        raise ValidationError("Check-out must be after check-in")

    result = evaluate(point, resolve_geofence(project), accuracy_m)
    record.check_out = now
    record.inside_geofence_at_checkout = result.inside
    record.checkout_lat = point.lat
    record.checkout_lng = point.lng
    record.checkout_distance_m = result.distance_m
    db.flush()

    create_audit_log(
        db, "attendance", record.id, "CHECK_OUT", actor_id=actor_id,
        context={"employee_id": employee_id, "project_id": project_id, "inside_geofence": result.inside},
    )
    logger.info("checked_out", employee_id=employee_id, project_id=project_id, inside_geofence=result.inside)
    return record, result


def log_location(
    db: Session,
    *,
    employee_id: int,
    project_id: int,
    point: GeoPoint,
    accuracy_m: Optional[float] = None,
    outbox: Optional[EventOutbox] = None,
) -> Tuple[LocationLog, GeofenceResult]:
    """Store a location ping; pings outside the geofence alert the supervisor."""
    employee = get_active_employee(db, employee_id)
    project = get_project(db, project_id)
    result = evaluate(point, resolve_geofence(project), accuracy_m)

    entry = LocationLog(
        employee_id=employee_id,
        project_id=project_id,
        lat=point.lat,
        lng=point.lng,
        accuracy_m=accuracy_m,
        distance_m=result.distance_m,
        inside_geofence=result.inside,
    )
    db.add(entry)
    db.flush()

    if not result.inside and outbox is not None:
        outbox.emit(GEOFENCE_VIOLATION, [employee.supervisor_id], _violation_payload(employee, project, point, result))
    return entry, result


def get_today_attendance(db: Session, employee_id: int, project_id: int) -> Optional[Attendance]:
    project = get_project(db, project_id)
    return db.query(Attendance).filter(
        Attendance.employee_id == employee_id,
        Attendance.project_id == project_id,
        Attendance.date == local_today(project.timezone),
    ).first()


def attendance_history(
    db: Session,
    employee_id: int,
    *,
    project_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    page: int = 1,
    limit: int = 30,
) -> Tuple[List[Attendance], int]:
    """
    A worker's attendance records, most recent day first.

    Returns:
        (records on the requested page, total matching records)
    """
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be greater than 0")
    if from_date and to_date and from_date > to_date:
        raise ValidationError("from_date must not be after to_date")

    query = db.query(Attendance).filter(Attendance.employee_id == employee_id)
    if project_id is not None:
        query = query.filter(Attendance.project_id == project_id)
    if from_date is not None:
        query = query.filter(Attendance.date >= from_date)
    if to_date is not None:
        query = query.filter(Attendance.date <= to_date)

    total = query.count()
    records = query.order_by(Attendance.date.desc(), Attendance.project_id.asc()) \
        .offset((page - 1) * limit).limit(min(limit, 100)).all()
    return records, total


def _violation_payload(employee: Employee, project: Project, point: GeoPoint, result: GeofenceResult) -> dict:
    return {
        "employee_id": employee.id,
        "employee_name": employee.full_name,
        "project_id": project.id,
        "project_name": project.name,
        "latitude": point.lat,
        "longitude": point.lng,
        "distance_m": round(result.distance_m, 1),
    }

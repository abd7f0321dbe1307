from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_employee
from ..db import get_db
from ..errors import NotFoundError
from ..models.models import TaskAssignment, User
from ..schemas.tasks import ProgressReportRequest
from ..services import task_sequencer
from ..services.notifications import EventOutbox, schedule_dispatch
from ..services.permissions import can_act_for_employee, can_modify_assignment
from ..services.time_rules import local_today

router = APIRouter(prefix="/tasks", tags=["tasks"])


def _check_access(db: Session, assignment_id: int, user: User) -> None:
    assignment = db.query(TaskAssignment).filter(TaskAssignment.id == assignment_id).first()
    if assignment is None:
        raise NotFoundError("Task assignment not found")
    if not can_modify_assignment(user, assignment, db):
        raise HTTPException(status_code=403, detail="Access denied")


@router.get("/today")
def my_tasks(
    date: Optional[date] = None,
    project_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    """The current worker's queue for a day, in sequence order."""
    day = date or local_today(None)
    rows = task_sequencer.list_worker_tasks(db, user.employee_id, day, project_id)
    return {
        "date": day.isoformat(),
        "tasks": [task_sequencer.assignment_to_dict(a) for a in rows],
    }


@router.get("/history")
def task_history(
    employee_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    project_id: Optional[int] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Past and upcoming assignments of a worker (the caller by default)."""
    employee_id = employee_id if employee_id is not None else user.employee_id
    if employee_id is None or not can_act_for_employee(user, employee_id, db):
        raise HTTPException(status_code=403, detail="Access denied")
    history = task_sequencer.task_history(
        db, employee_id,
        from_date=from_date, to_date=to_date, project_id=project_id, status=status,
        page=page, limit=limit,
    )
    return {"employee_id": employee_id, **history}


@router.post("/{assignment_id}/start")
def start_task(
    assignment_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _check_access(db, assignment_id, user)
    outbox = EventOutbox()
    assignment = task_sequencer.start(db, assignment_id, outbox=outbox, actor_id=user.id)
    schedule_dispatch(background_tasks, outbox)
    return {"message": "Task started", "assignment": task_sequencer.assignment_to_dict(assignment)}


@router.post("/{assignment_id}/progress")
def report_progress(
    assignment_id: int,
    payload: ProgressReportRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _check_access(db, assignment_id, user)
    outbox = EventOutbox()
    assignment, report = task_sequencer.report_progress(
        db,
        assignment_id,
        payload.progress_percent,
        payload.description,
        notes=payload.notes,
        completed_quantity=payload.completed_quantity,
        outbox=outbox,
        actor_id=user.id,
    )
    schedule_dispatch(background_tasks, outbox)
    return {
        "message": "Progress recorded",
        "progress_id": report.id,
        "assignment": task_sequencer.assignment_to_dict(assignment),
    }


@router.post("/{assignment_id}/complete")
def complete_task(
    assignment_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _check_access(db, assignment_id, user)
    outbox = EventOutbox()
    assignment = task_sequencer.complete(db, assignment_id, outbox=outbox, actor_id=user.id)
    schedule_dispatch(background_tasks, outbox)
    return {"message": "Task completed", "assignment": task_sequencer.assignment_to_dict(assignment)}

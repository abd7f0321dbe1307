"""
Supervisor API routes.
Queue management for workers: assign, edit, re-target and remove tasks,
plus project dashboards.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..db import get_db
from ..errors import NotFoundError
from ..models.models import TaskAssignment, User
from ..schemas.tasks import AssignmentChanges, AssignTasksRequest, DailyTargetsRequest
from ..services import task_sequencer
from ..services.audit import get_audit_logs
from ..services.notifications import EventOutbox, schedule_dispatch
from ..services.permissions import can_act_for_employee
from ..services.time_rules import local_today

router = APIRouter(prefix="/supervisor", tags=["supervisor"])

require_supervisor = require_roles("supervisor")


def _ensure_can_manage(db: Session, user: User, employee_id: int) -> None:
    if not can_act_for_employee(user, employee_id, db):
        raise HTTPException(status_code=403, detail="Worker is not on your team")


def _get_managed_assignment(db: Session, assignment_id: int, user: User) -> TaskAssignment:
    assignment = db.query(TaskAssignment).filter(TaskAssignment.id == assignment_id).first()
    if assignment is None:
        raise NotFoundError("Task assignment not found")
    _ensure_can_manage(db, user, assignment.employee_id)
    return assignment


@router.post("/assign-task")
def assign_tasks(
    payload: AssignTasksRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    """
    Append tasks to a worker's queue for a project and day.
    The whole batch is created or nothing is.
    """
    _ensure_can_manage(db, user, payload.employee_id)
    outbox = EventOutbox()
    created = task_sequencer.enqueue(
        db,
        payload.employee_id,
        payload.project_id,
        payload.task_ids,
        payload.date,
        supervisor_id=user.employee_id,
        outbox=outbox,
        actor_id=user.id,
    )
    schedule_dispatch(background_tasks, outbox)
    return {
        "message": f"{len(created)} task(s) assigned",
        "assignments": [task_sequencer.assignment_to_dict(a) for a in created],
    }


@router.patch("/task-assignments/{assignment_id}")
def update_assignment(
    assignment_id: int,
    payload: AssignmentChanges,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    _get_managed_assignment(db, assignment_id, user)
    outbox = EventOutbox()
    assignment = task_sequencer.update(
        db,
        assignment_id,
        payload.model_dump(exclude_unset=True),
        outbox=outbox,
        actor_id=user.id,
    )
    schedule_dispatch(background_tasks, outbox)
    return {"message": "Assignment updated", "assignment": task_sequencer.assignment_to_dict(assignment)}


@router.put("/daily-targets")
def update_daily_targets(
    payload: DailyTargetsRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    updates = []
    for item in payload.assignment_updates:
        assignment = db.query(TaskAssignment).filter(TaskAssignment.id == item.assignment_id).first()
        # Unknown ids are skipped by the sequencer; foreign workers are not
        if assignment is not None:
            _ensure_can_manage(db, user, assignment.employee_id)
        updates.append((item.assignment_id, item.daily_target))

    outbox = EventOutbox()
    updated = task_sequencer.update_daily_targets(db, updates, outbox=outbox, actor_id=user.id)
    schedule_dispatch(background_tasks, outbox)
    return {
        "message": f"Daily targets updated for {len(updated)} assignment(s)",
        "updated_assignments": [task_sequencer.assignment_to_dict(a) for a in updated],
    }


@router.delete("/task-assignments/{assignment_id}")
def remove_assignment(
    assignment_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    _get_managed_assignment(db, assignment_id, user)
    outbox = EventOutbox()
    moved = task_sequencer.remove(db, assignment_id, outbox=outbox, actor_id=user.id)
    schedule_dispatch(background_tasks, outbox)
    return {"message": "Task removed from queue", "resequenced": moved}


@router.get("/worker-tasks")
def worker_tasks(
    employee_id: int = Query(...),
    date: Optional[date] = None,
    project_id: Optional[int] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    _ensure_can_manage(db, user, employee_id)
    day = date or local_today(None)
    rows = task_sequencer.list_worker_tasks(db, employee_id, day, project_id, status)
    return {
        "employee_id": employee_id,
        "date": day.isoformat(),
        "tasks": [task_sequencer.assignment_to_dict(a) for a in rows],
    }


@router.get("/active-tasks/{project_id}")
def project_active_tasks(
    project_id: int,
    from_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    return task_sequencer.active_tasks(db, project_id, from_date)


@router.get("/checked-in-workers/{project_id}")
def project_checked_in_workers(
    project_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    return {"workers": task_sequencer.checked_in_workers(db, project_id)}


@router.get("/task-assignments/{assignment_id}/audit")
def assignment_audit_trail(
    assignment_id: int,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(require_supervisor),
):
    """Audit entries of one assignment, newest first. Survives removal of the assignment."""
    logs = get_audit_logs(db, "task_assignment", assignment_id, limit=limit)
    assignment = db.query(TaskAssignment).filter(TaskAssignment.id == assignment_id).first()
    if assignment is not None:
        employee_id = assignment.employee_id
    else:
        # Removed assignments are known only through their audit context
        employee_id = next(
            ((log.context or {}).get("employee_id") for log in logs if (log.context or {}).get("employee_id")),
            None,
        )
    if employee_id is None:
        raise NotFoundError("Task assignment not found")
    _ensure_can_manage(db, user, employee_id)
    return {
        "assignment_id": assignment_id,
        "entries": [
            {
                "action": log.action,
                "actor_id": str(log.actor_id) if log.actor_id else None,
                "timestamp_utc": log.timestamp_utc.isoformat() if log.timestamp_utc else None,
                "changes": log.changes_json,
                "context": log.context,
            }
            for log in logs
        ],
    }

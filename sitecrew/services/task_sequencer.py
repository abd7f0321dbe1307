"""
Task sequencer.

Each worker has an ordered queue of task assignments per project and day.
Assignments move queued -> in_progress -> completed, a worker holds at most
one in-progress assignment per day, and starting one requires a
geofence-valid check-in.

Mutations of a queue's sequence space (enqueue, remove) run under the
queue's lock row. The one-active-task rule is enforced by a compare-and-set
update backed by a partial unique index.
"""
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ..db import RetryableConflict, run_transaction
from ..errors import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from ..models.models import (
    AssignmentQueue,
    AssignmentStatus,
    Attendance,
    Employee,
    Project,
    ProjectTask,
    TaskAssignment,
    TaskProgress,
)
from .attendance import get_project, is_eligible_to_work
from .audit import compute_diff, create_audit_log
from .geofence import resolve_geofence
from .notifications import (
    DAILY_TARGET_UPDATED,
    TASK_ASSIGNED,
    TASK_COMPLETED,
    TASK_LOCATION_CHANGED,
    TASK_MODIFIED,
    TASK_PROGRESS_UPDATED,
    TASK_REMOVED,
    TASK_STARTED,
    EventOutbox,
)
from .time_rules import local_today, utc_now

logger = structlog.get_logger(__name__)

QUEUED = AssignmentStatus.QUEUED.value
IN_PROGRESS = AssignmentStatus.IN_PROGRESS.value
COMPLETED = AssignmentStatus.COMPLETED.value

PRIORITIES = ("low", "medium", "high", "critical")
LOCATION_FIELDS = ("work_area", "floor", "zone")
EDITABLE_FIELDS = ("priority", "work_area", "floor", "zone", "time_estimate", "daily_target", "supervisor_id")
MERGED_FIELDS = ("time_estimate", "daily_target")


def parse_status(value: str) -> AssignmentStatus:
    """Validate a status at the API boundary; any casing is accepted."""
    try:
        return AssignmentStatus(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown status '{value}'")


def assignment_to_dict(assignment: TaskAssignment) -> Dict[str, Any]:
    task = assignment.task
    return {
        "id": assignment.id,
        "employee_id": assignment.employee_id,
        "project_id": assignment.project_id,
        "task_id": assignment.task_id,
        "task_name": task.name if task else None,
        "date": assignment.date.isoformat() if assignment.date else None,
        "status": assignment.status,
        "sequence": assignment.sequence,
        "start_time": assignment.start_time.isoformat() if assignment.start_time else None,
        "end_time": assignment.end_time.isoformat() if assignment.end_time else None,
        "priority": assignment.priority,
        "work_area": assignment.work_area,
        "floor": assignment.floor,
        "zone": assignment.zone,
        "time_estimate": assignment.time_estimate,
        "daily_target": assignment.daily_target,
        "progress_percent": assignment.progress_percent or 0,
        "supervisor_id": assignment.supervisor_id,
    }


def _event_payload(assignment: TaskAssignment) -> Dict[str, Any]:
    return {
        "assignment_id": assignment.id,
        "task_id": assignment.task_id,
        "project_id": assignment.project_id,
        "date": assignment.date.isoformat(),
        "sequence": assignment.sequence,
    }


def _get_assignment(db: Session, assignment_id: int, for_update: bool = False) -> Optional[TaskAssignment]:
    query = db.query(TaskAssignment).filter(TaskAssignment.id == assignment_id)
    if for_update:
        query = query.populate_existing().with_for_update()
    return query.first()


def _lock_queue(db: Session, employee_id: int, project_id: int, day: date) -> AssignmentQueue:
    """
    Take the lock row of one (employee, project, day) queue.
    Concurrent first use of a queue collides on the unique key and is retried.
    """
    queue = db.query(AssignmentQueue).filter(
        AssignmentQueue.employee_id == employee_id,
        AssignmentQueue.project_id == project_id,
        AssignmentQueue.date == day,
    ).with_for_update().first()
    if queue is None:
        queue = AssignmentQueue(employee_id=employee_id, project_id=project_id, date=day)
        db.add(queue)
        try:
            db.flush()
        except IntegrityError:
            raise RetryableConflict("queue lock row created concurrently")
    queue.updated_at = utc_now()
    return queue


def _queue_rows(db: Session, employee_id: int, project_id: int, day: date) -> List[TaskAssignment]:
    return db.query(TaskAssignment).filter(
        TaskAssignment.employee_id == employee_id,
        TaskAssignment.project_id == project_id,
        TaskAssignment.date == day,
    ).order_by(TaskAssignment.sequence.asc()).all()


def _resequence(db: Session, employee_id: int, project_id: int, day: date) -> int:
    """
    Close gaps left in a queue's sequence space.

    Every row of the queue, whatever its status, is renumbered 1..M in its
    previous order. Rows are moved one at a time in ascending order, so a
    target slot is always free.

    Returns:
        Number of rows renumbered
    """
    moved = 0
    for slot, row in enumerate(_queue_rows(db, employee_id, project_id, day), start=1):
        if row.sequence != slot:
            row.sequence = slot
            row.updated_at = utc_now()
            db.flush()
            moved += 1
    return moved


def enqueue(
    db: Session,
    employee_id: int,
    project_id: int,
    task_ids: Iterable[int],
    day: date,
    *,
    supervisor_id: Optional[int] = None,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
) -> List[TaskAssignment]:
    """
    Append tasks to a worker's queue for one project and day.

    All tasks are created or none are. Sequence numbers continue from the
    queue's current maximum, in input order.

    Raises:
        ValidationError: empty or repeated task ids, unknown project, inactive
            employee or a task outside the project
        ConflictError: a task is already assigned to this worker on this day
    """
    task_ids = [int(t) for t in task_ids or []]
    if not task_ids:
        raise ValidationError("At least one task is required")
    if len(set(task_ids)) != len(task_ids):
        raise ValidationError("Task list contains duplicates")

    def work(session: Session) -> List[TaskAssignment]:
        if session.query(Project.id).filter(Project.id == project_id).first() is None:
            raise ValidationError("Tasks do not belong to this project")
        employee = session.query(Employee).filter(Employee.id == employee_id).first()
        if employee is None or (employee.status or "").lower() != "active":
            raise ValidationError("Employee not found or inactive")

        valid = session.query(func.count(ProjectTask.id)).filter(
            ProjectTask.id.in_(task_ids),
            ProjectTask.project_id == project_id,
        ).scalar()
        if valid != len(task_ids):
            raise ValidationError("One or more tasks do not belong to this project")

        _lock_queue(session, employee_id, project_id, day)

        duplicates = session.query(TaskAssignment.task_id).filter(
            TaskAssignment.employee_id == employee_id,
            TaskAssignment.project_id == project_id,
            TaskAssignment.date == day,
            TaskAssignment.task_id.in_(task_ids),
        ).all()
        if duplicates:
            taken = ", ".join(str(row[0]) for row in duplicates)
            raise ConflictError(f"Tasks already assigned for this worker on this date: {taken}")

        last = session.query(func.max(TaskAssignment.sequence)).filter(
            TaskAssignment.employee_id == employee_id,
            TaskAssignment.project_id == project_id,
            TaskAssignment.date == day,
        ).scalar() or 0

        now = utc_now()
        created = [
            TaskAssignment(
                employee_id=employee_id,
                project_id=project_id,
                task_id=task_id,
                date=day,
                status=QUEUED,
                sequence=last + index,
                supervisor_id=supervisor_id,
                created_at=now,
            )
            for index, task_id in enumerate(task_ids, start=1)
        ]
        session.add_all(created)
        try:
            session.flush()
        except IntegrityError:
            raise RetryableConflict("queue changed during enqueue")

        for assignment in created:
            create_audit_log(
                session, "task_assignment", assignment.id, "CREATE", actor_id=actor_id,
                context={"employee_id": employee_id, "project_id": project_id, "sequence": assignment.sequence},
            )
        return created

    created = run_transaction(db, work)
    logger.info(
        "tasks_queued",
        employee_id=employee_id,
        project_id=project_id,
        date=day.isoformat(),
        assignment_ids=[a.id for a in created],
    )
    if outbox is not None:
        outbox.emit(TASK_ASSIGNED, [employee_id], {
            "project_id": project_id,
            "date": day.isoformat(),
            "assignments": [_event_payload(a) for a in created],
        })
    return created


def start(
    db: Session,
    assignment_id: int,
    *,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
    now: Optional[datetime] = None,
) -> TaskAssignment:
    """
    Move a queued assignment to in_progress.

    Raises:
        NotFoundError: no queued assignment with this id
        PreconditionFailedError: worker not checked in inside the geofence
        ConflictError: worker already has an active task that day
    """
    def work(session: Session) -> TaskAssignment:
        assignment = _get_assignment(session, assignment_id)
        if assignment is None or assignment.status != QUEUED:
            raise NotFoundError("Queued task not found")

        if not is_eligible_to_work(session, assignment.employee_id, assignment.project_id):
            raise PreconditionFailedError("Worker must be checked in inside the project geofence")

        active = session.query(TaskAssignment.id).filter(
            TaskAssignment.employee_id == assignment.employee_id,
            TaskAssignment.date == assignment.date,
            TaskAssignment.status == IN_PROGRESS,
        ).first()
        if active:
            raise ConflictError("Worker already has an active task")

        started_at = now or utc_now()
        try:
            updated = session.query(TaskAssignment).filter(
                TaskAssignment.id == assignment_id,
                TaskAssignment.status == QUEUED,
            ).update(
                {"status": IN_PROGRESS, "start_time": started_at, "updated_at": started_at},
                synchronize_session="fetch",
            )
        except IntegrityError:
            raise ConflictError("Worker already has an active task")
        if updated != 1:
            raise NotFoundError("Queued task not found")

        create_audit_log(
            session, "task_assignment", assignment_id, "START", actor_id=actor_id,
            changes_json={"status": {"before": QUEUED, "after": IN_PROGRESS}},
        )
        return assignment

    assignment = run_transaction(db, work)
    logger.info("task_started", assignment_id=assignment.id, employee_id=assignment.employee_id)
    if outbox is not None:
        outbox.emit(TASK_STARTED, [assignment.supervisor_id], _event_payload(assignment))
    return assignment


def complete(
    db: Session,
    assignment_id: int,
    *,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
    now: Optional[datetime] = None,
) -> TaskAssignment:
    """
    Move an in-progress assignment to completed.

    Raises:
        NotFoundError: no in-progress assignment with this id
    """
    def work(session: Session) -> TaskAssignment:
        assignment = _get_assignment(session, assignment_id)
        if assignment is None or assignment.status != IN_PROGRESS:
            raise NotFoundError("Active task not found")

        ended_at = now or utc_now()
        updated = session.query(TaskAssignment).filter(
            TaskAssignment.id == assignment_id,
            TaskAssignment.status == IN_PROGRESS,
        ).update(
            {"status": COMPLETED, "end_time": ended_at, "progress_percent": 100, "updated_at": ended_at},
            synchronize_session="fetch",
        )
        if updated != 1:
            raise NotFoundError("Active task not found")

        create_audit_log(
            session, "task_assignment", assignment_id, "COMPLETE", actor_id=actor_id,
            changes_json={"status": {"before": IN_PROGRESS, "after": COMPLETED}},
        )
        return assignment

    assignment = run_transaction(db, work)
    logger.info("task_completed", assignment_id=assignment.id, employee_id=assignment.employee_id)
    if outbox is not None:
        outbox.emit(TASK_COMPLETED, [assignment.supervisor_id], _event_payload(assignment))
    return assignment


def remove(
    db: Session,
    assignment_id: int,
    *,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
) -> int:
    """
    Delete a queued assignment and close the gap it leaves in its queue.

    Raises:
        NotFoundError: no assignment with this id
        ValidationError: the assignment is no longer queued

    Returns:
        Number of sibling assignments renumbered
    """
    removed: Dict[str, Any] = {}

    def work(session: Session) -> int:
        assignment = _get_assignment(session, assignment_id)
        if assignment is None:
            raise NotFoundError("Task assignment not found")

        employee_id, project_id, day = assignment.employee_id, assignment.project_id, assignment.date
        _lock_queue(session, employee_id, project_id, day)

        assignment = _get_assignment(session, assignment_id, for_update=True)
        if assignment is None:
            raise NotFoundError("Task assignment not found")
        if assignment.status != QUEUED:
            raise ValidationError("Only queued tasks can be removed")

        removed.update(_event_payload(assignment))
        removed["employee_id"] = employee_id
        session.delete(assignment)
        session.flush()

        moved = _resequence(session, employee_id, project_id, day)
        create_audit_log(
            session, "task_assignment", assignment_id, "DELETE", actor_id=actor_id,
            context={"employee_id": employee_id, "project_id": project_id, "resequenced": moved},
        )
        return moved

    moved = run_transaction(db, work)
    logger.info("queued_task_removed", assignment_id=assignment_id, resequenced=moved)
    if outbox is not None:
        outbox.emit(TASK_REMOVED, [removed.get("employee_id")], removed)
    return moved


def update(
    db: Session,
    assignment_id: int,
    changes: Dict[str, Any],
    *,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
) -> TaskAssignment:
    """
    Edit non-state fields of an assignment that is not completed.
    ``time_estimate`` and ``daily_target`` are merged into existing values;
    an explicit ``None`` clears a field.

    Raises:
        NotFoundError: no assignment with this id
        ValidationError: completed assignment, state field or unknown field
    """
    changes = dict(changes or {})
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Fields cannot be changed: {', '.join(unknown)}")
    if "priority" in changes:
        if changes["priority"] is None:
            raise ValidationError("priority cannot be cleared")
        changes["priority"] = str(changes["priority"]).strip().lower()
        if changes["priority"] not in PRIORITIES:
            raise ValidationError(f"priority must be one of {', '.join(PRIORITIES)}")

    result: Dict[str, Any] = {}

    def work(session: Session) -> TaskAssignment:
        assignment = _get_assignment(session, assignment_id, for_update=True)
        if assignment is None:
            raise NotFoundError("Assignment not found")
        if assignment.status == COMPLETED:
            raise ValidationError("Completed assignments cannot be modified")

        before = {field: getattr(assignment, field) for field in EDITABLE_FIELDS}
        for field, value in changes.items():
            if field in MERGED_FIELDS and isinstance(value, dict):
                value = {**(getattr(assignment, field) or {}), **value}
            setattr(assignment, field, value)
        after = {field: getattr(assignment, field) for field in EDITABLE_FIELDS}

        diff = compute_diff(before, after)
        result["diff"] = diff
        result["location_before"] = {f: before[f] for f in LOCATION_FIELDS}
        result["location_changed"] = any(f in diff for f in LOCATION_FIELDS)
        if diff:
            assignment.updated_at = utc_now()
            session.flush()
            create_audit_log(session, "task_assignment", assignment_id, "UPDATE", actor_id=actor_id, changes_json=diff)
        return assignment

    assignment = run_transaction(db, work)
    diff = result.get("diff") or {}
    logger.info("task_assignment_updated", assignment_id=assignment_id, fields=sorted(diff))
    if outbox is not None and diff:
        outbox.emit(TASK_MODIFIED, [assignment.employee_id], {
            **_event_payload(assignment),
            "changes": {field: values["after"] for field, values in diff.items()},
        })
        if result["location_changed"]:
            outbox.emit(TASK_LOCATION_CHANGED, [assignment.employee_id], {
                **_event_payload(assignment),
                "old_location": result["location_before"],
                "new_location": {f: getattr(assignment, f) for f in LOCATION_FIELDS},
            })
    return assignment


def update_daily_targets(
    db: Session,
    updates: List[Tuple[int, Dict[str, Any]]],
    *,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
) -> List[TaskAssignment]:
    """
    Merge new daily targets into several assignments at once.
    Unknown or completed assignments are skipped.

    Raises:
        ValidationError: nothing was updated
    """
    def work(session: Session) -> List[TaskAssignment]:
        updated = []
        for assignment_id, target in updates:
            if not target:
                continue
            assignment = _get_assignment(session, assignment_id, for_update=True)
            if assignment is None or assignment.status == COMPLETED:
                continue
            before = assignment.daily_target
            assignment.daily_target = {**(before or {}), **target}
            assignment.updated_at = utc_now()
            create_audit_log(
                session, "task_assignment", assignment.id, "UPDATE", actor_id=actor_id,
                changes_json={"daily_target": {"before": before, "after": assignment.daily_target}},
            )
            updated.append(assignment)
        if not updated:
            raise ValidationError("No valid assignments found to update")
        session.flush()
        return updated

    updated = run_transaction(db, work)
    logger.info("daily_targets_updated", assignment_ids=[a.id for a in updated])
    if outbox is not None:
        for assignment in updated:
            outbox.emit(DAILY_TARGET_UPDATED, [assignment.employee_id], {
                **_event_payload(assignment),
                "daily_target": assignment.daily_target,
            })
    return updated


def report_progress(
    db: Session,
    assignment_id: int,
    progress_percent: int,
    description: str,
    *,
    notes: Optional[str] = None,
    completed_quantity: Optional[float] = None,
    outbox: Optional[EventOutbox] = None,
    actor_id=None,
) -> Tuple[TaskAssignment, TaskProgress]:
    """
    Record a worker's progress on an in-progress assignment.

    Progress is a whole percentage that never goes down.

    Raises:
        NotFoundError: no assignment with this id
        ValidationError: bad percentage, empty description, assignment not
            in progress, or progress lower than already reported
    """
    if not isinstance(progress_percent, int) or isinstance(progress_percent, bool) \
            or not 0 <= progress_percent <= 100:
        raise ValidationError("progress_percent must be a whole number between 0 and 100")
    description = (description or "").strip()
    if not description:
        raise ValidationError("description is required")

    def work(session: Session) -> Tuple[TaskAssignment, TaskProgress]:
        assignment = _get_assignment(session, assignment_id, for_update=True)
        if assignment is None:
            raise NotFoundError("Task assignment not found")
        if assignment.status == QUEUED:
            raise ValidationError("Task must be started before progress can be updated")
        if assignment.status != IN_PROGRESS:
            raise ValidationError("Cannot update progress for a completed task")

        previous = assignment.progress_percent or 0
        if progress_percent < previous:
            raise ValidationError(f"Progress cannot decrease from {previous}% to {progress_percent}%")

        now = utc_now()
        report = TaskProgress(
            assignment_id=assignment.id,
            employee_id=assignment.employee_id,
            progress_percent=progress_percent,
            description=description,
            notes=notes,
            completed_quantity=completed_quantity,
            submitted_at=now,
        )
        session.add(report)
        assignment.progress_percent = progress_percent
        assignment.updated_at = now
        session.flush()

        create_audit_log(
            session, "task_assignment", assignment.id, "PROGRESS", actor_id=actor_id,
            changes_json={"progress_percent": {"before": previous, "after": progress_percent}},
        )
        return assignment, report

    assignment, report = run_transaction(db, work)
    logger.info("task_progress_reported", assignment_id=assignment.id, progress_percent=progress_percent)
    if outbox is not None:
        outbox.emit(TASK_PROGRESS_UPDATED, [assignment.supervisor_id], {
            **_event_payload(assignment),
            "progress_percent": progress_percent,
            "description": description,
        })
    return assignment, report


def list_worker_tasks(
    db: Session,
    employee_id: int,
    day: date,
    project_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[TaskAssignment]:
    query = db.query(TaskAssignment).options(joinedload(TaskAssignment.task)).filter(
        TaskAssignment.employee_id == employee_id,
        TaskAssignment.date == day,
    )
    if project_id is not None:
        query = query.filter(TaskAssignment.project_id == project_id)
    if status is not None:
        query = query.filter(TaskAssignment.status == parse_status(status).value)
    return query.order_by(TaskAssignment.project_id.asc(), TaskAssignment.sequence.asc()).all()


def task_history(
    db: Session,
    employee_id: int,
    *,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    project_id: Optional[int] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """A worker's assignments across days, most recent day first."""
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be greater than 0")
    if from_date and to_date and from_date > to_date:
        raise ValidationError("from_date must not be after to_date")
    limit = min(limit, 100)

    query = db.query(TaskAssignment).filter(TaskAssignment.employee_id == employee_id)
    if from_date is not None:
        query = query.filter(TaskAssignment.date >= from_date)
    if to_date is not None:
        query = query.filter(TaskAssignment.date <= to_date)
    if project_id is not None:
        query = query.filter(TaskAssignment.project_id == project_id)
    if status is not None:
        query = query.filter(TaskAssignment.status == parse_status(status).value)

    total = query.count()
    rows = query.options(joinedload(TaskAssignment.task)).order_by(
        TaskAssignment.date.desc(), TaskAssignment.project_id.asc(), TaskAssignment.sequence.asc()
    ).offset((page - 1) * limit).limit(limit).all()
    return {
        "tasks": [assignment_to_dict(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def active_tasks(db: Session, project_id: int, from_date: Optional[date] = None) -> Dict[str, Any]:
    """Queued and in-progress assignments of a project from a day onwards, with counts."""
    project = get_project(db, project_id)
    from_date = from_date or local_today(project.timezone)
    rows = db.query(TaskAssignment).options(joinedload(TaskAssignment.task)).filter(
        TaskAssignment.project_id == project_id,
        TaskAssignment.date >= from_date,
        TaskAssignment.status.in_([QUEUED, IN_PROGRESS]),
    ).order_by(
        TaskAssignment.date.asc(), TaskAssignment.employee_id.asc(), TaskAssignment.sequence.asc()
    ).all()

    names = dict(
        db.query(Employee.id, Employee.full_name).filter(
            Employee.id.in_(sorted({row.employee_id for row in rows}))
        ).all()
    ) if rows else {}

    tasks = []
    for row in rows:
        item = assignment_to_dict(row)
        item["worker_name"] = names.get(row.employee_id)
        tasks.append(item)

    return {
        "active_tasks": tasks,
        "summary": {
            "total_active": len(rows),
            "queued": sum(1 for row in rows if row.status == QUEUED),
            "in_progress": sum(1 for row in rows if row.status == IN_PROGRESS),
        },
    }


def checked_in_workers(db: Session, project_id: int, today: Optional[date] = None) -> List[Dict[str, Any]]:
    """
    Workers on site today who are eligible to work, each with the
    assignment they are currently working on (if any).
    """
    project = get_project(db, project_id)
    today = today or local_today(project.timezone)
    strict = resolve_geofence(project).strict_mode

    query = db.query(Attendance, Employee).join(Employee, Employee.id == Attendance.employee_id).filter(
        Attendance.project_id == project_id,
        Attendance.date == today,
        Attendance.check_in.isnot(None),
        Attendance.check_out.is_(None),
    )
    if strict:
        query = query.filter(Attendance.inside_geofence_at_checkin.is_(True))

    workers = []
    for attendance, employee in query.order_by(Employee.full_name.asc()).all():
        active = db.query(TaskAssignment).filter(
            TaskAssignment.employee_id == employee.id,
            TaskAssignment.project_id == project_id,
            TaskAssignment.date == today,
            TaskAssignment.status == IN_PROGRESS,
        ).first()
        workers.append({
            "employee": {"id": employee.id, "full_name": employee.full_name},
            "check_in": attendance.check_in.isoformat() if attendance.check_in else None,
            "inside_geofence_at_checkin": attendance.inside_geofence_at_checkin,
            "task_id": active.task_id if active else None,
            "assignment_id": active.id if active else None,
        })
    return workers

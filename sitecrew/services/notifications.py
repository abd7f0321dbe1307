"""
Notification service.
Core operations record typed events in an outbox; delivery happens after
the request's transaction commits and never affects the operation's outcome.
Respects employee preferences and quiet hours.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Notification, NotificationPreference
from .time_rules import is_within_quiet_hours

logger = structlog.get_logger(__name__)

TASK_ASSIGNED = "task_assigned"
TASK_MODIFIED = "task_modified"
TASK_LOCATION_CHANGED = "task_location_changed"
TASK_STARTED = "task_started"
TASK_COMPLETED = "task_completed"
TASK_REMOVED = "task_removed"
TASK_PROGRESS_UPDATED = "task_progress_updated"
DAILY_TARGET_UPDATED = "daily_target_updated"
GEOFENCE_VIOLATION = "geofence_violation"


@dataclass(frozen=True)
class TaskEvent:
    event_type: str
    recipient_ids: tuple
    payload: Dict[str, Any] = field(default_factory=dict)


class EventOutbox:
    """Collects events emitted while a unit of work runs."""

    def __init__(self):
        self._events: List[TaskEvent] = []

    def emit(self, event_type: str, recipient_ids: Iterable[Optional[int]], payload: Dict[str, Any]) -> None:
        recipients = tuple(sorted({int(r) for r in recipient_ids if r is not None}))
        if not recipients:
            return
        self._events.append(TaskEvent(event_type=event_type, recipient_ids=recipients, payload=payload))

    def clear(self) -> None:
        self._events.clear()

    def drain(self) -> List[TaskEvent]:
        events = list(self._events)
        self._events.clear()
        return events

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(self._events)


def is_quiet_hours(quiet_hours: Optional[Dict], timezone_str: Optional[str] = None) -> bool:
    """
    Check if current time is within an employee's quiet hours.

    Args:
        quiet_hours: {start: "HH:MM", end: "HH:MM", timezone: str}
        timezone_str: Fallback timezone

    Returns:
        True if within quiet hours
    """
    if not quiet_hours or not quiet_hours.get("start") or not quiet_hours.get("end"):
        return False
    try:
        return is_within_quiet_hours(
            quiet_hours["start"],
            quiet_hours["end"],
            quiet_hours.get("timezone") or timezone_str or settings.tz_default,
        )
    except ValueError:
        logger.warning("invalid_quiet_hours", quiet_hours=quiet_hours)
        return False


def should_send_notification(db: Session, employee_id: int) -> bool:
    """Check the global switch, the employee's push preference and quiet hours."""
    if not settings.enable_push:
        return False

    pref = db.query(NotificationPreference).filter(
        NotificationPreference.employee_id == employee_id
    ).first()
    if pref:
        if not pref.push:
            return False
        if is_quiet_hours(pref.quiet_hours):
            return False
    return True


def create_notification(
    db: Session,
    employee_id: int,
    template_key: str,
    payload_json: Optional[Dict] = None,
) -> Optional[Notification]:
    """
    Create a notification record.
    Only creates if employee preferences allow it.

    Returns:
        Notification object if created, None if skipped
    """
    if not should_send_notification(db, employee_id):
        return None

    notification = Notification(
        employee_id=employee_id,
        channel="push",
        template_key=template_key,
        payload_json=payload_json,
        status="pending",
    )
    db.add(notification)
    return notification


def dispatch_events(events: List[TaskEvent], session_factory: Callable[[], Session] = None) -> int:
    """
    Deliver events as notification records using a dedicated session.

    Each event is committed on its own; a failing event is logged and
    skipped. Never raises.

    Returns:
        Number of notifications created
    """
    if not events:
        return 0
    if session_factory is None:
        from ..db import SessionLocal
        session_factory = SessionLocal

    created = 0
    try:
        db = session_factory()
    except Exception:
        logger.exception("notification_session_failed", events=len(events))
        return 0
    try:
        for event in events:
            try:
                count = 0
                for employee_id in event.recipient_ids:
                    payload = {"type": event.event_type, **event.payload}
                    if create_notification(db, employee_id, event.event_type, payload):
                        count += 1
                db.commit()
                created += count
                logger.info("notification_dispatched", event_type=event.event_type, recipients=list(event.recipient_ids))
            except Exception:
                db.rollback()
                logger.exception("notification_dispatch_failed", event_type=event.event_type)
    finally:
        db.close()
    return created


def schedule_dispatch(background_tasks, outbox: EventOutbox) -> None:
    """Hand the outbox's events to a FastAPI background task."""
    events = outbox.drain()
    if events:
        background_tasks.add_task(dispatch_events, events)

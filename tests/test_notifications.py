from datetime import datetime, timedelta

import pytz

from sitecrew.db import SessionLocal
from sitecrew.models.models import Notification, NotificationPreference
from sitecrew.services.notifications import (
    TASK_ASSIGNED,
    TASK_REMOVED,
    EventOutbox,
    TaskEvent,
    dispatch_events,
    is_quiet_hours,
)
from sitecrew.services.time_rules import is_within_quiet_hours


def _quiet_window_around_now():
    now = datetime.now(pytz.UTC)
    return {
        "start": (now - timedelta(hours=1)).strftime("%H:%M"),
        "end": (now + timedelta(hours=1)).strftime("%H:%M"),
        "timezone": "UTC",
    }


def test_outbox_skips_events_without_recipients():
    outbox = EventOutbox()
    outbox.emit(TASK_ASSIGNED, [None], {"x": 1})
    outbox.emit(TASK_ASSIGNED, [3, 3, None, 2], {"x": 2})
    events = outbox.drain()
    assert len(events) == 1
    assert events[0].recipient_ids == (2, 3)
    assert len(outbox) == 0


def test_dispatch_creates_one_notification_per_recipient(db, make_employee):
    a = make_employee("A")
    b = make_employee("B")
    events = [TaskEvent(TASK_ASSIGNED, (a.id, b.id), {"assignment_id": 1})]

    assert dispatch_events(events, SessionLocal) == 2
    rows = db.query(Notification).order_by(Notification.employee_id).all()
    assert [r.employee_id for r in rows] == [a.id, b.id]
    assert rows[0].template_key == TASK_ASSIGNED
    assert rows[0].payload_json == {"type": TASK_ASSIGNED, "assignment_id": 1}


def test_dispatch_honours_push_preference(db, make_employee):
    muted = make_employee("Muted")
    db.add(NotificationPreference(employee_id=muted.id, push=False))
    db.commit()

    assert dispatch_events([TaskEvent(TASK_ASSIGNED, (muted.id,), {})], SessionLocal) == 0
    assert db.query(Notification).count() == 0


def test_dispatch_honours_quiet_hours(db, make_employee):
    sleeper = make_employee("Sleeper")
    db.add(NotificationPreference(employee_id=sleeper.id, push=True, quiet_hours=_quiet_window_around_now()))
    db.commit()

    assert dispatch_events([TaskEvent(TASK_ASSIGNED, (sleeper.id,), {})], SessionLocal) == 0


def test_dispatch_never_raises_when_session_cannot_open():
    def broken_factory():
        raise RuntimeError("database unreachable")

    assert dispatch_events([TaskEvent(TASK_REMOVED, (1,), {})], broken_factory) == 0


def test_failing_event_does_not_block_the_next(db, make_employee):
    worker = make_employee("Worker")
    events = [
        TaskEvent(TASK_ASSIGNED, (worker.id,), {"bad": object()}),
        TaskEvent(TASK_REMOVED, (worker.id,), {"assignment_id": 7}),
    ]

    assert dispatch_events(events, SessionLocal) == 1
    [row] = db.query(Notification).all()
    assert row.template_key == TASK_REMOVED


def test_dispatch_of_nothing_is_a_no_op():
    assert dispatch_events([]) == 0


def test_quiet_hours_window_spanning_midnight():
    tz = pytz.timezone("Asia/Singapore")
    late = tz.localize(datetime(2024, 6, 1, 23, 30))
    early = tz.localize(datetime(2024, 6, 2, 6, 15))
    noon = tz.localize(datetime(2024, 6, 2, 12, 0))
    assert is_within_quiet_hours("22:00", "07:00", "Asia/Singapore", late)
    assert is_within_quiet_hours("22:00", "07:00", "Asia/Singapore", early)
    assert not is_within_quiet_hours("22:00", "07:00", "Asia/Singapore", noon)


def test_malformed_quiet_hours_are_ignored():
    assert is_quiet_hours({"start": "late", "end": "early"}) is False
    assert is_quiet_hours(None) is False

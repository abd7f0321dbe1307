import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import require_employee
from ..db import get_db
from ..models.models import Notification, NotificationPreference, User
from ..schemas.notifications import NotificationPreferenceUpdate
from ..services.time_rules import utc_now

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _notification_to_dict(notif: Notification) -> dict:
    return {
        "id": str(notif.id),
        "type": notif.template_key,
        "payload": notif.payload_json or {},
        "status": notif.status,
        "read": notif.read_at is not None,
        "read_at": notif.read_at.isoformat() if notif.read_at else None,
        "created_at": notif.created_at.isoformat() if notif.created_at else None,
    }


def _preference_to_dict(employee_id: int, pref: Optional[NotificationPreference]) -> dict:
    return {
        "employee_id": employee_id,
        "push": pref.push if pref else True,
        "quiet_hours": pref.quiet_hours if pref else None,
    }


@router.get("")
def list_notifications(
    limit: Optional[int] = 50,
    unread_only: Optional[bool] = False,
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    """List notifications for the current employee, newest first."""
    query = db.query(Notification).filter(Notification.employee_id == user.employee_id)
    if unread_only:
        query = query.filter(Notification.read_at.is_(None))
    notifications = query.order_by(Notification.created_at.desc()).limit(limit or 50).all()
    return [_notification_to_dict(n) for n in notifications]


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    try:
        notif_uuid = uuid.UUID(notification_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid notification ID")

    notif = db.query(Notification).filter(
        Notification.id == notif_uuid,
        Notification.employee_id == user.employee_id,
    ).first()
    if not notif:
        raise HTTPException(status_code=404, detail="Notification not found")

    if notif.read_at is None:
        notif.read_at = utc_now()
        notif.status = "read"
        db.commit()
    return _notification_to_dict(notif)


@router.get("/preferences")
def get_preferences(
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    pref = db.query(NotificationPreference).filter(
        NotificationPreference.employee_id == user.employee_id
    ).first()
    return _preference_to_dict(user.employee_id, pref)


@router.put("/preferences")
def update_preferences(
    payload: NotificationPreferenceUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_employee),
):
    pref = db.query(NotificationPreference).filter(
        NotificationPreference.employee_id == user.employee_id
    ).first()
    if pref is None:
        pref = NotificationPreference(employee_id=user.employee_id, push=True)
        db.add(pref)

    if payload.push is not None:
        pref.push = payload.push
    if payload.clear_quiet_hours:
        pref.quiet_hours = None
    elif payload.quiet_hours is not None:
        pref.quiet_hours = payload.quiet_hours.model_dump(exclude_none=True)
    pref.updated_at = utc_now()
    db.commit()
    return _preference_to_dict(user.employee_id, pref)

"""
Audit logging service.
Append-only audit log with integrity hashing.
"""
import hashlib
import json
from typing import Optional, Dict
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings
from .time_rules import utc_now


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Add an append-only audit log entry to the current transaction.

    Args:
        db: Database session
        entity_type: Type of entity (attendance|task_assignment)
        entity_id: Entity ID
        action: Action performed (CREATE|UPDATE|DELETE|START|COMPLETE|CHECK_IN|CHECK_OUT)
        actor_id: User ID who performed the action
        changes_json: Before/after diff
        context: Additional context (project_id, employee_id, GPS data, etc.)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        Pending AuditLog object (committed with the caller's transaction)
    """
    timestamp_utc = utc_now()

    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    canonical_data = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "timestamp_utc": timestamp_utc.isoformat(),
        "changes": changes_json,
        "context": context,
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    integrity_hash = hashlib.sha256(f"{canonical_json}:{integrity_secret}".encode()).hexdigest()

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=integrity_hash,
    )
    db.add(audit_log)
    return audit_log


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id=None,
    limit: int = 100,
) -> list:
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    return query.order_by(AuditLog.timestamp_utc.desc()).limit(limit).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Float,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


class AssignmentStatus(str, enum.Enum):
    """Canonical, lowercase task assignment states."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def int_pk() -> Mapped[int]:
    return mapped_column(Integer, primary_key=True, autoincrement=True)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", UUID(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # admin|supervisor|worker
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    employee_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("employees.id", ondelete="SET NULL"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    roles = relationship("Role", secondary=user_roles, back_populates="users")
    employee = relationship("Employee")


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = int_pk()
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active|inactive
    supervisor_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("employees.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = int_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(100))  # falls back to TZ_DEFAULT
    # Legacy location columns, used when `geofence` is missing fields
    lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    geofence_radius_m: Mapped[Optional[float]] = mapped_column(Float)
    # {center: {latitude, longitude}, radius, strictMode, allowedVariance}
    geofence: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class ProjectTask(Base):
    """Task catalogue entry owned by a project"""
    __tablename__ = "project_tasks"

    id: Mapped[int] = int_pk()
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)


class Attendance(Base):
    """One attendance record per worker per project per day"""
    __tablename__ = "attendance"

    id: Mapped[int] = int_pk()
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    date: Mapped[Date] = mapped_column(Date, nullable=False)  # Local date in project timezone
    check_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    check_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    inside_geofence_at_checkin: Mapped[bool] = mapped_column(Boolean, default=False)
    inside_geofence_at_checkout: Mapped[Optional[bool]] = mapped_column(Boolean)
    checkin_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    checkin_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    checkin_distance_m: Mapped[Optional[float]] = mapped_column(Float)
    checkout_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    checkout_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    checkout_distance_m: Mapped[Optional[float]] = mapped_column(Float)
    gps_accuracy_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("employee_id", "project_id", "date", name="uq_attendance_employee_project_date"),
    )


class LocationLog(Base):
    """Location pings sent by the app while a worker is on shift"""
    __tablename__ = "location_logs"

    id: Mapped[int] = int_pk()
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    lat: Mapped[float] = mapped_column(Numeric(10, 7), nullable=False)
    lng: Mapped[float] = mapped_column(Numeric(10, 7), nullable=False)
    accuracy_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    distance_m: Mapped[float] = mapped_column(Float, nullable=False)
    inside_geofence: Mapped[bool] = mapped_column(Boolean, nullable=False)
    logged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("idx_location_logs_employee_time", "employee_id", "logged_at"),
    )


class AssignmentQueue(Base):
    """
    Lock row for a worker's task queue on one project and day.
    Sequence allocation and re-sequencing take this row FOR UPDATE.
    """
    __tablename__ = "assignment_queues"

    id: Mapped[int] = int_pk()
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[Date] = mapped_column(Date, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("employee_id", "project_id", "date", name="uq_assignment_queue_key"),
    )


class TaskAssignment(Base):
    """A project task queued for a worker on a given work day"""
    __tablename__ = "task_assignments"

    id: Mapped[int] = int_pk()
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id: Mapped[int] = mapped_column(Integer, ForeignKey("project_tasks.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[Date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")  # queued|in_progress|completed
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Non-state fields editable by supervisors
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low|medium|high|critical
    work_area: Mapped[Optional[str]] = mapped_column(String(255))
    floor: Mapped[Optional[str]] = mapped_column(String(50))
    zone: Mapped[Optional[str]] = mapped_column(String(50))
    time_estimate: Mapped[Optional[dict]] = mapped_column(JSON)  # {estimated, elapsed, remaining} in minutes
    daily_target: Mapped[Optional[dict]] = mapped_column(JSON)  # {description, quantity, unit}
    progress_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    supervisor_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("employees.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    task = relationship("ProjectTask")

    __table_args__ = (
        UniqueConstraint("employee_id", "project_id", "date", "task_id", name="uq_assignment_task_per_day"),
        UniqueConstraint("employee_id", "project_id", "date", "sequence", name="uq_assignment_sequence"),
        # One active task per worker per day
        Index(
            "uq_assignment_one_in_progress",
            "employee_id",
            "date",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
        Index("idx_assignments_project_date_status", "project_id", "date", "status"),
    )


class TaskProgress(Base):
    """Progress report submitted by a worker on an in-progress assignment"""
    __tablename__ = "task_progress"

    id: Mapped[int] = int_pk()
    assignment_id: Mapped[int] = mapped_column(Integer, ForeignKey("task_assignments.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    completed_quantity: Mapped[Optional[float]] = mapped_column(Float)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class AuditLog(Base):
    """Append-only audit log for attendance and assignment actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # attendance|task_assignment
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|DELETE|START|COMPLETE|CHECK_IN|CHECK_OUT
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )


class Notification(Base):
    """Notification records for the mobile app"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="push")
    template_key: Mapped[Optional[str]] = mapped_column(String(100))  # event type, e.g. task_assigned
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed|read
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index('idx_notifications_employee_status', 'employee_id', 'status'),
        Index('idx_notifications_created', 'created_at'),
    )


class NotificationPreference(Base):
    """Per-employee notification preferences"""
    __tablename__ = "notification_preferences"

    id: Mapped[uuid.UUID] = uuid_pk()
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    push: Mapped[bool] = mapped_column(Boolean, default=True)
    quiet_hours: Mapped[Optional[dict]] = mapped_column(JSON)  # {start: "HH:MM", end: "HH:MM", timezone: "Asia/Singapore"}
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

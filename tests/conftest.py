import os

# Configure before sitecrew is imported: one shared in-memory database
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["RATE_LIMIT"] = "10000/minute"

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from sitecrew.auth.security import create_access_token
from sitecrew.db import Base, SessionLocal, engine
from sitecrew.models.models import (
    Attendance,
    Employee,
    Project,
    ProjectTask,
    Role,
    User,
)
from sitecrew.services.time_rules import local_today, utc_now

SITE_CENTER = (1.3521, 103.8198)


@pytest.fixture(scope="session")
def app():
    from sitecrew.main import app
    return app


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(app, db):
    return TestClient(app)


@pytest.fixture
def make_employee(db):
    def _make(full_name="Worker", supervisor_id=None, status="active"):
        emp = Employee(full_name=full_name, supervisor_id=supervisor_id, status=status)
        db.add(emp)
        db.commit()
        return emp
    return _make


@pytest.fixture
def make_project(db):
    def _make(name="Site", center=SITE_CENTER, radius=100, variance=10, strict=True, timezone="Asia/Singapore"):
        proj = Project(
            name=name,
            timezone=timezone,
            geofence={
                "center": {"latitude": center[0], "longitude": center[1]},
                "radius": radius,
                "strictMode": strict,
                "allowedVariance": variance,
            },
        )
        db.add(proj)
        db.commit()
        return proj
    return _make


@pytest.fixture
def make_task(db):
    def _make(project, name="Task"):
        task = ProjectTask(project_id=project.id, name=name)
        db.add(task)
        db.commit()
        return task
    return _make


@pytest.fixture
def check_in(db):
    """Insert an open attendance record for today in the project's timezone."""
    def _check_in(employee, project, inside=True):
        record = Attendance(
            employee_id=employee.id,
            project_id=project.id,
            date=local_today(project.timezone),
            check_in=utc_now(),
            inside_geofence_at_checkin=inside,
        )
        db.add(record)
        db.commit()
        return record
    return _check_in


@pytest.fixture
def make_user(db):
    def _make(username, roles=(), employee=None):
        role_rows = []
        for name in roles:
            role = db.query(Role).filter(Role.name == name).first()
            if role is None:
                role = Role(name=name)
                db.add(role)
                db.flush()
            role_rows.append(role)
        user = User(username=username, is_active=True, employee_id=employee.id if employee else None)
        user.roles = role_rows
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user) -> dict:
        token = create_access_token(str(user.id), [r.name for r in user.roles])
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def site(make_employee, make_project, make_task):
    """A supervisor, a worker on their team, a strict project and four tasks."""
    supervisor = make_employee("Sam Supervisor")
    worker = make_employee("Wendy Worker", supervisor_id=supervisor.id)
    project = make_project("Marina Tower")
    tasks = [make_task(project, name) for name in ("A", "B", "C", "D")]
    return SimpleNamespace(supervisor=supervisor, worker=worker, project=project, tasks=tasks)

"""
Seed the local database with a demo project, a supervisor and two workers.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (username for users, name for projects and
tasks). Bearer tokens for the demo users are printed at the end.
"""

from datetime import datetime, timezone

from sitecrew.auth.security import create_access_token
from sitecrew.db import SessionLocal, Base, engine
from sitecrew.models.models import (
    User,
    Role,
    Employee,
    Project,
    ProjectTask,
)


def ensure_role(session, name: str, description: str = "") -> Role:
    role = session.query(Role).filter(Role.name == name).first()
    if role:
        if description and role.description != description:
            role.description = description
            session.add(role)
        return role
    role = Role(name=name, description=description or name.title())
    session.add(role)
    session.flush()
    return role


def ensure_employee(session, full_name: str, supervisor_id: int | None = None) -> Employee:
    emp = session.query(Employee).filter(Employee.full_name == full_name).first()
    if emp:
        emp.supervisor_id = supervisor_id
        emp.status = "active"
        session.add(emp)
        session.flush()
        return emp
    emp = Employee(full_name=full_name, status="active", supervisor_id=supervisor_id)
    session.add(emp)
    session.flush()
    return emp


def ensure_user(session, username: str, employee: Employee, roles: list[str]) -> User:
    user = session.query(User).filter(User.username == username).first()
    if user is None:
        user = User(username=username, is_active=True, created_at=datetime.now(timezone.utc))
        session.add(user)
    user.employee_id = employee.id
    user.roles = session.query(Role).filter(Role.name.in_(roles)).all()
    session.flush()
    return user


def ensure_project(session, name: str, **kwargs) -> Project:
    proj = session.query(Project).filter(Project.name == name).first()
    if proj is None:
        proj = Project(name=name)
        session.add(proj)
    for k, v in kwargs.items():
        setattr(proj, k, v)
    session.flush()
    return proj


def ensure_task(session, project_id: int, name: str, description: str = "") -> ProjectTask:
    task = (
        session.query(ProjectTask)
        .filter(ProjectTask.project_id == project_id, ProjectTask.name == name)
        .first()
    )
    if task:
        return task
    task = ProjectTask(project_id=project_id, name=name, description=description)
    session.add(task)
    session.flush()
    return task


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        ensure_role(session, "admin", "Administrator")
        ensure_role(session, "supervisor", "Site supervisor")
        ensure_role(session, "worker", "Site worker")

        sam = ensure_employee(session, "Sam Supervisor")
        wendy = ensure_employee(session, "Wendy Worker", supervisor_id=sam.id)
        walt = ensure_employee(session, "Walt Worker", supervisor_id=sam.id)

        users = [
            ensure_user(session, "sam.supervisor", sam, ["supervisor"]),
            ensure_user(session, "wendy.worker", wendy, ["worker"]),
            ensure_user(session, "walt.worker", walt, ["worker"]),
        ]

        tower = ensure_project(
            session,
            "Marina Tower",
            timezone="Asia/Singapore",
            geofence={
                "center": {"latitude": 1.2834, "longitude": 103.8607},
                "radius": 150,
                "strictMode": True,
                "allowedVariance": 10,
            },
        )
        for name, description in [
            ("Install formwork", "Level 3 slab formwork"),
            ("Rebar inspection", "Check rebar spacing before pour"),
            ("Pour concrete", "Level 3 slab pour"),
            ("Site cleanup", "Clear debris from level 3"),
        ]:
            ensure_task(session, tower.id, name, description)

        session.commit()
        print(f"Seeded project {tower.name} (id={tower.id})")
        for user in users:
            roles = [r.name for r in user.roles]
            print(f"{user.username} (employee {user.employee_id}): {create_access_token(str(user.id), roles)}")
    finally:
        session.close()


if __name__ == "__main__":
    main()

"""
Permission checks for attendance and task operations.
"""
from sqlalchemy.orm import Session

from ..models.models import Employee, TaskAssignment, User
from ..auth.security import role_names


def is_admin(user: User) -> bool:
    return "admin" in role_names(user)


def can_act_for_employee(user: User, employee_id: int, db: Session) -> bool:
    """
    Check if user may act on behalf of an employee.
    - Admin and supervisors can act for anyone they supervise (admin: anyone)
    - Workers can act for themselves only
    """
    if is_admin(user):
        return True
    if user.employee_id is not None and int(user.employee_id) == int(employee_id):
        return True
    if "supervisor" in role_names(user):
        employee = db.query(Employee).filter(Employee.id == employee_id).first()
        # Supervisors without an explicit team link may act for any worker
        if employee is None or employee.supervisor_id is None:
            return True
        return user.employee_id is not None and int(employee.supervisor_id) == int(user.employee_id)
    return False


def can_modify_assignment(user: User, assignment: TaskAssignment, db: Session) -> bool:
    return can_act_for_employee(user, assignment.employee_id, db)

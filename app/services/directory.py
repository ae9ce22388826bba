from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Employee, EmployeeRole, Organization

MANAGER_ROLES = (EmployeeRole.ORG_ADMIN, EmployeeRole.ORG_MANAGER)


def list_active_organization_ids(db: Session) -> list[int]:
    return list(
        db.scalars(
            select(Organization.id).where(Organization.is_active.is_(True)).order_by(Organization.id.asc())
        ).all()
    )


def list_active_employees(db: Session, *, organization_id: int) -> list[Employee]:
    return list(
        db.scalars(
            select(Employee)
            .where(Employee.organization_id == organization_id, Employee.is_active.is_(True))
            .order_by(Employee.id.asc())
        ).all()
    )


def list_org_managers(db: Session, *, organization_id: int) -> list[Employee]:
    return list(
        db.scalars(
            select(Employee)
            .where(
                Employee.organization_id == organization_id,
                Employee.is_active.is_(True),
                Employee.role.in_(MANAGER_ROLES),
            )
            .order_by(Employee.id.asc())
        ).all()
    )

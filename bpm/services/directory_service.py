"""
Directory Service — departments, job positions, users and their positions.

Two halves:
    - Read queries consumed by the assignment resolver and the instance
      lifecycle ("users holding any of these positions", "departments a
      user belongs to via positions"). Pure reads, no side effects.
    - Admin maintenance (SUPER_ADMIN / ADMIN only), including the
      department-tree cycle guard the model itself does not enforce.

Every mutating function commits its own transaction and rolls back on
error; every error is one of ``bpm.core.exceptions``.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from bpm.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from bpm.models import db
from bpm.models.directory import (
    ADMIN_ROLES,
    DEFAULT_DEPARTMENT_COLOR,
    ROLE_EMPLOYEE,
    ROLE_SUPER_ADMIN,
    VALID_ROLES,
    Department,
    JobPosition,
    User,
    user_positions,
)
from bpm.services.permission import check_permission, require_role

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
# Read queries
# ═════════════════════════════════════════════════════════════════════════


def users_holding_positions(position_ids) -> set[str]:
    """Return the distinct ids of users holding any of ``position_ids``."""
    ids = [p for p in (position_ids or []) if p]
    if not ids:
        return set()
    rows = db.session.execute(
        select(user_positions.c.user_id)
        .where(user_positions.c.position_id.in_(ids))
        .distinct()
    ).scalars().all()
    return set(rows)


def department_ids_for_user(user_id: str) -> set[str]:
    """Return the departments a user belongs to through the positions they hold."""
    rows = db.session.execute(
        select(JobPosition.department_id)
        .join(user_positions, user_positions.c.position_id == JobPosition.id)
        .where(user_positions.c.user_id == user_id)
        .distinct()
    ).scalars().all()
    return set(rows)


def manager_ids_for_user(user_id: str) -> set[str]:
    """Return the managers of the positions a user holds (excluding the user)."""
    rows = db.session.execute(
        select(JobPosition.manager_id)
        .join(user_positions, user_positions.c.position_id == JobPosition.id)
        .where(
            user_positions.c.user_id == user_id,
            JobPosition.manager_id.is_not(None),
        )
        .distinct()
    ).scalars().all()
    return {m for m in rows if m != user_id}


def department_member_ids(department_ids) -> set[str]:
    """Return users holding any position inside the given departments."""
    ids = [d for d in (department_ids or []) if d]
    if not ids:
        return set()
    rows = db.session.execute(
        select(user_positions.c.user_id)
        .join(JobPosition, JobPosition.id == user_positions.c.position_id)
        .where(JobPosition.department_id.in_(ids))
        .distinct()
    ).scalars().all()
    return set(rows)


def get_user(user_id: str) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def get_users(user_ids) -> list[User]:
    ids = list(user_ids or [])
    if not ids:
        return []
    return db.session.execute(
        select(User).where(User.id.in_(ids)).order_by(User.email)
    ).scalars().all()


def list_departments(actor) -> list[dict]:
    check_permission(actor, "departments.read")
    rows = db.session.execute(select(Department).order_by(Department.name)).scalars().all()
    return [d.to_dict() for d in rows]


def list_positions(actor, department_id: str | None = None) -> list[dict]:
    check_permission(actor, "positions.read")
    stmt = select(JobPosition).order_by(JobPosition.name)
    if department_id:
        stmt = stmt.where(JobPosition.department_id == department_id)
    return [p.to_dict() for p in db.session.execute(stmt).scalars().all()]


def list_users(actor) -> list[dict]:
    check_permission(actor, "users.read")
    rows = db.session.execute(select(User).order_by(User.email)).scalars().all()
    return [u.to_dict(include_positions=True) for u in rows]


# ═════════════════════════════════════════════════════════════════════════
# Departments
# ═════════════════════════════════════════════════════════════════════════


def _get_department(department_id: str) -> Department:
    dept = db.session.get(Department, department_id)
    if not dept:
        raise NotFoundError(resource="Department", resource_id=department_id)
    return dept


def _validate_parent(department_id: str | None, parent_id: str | None) -> None:
    """Refuse a parent that is missing, the department itself, or one of its descendants."""
    if not parent_id:
        return
    if parent_id == department_id:
        raise ValidationError(
            "A department cannot be its own parent",
            details={"parent_id": "self-reference"},
        )
    node = _get_department(parent_id)
    seen = set()
    while node is not None:
        if department_id is not None and node.id == department_id:
            raise ValidationError(
                "Parent would create a cycle in the department tree",
                details={"parent_id": parent_id},
            )
        if node.id in seen:
            # Pre-existing cycle in stored data; stop walking.
            break
        seen.add(node.id)
        node = node.parent


def create_department(actor, *, name: str, parent_id: str | None = None,
                      email: str | None = None, phone_number: str | None = None,
                      color: str | None = None) -> dict:
    require_role(actor, ADMIN_ROLES)
    if not (name or "").strip():
        raise ValidationError("Department name is required", details={"name": "required"})
    _validate_parent(None, parent_id)

    try:
        dept = Department(
            name=name.strip(),
            parent_id=parent_id or None,
            email=email or None,
            phone_number=phone_number or None,
            color=color or DEFAULT_DEPARTMENT_COLOR,
        )
        db.session.add(dept)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Department created", extra={"department_id": dept.id, "actor_id": actor.id})
    return dept.to_dict()


def update_department(actor, department_id: str, *, name: str, parent_id: str | None = None,
                      email: str | None = None, phone_number: str | None = None,
                      color: str | None = None) -> dict:
    require_role(actor, ADMIN_ROLES)
    dept = _get_department(department_id)
    if not (name or "").strip():
        raise ValidationError("Department name is required", details={"name": "required"})
    _validate_parent(dept.id, parent_id)

    try:
        dept.name = name.strip()
        dept.parent_id = parent_id or None
        dept.email = email or None
        dept.phone_number = phone_number or None
        dept.color = color or DEFAULT_DEPARTMENT_COLOR
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return dept.to_dict()


def delete_department(actor, department_id: str) -> None:
    require_role(actor, ADMIN_ROLES)
    dept = _get_department(department_id)
    try:
        db.session.delete(dept)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Department deleted", extra={"department_id": department_id, "actor_id": actor.id})


# ═════════════════════════════════════════════════════════════════════════
# Job positions
# ═════════════════════════════════════════════════════════════════════════


def _get_position(position_id: str) -> JobPosition:
    pos = db.session.get(JobPosition, position_id)
    if not pos:
        raise NotFoundError(resource="JobPosition", resource_id=position_id)
    return pos


def create_job_position(actor, *, name: str, department_id: str,
                        manager_id: str | None = None) -> dict:
    require_role(actor, ADMIN_ROLES)
    if not (name or "").strip():
        raise ValidationError("Position name is required", details={"name": "required"})
    _get_department(department_id)
    if manager_id:
        get_user(manager_id)

    try:
        pos = JobPosition(name=name.strip(), department_id=department_id, manager_id=manager_id or None)
        db.session.add(pos)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return pos.to_dict()


def update_job_position(actor, position_id: str, *, name: str, department_id: str,
                        manager_id: str | None = None) -> dict:
    require_role(actor, ADMIN_ROLES)
    pos = _get_position(position_id)
    if not (name or "").strip():
        raise ValidationError("Position name is required", details={"name": "required"})
    _get_department(department_id)
    if manager_id:
        get_user(manager_id)

    try:
        pos.name = name.strip()
        pos.department_id = department_id
        pos.manager_id = manager_id or None
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return pos.to_dict()


def delete_job_position(actor, position_id: str) -> None:
    require_role(actor, ADMIN_ROLES)
    pos = _get_position(position_id)
    try:
        db.session.delete(pos)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ═════════════════════════════════════════════════════════════════════════
# Users
# ═════════════════════════════════════════════════════════════════════════


def _check_role_grant(actor, role: str) -> None:
    if role not in VALID_ROLES:
        raise ValidationError(
            f"Invalid role '{role}'. Must be one of: {', '.join(sorted(VALID_ROLES))}",
            details={"role": role},
        )
    if role == ROLE_SUPER_ADMIN and actor.role != ROLE_SUPER_ADMIN:
        raise ForbiddenError("Forbidden: cannot grant Super Admin", user_id=actor.id,
                             action="users.grant_super_admin")


def _resolve_positions(position_ids) -> list[JobPosition]:
    positions = []
    for pid in dict.fromkeys(position_ids or []):
        positions.append(_get_position(pid))
    return positions


def create_user(actor, *, email: str, first_name: str = "", last_name: str = "",
                role: str = ROLE_EMPLOYEE, phone: str | None = None,
                position_ids=None) -> dict:
    require_role(actor, ADMIN_ROLES)
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError("Email is required", details={"email": "required"})
    _check_role_grant(actor, role)
    if db.session.execute(select(User.id).where(User.email == email)).first():
        raise ConflictError(resource="User", field="email", value=email)

    try:
        user = User(
            email=email,
            first_name=(first_name or "").strip(),
            last_name=(last_name or "").strip(),
            role=role,
            phone=phone or None,
        )
        user.positions = _resolve_positions(position_ids)
        db.session.add(user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("User created", extra={"user_id": user.id, "actor_id": actor.id})
    return user.to_dict(include_positions=True)


def update_user(actor, user_id: str, *, first_name: str | None = None,
                last_name: str | None = None, role: str | None = None,
                phone: str | None = None, is_active: bool | None = None,
                position_ids=None) -> dict:
    require_role(actor, ADMIN_ROLES)
    user = get_user(user_id)
    try:
        if role is not None and role != user.role:
            _check_role_grant(actor, role)
            user.role = role
        if first_name is not None:
            user.first_name = first_name.strip()
        if last_name is not None:
            user.last_name = last_name.strip()
        if phone is not None:
            user.phone = phone or None
        if is_active is not None:
            user.is_active = bool(is_active)
        if position_ids is not None:
            user.positions = _resolve_positions(position_ids)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return user.to_dict(include_positions=True)


def set_user_positions(actor, user_id: str, position_ids) -> dict:
    """Replace the positions a user holds.

    Existing task assignments are unaffected: their possible assignees
    were fixed when the instance started.
    """
    return update_user(actor, user_id, position_ids=list(position_ids or []))

"""
BPM Engine — Role-Based Access Control (RBAC) Service

Roles grant coarse permissions through ROLE_PERMISSIONS. Task-level
decisions go through one policy function, ``can_act``, used uniformly by
every task transition.

Usage:
    from bpm.services.permission import check_permission, check_can_act

    # Raises ForbiddenError if not allowed
    check_permission(actor, "processInstances.create")

    # Raises ForbiddenError unless admin or possible assignee
    check_can_act(actor, assignment, action="approve")

    # Boolean check
    if can_act(actor, assignment):
        ...
"""

from bpm.core.exceptions import ForbiddenError, UnauthorizedError
from bpm.models.directory import ADMIN_ROLES, ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_MANAGER, ROLE_SUPER_ADMIN


_DIRECTORY_PERMISSIONS = {
    "users.read", "users.create", "users.update", "users.delete",
    "departments.read", "departments.create", "departments.update", "departments.delete",
    "positions.read", "positions.create", "positions.update", "positions.delete",
}

_TEMPLATE_PERMISSIONS = {
    "processTemplates.read", "processTemplates.create",
    "processTemplates.update", "processTemplates.delete",
}

_PROCESS_PERMISSIONS = {
    "processInstances.create", "processInstances.read", "tasks.updateStatus",
}

ROLE_PERMISSIONS: dict[str, set[str]] = {
    ROLE_SUPER_ADMIN: _DIRECTORY_PERMISSIONS | _TEMPLATE_PERMISSIONS | _PROCESS_PERMISSIONS,
    ROLE_ADMIN: _DIRECTORY_PERMISSIONS | _TEMPLATE_PERMISSIONS | _PROCESS_PERMISSIONS,
    ROLE_MANAGER: {"users.read", "processTemplates.read"} | _PROCESS_PERMISSIONS,
    ROLE_EMPLOYEE: set(_PROCESS_PERMISSIONS),
}

# Template authoring is narrower than the processTemplates.* permissions:
# only SUPER_ADMIN may create, edit or delete a template.
TEMPLATE_AUTHOR_ROLES = frozenset({ROLE_SUPER_ADMIN})


def require_actor(actor) -> None:
    """Raise UnauthorizedError when no authenticated, active actor is present."""
    if actor is None or not getattr(actor, "is_active", False):
        raise UnauthorizedError()


def has_permission(role: str | None, permission: str) -> bool:
    """Check if a role grants a permission."""
    if not role:
        return False
    return permission in ROLE_PERMISSIONS.get(role, set())


def check_permission(actor, permission: str) -> None:
    """
    Assert the actor's role grants ``permission``.

    Raises:
        UnauthorizedError: No actor.
        ForbiddenError: Role lacks the permission.
    """
    require_actor(actor)
    if not has_permission(actor.role, permission):
        raise ForbiddenError(user_id=actor.id, action=permission)


def require_role(actor, allowed) -> None:
    """Assert the actor holds one of the ``allowed`` roles."""
    require_actor(actor)
    if actor.role not in allowed:
        raise ForbiddenError(user_id=actor.id, action="role:" + "|".join(sorted(allowed)))


def is_admin(actor) -> bool:
    return actor is not None and actor.role in ADMIN_ROLES


def can_act(actor, assignment) -> bool:
    """
    Single authorization policy for every task transition.

    True when the actor is SUPER_ADMIN/ADMIN, or is one of the
    assignment's possible assignees. A task with no possible assignees
    can therefore only be handled by admins.
    """
    if actor is None:
        return False
    if actor.role in ADMIN_ROLES:
        return True
    return any(u.id == actor.id for u in assignment.possible_assignees)


def check_can_act(actor, assignment, action: str) -> None:
    """Raise ForbiddenError unless ``can_act(actor, assignment)``."""
    require_actor(actor)
    if not can_act(actor, assignment):
        raise ForbiddenError(user_id=actor.id, action=action)


def can_start_template(actor, template, actor_department_ids) -> bool:
    """
    True when the actor may instantiate ``template``.

    Requires processInstances.create, and either an admin role or holding a
    position in one of the template's allowed departments.
    """
    if actor is None or not has_permission(actor.role, "processInstances.create"):
        return False
    if actor.role in ADMIN_ROLES:
        return True
    allowed = set(template.allowed_department_ids)
    return bool(allowed.intersection(actor_department_ids))


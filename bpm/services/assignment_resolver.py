"""
Assignment Resolver — turns task rule sets into concrete users.

A task template carries three rule sets (approver, notify-on-start,
notify-on-complete). Each is an explicit list of job positions plus two
department-relative flags:

    same_department     users holding a position in any department the
                        reference user belongs to
    department_manager  managers of the positions the reference user holds

Explicit positions are always resolved. The flags only make sense
relative to someone, so they are resolved only when a ``reference_user_id``
is passed, and only against that user. The instance lifecycle never
passes one for approver rules: approvers are fixed from explicit
positions when the instance starts. Notify rules pass the user performing
the triggering action.

Everything here is a pure read. An empty result is valid — a task with no
resolved approvers can only be handled by SUPER_ADMIN / ADMIN.

Usage:
    from bpm.services.assignment_resolver import resolve_positions, resolve_rule

    user_ids = resolve_positions(["pos-1", "pos-2"])
    approvers = resolve_rule(task_template, RULE_APPROVER)
    watchers = resolve_rule(task_template, RULE_NOTIFY_ON_START, reference_user_id=actor.id)
"""

from __future__ import annotations

from bpm.models.template import RULE_APPROVER, RULE_NOTIFY_ON_COMPLETE, RULE_NOTIFY_ON_START
from bpm.services import directory_service


def resolve_positions(position_ids) -> set[str]:
    """Union of all users holding any of the given positions (distinct)."""
    return directory_service.users_holding_positions(position_ids)


def resolve_department_flags(
    reference_user_id: str | None,
    *,
    same_department: bool,
    department_manager: bool,
) -> set[str]:
    """Resolve the department-relative flags against ``reference_user_id``."""
    if not reference_user_id or not (same_department or department_manager):
        return set()

    users: set[str] = set()
    if same_department:
        dept_ids = directory_service.department_ids_for_user(reference_user_id)
        users |= directory_service.department_member_ids(dept_ids)
    if department_manager:
        users |= directory_service.manager_ids_for_user(reference_user_id)
    return users


def resolve_rule(task_template, rule: str, reference_user_id: str | None = None) -> set[str]:
    """
    Resolve one rule set of a task template to user ids.

    Args:
        task_template: ProcessTaskTemplate row.
        rule: RULE_APPROVER | RULE_NOTIFY_ON_START | RULE_NOTIFY_ON_COMPLETE.
        reference_user_id: User the department flags are relative to. When
            None the flags are ignored.

    Returns:
        Set of user ids (possibly empty).
    """
    users = resolve_positions(task_template.rule_position_ids(rule))
    same_department, department_manager = task_template.rule_flags(rule)
    users |= resolve_department_flags(
        reference_user_id,
        same_department=same_department,
        department_manager=department_manager,
    )
    return users


def resolve_approvers(task_template) -> set[str]:
    """Possible assignees for a new assignment: explicit approver positions only."""
    return resolve_rule(task_template, RULE_APPROVER)


def resolve_notify_on_start(task_template, actor_id: str | None) -> set[str]:
    return resolve_rule(task_template, RULE_NOTIFY_ON_START, reference_user_id=actor_id)


def resolve_notify_on_complete(task_template, actor_id: str | None) -> set[str]:
    return resolve_rule(task_template, RULE_NOTIFY_ON_COMPLETE, reference_user_id=actor_id)

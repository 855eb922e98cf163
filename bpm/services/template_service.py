"""
Template Store Service — process template authoring and lookup.

Authoring (create / update / delete) is restricted to SUPER_ADMIN.

Editing semantics:
    A template's tasks are a replaceable child collection, never diffed.
    ``update_process_template`` removes every existing task and recreates
    the list from the payload in one transaction. Tasks that running or
    finished instances still reference are detached from the template
    (``process_template_id`` → NULL) instead of deleted, so those instances
    keep the exact task definitions they were created from.

Payload shape (create / update):
    {
        "name": "Purchase request",
        "description": "...",
        "icon": "shopping-cart",
        "allowed_department_ids": ["dep-1"],
        "tasks": [
            {
                "name": "Manager approval", "order": 1, "description": "...",
                "need_file": false, "mandatory": true,
                "approver_position_ids": ["pos-1"],
                "notify_on_start_position_ids": [],
                "notify_on_complete_position_ids": ["pos-2"],
                "approver_same_department": false,
                "approver_department_manager": false,
                "notify_on_start_same_department": false,
                "notify_on_start_department_manager": false,
                "notify_on_complete_same_department": false,
                "notify_on_complete_department_manager": false
            }
        ]
    }
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from bpm.core.exceptions import NotFoundError, ValidationError
from bpm.models import db
from bpm.models.directory import Department, JobPosition
from bpm.models.instance import ProcessInstance, ProcessTaskAssignment
from bpm.models.template import DEFAULT_TEMPLATE_ICON, VALID_RULES, ProcessTaskTemplate, ProcessTemplate
from bpm.services import directory_service
from bpm.services.permission import (
    TEMPLATE_AUTHOR_ROLES,
    can_start_template,
    check_permission,
    require_actor,
    require_role,
)

logger = logging.getLogger(__name__)

_FLAG_FIELDS = tuple(
    f"{rule}_{flag}" for rule in VALID_RULES for flag in ("same_department", "department_manager")
)


# ── Private helpers ────────────────────────────────────────────────────────────


def _get_template(template_id: str) -> ProcessTemplate:
    template = db.session.get(ProcessTemplate, template_id)
    if not template:
        raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)
    return template


def _load_departments(department_ids) -> list[Department]:
    departments = []
    for dep_id in dict.fromkeys(department_ids or []):
        dept = db.session.get(Department, dep_id)
        if not dept:
            raise ValidationError(
                f"Unknown department '{dep_id}'",
                details={"allowed_department_ids": dep_id},
            )
        departments.append(dept)
    return departments


def _load_positions(position_ids, field: str) -> list[JobPosition]:
    positions = []
    for pos_id in dict.fromkeys(position_ids or []):
        pos = db.session.get(JobPosition, pos_id)
        if not pos:
            raise ValidationError(f"Unknown job position '{pos_id}'", details={field: pos_id})
        positions.append(pos)
    return positions


def _validate_header(data: dict) -> str:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Template name is required", details={"name": "required"})
    return name


def _validate_tasks(tasks) -> list[dict]:
    """Validate task payloads and return them sorted by ``order``."""
    if tasks is None:
        return []
    if not isinstance(tasks, list):
        raise ValidationError("tasks must be a list", details={"tasks": "invalid"})
    tasks = [dict(t) for t in tasks]

    seen_orders = set()
    for idx, t in enumerate(tasks):
        if not (t.get("name") or "").strip():
            raise ValidationError(
                f"Task #{idx + 1} name is required", details={f"tasks[{idx}].name": "required"},
            )
        try:
            order = int(t.get("order", idx + 1))
        except (TypeError, ValueError):
            raise ValidationError(
                f"Task #{idx + 1} order must be an integer",
                details={f"tasks[{idx}].order": t.get("order")},
            )
        if order in seen_orders:
            raise ValidationError(
                f"Duplicate task order {order}", details={f"tasks[{idx}].order": order},
            )
        seen_orders.add(order)
        t["order"] = order
    return sorted(tasks, key=lambda t: t["order"])


def _build_task(t: dict) -> ProcessTaskTemplate:
    task = ProcessTaskTemplate(
        name=t["name"].strip(),
        description=t.get("description") or None,
        order=t["order"],
        need_file=bool(t.get("need_file", False)),
        mandatory=bool(t.get("mandatory", True)),
    )
    for rule in VALID_RULES:
        field = f"{rule}_position_ids"
        setattr(task, f"{rule}_positions", _load_positions(t.get(field), field))
    for flag in _FLAG_FIELDS:
        setattr(task, flag, bool(t.get(flag, False)))
    return task


def _referenced_task_ids(task_ids) -> set[str]:
    """Return the subset of task template ids used by at least one assignment."""
    if not task_ids:
        return set()
    rows = db.session.execute(
        select(ProcessTaskAssignment.template_task_id)
        .where(ProcessTaskAssignment.template_task_id.in_(list(task_ids)))
        .distinct()
    ).scalars().all()
    return set(rows)


def _replace_tasks(template: ProcessTemplate, tasks: list[dict]) -> None:
    """Destroy-and-recreate the template's task list."""
    existing = list(template.tasks)
    in_use = _referenced_task_ids([t.id for t in existing])
    for task in existing:
        template.tasks.remove(task)
        if task.id in in_use:
            task.process_template_id = None
        else:
            db.session.delete(task)
    db.session.flush()

    for t in tasks:
        template.tasks.append(_build_task(t))


# ── Public API ─────────────────────────────────────────────────────────────────


def create_process_template(actor, data: dict) -> dict:
    """Create a template with its ordered tasks. SUPER_ADMIN only."""
    require_role(actor, TEMPLATE_AUTHOR_ROLES)
    name = _validate_header(data)
    tasks = _validate_tasks(data.get("tasks"))

    try:
        template = ProcessTemplate(
            name=name,
            description=data.get("description") or None,
            icon=data.get("icon") or DEFAULT_TEMPLATE_ICON,
            created_by_id=actor.id,
        )
        template.allowed_departments = _load_departments(data.get("allowed_department_ids"))
        db.session.add(template)
        for t in tasks:
            template.tasks.append(_build_task(t))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Process template created",
        extra={"template_id": template.id, "task_count": len(tasks), "actor_id": actor.id},
    )
    return template.to_dict(include_tasks=True)


def update_process_template(actor, template_id: str, data: dict) -> dict:
    """Replace a template's header, allowed departments and entire task list."""
    require_role(actor, TEMPLATE_AUTHOR_ROLES)
    template = _get_template(template_id)
    name = _validate_header(data)
    tasks = _validate_tasks(data.get("tasks"))

    try:
        template.name = name
        template.description = data.get("description") or None
        template.icon = data.get("icon") or DEFAULT_TEMPLATE_ICON
        template.allowed_departments = _load_departments(data.get("allowed_department_ids"))
        _replace_tasks(template, tasks)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Process template updated",
        extra={"template_id": template.id, "task_count": len(tasks), "actor_id": actor.id},
    )
    return template.to_dict(include_tasks=True)


def delete_process_template(actor, template_id: str) -> None:
    """
    Delete a template and its tasks.

    Refused while any process instance references the template: instances
    own their history and must not lose their definition.
    """
    require_role(actor, TEMPLATE_AUTHOR_ROLES)
    template = _get_template(template_id)

    instance_count = db.session.execute(
        select(func.count(ProcessInstance.id))
        .where(ProcessInstance.process_template_id == template.id)
    ).scalar_one()
    if instance_count:
        raise ValidationError(
            "Template has process instances and cannot be deleted",
            details={"instance_count": instance_count},
        )

    try:
        for task in list(template.tasks):
            db.session.delete(task)
        db.session.delete(template)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Process template deleted", extra={"template_id": template_id, "actor_id": actor.id})


def get_process_template(actor, template_id: str) -> dict:
    require_actor(actor)
    return _get_template(template_id).to_dict(include_tasks=True)


def get_template_tasks(actor, template_id: str) -> list[dict]:
    """Return the ordered task definitions of a template (used to clone / edit)."""
    require_actor(actor)
    return [t.to_dict() for t in _get_template(template_id).tasks]


def list_process_templates(actor) -> list[dict]:
    check_permission(actor, "processTemplates.read")
    rows = db.session.execute(
        select(ProcessTemplate).order_by(ProcessTemplate.name)
    ).scalars().all()
    return [t.to_dict() for t in rows]


def list_startable_templates(actor) -> list[dict]:
    """Templates the actor is allowed to instantiate."""
    require_actor(actor)
    dept_ids = directory_service.department_ids_for_user(actor.id)
    rows = db.session.execute(
        select(ProcessTemplate).order_by(ProcessTemplate.name)
    ).scalars().all()
    return [t.to_dict() for t in rows if can_start_template(actor, t, dept_ids)]

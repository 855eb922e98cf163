"""
Instance Lifecycle Service — start, cancel and read process instances.

``start_process_instance`` snapshots a template into a RUNNING instance:
one PENDING assignment per task template, in order, each with its
possible assignees resolved from the approver positions at that moment.
Later directory or template changes never alter those assignments.

Transaction boundary:
    Every mutating function commits once on success and rolls back on any
    error. Notification rows are written inside the transaction and
    dispatched only after the commit.

Usage:
    from bpm.services import instance_service

    instance = instance_service.start_process_instance(
        actor, template_id, "Laptop for new hire",
    )
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from bpm.core.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from bpm.models import db
from bpm.models.instance import (
    INSTANCE_CANCELLED,
    INSTANCE_RUNNING,
    INSTANCE_STATUSES,
    TASK_PENDING,
    ProcessInstance,
    ProcessTaskAssignment,
)
from bpm.models.notification import EVENT_TASK_ASSIGNED
from bpm.models.template import ProcessTemplate
from bpm.services import directory_service
from bpm.services.assignment_resolver import resolve_approvers, resolve_notify_on_start
from bpm.services.completion import lock_instance
from bpm.services.notification import NotificationService
from bpm.services.permission import (
    can_start_template,
    check_permission,
    is_admin,
    require_actor,
)

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _parse_start(value) -> datetime:
    """Accept a datetime, an ISO-8601 string or None (now)."""
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            "start_date_time must be an ISO-8601 timestamp",
            details={"start_date_time": value},
        )
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _get_instance(instance_id: str) -> ProcessInstance:
    instance = db.session.get(ProcessInstance, instance_id)
    if not instance:
        raise NotFoundError(resource="ProcessInstance", resource_id=instance_id)
    return instance


def _dispatch_notifications() -> None:
    NotificationService.dispatch_pending()


# ── Start ──────────────────────────────────────────────────────────────────────


def start_process_instance(actor, template_id: str, name: str, start_date_time=None) -> ProcessInstance:
    """
    Create a RUNNING instance of ``template_id`` with one PENDING assignment per task.

    Raises:
        UnauthorizedError: No actor.
        ForbiddenError: Missing processInstances.create, or actor is neither
            admin nor a member of one of the template's allowed departments.
        NotFoundError: Template does not exist.
        ValidationError: Blank name, template without tasks, bad timestamp.
    """
    check_permission(actor, "processInstances.create")
    name = (name or "").strip()
    if not name:
        raise ValidationError("Instance name is required", details={"name": "required"})

    template = db.session.get(ProcessTemplate, template_id)
    if not template:
        raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)

    dept_ids = directory_service.department_ids_for_user(actor.id)
    if not can_start_template(actor, template, dept_ids):
        raise ForbiddenError(
            "You are not allowed to start this process",
            user_id=actor.id, action="processInstances.start",
        )

    tasks = list(template.tasks)
    if not tasks:
        raise ValidationError(
            "Template has no tasks", details={"process_template_id": template.id},
        )
    started = _parse_start(start_date_time)

    try:
        instance = ProcessInstance(
            process_template=template,
            started_by=actor,
            name=name,
            start_date_time=started,
            status=INSTANCE_RUNNING,
        )
        db.session.add(instance)

        for task_template in tasks:
            approver_ids = resolve_approvers(task_template)
            assignment = ProcessTaskAssignment(
                template_task=task_template,
                sequence=task_template.order,
                status=TASK_PENDING,
            )
            assignment.possible_assignees = directory_service.get_users(approver_ids)
            instance.task_assignments.append(assignment)
            db.session.flush()

            watchers = resolve_notify_on_start(task_template, actor.id)
            NotificationService.record(
                event_kind=EVENT_TASK_ASSIGNED,
                instance=instance,
                task=assignment,
                actor=actor,
                recipient_ids=approver_ids | watchers,
            )

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Process instance started",
        extra={
            "instance_id": instance.id,
            "template_id": template.id,
            "task_count": len(tasks),
            "actor_id": actor.id,
        },
    )
    _dispatch_notifications()
    return instance


# ── Cancel ─────────────────────────────────────────────────────────────────────


def cancel_process_instance(actor, instance_id: str, reason: str | None = None) -> ProcessInstance:
    """
    Manually cancel a RUNNING instance.

    Allowed for SUPER_ADMIN / ADMIN and for the user who started it. Task
    rows are left untouched.
    """
    require_actor(actor)
    instance = _get_instance(instance_id)
    if not (is_admin(actor) or instance.started_by_id == actor.id):
        raise ForbiddenError(user_id=actor.id, action="processInstances.cancel")

    try:
        instance = lock_instance(instance.id)
        if instance.status != INSTANCE_RUNNING:
            raise InvalidStateError(
                resource="ProcessInstance", resource_id=instance.id,
                action="cancel", current=instance.status,
            )
        instance.status = INSTANCE_CANCELLED
        instance.end_date_time = datetime.now(timezone.utc)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Process instance cancelled",
        extra={"instance_id": instance.id, "actor_id": actor.id, "reason": reason},
    )
    return instance


# ── Reads ──────────────────────────────────────────────────────────────────────


def get_instance(actor, instance_id: str) -> ProcessInstance:
    """Return one instance. Readers need processInstances.read."""
    check_permission(actor, "processInstances.read")
    return _get_instance(instance_id)


def list_my_processes(actor) -> list[ProcessInstance]:
    """Instances started by the actor, newest first."""
    require_actor(actor)
    return db.session.execute(
        select(ProcessInstance)
        .where(ProcessInstance.started_by_id == actor.id)
        .order_by(ProcessInstance.start_date_time.desc())
    ).scalars().all()


def list_instances(actor, status: str | None = None) -> list[ProcessInstance]:
    """All instances, optionally filtered by status, newest first."""
    check_permission(actor, "processInstances.read")
    stmt = select(ProcessInstance).order_by(ProcessInstance.start_date_time.desc())
    if status:
        if status not in INSTANCE_STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(sorted(INSTANCE_STATUSES))}",
                details={"status": status},
            )
        stmt = stmt.where(ProcessInstance.status == status)
    return db.session.execute(stmt).scalars().all()

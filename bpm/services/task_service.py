"""
Task State Machine — start, approve, reject and file upload on assignments.

    PENDING ──start──▶ IN_PROGRESS ──approve──▶ APPROVED
       │                    └────────reject───▶ REJECTED
       ├──approve / reject (direct)
       └──skip (completion evaluator only) ───▶ SKIPPED

Every operation:
    1. loads the assignment (NotFoundError),
    2. checks ``can_act`` (ForbiddenError) before any state precondition,
    3. checks the source status against TASK_TRANSITIONS and refuses tasks
       of a CANCELLED instance (InvalidStateError),
    4. locks the parent instance row, then writes the field changes + one
       TaskAction (+ completion sweep) in a single transaction,
    5. dispatches notifications after the commit.

Two actors racing on the same assignment are serialized by the
``version_id`` counter: the loser gets StaleDataError, reported as
InvalidStateError. Approvals of different tasks of one instance are
serialized by the instance row lock, so the completion evaluator always
sees the other approvals.
"""

from __future__ import annotations

import html
import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from bpm.core.exceptions import ConfigurationError, InvalidStateError, NotFoundError, ValidationError
from bpm.integrations.blob_store import NOT_CONFIGURED_MESSAGE, get_blob_store
from bpm.models import db
from bpm.models.instance import (
    ACTION_APPROVE,
    ACTION_REJECT,
    ACTION_START,
    ACTION_UPLOAD_FILE,
    INSTANCE_CANCELLED,
    TASK_OPEN_STATUSES,
    TASK_TRANSITIONS,
    ProcessInstance,
    ProcessTaskAssignment,
    TaskAction,
    task_assignment_assignees,
)
from bpm.models.notification import EVENT_TASK_APPROVED, EVENT_TASK_REJECTED, EVENT_TASK_STARTED
from bpm.services.assignment_resolver import resolve_notify_on_complete, resolve_notify_on_start
from bpm.services.completion import evaluate_completion, lock_instance
from bpm.services.notification import NotificationService
from bpm.services.permission import check_can_act, check_permission, require_actor

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_UNSAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9._-]")
_MAX_FILENAME_LENGTH = 200


# ── Private helpers ────────────────────────────────────────────────────────────


def _strip_markup(text: str | None) -> str:
    """Plain text of a rich-text comment (tags removed, entities decoded, trimmed)."""
    if not text:
        return ""
    return html.unescape(_TAG_RE.sub(" ", text)).replace("\xa0", " ").strip()


def sanitize_filename(filename: str | None) -> str:
    """Replace unsafe characters with ``_`` and cap the length."""
    cleaned = _UNSAFE_FILENAME_RE.sub("_", filename or "")[:_MAX_FILENAME_LENGTH]
    return cleaned or "file"


def _get_task(task_id: str) -> ProcessTaskAssignment:
    task = db.session.get(ProcessTaskAssignment, task_id)
    if not task:
        raise NotFoundError(resource="ProcessTaskAssignment", resource_id=task_id)
    return task


def _check_transition(task: ProcessTaskAssignment, action: str) -> None:
    if task.status not in TASK_TRANSITIONS[action]["from"]:
        raise InvalidStateError(
            resource="ProcessTaskAssignment", resource_id=task.id,
            action=action, current=task.status,
        )


def _check_instance_open(instance: ProcessInstance, action: str) -> None:
    """Tasks of a CANCELLED instance accept no action."""
    if instance.status == INSTANCE_CANCELLED:
        raise InvalidStateError(
            resource="ProcessInstance", resource_id=instance.id,
            action=action, current=instance.status,
        )


def _lock_open_instance(task: ProcessTaskAssignment, action: str) -> ProcessInstance:
    """Lock the parent instance row and re-check it under the lock."""
    instance = lock_instance(task.process_instance_id)
    _check_instance_open(instance, action)
    return instance


def _append_action(task, actor, action: str, message: str | None = None) -> TaskAction:
    entry = TaskAction(
        task_id=task.id,
        user_id=actor.id,
        actor_name_snapshot=actor.full_name,
        action=action,
        message=message,
    )
    db.session.add(entry)
    return entry


def _lost_race(task_id: str, action: str, status_before: str) -> InvalidStateError:
    """Roll back after a lost optimistic-lock race and build the error to raise."""
    db.session.rollback()
    logger.warning("Concurrent update lost", extra={"task_id": task_id, "action": action})
    return InvalidStateError(
        resource="ProcessTaskAssignment", resource_id=task_id,
        action=action, current=status_before,
    )


def _commit(task: ProcessTaskAssignment, action: str, status_before: str) -> None:
    """Commit the unit of work; a lost optimistic-lock race becomes InvalidStateError."""
    task_id = task.id
    try:
        db.session.commit()
    except StaleDataError:
        raise _lost_race(task_id, action, status_before)
    except Exception:
        db.session.rollback()
        raise


def _other_assignee_ids(task, actor) -> set[str]:
    return {u.id for u in task.possible_assignees if u.id != actor.id}


def _decision_recipients(task, actor) -> set[str]:
    recipients = resolve_notify_on_complete(task.template_task, actor.id)
    starter_id = task.process_instance.started_by_id
    if starter_id:
        recipients.add(starter_id)
    return recipients


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


def start_task(actor, task_id: str) -> ProcessTaskAssignment:
    """PENDING → IN_PROGRESS. The actor becomes the current assignee."""
    task = _get_task(task_id)
    check_can_act(actor, task, action="start")
    _check_transition(task, "start")
    _check_instance_open(task.process_instance, "start")
    status_before = task.status

    try:
        _lock_open_instance(task, "start")
        task.status = TASK_TRANSITIONS["start"]["to"]
        task.started_at = datetime.now(timezone.utc)
        task.current_assignee_id = actor.id
        _append_action(task, actor, ACTION_START)

        recipients = resolve_notify_on_start(task.template_task, actor.id)
        recipients |= _other_assignee_ids(task, actor)
        NotificationService.record(
            event_kind=EVENT_TASK_STARTED,
            instance=task.process_instance,
            task=task,
            actor=actor,
            recipient_ids=recipients,
        )
    except StaleDataError:
        raise _lost_race(task_id, "start", status_before)
    except Exception:
        db.session.rollback()
        raise
    _commit(task, "start", status_before)

    logger.info(
        "Task started",
        extra={"task_id": task.id, "instance_id": task.process_instance_id, "actor_id": actor.id},
    )
    NotificationService.dispatch_pending()
    return task


def approve_task(actor, task_id: str, comment: str | None = None) -> ProcessTaskAssignment:
    """
    PENDING / IN_PROGRESS → APPROVED, then run the completion evaluator.

    Raises:
        ValidationError: "File is required for this task" when the task
            needs a file and none has been uploaded yet.
    """
    task = _get_task(task_id)
    check_can_act(actor, task, action="approve")
    _check_transition(task, "approve")
    _check_instance_open(task.process_instance, "approve")
    if task.template_task.need_file and not task.file_url:
        raise ValidationError("File is required for this task", details={"file_url": "required"})
    status_before = task.status
    comment = comment or None

    try:
        instance = _lock_open_instance(task, "approve")
        task.status = TASK_TRANSITIONS["approve"]["to"]
        task.completed_at = datetime.now(timezone.utc)
        task.current_assignee_id = actor.id
        task.comment = comment
        _append_action(task, actor, ACTION_APPROVE, message=comment)

        NotificationService.record(
            event_kind=EVENT_TASK_APPROVED,
            instance=task.process_instance,
            task=task,
            actor=actor,
            recipient_ids=_decision_recipients(task, actor),
            comment=_strip_markup(comment) or None,
        )
        db.session.flush()
        completed = evaluate_completion(instance, task.id, actor=actor)
    except StaleDataError:
        raise _lost_race(task_id, "approve", status_before)
    except Exception:
        db.session.rollback()
        raise
    _commit(task, "approve", status_before)

    logger.info(
        "Task approved",
        extra={
            "task_id": task.id,
            "instance_id": task.process_instance_id,
            "actor_id": actor.id,
            "instance_completed": completed,
        },
    )
    NotificationService.dispatch_pending()
    return task


def reject_task(actor, task_id: str, comment: str | None) -> ProcessTaskAssignment:
    """
    PENDING / IN_PROGRESS → REJECTED. Never completes the instance.

    Raises:
        ValidationError: "Comment required for rejection" when the comment
            is empty once markup and whitespace are stripped.
    """
    task = _get_task(task_id)
    check_can_act(actor, task, action="reject")
    _check_transition(task, "reject")
    _check_instance_open(task.process_instance, "reject")
    plain = _strip_markup(comment)
    if not plain:
        raise ValidationError("Comment required for rejection", details={"comment": "required"})
    status_before = task.status

    try:
        _lock_open_instance(task, "reject")
        task.status = TASK_TRANSITIONS["reject"]["to"]
        task.completed_at = datetime.now(timezone.utc)
        task.current_assignee_id = actor.id
        task.comment = comment
        _append_action(task, actor, ACTION_REJECT, message=comment)

        NotificationService.record(
            event_kind=EVENT_TASK_REJECTED,
            instance=task.process_instance,
            task=task,
            actor=actor,
            recipient_ids=_decision_recipients(task, actor),
            comment=plain,
        )
    except StaleDataError:
        raise _lost_race(task_id, "reject", status_before)
    except Exception:
        db.session.rollback()
        raise
    _commit(task, "reject", status_before)

    logger.info(
        "Task rejected",
        extra={"task_id": task.id, "instance_id": task.process_instance_id, "actor_id": actor.id},
    )
    NotificationService.dispatch_pending()
    return task


def upload_task_file(actor, task_id: str, filename: str | None, content: bytes | None,
                     content_type: str | None = None) -> ProcessTaskAssignment:
    """
    Store a file for a task that needs one and record its URL.

    Does not change the task status. Check order: task exists, task needs a
    file, actor may act, task is still open, blob store is configured, file
    is non-empty. A failed upload leaves the task untouched.
    """
    task = _get_task(task_id)
    if not task.template_task.need_file:
        raise ValidationError("This task does not require a file", details={"need_file": False})
    check_can_act(actor, task, action="upload_file")
    if task.status not in TASK_OPEN_STATUSES:
        raise InvalidStateError(
            resource="ProcessTaskAssignment", resource_id=task.id,
            action="upload_file", current=task.status,
        )
    _check_instance_open(task.process_instance, "upload_file")

    store = get_blob_store()
    if not store.is_configured():
        raise ConfigurationError(NOT_CONFIGURED_MESSAGE)
    if not content:
        raise ValidationError("No file provided", details={"file": "required"})

    safe_name = sanitize_filename(filename)
    path = f"bpm/tasks/{task.id}/{safe_name}"
    url = store.put(content, path, content_type or "application/octet-stream")

    status_before = task.status
    try:
        _lock_open_instance(task, "upload_file")
        task.file_url = url
        _append_action(task, actor, ACTION_UPLOAD_FILE, message=safe_name)
    except Exception:
        db.session.rollback()
        raise
    _commit(task, "upload_file", status_before)

    logger.info(
        "Task file uploaded",
        extra={"task_id": task.id, "instance_id": task.process_instance_id, "actor_id": actor.id},
    )
    return task


# ═════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════


def get_task(actor, task_id: str) -> ProcessTaskAssignment:
    check_permission(actor, "processInstances.read")
    return _get_task(task_id)


def get_task_history(actor, task_id: str) -> list[TaskAction]:
    """TaskActions of an assignment, most recent first."""
    check_permission(actor, "processInstances.read")
    task = _get_task(task_id)
    return db.session.execute(
        select(TaskAction)
        .where(TaskAction.task_id == task.id)
        .order_by(TaskAction.created_at.desc(), TaskAction.id.desc())
    ).scalars().all()


def list_my_tasks(actor) -> list[ProcessTaskAssignment]:
    """
    Open assignments the actor may act on.

    Ordered by instance start (newest first), then task order.
    """
    require_actor(actor)
    return db.session.execute(
        select(ProcessTaskAssignment)
        .join(
            task_assignment_assignees,
            task_assignment_assignees.c.task_id == ProcessTaskAssignment.id,
        )
        .join(ProcessInstance, ProcessInstance.id == ProcessTaskAssignment.process_instance_id)
        .where(
            task_assignment_assignees.c.user_id == actor.id,
            ProcessTaskAssignment.status.in_(sorted(TASK_OPEN_STATUSES)),
        )
        .order_by(ProcessInstance.start_date_time.desc(), ProcessTaskAssignment.sequence.asc())
    ).scalars().unique().all()

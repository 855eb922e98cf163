"""
Completion Evaluator — decides whether an approval finished the instance.

Runs inside the approving transaction, right after the approved
assignment has been written. Does NOT commit.

Rules:
    - Only mandatory tasks count. The instance is complete iff every
      mandatory assignment other than the one just approved is APPROVED.
    - On completion every still-PENDING assignment becomes SKIPPED;
      IN_PROGRESS assignments are left as they are.
    - A REJECTED mandatory task blocks completion for good.
    - Only RUNNING instances are evaluated; a COMPLETED or CANCELLED
      instance never changes here.
    - A template without mandatory tasks completes on the first approval.

Concurrency:
    Two different mandatory tasks approved at the same time are two
    different rows, so their ``version_id`` counters never collide. Every
    transition therefore takes ``lock_instance()`` (SELECT ... FOR UPDATE on
    the instance row) first, and the evaluator re-reads the assignment
    statuses from the database after the lock. The second approver waits for
    the first commit and then sees the other task APPROVED. SQLite has no
    row locks and serialises writers on its own.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from bpm.models import db
from bpm.models.instance import (
    INSTANCE_COMPLETED,
    INSTANCE_RUNNING,
    TASK_APPROVED,
    TASK_PENDING,
    TASK_TRANSITIONS,
    ProcessInstance,
    ProcessTaskAssignment,
)
from bpm.models.notification import EVENT_PROCESS_COMPLETED
from bpm.services.notification import NotificationService

logger = logging.getLogger(__name__)


def instance_lock_stmt(instance_id: str):
    return (
        select(ProcessInstance)
        .where(ProcessInstance.id == instance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def lock_instance(instance_id: str) -> ProcessInstance:
    """Lock the instance row for the rest of the transaction and refresh it."""
    return db.session.execute(instance_lock_stmt(instance_id)).scalar_one()


def _current_assignments(instance_id: str) -> list[ProcessTaskAssignment]:
    return db.session.execute(
        select(ProcessTaskAssignment)
        .where(ProcessTaskAssignment.process_instance_id == instance_id)
        .order_by(ProcessTaskAssignment.sequence.asc())
        .execution_options(populate_existing=True)
    ).scalars().all()


def is_complete(assignments, approved_task_id: str) -> bool:
    """True when every mandatory assignment except ``approved_task_id`` is APPROVED."""
    for a in assignments:
        if a.id == approved_task_id:
            continue
        tt = a.template_task
        if tt is not None and tt.mandatory and a.status != TASK_APPROVED:
            return False
    return True


def evaluate_completion(instance, approved_task_id: str, actor=None) -> bool:
    """
    Complete ``instance`` if the approval of ``approved_task_id`` finished it.

    The caller holds ``lock_instance()`` and has flushed the approval.

    Returns:
        True when the instance transitioned to COMPLETED.
    """
    if instance.status != INSTANCE_RUNNING:
        return False

    assignments = _current_assignments(instance.id)
    if not is_complete(assignments, approved_task_id):
        return False

    now = datetime.now(timezone.utc)
    skip_to = TASK_TRANSITIONS["skip"]["to"]
    skipped = 0
    for a in assignments:
        if a.id != approved_task_id and a.status == TASK_PENDING:
            a.status = skip_to
            skipped += 1

    instance.status = INSTANCE_COMPLETED
    instance.end_date_time = now

    if instance.started_by_id:
        NotificationService.record(
            event_kind=EVENT_PROCESS_COMPLETED,
            instance=instance,
            actor=actor,
            recipient_ids=[instance.started_by_id],
            exclude_actor=False,
        )

    logger.info(
        "Process instance completed",
        extra={"instance_id": instance.id, "skipped_tasks": skipped},
    )
    return True

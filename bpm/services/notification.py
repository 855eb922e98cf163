"""
BPM Engine — Notification Service (outbox + dispatch).

The engine decides *who* is told and *when*; delivery belongs to the
notifier. The two are split by an outbox:

    1. Inside the state-transition transaction, ``record()`` adds one
       NotificationOutbox row per event with the resolved recipient ids.
       The row commits or rolls back together with the transition.
    2. After the commit, ``dispatch_pending()`` claims pending rows
       (pending → sending, one conditional UPDATE per row), hands them to
       the notifier and marks them sent / failed. A row claimed by one
       worker is never delivered by another.

Dispatch never raises: a notifier outage leaves rows ``failed`` (or
``pending`` when notifications are disabled) and is only logged.

Notifier contract (duck-typed):
    notifier.send(recipients: list[User], event: NotificationOutbox) -> None

The default notifier is ``EmailNotifier``; an app may register another
one under ``app.extensions["bpm_notifier"]``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import and_, or_, select, update

from bpm.models import db
from bpm.models.notification import (
    EVENT_KINDS,
    OUTBOX_FAILED,
    OUTBOX_PENDING,
    OUTBOX_SENDING,
    OUTBOX_SENT,
    NotificationOutbox,
)
from bpm.services import directory_service

logger = logging.getLogger(__name__)


def instance_link(instance_id: str) -> str:
    """Deep link to an instance in the surrounding web application."""
    site_url = (current_app.config.get("BPM_SITE_URL") or "http://localhost:3000").rstrip("/")
    return f"{site_url}/process-instances/{instance_id}"


def get_notifier():
    """Return the registered notifier, defaulting to email delivery."""
    notifier = current_app.extensions.get("bpm_notifier")
    if notifier is None:
        from bpm.services.email_service import EmailNotifier
        notifier = EmailNotifier()
    return notifier


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Record (inside the transaction) ───────────────────────────────────

    @staticmethod
    def record(*, event_kind, instance, recipient_ids, task=None, actor=None,
               comment=None, exclude_actor=True):
        """
        Add an outbox row to the current session. Does NOT commit.

        The acting user is never notified about their own action unless
        ``exclude_actor`` is False. When no recipient is left, nothing is
        recorded.

        Returns:
            The NotificationOutbox row, or None when there is nobody to tell.
        """
        if event_kind not in EVENT_KINDS:
            raise ValueError(f"Unknown notification event: {event_kind}")

        recipients = set(recipient_ids or [])
        if actor is not None and exclude_actor:
            recipients.discard(actor.id)
        if not recipients:
            return None

        task_template = task.template_task if task is not None else None
        row = NotificationOutbox(
            event_kind=event_kind,
            process_instance_id=instance.id,
            task_id=task.id if task is not None else None,
            actor_id=actor.id if actor is not None else None,
            recipient_ids=sorted(recipients),
            payload={
                "process_name": instance.name,
                "template_name": instance.process_template.name if instance.process_template else None,
                "task_name": task_template.name if task_template else None,
                "actor_name": actor.full_name if actor is not None else None,
                "comment": comment,
                "instance_id": instance.id,
                "link": instance_link(instance.id),
            },
            status=OUTBOX_PENDING,
        )
        db.session.add(row)
        return row

    # ── Dispatch (after commit) ───────────────────────────────────────────

    @staticmethod
    def claim(row_ids) -> list[str]:
        """
        Move rows from pending to sending and commit. Does NOT send.

        The conditional UPDATE lets exactly one dispatcher win a row, so
        concurrent workers never deliver the same event twice.

        Returns:
            The ids this caller claimed.
        """
        claimed = []
        now = datetime.now(timezone.utc)
        for row_id in row_ids:
            result = db.session.execute(
                update(NotificationOutbox)
                .where(
                    NotificationOutbox.id == row_id,
                    NotificationOutbox.status == OUTBOX_PENDING,
                )
                .values(status=OUTBOX_SENDING, dispatched_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(row_id)
        db.session.commit()
        return claimed

    @staticmethod
    def dispatch_pending(notifier=None, limit=200):
        """
        Claim and deliver pending outbox rows. Never raises.

        Returns:
            {"sent": int, "failed": int, "pending": int}
        """
        result = {"sent": 0, "failed": 0, "pending": 0}
        try:
            pending_ids = db.session.execute(
                select(NotificationOutbox.id)
                .where(NotificationOutbox.status == OUTBOX_PENDING)
                .order_by(NotificationOutbox.created_at.asc())
                .limit(limit)
            ).scalars().all()

            if not current_app.config.get("NOTIFICATIONS_ENABLED", True):
                result["pending"] = len(pending_ids)
                return result

            claimed = NotificationService.claim(pending_ids)
            if not claimed:
                return result
            rows = db.session.execute(
                select(NotificationOutbox)
                .where(NotificationOutbox.id.in_(claimed))
                .order_by(NotificationOutbox.created_at.asc())
                .execution_options(populate_existing=True)
            ).scalars().all()

            notifier = notifier or get_notifier()
            for row in rows:
                try:
                    recipients = directory_service.get_users(row.recipient_ids)
                    notifier.send(recipients, row)
                    row.status = OUTBOX_SENT
                    row.error_message = None
                    result["sent"] += 1
                except Exception as exc:
                    logger.exception(
                        "Notification delivery failed",
                        extra={"outbox_id": row.id, "event_kind": row.event_kind},
                    )
                    row.status = OUTBOX_FAILED
                    row.error_message = str(exc)[:1000]
                    result["failed"] += 1
                row.dispatched_at = datetime.now(timezone.utc)
            db.session.commit()
        except Exception:
            logger.exception("Notification dispatch aborted")
            db.session.rollback()
        return result

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_instance(instance_id, status=None):
        """Return outbox rows for an instance, oldest first."""
        stmt = (
            select(NotificationOutbox)
            .where(NotificationOutbox.process_instance_id == instance_id)
            .order_by(NotificationOutbox.created_at.asc())
        )
        if status:
            stmt = stmt.where(NotificationOutbox.status == status)
        return db.session.execute(stmt).scalars().all()

    @staticmethod
    def retry_failed(notifier=None, stale_after=timedelta(minutes=15)):
        """
        Put failed rows back to pending and dispatch them again.

        Rows stuck in ``sending`` for longer than ``stale_after`` (their
        dispatcher died before recording the outcome) are re-queued too.
        """
        cutoff = datetime.now(timezone.utc) - stale_after
        rows = db.session.execute(
            select(NotificationOutbox).where(
                or_(
                    NotificationOutbox.status == OUTBOX_FAILED,
                    and_(
                        NotificationOutbox.status == OUTBOX_SENDING,
                        NotificationOutbox.dispatched_at < cutoff,
                    ),
                )
            )
        ).scalars().all()
        for row in rows:
            row.status = OUTBOX_PENDING
        db.session.commit()
        return NotificationService.dispatch_pending(notifier=notifier)

"""
BPM Engine — Notification domain models.

Models:
    - NotificationOutbox: one row per engine event, written in the same
      transaction as the state change that produced it, dispatched after
      commit.
    - EmailLog: outbound email audit log, one row per recipient per attempt.
"""

from bpm.models import _iso, _utcnow, _uuid, db


# ── Constants ────────────────────────────────────────────────────────────────

EVENT_TASK_ASSIGNED = "task_assigned"
EVENT_TASK_STARTED = "task_started"
EVENT_TASK_APPROVED = "task_approved"
EVENT_TASK_REJECTED = "task_rejected"
EVENT_PROCESS_COMPLETED = "process_completed"

EVENT_KINDS = frozenset({
    EVENT_TASK_ASSIGNED,
    EVENT_TASK_STARTED,
    EVENT_TASK_APPROVED,
    EVENT_TASK_REJECTED,
    EVENT_PROCESS_COMPLETED,
})

OUTBOX_PENDING = "pending"
OUTBOX_SENDING = "sending"  # claimed by one dispatcher
OUTBOX_SENT = "sent"
OUTBOX_FAILED = "failed"


class NotificationOutbox(db.Model):
    """
    Pending notification event.

    Recipients are stored as a JSON list of user ids resolved at the time
    of the event, so later directory changes do not alter who is told.
    """

    __tablename__ = "notification_outbox"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    event_kind = db.Column(db.String(30), nullable=False)
    process_instance_id = db.Column(
        db.String(36), db.ForeignKey("process_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    task_id = db.Column(
        db.String(36), db.ForeignKey("process_task_assignments.id", ondelete="CASCADE"),
        nullable=True,
    )
    actor_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    recipient_ids = db.Column(db.JSON, nullable=False, default=list)
    payload = db.Column(db.JSON, nullable=False, default=dict,
                        comment="Snapshot: process_name, task_name, actor_name, comment")
    status = db.Column(db.String(20), nullable=False, default=OUTBOX_PENDING, index=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "event_kind": self.event_kind,
            "process_instance_id": self.process_instance_id,
            "task_id": self.task_id,
            "actor_id": self.actor_id,
            "recipient_ids": list(self.recipient_ids or []),
            "payload": dict(self.payload or {}),
            "status": self.status,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "dispatched_at": _iso(self.dispatched_at),
        }

    def __repr__(self):
        return f"<NotificationOutbox {self.event_kind} {self.status}>"


class EmailLog(db.Model):
    """
    Outbound email audit log.

    Every email the notifier attempts is logged here for audit/debug.
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    recipient_name = db.Column(db.String(150), nullable=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True,
                              comment="Email template used")
    status = db.Column(db.String(20), default="queued",
                       comment="queued, sent, failed")
    error_message = db.Column(db.Text, nullable=True)
    outbox_id = db.Column(db.String(36), nullable=True,
                          comment="Related NotificationOutbox row if applicable")

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "template_name": self.template_name,
            "status": self.status,
            "error_message": self.error_message,
            "outbox_id": self.outbox_id,
            "sent_at": _iso(self.sent_at),
            "created_at": _iso(self.created_at),
        }

"""
Process Instance Models — instances, task assignments, task action log.

Models:
    - ProcessInstance: one concrete run of a process template.
    - ProcessTaskAssignment: per-instance, per-task-template unit of work.
    - TaskAction: append-only audit log of everything done to an assignment.

Ownership:
    An instance exclusively owns its assignments, an assignment exclusively
    owns its actions (ORM cascade + ON DELETE CASCADE).

Business rules:
    - Exactly one assignment per (instance, template task).
    - ``possible_assignees`` is resolved once at creation and never
      recomputed when the directory changes.
    - TaskAction rows are never updated or deleted by any service.
    - ``version_id`` is the optimistic-concurrency counter: two actors
      racing on the same assignment cannot both commit.
"""

from bpm.models import _iso, _utcnow, _uuid, db


# ── Instance status ──────────────────────────────────────────────────────────

INSTANCE_RUNNING = "RUNNING"
INSTANCE_COMPLETED = "COMPLETED"
INSTANCE_CANCELLED = "CANCELLED"

INSTANCE_STATUSES = frozenset({INSTANCE_RUNNING, INSTANCE_COMPLETED, INSTANCE_CANCELLED})

# ── Task status ──────────────────────────────────────────────────────────────

TASK_PENDING = "PENDING"
TASK_IN_PROGRESS = "IN_PROGRESS"
TASK_APPROVED = "APPROVED"
TASK_REJECTED = "REJECTED"
TASK_SKIPPED = "SKIPPED"

TASK_STATUSES = frozenset({TASK_PENDING, TASK_IN_PROGRESS, TASK_APPROVED, TASK_REJECTED, TASK_SKIPPED})
TASK_TERMINAL_STATUSES = frozenset({TASK_APPROVED, TASK_REJECTED, TASK_SKIPPED})
TASK_OPEN_STATUSES = TASK_STATUSES - TASK_TERMINAL_STATUSES

# Engine transitions: action → allowed source statuses + target status.
# "skip" is only ever applied by the completion evaluator.
TASK_TRANSITIONS = {
    "start": {"from": [TASK_PENDING], "to": TASK_IN_PROGRESS},
    "approve": {"from": [TASK_PENDING, TASK_IN_PROGRESS], "to": TASK_APPROVED},
    "reject": {"from": [TASK_PENDING, TASK_IN_PROGRESS], "to": TASK_REJECTED},
    "skip": {"from": [TASK_PENDING], "to": TASK_SKIPPED},
}

# ── Task actions ─────────────────────────────────────────────────────────────

ACTION_START = "START"
ACTION_APPROVE = "APPROVE"
ACTION_REJECT = "REJECT"
ACTION_UPLOAD_FILE = "UPLOAD_FILE"


task_assignment_assignees = db.Table(
    "task_assignment_assignees",
    db.Column(
        "task_id", db.String(36),
        db.ForeignKey("process_task_assignments.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.Column(
        "user_id", db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.Index("ix_task_assignees_user", "user_id"),
)


class ProcessInstance(db.Model):
    """One run of a process template, started by a user."""

    __tablename__ = "process_instances"
    __table_args__ = (
        db.Index("ix_pi_status", "status"),
        db.Index("ix_pi_started_by", "started_by_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    process_template_id = db.Column(
        db.String(36), db.ForeignKey("process_templates.id"),
        nullable=False, index=True,
    )
    started_by_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    name = db.Column(db.String(300), nullable=False)
    start_date_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    end_date_time = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=INSTANCE_RUNNING,
        comment="RUNNING | COMPLETED | CANCELLED",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    process_template = db.relationship("ProcessTemplate")
    started_by = db.relationship("User", foreign_keys=[started_by_id])
    task_assignments = db.relationship(
        "ProcessTaskAssignment",
        back_populates="process_instance",
        order_by="ProcessTaskAssignment.sequence",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self, include_tasks=False):
        d = {
            "id": self.id,
            "process_template_id": self.process_template_id,
            "process_template_name": self.process_template.name if self.process_template else None,
            "name": self.name,
            "started_by_id": self.started_by_id,
            "started_by_name": self.started_by.full_name if self.started_by else None,
            "start_date_time": _iso(self.start_date_time),
            "end_date_time": _iso(self.end_date_time),
            "status": self.status,
        }
        if include_tasks:
            d["tasks"] = [t.to_dict() for t in self.task_assignments]
        return d

    def __repr__(self):
        return f"<ProcessInstance {self.name} {self.status}>"


class ProcessTaskAssignment(db.Model):
    """
    The task instance: status, eligible users, last actor, decision comment.

    ``sequence`` copies the template task's ``order`` at creation so the
    instance keeps its original ordering even after the template is edited.
    """

    __tablename__ = "process_task_assignments"
    __table_args__ = (
        db.UniqueConstraint(
            "process_instance_id", "template_task_id", name="uq_pta_instance_template_task",
        ),
        db.Index("ix_pta_instance_sequence", "process_instance_id", "sequence"),
        db.Index("ix_pta_status", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    process_instance_id = db.Column(
        db.String(36), db.ForeignKey("process_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    template_task_id = db.Column(
        db.String(36), db.ForeignKey("process_task_templates.id"),
        nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.String(20), nullable=False, default=TASK_PENDING,
        comment="PENDING | IN_PROGRESS | APPROVED | REJECTED | SKIPPED",
    )
    current_assignee_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comment = db.Column(db.Text, nullable=True, comment="Rich text of the last decision")
    file_url = db.Column(db.String(1000), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    process_instance = db.relationship("ProcessInstance", back_populates="task_assignments")
    template_task = db.relationship("ProcessTaskTemplate", lazy="joined")
    current_assignee = db.relationship("User", foreign_keys=[current_assignee_id])
    possible_assignees = db.relationship(
        "User", secondary=task_assignment_assignees, lazy="selectin",
    )
    actions = db.relationship(
        "TaskAction",
        back_populates="task",
        order_by="TaskAction.created_at.desc()",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def possible_assignee_ids(self) -> list[str]:
        return sorted(u.id for u in self.possible_assignees)

    def to_dict(self):
        tt = self.template_task
        return {
            "id": self.id,
            "process_instance_id": self.process_instance_id,
            "template_task_id": self.template_task_id,
            "name": tt.name if tt else None,
            "order": self.sequence,
            "mandatory": tt.mandatory if tt else None,
            "need_file": tt.need_file if tt else None,
            "status": self.status,
            "possible_assignee_ids": self.possible_assignee_ids,
            "current_assignee_id": self.current_assignee_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "comment": self.comment,
            "file_url": self.file_url,
        }

    def __repr__(self):
        return f"<ProcessTaskAssignment #{self.sequence} {self.status}>"


class TaskAction(db.Model):
    """
    Immutable audit entry for a task assignment.

    Business rules:
    - Records are NEVER updated or deleted — append-only log.
    - Written in the same transaction as the assignment change it records.
    - ``actor_name_snapshot`` keeps the trail readable after user deletion.
    """

    __tablename__ = "task_actions"
    __table_args__ = (
        db.Index("ix_task_actions_task_created", "task_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(
        db.String(36), db.ForeignKey("process_task_assignments.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    actor_name_snapshot = db.Column(db.String(255), nullable=True)
    action = db.Column(
        db.String(20), nullable=False,
        comment="START | APPROVE | REJECT | UPLOAD_FILE",
    )
    message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    task = db.relationship("ProcessTaskAssignment", back_populates="actions")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "user_name": self.actor_name_snapshot,
            "action": self.action,
            "message": self.message,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<TaskAction {self.action} task={self.task_id}>"

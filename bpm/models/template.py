"""
Template Store Models — process templates and their ordered task definitions.

Models:
    - ProcessTemplate: reusable process definition, startable by the
      departments listed in ``allowed_departments``.
    - ProcessTaskTemplate: one ordered step with approver and notify rules.

Rule sets:
    Each task carries three rule sets with the same shape — an explicit
    list of job positions plus a "same department" flag and a "department
    manager" flag:

        approver            who may act on the task
        notify_on_start     who is told when the task starts
        notify_on_complete  who is told when the task is approved / rejected

    The position lists live in three association tables. The flags are
    plain booleans; see ``assignment_resolver`` for how they are resolved.

Editing:
    ``template_service.update_process_template`` replaces the whole task
    list. Tasks already referenced by process instances are detached
    (``process_template_id`` set to NULL) instead of deleted, so started
    instances keep the task definitions they were created from.
"""

from bpm.models import _iso, _utcnow, _uuid, db


# ── Constants ────────────────────────────────────────────────────────────────

RULE_APPROVER = "approver"
RULE_NOTIFY_ON_START = "notify_on_start"
RULE_NOTIFY_ON_COMPLETE = "notify_on_complete"

VALID_RULES = (RULE_APPROVER, RULE_NOTIFY_ON_START, RULE_NOTIFY_ON_COMPLETE)

DEFAULT_TEMPLATE_ICON = "workflow"


def _position_link_table(name):
    return db.Table(
        name,
        db.Column(
            "task_template_id", db.String(36),
            db.ForeignKey("process_task_templates.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        db.Column(
            "job_position_id", db.String(36),
            db.ForeignKey("job_positions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )


task_approver_positions = _position_link_table("task_approver_positions")
task_notify_on_start_positions = _position_link_table("task_notify_on_start_positions")
task_notify_on_complete_positions = _position_link_table("task_notify_on_complete_positions")

process_template_departments = db.Table(
    "process_template_departments",
    db.Column(
        "process_template_id", db.String(36),
        db.ForeignKey("process_templates.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.Column(
        "department_id", db.String(36),
        db.ForeignKey("departments.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class ProcessTemplate(db.Model):
    """Reusable process definition. Authored by SUPER_ADMIN only."""

    __tablename__ = "process_templates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    icon = db.Column(db.String(50), nullable=False, default=DEFAULT_TEMPLATE_ICON)
    created_by_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    allowed_departments = db.relationship(
        "Department", secondary=process_template_departments, lazy="selectin",
    )
    tasks = db.relationship(
        "ProcessTaskTemplate",
        back_populates="process_template",
        order_by="ProcessTaskTemplate.order",
        cascade="save-update, merge",
        passive_deletes=True,
    )
    created_by = db.relationship("User", foreign_keys=[created_by_id])

    @property
    def allowed_department_ids(self) -> list[str]:
        return sorted(d.id for d in self.allowed_departments)

    def to_dict(self, include_tasks=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "created_by_id": self.created_by_id,
            "allowed_department_ids": self.allowed_department_ids,
            "task_count": len(self.tasks),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_tasks:
            d["tasks"] = [t.to_dict() for t in self.tasks]
        return d

    def __repr__(self):
        return f"<ProcessTemplate {self.name}>"


class ProcessTaskTemplate(db.Model):
    """
    One ordered step of a process template.

    ``order`` sequences tasks for display and for the assignment order of
    new instances. Tasks are NOT gated on predecessor completion.

    ``mandatory`` tasks drive automatic instance completion; ``need_file``
    tasks require an uploaded file before they can be approved.
    """

    __tablename__ = "process_task_templates"
    __table_args__ = (
        db.Index("ix_ptt_template_order", "process_template_id", "order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    process_template_id = db.Column(
        db.String(36), db.ForeignKey("process_templates.id", ondelete="CASCADE"),
        nullable=True,
        comment="NULL once detached from its template by an edit (still used by instances)",
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    order = db.Column(db.Integer, nullable=False, default=0)
    need_file = db.Column(db.Boolean, nullable=False, default=False)
    mandatory = db.Column(db.Boolean, nullable=False, default=True)

    # Department-relative flags, stored for every rule set
    approver_same_department = db.Column(db.Boolean, nullable=False, default=False)
    approver_department_manager = db.Column(db.Boolean, nullable=False, default=False)
    notify_on_start_same_department = db.Column(db.Boolean, nullable=False, default=False)
    notify_on_start_department_manager = db.Column(db.Boolean, nullable=False, default=False)
    notify_on_complete_same_department = db.Column(db.Boolean, nullable=False, default=False)
    notify_on_complete_department_manager = db.Column(db.Boolean, nullable=False, default=False)

    process_template = db.relationship("ProcessTemplate", back_populates="tasks")
    approver_positions = db.relationship(
        "JobPosition", secondary=task_approver_positions, lazy="selectin",
    )
    notify_on_start_positions = db.relationship(
        "JobPosition", secondary=task_notify_on_start_positions, lazy="selectin",
    )
    notify_on_complete_positions = db.relationship(
        "JobPosition", secondary=task_notify_on_complete_positions, lazy="selectin",
    )

    def rule_positions(self, rule: str):
        """Return the JobPosition list for a rule set."""
        if rule not in VALID_RULES:
            raise ValueError(f"Unknown rule set: {rule}")
        return getattr(self, f"{rule}_positions")

    def rule_position_ids(self, rule: str) -> list[str]:
        return sorted(p.id for p in self.rule_positions(rule))

    def rule_flags(self, rule: str) -> tuple[bool, bool]:
        """Return (same_department, department_manager) for a rule set."""
        if rule not in VALID_RULES:
            raise ValueError(f"Unknown rule set: {rule}")
        return (
            bool(getattr(self, f"{rule}_same_department")),
            bool(getattr(self, f"{rule}_department_manager")),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "process_template_id": self.process_template_id,
            "name": self.name,
            "description": self.description,
            "order": self.order,
            "need_file": self.need_file,
            "mandatory": self.mandatory,
            "approver_position_ids": self.rule_position_ids(RULE_APPROVER),
            "notify_on_start_position_ids": self.rule_position_ids(RULE_NOTIFY_ON_START),
            "notify_on_complete_position_ids": self.rule_position_ids(RULE_NOTIFY_ON_COMPLETE),
            "approver_same_department": self.approver_same_department,
            "approver_department_manager": self.approver_department_manager,
            "notify_on_start_same_department": self.notify_on_start_same_department,
            "notify_on_start_department_manager": self.notify_on_start_department_manager,
            "notify_on_complete_same_department": self.notify_on_complete_same_department,
            "notify_on_complete_department_manager": self.notify_on_complete_department_manager,
        }

    def __repr__(self):
        return f"<ProcessTaskTemplate #{self.order} {self.name}>"

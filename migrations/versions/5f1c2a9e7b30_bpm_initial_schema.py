"""bpm_initial_schema

Creates the BPM engine schema:
  - users, departments, job_positions, user_positions      — directory
  - process_templates, process_task_templates,
    process_template_departments, task_*_positions          — template store
  - process_instances, process_task_assignments,
    task_assignment_assignees, task_actions                 — instance lifecycle
  - notification_outbox, email_logs                         — notifications

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5f1c2a9e7b30
Revises:
Create Date: 2026-10-18 09:12:41.220417
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5f1c2a9e7b30'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", sa.String(length=36), nullable=False)


def _position_link(name):
    op.create_table(
        name,
        sa.Column("task_template_id", sa.String(length=36), nullable=False),
        sa.Column("job_position_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["task_template_id"], ["process_task_templates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["job_position_id"], ["job_positions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_template_id", "job_position_id"),
    )


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Directory ─────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            _id(),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("last_name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("phone", sa.String(length=50), nullable=True),
            sa.Column(
                "role", sa.String(length=20), nullable=False, server_default="EMPLOYEE",
                comment="SUPER_ADMIN | ADMIN | MANAGER | EMPLOYEE",
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "departments" not in existing:
        op.create_table(
            "departments",
            _id(),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("phone_number", sa.String(length=50), nullable=True),
            sa.Column("color", sa.String(length=20), nullable=False, server_default="#6366f1"),
            sa.Column(
                "parent_id", sa.String(length=36), nullable=True,
                comment="NULL for root departments",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["parent_id"], ["departments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_departments_parent_id", "departments", ["parent_id"])

    if "job_positions" not in existing:
        op.create_table(
            "job_positions",
            _id(),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("department_id", sa.String(length=36), nullable=False),
            sa.Column("manager_id", sa.String(length=36), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["manager_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_positions_department_id", "job_positions", ["department_id"])

    if "user_positions" not in existing:
        op.create_table(
            "user_positions",
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("position_id", sa.String(length=36), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["position_id"], ["job_positions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("user_id", "position_id"),
        )
        op.create_index("ix_user_positions_position", "user_positions", ["position_id"])

    # ── Template store ────────────────────────────────────────────────────
    if "process_templates" not in existing:
        op.create_table(
            "process_templates",
            _id(),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("icon", sa.String(length=50), nullable=False, server_default="workflow"),
            sa.Column("created_by_id", sa.String(length=36), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "process_template_departments" not in existing:
        op.create_table(
            "process_template_departments",
            sa.Column("process_template_id", sa.String(length=36), nullable=False),
            sa.Column("department_id", sa.String(length=36), nullable=False),
            sa.ForeignKeyConstraint(["process_template_id"], ["process_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("process_template_id", "department_id"),
        )

    if "process_task_templates" not in existing:
        op.create_table(
            "process_task_templates",
            _id(),
            sa.Column(
                "process_template_id", sa.String(length=36), nullable=True,
                comment="NULL once detached from its template by an edit (still used by instances)",
            ),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("need_file", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("mandatory", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("approver_same_department", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("approver_department_manager", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notify_on_start_same_department", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notify_on_start_department_manager", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notify_on_complete_same_department", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notify_on_complete_department_manager", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["process_template_id"], ["process_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_ptt_template_order", "process_task_templates", ["process_template_id", "order"],
        )

    for link in ("task_approver_positions", "task_notify_on_start_positions",
                 "task_notify_on_complete_positions"):
        if link not in existing:
            _position_link(link)

    # ── Instance lifecycle ────────────────────────────────────────────────
    if "process_instances" not in existing:
        op.create_table(
            "process_instances",
            _id(),
            sa.Column("process_template_id", sa.String(length=36), nullable=False),
            sa.Column("started_by_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("start_date_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_date_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="RUNNING",
                comment="RUNNING | COMPLETED | CANCELLED",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["process_template_id"], ["process_templates.id"]),
            sa.ForeignKeyConstraint(["started_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_instances_process_template_id", "process_instances", ["process_template_id"])
        op.create_index("ix_pi_status", "process_instances", ["status"])
        op.create_index("ix_pi_started_by", "process_instances", ["started_by_id"])

    if "process_task_assignments" not in existing:
        op.create_table(
            "process_task_assignments",
            _id(),
            sa.Column("process_instance_id", sa.String(length=36), nullable=False),
            sa.Column("template_task_id", sa.String(length=36), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="PENDING",
                comment="PENDING | IN_PROGRESS | APPROVED | REJECTED | SKIPPED",
            ),
            sa.Column("current_assignee_id", sa.String(length=36), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("comment", sa.Text(), nullable=True, comment="Rich text of the last decision"),
            sa.Column("file_url", sa.String(length=1000), nullable=True),
            sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["process_instance_id"], ["process_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["template_task_id"], ["process_task_templates.id"]),
            sa.ForeignKeyConstraint(["current_assignee_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "process_instance_id", "template_task_id", name="uq_pta_instance_template_task",
            ),
        )
        op.create_index(
            "ix_process_task_assignments_template_task_id", "process_task_assignments", ["template_task_id"],
        )
        op.create_index(
            "ix_pta_instance_sequence", "process_task_assignments", ["process_instance_id", "sequence"],
        )
        op.create_index("ix_pta_status", "process_task_assignments", ["status"])

    if "task_assignment_assignees" not in existing:
        op.create_table(
            "task_assignment_assignees",
            sa.Column("task_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.ForeignKeyConstraint(["task_id"], ["process_task_assignments.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("task_id", "user_id"),
        )
        op.create_index("ix_task_assignees_user", "task_assignment_assignees", ["user_id"])

    if "task_actions" not in existing:
        op.create_table(
            "task_actions",
            _id(),
            sa.Column("task_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("actor_name_snapshot", sa.String(length=255), nullable=True),
            sa.Column(
                "action", sa.String(length=20), nullable=False,
                comment="START | APPROVE | REJECT | UPLOAD_FILE",
            ),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["task_id"], ["process_task_assignments.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_task_actions_task_created", "task_actions", ["task_id", "created_at"])

    # ── Notifications ─────────────────────────────────────────────────────
    if "notification_outbox" not in existing:
        op.create_table(
            "notification_outbox",
            _id(),
            sa.Column("event_kind", sa.String(length=30), nullable=False),
            sa.Column("process_instance_id", sa.String(length=36), nullable=False),
            sa.Column("task_id", sa.String(length=36), nullable=True),
            sa.Column("actor_id", sa.String(length=36), nullable=True),
            sa.Column("recipient_ids", sa.JSON(), nullable=False),
            sa.Column(
                "payload", sa.JSON(), nullable=False,
                comment="Snapshot: process_name, task_name, actor_name, comment",
            ),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["process_instance_id"], ["process_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["task_id"], ["process_task_assignments.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_notification_outbox_process_instance_id", "notification_outbox", ["process_instance_id"],
        )
        op.create_index("ix_notification_outbox_status", "notification_outbox", ["status"])

    if "email_logs" not in existing:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True, comment="Email template used"),
            sa.Column("status", sa.String(length=20), nullable=True, comment="queued, sent, failed"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column(
                "outbox_id", sa.String(length=36), nullable=True,
                comment="Related NotificationOutbox row if applicable",
            ),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])


def downgrade():
    for table in (
        "email_logs",
        "notification_outbox",
        "task_actions",
        "task_assignment_assignees",
        "process_task_assignments",
        "process_instances",
        "task_notify_on_complete_positions",
        "task_notify_on_start_positions",
        "task_approver_positions",
        "process_task_templates",
        "process_template_departments",
        "process_templates",
        "user_positions",
        "job_positions",
        "departments",
        "users",
    ):
        op.drop_table(table)

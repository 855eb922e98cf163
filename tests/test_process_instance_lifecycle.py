"""
Tests for bpm.services.instance_service.

Covers:
    - start: one PENDING assignment per task, in order, assignees snapshot
    - start guards: permission, department membership, blank name, no tasks
    - TaskAssigned notifications
    - cancel: admin or starter, RUNNING only
    - read-side queries
"""

from datetime import datetime, timezone

import pytest

from bpm.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from bpm.models import db
from bpm.models.instance import (
    INSTANCE_CANCELLED,
    INSTANCE_RUNNING,
    TASK_PENDING,
    ProcessTaskAssignment,
)
from bpm.models.notification import EVENT_TASK_ASSIGNED
from bpm.services import instance_service


@pytest.fixture()
def template(org, make_template):
    return make_template(
        [
            {"name": "Manager sign-off", "order": 20,
             "approver_position_ids": [org["manager_position"].id]},
            {"name": "Accounting check", "order": 10,
             "approver_position_ids": [org["accountant"].id]},
            {"name": "Nobody's task", "order": 30, "mandatory": False},
        ],
        departments=[org["department"]],
    )


class TestStart:
    def test_creates_one_pending_assignment_per_task_in_order(self, org, template):
        instance = instance_service.start_process_instance(org["alice"], template.id, "Laptop")

        assert instance.status == INSTANCE_RUNNING
        assert instance.started_by_id == org["alice"].id
        assert instance.end_date_time is None
        assert [a.sequence for a in instance.task_assignments] == [10, 20, 30]
        assert [a.template_task.name for a in instance.task_assignments] == [
            "Accounting check", "Manager sign-off", "Nobody's task",
        ]
        assert all(a.status == TASK_PENDING for a in instance.task_assignments)

    def test_possible_assignees_resolved_from_positions(self, org, template):
        instance = instance_service.start_process_instance(org["alice"], template.id, "Laptop")
        accounting, sign_off, nobody = instance.task_assignments

        assert accounting.possible_assignee_ids == sorted([org["alice"].id, org["bob"].id])
        assert sign_off.possible_assignee_ids == [org["manager"].id]
        assert nobody.possible_assignee_ids == []

    def test_assignees_are_a_snapshot(self, org, template, make_user):
        instance = instance_service.start_process_instance(org["alice"], template.id, "Laptop")
        task_id = instance.task_assignments[0].id

        make_user("Late", positions=[org["accountant"]])

        task = db.session.get(ProcessTaskAssignment, task_id)
        assert len(task.possible_assignee_ids) == 2

    def test_start_date_time_accepts_iso_string(self, org, template):
        instance = instance_service.start_process_instance(
            org["alice"], template.id, "Laptop", start_date_time="2026-01-31T09:00:00Z",
        )
        started = instance.start_date_time
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        assert started == datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)

    def test_bad_start_date_time_rejected(self, org, template):
        with pytest.raises(ValidationError, match="ISO-8601"):
            instance_service.start_process_instance(
                org["alice"], template.id, "Laptop", start_date_time="yesterday",
            )

    def test_blank_name_rejected(self, org, template):
        with pytest.raises(ValidationError, match="name is required"):
            instance_service.start_process_instance(org["alice"], template.id, "   ")

    def test_missing_template(self, org):
        with pytest.raises(NotFoundError):
            instance_service.start_process_instance(org["alice"], "nope", "Laptop")

    def test_outsider_cannot_start(self, template, make_user):
        with pytest.raises(ForbiddenError, match="not allowed to start"):
            instance_service.start_process_instance(make_user("Olive"), template.id, "Laptop")

    def test_admin_can_start_any_template(self, super_admin, template):
        instance = instance_service.start_process_instance(super_admin, template.id, "Laptop")
        assert len(instance.task_assignments) == 3

    def test_no_actor_is_unauthorized(self, template):
        with pytest.raises(UnauthorizedError):
            instance_service.start_process_instance(None, template.id, "Laptop")

    def test_template_without_tasks_rejected(self, super_admin, make_template):
        empty = make_template([])
        with pytest.raises(ValidationError, match="no tasks"):
            instance_service.start_process_instance(super_admin, empty.id, "Nothing")

    def test_task_assigned_notifications(self, org, template, notifier):
        instance_service.start_process_instance(org["alice"], template.id, "Laptop")

        assigned = notifier.events(EVENT_TASK_ASSIGNED)
        by_task = {e["payload"]["task_name"]: e["recipient_ids"] for e in assigned}
        # the starter is never told about their own action
        assert by_task["Accounting check"] == [org["bob"].id]
        assert by_task["Manager sign-off"] == [org["manager"].id]
        assert "Nobody's task" not in by_task
        assert all(e["payload"]["process_name"] == "Laptop" for e in assigned)
        assert all(e["payload"]["link"].startswith("http://bpm.test/process-instances/") for e in assigned)

    def test_on_start_watchers_included(self, org, make_template, notifier, make_position, make_user):
        auditor_pos = make_position("Auditor")
        auditor = make_user("Audrey", positions=[auditor_pos])
        template = make_template(
            [{"name": "Check", "notify_on_start_position_ids": [auditor_pos.id]}],
            departments=[org["department"]],
        )

        instance_service.start_process_instance(org["alice"], template.id, "Run")

        assert notifier.events(EVENT_TASK_ASSIGNED)[0]["recipient_ids"] == [auditor.id]


class TestCancel:
    def test_starter_can_cancel(self, org, template):
        instance = instance_service.start_process_instance(org["alice"], template.id, "Laptop")
        cancelled = instance_service.cancel_process_instance(org["alice"], instance.id, reason="dup")

        assert cancelled.status == INSTANCE_CANCELLED
        assert cancelled.end_date_time is not None
        assert all(a.status == TASK_PENDING for a in cancelled.task_assignments)

    def test_other_employee_cannot_cancel(self, org, template):
        instance = instance_service.start_process_instance(org["alice"], template.id, "Laptop")
        with pytest.raises(ForbiddenError):
            instance_service.cancel_process_instance(org["bob"], instance.id)

    def test_cancel_twice_is_invalid_state(self, org, template, super_admin):
        instance = instance_service.start_process_instance(org["alice"], template.id, "Laptop")
        instance_service.cancel_process_instance(super_admin, instance.id)

        with pytest.raises(InvalidStateError):
            instance_service.cancel_process_instance(super_admin, instance.id)


class TestReads:
    def test_list_my_processes(self, org, template):
        mine = instance_service.start_process_instance(org["alice"], template.id, "Mine")
        instance_service.start_process_instance(org["bob"], template.id, "Bob's")

        rows = instance_service.list_my_processes(org["alice"])
        assert [i.id for i in rows] == [mine.id]

    def test_list_instances_filters_by_status(self, org, template, super_admin):
        a = instance_service.start_process_instance(org["alice"], template.id, "A")
        b = instance_service.start_process_instance(org["alice"], template.id, "B")
        instance_service.cancel_process_instance(super_admin, b.id)

        running = instance_service.list_instances(super_admin, status=INSTANCE_RUNNING)
        assert [i.id for i in running] == [a.id]

    def test_list_instances_rejects_unknown_status(self, super_admin):
        with pytest.raises(ValidationError):
            instance_service.list_instances(super_admin, status="DONE")

    def test_get_instance_missing(self, super_admin):
        with pytest.raises(NotFoundError):
            instance_service.get_instance(super_admin, "nope")

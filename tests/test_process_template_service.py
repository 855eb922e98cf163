"""
Tests for bpm.services.template_service.

Covers:
    - SUPER_ADMIN-only authoring
    - task validation (names, duplicate order) and ordering
    - destructive edit: tasks replaced, in-use tasks detached
    - delete refused while instances exist
    - startable templates filtered by allowed departments
"""

import pytest

from bpm.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from bpm.models import db
from bpm.models.directory import ROLE_ADMIN
from bpm.models.template import ProcessTaskTemplate, ProcessTemplate
from bpm.services import instance_service, template_service


def _payload(**overrides):
    data = {
        "name": "Onboarding",
        "description": "New hire",
        "tasks": [
            {"name": "Laptop", "order": 2},
            {"name": "Contract", "order": 1, "need_file": True},
        ],
    }
    data.update(overrides)
    return data


class TestCreate:
    def test_create_sorts_tasks_by_order(self, super_admin):
        result = template_service.create_process_template(super_admin, _payload())

        assert result["name"] == "Onboarding"
        assert [t["name"] for t in result["tasks"]] == ["Contract", "Laptop"]
        assert result["tasks"][0]["need_file"] is True
        assert result["tasks"][0]["mandatory"] is True
        assert result["icon"] == "workflow"
        assert result["created_by_id"] == super_admin.id

    def test_admin_is_not_a_template_author(self, make_user):
        admin = make_user("Ada", role=ROLE_ADMIN)
        with pytest.raises(ForbiddenError):
            template_service.create_process_template(admin, _payload())

    def test_blank_name_rejected(self, super_admin):
        with pytest.raises(ValidationError, match="name is required"):
            template_service.create_process_template(super_admin, _payload(name=" "))

    def test_blank_task_name_rejected(self, super_admin):
        with pytest.raises(ValidationError):
            template_service.create_process_template(
                super_admin, _payload(tasks=[{"name": "", "order": 1}]),
            )

    def test_duplicate_order_rejected(self, super_admin):
        with pytest.raises(ValidationError, match="Duplicate task order"):
            template_service.create_process_template(
                super_admin,
                _payload(tasks=[{"name": "A", "order": 1}, {"name": "B", "order": 1}]),
            )

    def test_unknown_position_rejected(self, super_admin):
        with pytest.raises(ValidationError, match="Unknown job position"):
            template_service.create_process_template(
                super_admin,
                _payload(tasks=[{"name": "A", "order": 1, "approver_position_ids": ["nope"]}]),
            )

    def test_rule_sets_round_trip(self, super_admin, org):
        result = template_service.create_process_template(super_admin, _payload(
            allowed_department_ids=[org["department"].id],
            tasks=[{
                "name": "Review",
                "order": 1,
                "approver_position_ids": [org["accountant"].id],
                "notify_on_start_position_ids": [org["manager_position"].id],
                "notify_on_complete_position_ids": [org["manager_position"].id],
                "approver_same_department": True,
                "notify_on_complete_department_manager": True,
            }],
        ))

        task = result["tasks"][0]
        assert result["allowed_department_ids"] == [org["department"].id]
        assert task["approver_position_ids"] == [org["accountant"].id]
        assert task["notify_on_start_position_ids"] == [org["manager_position"].id]
        assert task["approver_same_department"] is True
        assert task["notify_on_complete_department_manager"] is True
        assert task["notify_on_start_same_department"] is False

    def test_template_without_tasks_can_be_saved(self, super_admin):
        result = template_service.create_process_template(super_admin, _payload(tasks=[]))
        assert result["task_count"] == 0


class TestUpdate:
    def test_update_replaces_task_list(self, super_admin):
        created = template_service.create_process_template(super_admin, _payload())
        old_ids = {t["id"] for t in created["tasks"]}

        updated = template_service.update_process_template(
            super_admin, created["id"], _payload(name="Onboarding v2", tasks=[{"name": "Badge", "order": 1}]),
        )

        assert updated["name"] == "Onboarding v2"
        assert [t["name"] for t in updated["tasks"]] == ["Badge"]
        for old_id in old_ids:
            assert db.session.get(ProcessTaskTemplate, old_id) is None

    def test_update_detaches_tasks_used_by_instances(self, super_admin, make_template):
        template = make_template([{"name": "Step 1"}, {"name": "Step 2"}])
        instance = instance_service.start_process_instance(super_admin, template.id, "Before edit")
        original_task_ids = [a.template_task_id for a in instance.task_assignments]

        template_service.update_process_template(
            super_admin, template.id, {"name": template.name, "tasks": [{"name": "Only", "order": 1}]},
        )

        db.session.expire_all()
        instance = instance_service.get_instance(super_admin, instance.id)
        assert [a.template_task_id for a in instance.task_assignments] == original_task_ids
        assert [a.template_task.name for a in instance.task_assignments] == ["Step 1", "Step 2"]
        for task_id in original_task_ids:
            assert db.session.get(ProcessTaskTemplate, task_id).process_template_id is None

        refreshed = db.session.get(ProcessTemplate, template.id)
        assert [t.name for t in refreshed.tasks] == ["Only"]

    def test_update_missing_template(self, super_admin):
        with pytest.raises(NotFoundError):
            template_service.update_process_template(super_admin, "nope", _payload())


class TestDelete:
    def test_delete_template(self, super_admin, make_template):
        template = make_template([{"name": "Step"}])
        template_id = template.id
        template_service.delete_process_template(super_admin, template_id)
        assert db.session.get(ProcessTemplate, template_id) is None

    def test_delete_refused_with_instances(self, super_admin, make_template):
        template = make_template([{"name": "Step"}])
        instance_service.start_process_instance(super_admin, template.id, "Run")

        with pytest.raises(ValidationError, match="cannot be deleted"):
            template_service.delete_process_template(super_admin, template.id)


class TestReads:
    def test_get_template_tasks_ordered(self, super_admin):
        created = template_service.create_process_template(super_admin, _payload())
        tasks = template_service.get_template_tasks(super_admin, created["id"])
        assert [t["order"] for t in tasks] == [1, 2]

    def test_startable_templates_follow_department_membership(
        self, super_admin, org, make_template, make_department, make_user
    ):
        finance = make_template([{"name": "A"}], name="Finance flow", departments=[org["department"]])
        make_template([{"name": "B"}], name="IT flow", departments=[make_department("IT")])
        outsider = make_user("Olive")

        startable = template_service.list_startable_templates(org["alice"])
        assert [t["id"] for t in startable] == [finance.id]
        assert template_service.list_startable_templates(outsider) == []
        assert len(template_service.list_startable_templates(super_admin)) == 2

"""
HTTP-level tests: blueprints, actor header and error mapping.

The services are covered in depth by their own test modules; these tests
check the wire contract only (status codes, JSON shape, error bodies).
"""

import io

import pytest

from bpm.models.instance import TASK_APPROVED, TASK_IN_PROGRESS, TASK_PENDING


def _headers(user):
    return {"X-User-Id": user.id}


@pytest.fixture()
def template(org, make_template):
    return make_template(
        [
            {"name": "Accounting check", "approver_position_ids": [org["accountant"].id]},
            {"name": "Invoice", "need_file": True,
             "approver_position_ids": [org["accountant"].id]},
        ],
        departments=[org["department"]],
    )


@pytest.fixture()
def started(client, org, template):
    res = client.post(
        "/api/v1/process-instances",
        json={"process_template_id": template.id, "name": "Laptop"},
        headers=_headers(org["manager"]),
    )
    assert res.status_code == 201
    return res.get_json()


class TestHealth:
    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_ready(self, client):
        assert client.get("/api/v1/health/ready").status_code == 200

    def test_request_id_echoed(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        assert "X-Request-Duration-Ms" in res.headers

    def test_live_reports_collaborators(self, client):
        data = client.get("/api/v1/health/live").get_json()
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["blob_store"]["status"] == "not_configured"
        assert data["checks"]["mail"]["status"] == "log_only"
        assert data["checks"]["outbox"] == {"pending": 0, "sending": 0, "failed": 0, "enabled": True}

    def test_live_counts_failed_outbox_rows(self, client, started, notifier, org):
        notifier.fail = True
        client.post(
            f"/api/v1/tasks/{started['tasks'][0]['id']}/reject",
            json={"comment": "no"},
            headers=_headers(org["alice"]),
        )

        outbox = client.get("/api/v1/health/live").get_json()["checks"]["outbox"]
        assert outbox["failed"] >= 1

    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nowhere")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestActorHeader:
    def test_missing_header_is_401(self, client, template):
        res = client.get("/api/v1/process-templates")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_unknown_user_is_401(self, client):
        res = client.get("/api/v1/tasks/mine", headers={"X-User-Id": "ghost"})
        assert res.status_code == 401

    def test_inactive_user_is_401(self, client, make_user):
        user = make_user("Gone", is_active=False)
        assert client.get("/api/v1/tasks/mine", headers=_headers(user)).status_code == 401


class TestTemplates:
    def test_create_and_list(self, client, super_admin, org):
        res = client.post(
            "/api/v1/process-templates",
            json={
                "name": "Onboarding",
                "allowed_department_ids": [org["department"].id],
                "tasks": [
                    {"name": "Laptop", "order": 2, "approver_position_ids": [org["accountant"].id]},
                    {"name": "Badge", "order": 1, "mandatory": False},
                ],
            },
            headers=_headers(super_admin),
        )
        assert res.status_code == 201
        created = res.get_json()
        assert [t["name"] for t in created["tasks"]] == ["Badge", "Laptop"]

        listed = client.get("/api/v1/process-templates", headers=_headers(super_admin)).get_json()
        assert [t["id"] for t in listed] == [created["id"]]

    def test_employee_cannot_create(self, client, org):
        res = client.post(
            "/api/v1/process-templates",
            json={"name": "Nope", "tasks": []},
            headers=_headers(org["alice"]),
        )
        assert res.status_code == 403

    def test_non_json_body_is_422(self, client, super_admin):
        res = client.post(
            "/api/v1/process-templates",
            data="name=x",
            headers=_headers(super_admin),
        )
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_RULE"

    def test_startable(self, client, org, template, make_user):
        assert [t["id"] for t in client.get(
            "/api/v1/process-templates/startable", headers=_headers(org["alice"]),
        ).get_json()] == [template.id]

        outsider = make_user("Olive")
        assert client.get(
            "/api/v1/process-templates/startable", headers=_headers(outsider),
        ).get_json() == []


class TestInstances:
    def test_start_returns_tasks(self, started, org):
        assert started["status"] == "RUNNING"
        assert started["started_by_id"] == org["manager"].id
        assert [t["name"] for t in started["tasks"]] == ["Accounting check", "Invoice"]
        assert all(t["status"] == TASK_PENDING for t in started["tasks"])

    def test_start_missing_template_is_404(self, client, org):
        res = client.post(
            "/api/v1/process-instances",
            json={"process_template_id": "nope", "name": "X"},
            headers=_headers(org["alice"]),
        )
        assert res.status_code == 404

    def test_get_and_mine(self, client, started, org):
        res = client.get(f"/api/v1/process-instances/{started['id']}", headers=_headers(org["alice"]))
        assert res.status_code == 200
        assert len(res.get_json()["tasks"]) == 2

        mine = client.get("/api/v1/process-instances/mine", headers=_headers(org["manager"])).get_json()
        assert [i["id"] for i in mine] == [started["id"]]

    def test_cancel(self, client, started, org):
        res = client.post(
            f"/api/v1/process-instances/{started['id']}/cancel",
            json={"reason": "duplicate"},
            headers=_headers(org["manager"]),
        )
        assert res.status_code == 200
        assert res.get_json()["status"] == "CANCELLED"

        again = client.post(
            f"/api/v1/process-instances/{started['id']}/cancel", headers=_headers(org["manager"]),
        )
        assert again.status_code == 409


class TestTasks:
    def test_start_then_conflict(self, client, started, org):
        task_id = started["tasks"][0]["id"]

        res = client.post(f"/api/v1/tasks/{task_id}/start", headers=_headers(org["alice"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == TASK_IN_PROGRESS

        res = client.post(f"/api/v1/tasks/{task_id}/start", headers=_headers(org["bob"]))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["current_status"] == TASK_IN_PROGRESS

    def test_approve(self, client, started, org):
        task_id = started["tasks"][0]["id"]
        res = client.post(
            f"/api/v1/tasks/{task_id}/approve",
            json={"comment": "fine"},
            headers=_headers(org["bob"]),
        )
        assert res.status_code == 200
        assert res.get_json()["status"] == TASK_APPROVED

        history = client.get(f"/api/v1/tasks/{task_id}/history", headers=_headers(org["bob"])).get_json()
        assert [h["action"] for h in history] == ["APPROVE"]

    def test_approve_without_body(self, client, started, org):
        task_id = started["tasks"][0]["id"]
        res = client.post(f"/api/v1/tasks/{task_id}/approve", headers=_headers(org["bob"]))
        assert res.status_code == 200

    def test_reject_without_comment_is_422(self, client, started, org):
        task_id = started["tasks"][0]["id"]
        res = client.post(
            f"/api/v1/tasks/{task_id}/reject",
            json={"comment": "<p> </p>"},
            headers=_headers(org["alice"]),
        )
        assert res.status_code == 422
        assert res.get_json()["error"] == "Comment required for rejection"

    def test_non_assignee_is_403(self, client, started, org):
        task_id = started["tasks"][0]["id"]
        res = client.post(f"/api/v1/tasks/{task_id}/start", headers=_headers(org["manager"]))
        assert res.status_code == 403

    def test_task_of_cancelled_instance_is_409(self, client, started, org):
        client.post(f"/api/v1/process-instances/{started['id']}/cancel", headers=_headers(org["manager"]))

        res = client.post(f"/api/v1/tasks/{started['tasks'][0]['id']}/approve", headers=_headers(org["bob"]))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["current_status"] == "CANCELLED"

    def test_my_tasks(self, client, started, org):
        rows = client.get("/api/v1/tasks/mine", headers=_headers(org["alice"])).get_json()
        assert [t["id"] for t in rows] == [t["id"] for t in started["tasks"]]
        assert rows[0]["process_instance"]["name"] == "Laptop"


class TestUpload:
    def _upload(self, client, user, task_id, content=b"%PDF-1.4", filename="invoice.pdf"):
        return client.post(
            f"/api/v1/tasks/{task_id}/file",
            data={"file": (io.BytesIO(content), filename, "application/pdf")},
            content_type="multipart/form-data",
            headers=_headers(user),
        )

    def test_upload_then_approve(self, client, started, org, blob_store):
        task_id = started["tasks"][1]["id"]

        assert client.post(
            f"/api/v1/tasks/{task_id}/approve", headers=_headers(org["alice"]),
        ).status_code == 422

        res = self._upload(client, org["alice"], task_id)
        assert res.status_code == 200
        assert res.get_json()["file_url"] == f"https://cdn.bpm.test/bpm/tasks/{task_id}/invoice.pdf"

        res = client.post(f"/api/v1/tasks/{task_id}/approve", headers=_headers(org["alice"]))
        assert res.get_json()["status"] == TASK_APPROVED

    def test_missing_file_field_is_422(self, client, started, org, blob_store):
        task_id = started["tasks"][1]["id"]
        res = client.post(
            f"/api/v1/tasks/{task_id}/file",
            data={},
            content_type="multipart/form-data",
            headers=_headers(org["alice"]),
        )
        assert res.status_code == 422

    def test_too_large_is_413(self, app, client, started, org, blob_store):
        task_id = started["tasks"][1]["id"]
        original = app.config["MAX_UPLOAD_BYTES"]
        app.config["MAX_UPLOAD_BYTES"] = 4
        try:
            res = self._upload(client, org["alice"], task_id, content=b"0123456789")
        finally:
            app.config["MAX_UPLOAD_BYTES"] = original

        assert res.status_code == 413
        assert res.get_json()["code"] == "ERR_PAYLOAD_TOO_LARGE"
        assert blob_store.objects == {}

    def test_unconfigured_store_is_503(self, client, started, org):
        task_id = started["tasks"][1]["id"]
        res = self._upload(client, org["alice"], task_id)
        assert res.status_code == 503
        assert res.get_json()["code"] == "ERR_NOT_CONFIGURED"


class TestDirectory:
    def test_admin_creates_department_and_position(self, client, super_admin):
        res = client.post("/api/v1/departments", json={"name": "Legal"}, headers=_headers(super_admin))
        assert res.status_code == 201
        dept = res.get_json()

        res = client.post(
            "/api/v1/positions",
            json={"name": "Counsel", "department_id": dept["id"]},
            headers=_headers(super_admin),
        )
        assert res.status_code == 201

        positions = client.get(
            f"/api/v1/positions?department_id={dept['id']}", headers=_headers(super_admin),
        ).get_json()
        assert [p["name"] for p in positions] == ["Counsel"]

    def test_employee_cannot_read_departments(self, client, org):
        assert client.get("/api/v1/departments", headers=_headers(org["alice"])).status_code == 403

    def test_duplicate_email_is_409(self, client, super_admin, org):
        res = client.post(
            "/api/v1/users",
            json={"email": org["alice"].email.upper(), "first_name": "Other"},
            headers=_headers(super_admin),
        )
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

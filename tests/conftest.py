"""
Shared pytest fixtures for the BPM Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - notifier / blob_store: in-memory collaborators registered on the app
    - make_department / make_position / make_user / make_template: factories
    - super_admin: a SUPER_ADMIN actor
"""

import pytest

from bpm import create_app
from bpm.models import db as _db
from bpm.models.directory import ROLE_EMPLOYEE, ROLE_SUPER_ADMIN, Department, JobPosition, User
from bpm.models.template import ProcessTemplate
from bpm.services import template_service


# ── Test doubles ─────────────────────────────────────────────────────────


class FakeNotifier:
    """Records every delivered outbox event instead of sending email."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, recipients, event):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({
            "event_kind": event.event_kind,
            "recipient_ids": sorted(u.id for u in recipients),
            "task_id": event.task_id,
            "payload": dict(event.payload or {}),
        })

    def events(self, kind=None):
        return [e for e in self.sent if kind is None or e["event_kind"] == kind]


class FakeBlobStore:
    """In-memory blob store with the BunnyStorageGateway contract."""

    def __init__(self, configured=True):
        self.configured = configured
        self.objects = {}
        self.error = None

    def is_configured(self):
        return self.configured

    def put(self, content, path, content_type):
        if self.error is not None:
            raise self.error
        self.objects[path] = (content, content_type)
        return f"https://cdn.bpm.test/{path}"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        app.extensions.pop("bpm_notifier", None)
        app.extensions.pop("bpm_blob_store", None)


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture(autouse=True)
def notifier(app):
    """Replace email delivery with an in-memory recorder for every test."""
    fake = FakeNotifier()
    app.extensions["bpm_notifier"] = fake
    return fake


@pytest.fixture()
def blob_store(app):
    store = FakeBlobStore()
    app.extensions["bpm_blob_store"] = store
    return store


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_department():
    def _make(name="Finance", parent=None):
        dept = Department(name=name, parent=parent)
        _db.session.add(dept)
        _db.session.commit()
        return dept
    return _make


@pytest.fixture()
def make_position(make_department):
    def _make(name="Accountant", department=None, manager=None):
        department = department or make_department()
        pos = JobPosition(name=name, department=department, manager_id=manager.id if manager else None)
        _db.session.add(pos)
        _db.session.commit()
        return pos
    return _make


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(first_name="Test", role=ROLE_EMPLOYEE, positions=(), email=None, is_active=True):
        counter["n"] += 1
        user = User(
            email=email or f"{first_name.lower()}{counter['n']}@bpm.test",
            first_name=first_name,
            last_name="User",
            role=role,
            is_active=is_active,
        )
        user.positions = list(positions)
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def super_admin(make_user):
    return make_user(first_name="Root", role=ROLE_SUPER_ADMIN)


@pytest.fixture()
def make_template(super_admin):
    """Create a template through the service and return the ORM row.

    ``tasks`` entries are payload dicts; missing ``order`` defaults to the
    list position.
    """
    def _make(tasks, name="Purchase request", departments=()):
        data = {
            "name": name,
            "allowed_department_ids": [d.id for d in departments],
            "tasks": [dict({"order": i + 1}, **t) for i, t in enumerate(tasks)],
        }
        created = template_service.create_process_template(super_admin, data)
        return _db.session.get(ProcessTemplate, created["id"])
    return _make


@pytest.fixture()
def org(make_department, make_position, make_user):
    """A small organisation: one department, two positions, three people.

    - manager holds "Finance Manager" and manages "Accountant"
    - alice and bob both hold "Accountant"
    """
    dept = make_department("Finance")
    manager_pos = make_position("Finance Manager", department=dept)
    manager = make_user("Mona", positions=[manager_pos])
    accountant = make_position("Accountant", department=dept, manager=manager)
    alice = make_user("Alice", positions=[accountant])
    bob = make_user("Bob", positions=[accountant])
    return {
        "department": dept,
        "manager_position": manager_pos,
        "accountant": accountant,
        "manager": manager,
        "alice": alice,
        "bob": bob,
    }

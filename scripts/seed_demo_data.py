#!/usr/bin/env python3
"""
BPM Workflow Engine — Demo Seed.

Creates a small organisation and one purchase-request template:
  - Departments: Head Office → Finance, IT
  - Positions:   Finance Manager, Accountant, IT Manager, Developer
  - Users:       a SUPER_ADMIN plus one holder per position
  - Template:    "Purchase request" with three tasks (IT review,
                 finance approval with a required invoice, optional
                 archive step)

Usage:
    python scripts/seed_demo_data.py              # Uses development DB
    python scripts/seed_demo_data.py --env testing

This script is idempotent — safe to run multiple times.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from bpm import create_app
from bpm.models import db
from bpm.models.directory import (
    ROLE_EMPLOYEE,
    ROLE_MANAGER,
    ROLE_SUPER_ADMIN,
    Department,
    JobPosition,
    User,
)
from bpm.models.template import ProcessTemplate
from bpm.services import template_service


DEPARTMENTS = [
    # (name, parent, color)
    ("Head Office", None, "#0f172a"),
    ("Finance", "Head Office", "#16a34a"),
    ("IT", "Head Office", "#2563eb"),
]

POSITIONS = [
    # (name, department)
    ("Finance Manager", "Finance"),
    ("Accountant", "Finance"),
    ("IT Manager", "IT"),
    ("Developer", "IT"),
]

USERS = [
    # (email, first, last, role, positions)
    ("admin@bpm.local", "Ada", "Admin", ROLE_SUPER_ADMIN, []),
    ("fiona@bpm.local", "Fiona", "Finch", ROLE_MANAGER, ["Finance Manager"]),
    ("alex@bpm.local", "Alex", "Abbott", ROLE_EMPLOYEE, ["Accountant"]),
    ("ian@bpm.local", "Ian", "Iverson", ROLE_MANAGER, ["IT Manager"]),
    ("dana@bpm.local", "Dana", "Doyle", ROLE_EMPLOYEE, ["Developer"]),
]

MANAGERS = {
    # position -> manager email
    "Accountant": "fiona@bpm.local",
    "Developer": "ian@bpm.local",
}

TEMPLATE_NAME = "Purchase request"


def _get_or_create_department(name, parent, color):
    dept = db.session.execute(select(Department).where(Department.name == name)).scalar_one_or_none()
    if dept is None:
        dept = Department(name=name, parent=parent, color=color)
        db.session.add(dept)
        db.session.flush()
        print(f"  + department {name}")
    return dept


def _get_or_create_position(name, department):
    pos = db.session.execute(
        select(JobPosition).where(JobPosition.name == name, JobPosition.department_id == department.id)
    ).scalar_one_or_none()
    if pos is None:
        pos = JobPosition(name=name, department=department)
        db.session.add(pos)
        db.session.flush()
        print(f"  + position {name}")
    return pos


def _get_or_create_user(email, first, last, role, positions):
    user = db.session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        user = User(email=email, first_name=first, last_name=last, role=role)
        db.session.add(user)
        print(f"  + user {email} ({role})")
    user.positions = positions
    db.session.flush()
    return user


def seed_directory():
    departments = {}
    for name, parent, color in DEPARTMENTS:
        departments[name] = _get_or_create_department(name, departments.get(parent), color)

    positions = {name: _get_or_create_position(name, departments[dept]) for name, dept in POSITIONS}

    users = {}
    for email, first, last, role, pos_names in USERS:
        users[email] = _get_or_create_user(email, first, last, role, [positions[p] for p in pos_names])

    for pos_name, manager_email in MANAGERS.items():
        positions[pos_name].manager_id = users[manager_email].id

    db.session.commit()
    return departments, positions, users


def seed_template(departments, positions, admin):
    exists = db.session.execute(
        select(ProcessTemplate.id).where(ProcessTemplate.name == TEMPLATE_NAME)
    ).first()
    if exists:
        print(f"  = template {TEMPLATE_NAME} already present")
        return

    template_service.create_process_template(admin, {
        "name": TEMPLATE_NAME,
        "description": "Hardware or software purchase with IT review and finance approval.",
        "icon": "shopping-cart",
        "allowed_department_ids": [departments["Finance"].id, departments["IT"].id],
        "tasks": [
            {
                "name": "IT review",
                "order": 1,
                "approver_position_ids": [positions["IT Manager"].id],
                "notify_on_complete_department_manager": True,
            },
            {
                "name": "Finance approval",
                "order": 2,
                "need_file": True,
                "approver_position_ids": [positions["Finance Manager"].id],
                "notify_on_start_position_ids": [positions["Accountant"].id],
            },
            {
                "name": "Archive invoice",
                "order": 3,
                "mandatory": False,
                "approver_position_ids": [positions["Accountant"].id],
            },
        ],
    })
    print(f"  + template {TEMPLATE_NAME}")


def main():
    parser = argparse.ArgumentParser(description="Seed BPM demo data")
    parser.add_argument("--env", default=os.getenv("APP_ENV", "development"))
    args = parser.parse_args()

    app = create_app(args.env)
    with app.app_context():
        db.create_all()
        print("Seeding directory...")
        departments, positions, users = seed_directory()
        print("Seeding templates...")
        seed_template(departments, positions, users["admin@bpm.local"])
        print("Done.")


if __name__ == "__main__":
    main()

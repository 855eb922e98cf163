"""
Directory Blueprint — departments, job positions and users.

Endpoints:
    GET    /api/v1/departments
    POST   /api/v1/departments                 { name, parent_id, email, phone_number, color }
    PUT    /api/v1/departments/<id>
    DELETE /api/v1/departments/<id>

    GET    /api/v1/positions                   ?department_id=...
    POST   /api/v1/positions                   { name, department_id, manager_id }
    PUT    /api/v1/positions/<id>
    DELETE /api/v1/positions/<id>

    GET    /api/v1/users
    POST   /api/v1/users                       { email, first_name, last_name, role, phone, position_ids }
    PUT    /api/v1/users/<id>
    PUT    /api/v1/users/<id>/positions        { position_ids: [...] }

Maintenance is SUPER_ADMIN / ADMIN only; the service enforces it.
"""

import logging

from flask import Blueprint, jsonify, request

from bpm.middleware.actor import current_actor
from bpm.models.directory import ROLE_EMPLOYEE
from bpm.services import directory_service
from bpm.utils.errors import register_error_handlers
from bpm.utils.helpers import get_json_body, parse_bool, parse_id_list

logger = logging.getLogger(__name__)

directory_bp = Blueprint("directory", __name__, url_prefix="/api/v1")
register_error_handlers(directory_bp)


def _department_fields(data: dict) -> dict:
    return {
        "name": data.get("name"),
        "parent_id": data.get("parent_id"),
        "email": data.get("email"),
        "phone_number": data.get("phone_number"),
        "color": data.get("color"),
    }


def _position_fields(data: dict) -> dict:
    return {
        "name": data.get("name"),
        "department_id": data.get("department_id"),
        "manager_id": data.get("manager_id"),
    }


# ═════════════════════════════════════════════════════════════════════════
# Departments
# ═════════════════════════════════════════════════════════════════════════


@directory_bp.route("/departments", methods=["GET"])
def list_departments():
    return jsonify(directory_service.list_departments(current_actor()))


@directory_bp.route("/departments", methods=["POST"])
def create_department():
    data = get_json_body()
    return jsonify(directory_service.create_department(current_actor(), **_department_fields(data))), 201


@directory_bp.route("/departments/<department_id>", methods=["PUT"])
def update_department(department_id):
    data = get_json_body()
    return jsonify(
        directory_service.update_department(current_actor(), department_id, **_department_fields(data))
    )


@directory_bp.route("/departments/<department_id>", methods=["DELETE"])
def delete_department(department_id):
    directory_service.delete_department(current_actor(), department_id)
    return jsonify({"deleted": True, "id": department_id})


# ═════════════════════════════════════════════════════════════════════════
# Job positions
# ═════════════════════════════════════════════════════════════════════════


@directory_bp.route("/positions", methods=["GET"])
def list_positions():
    return jsonify(
        directory_service.list_positions(current_actor(), request.args.get("department_id"))
    )


@directory_bp.route("/positions", methods=["POST"])
def create_position():
    data = get_json_body()
    return jsonify(directory_service.create_job_position(current_actor(), **_position_fields(data))), 201


@directory_bp.route("/positions/<position_id>", methods=["PUT"])
def update_position(position_id):
    data = get_json_body()
    return jsonify(
        directory_service.update_job_position(current_actor(), position_id, **_position_fields(data))
    )


@directory_bp.route("/positions/<position_id>", methods=["DELETE"])
def delete_position(position_id):
    directory_service.delete_job_position(current_actor(), position_id)
    return jsonify({"deleted": True, "id": position_id})


# ═════════════════════════════════════════════════════════════════════════
# Users
# ═════════════════════════════════════════════════════════════════════════


@directory_bp.route("/users", methods=["GET"])
def list_users():
    return jsonify(directory_service.list_users(current_actor()))


@directory_bp.route("/users", methods=["POST"])
def create_user():
    data = get_json_body()
    user = directory_service.create_user(
        current_actor(),
        email=data.get("email"),
        first_name=data.get("first_name", ""),
        last_name=data.get("last_name", ""),
        role=data.get("role") or ROLE_EMPLOYEE,
        phone=data.get("phone"),
        position_ids=parse_id_list(data.get("position_ids")),
    )
    return jsonify(user), 201


@directory_bp.route("/users/<user_id>", methods=["PUT"])
def update_user(user_id):
    data = get_json_body()
    user = directory_service.update_user(
        current_actor(),
        user_id,
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        role=data.get("role"),
        phone=data.get("phone"),
        is_active=parse_bool(data["is_active"]) if "is_active" in data else None,
        position_ids=parse_id_list(data["position_ids"]) if "position_ids" in data else None,
    )
    return jsonify(user)


@directory_bp.route("/users/<user_id>/positions", methods=["PUT"])
def set_user_positions(user_id):
    data = get_json_body()
    return jsonify(
        directory_service.set_user_positions(
            current_actor(), user_id, parse_id_list(data.get("position_ids")),
        )
    )

"""
Process Template Blueprint.

Endpoints:
    GET    /api/v1/process-templates               list all templates
    GET    /api/v1/process-templates/startable     templates the actor may start
    GET    /api/v1/process-templates/<id>          one template with its tasks
    GET    /api/v1/process-templates/<id>/tasks    ordered task definitions
    POST   /api/v1/process-templates               create (SUPER_ADMIN)
    PUT    /api/v1/process-templates/<id>          replace header + tasks (SUPER_ADMIN)
    DELETE /api/v1/process-templates/<id>          delete (SUPER_ADMIN)

Layer contract:
    - Blueprint: parse input, call service, return JSON.
    - NO db.session calls here — all writes owned by template_service.
    - NO inline role checks — all guards in the service.
"""

import logging

from flask import Blueprint, jsonify

from bpm.middleware.actor import current_actor
from bpm.services import template_service
from bpm.utils.errors import register_error_handlers
from bpm.utils.helpers import get_json_body

logger = logging.getLogger(__name__)

process_template_bp = Blueprint("process_template", __name__, url_prefix="/api/v1/process-templates")
register_error_handlers(process_template_bp)


@process_template_bp.route("", methods=["GET"])
def list_templates():
    return jsonify(template_service.list_process_templates(current_actor()))


@process_template_bp.route("/startable", methods=["GET"])
def list_startable():
    return jsonify(template_service.list_startable_templates(current_actor()))


@process_template_bp.route("/<template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(template_service.get_process_template(current_actor(), template_id))


@process_template_bp.route("/<template_id>/tasks", methods=["GET"])
def get_template_tasks(template_id):
    return jsonify(template_service.get_template_tasks(current_actor(), template_id))


@process_template_bp.route("", methods=["POST"])
def create_template():
    data = get_json_body()
    return jsonify(template_service.create_process_template(current_actor(), data)), 201


@process_template_bp.route("/<template_id>", methods=["PUT"])
def update_template(template_id):
    data = get_json_body()
    return jsonify(template_service.update_process_template(current_actor(), template_id, data))


@process_template_bp.route("/<template_id>", methods=["DELETE"])
def delete_template(template_id):
    template_service.delete_process_template(current_actor(), template_id)
    return jsonify({"deleted": True, "id": template_id})

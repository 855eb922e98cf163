"""
Process Instance Blueprint.

Endpoints:
    POST   /api/v1/process-instances               start an instance
           Body: { "process_template_id": "...", "name": "...",
                   "start_date_time": "2026-01-31T09:00:00Z" (optional) }
    GET    /api/v1/process-instances               all instances (?status=RUNNING)
    GET    /api/v1/process-instances/mine          instances started by the actor
    GET    /api/v1/process-instances/<id>          one instance with its tasks
    POST   /api/v1/process-instances/<id>/cancel   manual cancel
           Body: { "reason": "..." } (optional)
"""

import logging

from flask import Blueprint, jsonify, request

from bpm.middleware.actor import current_actor
from bpm.services import instance_service
from bpm.utils.errors import register_error_handlers
from bpm.utils.helpers import get_json_body

logger = logging.getLogger(__name__)

process_instance_bp = Blueprint("process_instance", __name__, url_prefix="/api/v1/process-instances")
register_error_handlers(process_instance_bp)


@process_instance_bp.route("", methods=["POST"])
def start_instance():
    data = get_json_body()
    instance = instance_service.start_process_instance(
        current_actor(),
        data.get("process_template_id"),
        data.get("name"),
        start_date_time=data.get("start_date_time"),
    )
    return jsonify(instance.to_dict(include_tasks=True)), 201


@process_instance_bp.route("", methods=["GET"])
def list_instances():
    rows = instance_service.list_instances(current_actor(), status=request.args.get("status"))
    return jsonify([i.to_dict() for i in rows])


@process_instance_bp.route("/mine", methods=["GET"])
def list_mine():
    rows = instance_service.list_my_processes(current_actor())
    return jsonify([i.to_dict(include_tasks=True) for i in rows])


@process_instance_bp.route("/<instance_id>", methods=["GET"])
def get_instance(instance_id):
    instance = instance_service.get_instance(current_actor(), instance_id)
    return jsonify(instance.to_dict(include_tasks=True))


@process_instance_bp.route("/<instance_id>/cancel", methods=["POST"])
def cancel_instance(instance_id):
    data = get_json_body(required=False)
    instance = instance_service.cancel_process_instance(
        current_actor(), instance_id, reason=data.get("reason"),
    )
    return jsonify(instance.to_dict())

"""
Task Blueprint — task state transitions and task reads.

Endpoints:
    GET    /api/v1/tasks/mine                open tasks the actor may act on
    GET    /api/v1/tasks/<id>                one task assignment
    GET    /api/v1/tasks/<id>/history        TaskActions, most recent first
    POST   /api/v1/tasks/<id>/start          PENDING → IN_PROGRESS
    POST   /api/v1/tasks/<id>/approve        Body: { "comment": "..." } (optional)
    POST   /api/v1/tasks/<id>/reject         Body: { "comment": "..." } (required)
    POST   /api/v1/tasks/<id>/file           multipart/form-data, field "file"

Layer contract:
    - Blueprint: parse input, call task_service, return JSON.
    - State and authorization checks live in task_service only.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from bpm import limiter
from bpm.middleware.actor import current_actor
from bpm.middleware.rate_limiter import actor_rate_limit_key, upload_rate_limit
from bpm.services import task_service
from bpm.utils.errors import E, api_error, register_error_handlers
from bpm.utils.helpers import get_json_body

logger = logging.getLogger(__name__)

task_bp = Blueprint("task", __name__, url_prefix="/api/v1/tasks")
register_error_handlers(task_bp)


@task_bp.route("/mine", methods=["GET"])
def list_my_tasks():
    rows = task_service.list_my_tasks(current_actor())
    result = []
    for t in rows:
        d = t.to_dict()
        d["process_instance"] = t.process_instance.to_dict()
        result.append(d)
    return jsonify(result)


@task_bp.route("/<task_id>", methods=["GET"])
def get_task(task_id):
    return jsonify(task_service.get_task(current_actor(), task_id).to_dict())


@task_bp.route("/<task_id>/history", methods=["GET"])
def get_history(task_id):
    rows = task_service.get_task_history(current_actor(), task_id)
    return jsonify([a.to_dict() for a in rows])


@task_bp.route("/<task_id>/start", methods=["POST"])
def start_task(task_id):
    task = task_service.start_task(current_actor(), task_id)
    return jsonify(task.to_dict())


@task_bp.route("/<task_id>/approve", methods=["POST"])
def approve_task(task_id):
    data = get_json_body(required=False)
    task = task_service.approve_task(current_actor(), task_id, comment=data.get("comment"))
    return jsonify(task.to_dict())


@task_bp.route("/<task_id>/reject", methods=["POST"])
def reject_task(task_id):
    data = get_json_body(required=False)
    task = task_service.reject_task(current_actor(), task_id, data.get("comment"))
    return jsonify(task.to_dict())


@task_bp.route("/<task_id>/file", methods=["POST"])
@limiter.limit(upload_rate_limit, key_func=actor_rate_limit_key)
def upload_file(task_id):
    upload = request.files.get("file")
    content = upload.read() if upload is not None else b""

    max_bytes = current_app.config.get("MAX_UPLOAD_BYTES")
    if max_bytes and len(content) > max_bytes:
        return api_error(
            E.PAYLOAD_TOO_LARGE,
            f"File exceeds the {max_bytes} byte limit",
            details={"size": len(content)},
        )

    task = task_service.upload_task_file(
        current_actor(),
        task_id,
        filename=upload.filename if upload is not None else None,
        content=content,
        content_type=upload.mimetype if upload is not None else None,
    )
    return jsonify(task.to_dict())

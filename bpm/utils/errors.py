"""Standardised API error responses.

Usage
-----
    from bpm.utils.errors import api_error, E, register_error_handlers

    return api_error(E.NOT_FOUND, "Task not found")
    return api_error(E.VALIDATION_REQUIRED, "name is required")

    # Map every engine exception raised under a blueprint to JSON
    register_error_handlers(process_instance_bp)
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from bpm.core.exceptions import (
    ConfigurationError,
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for every application error
    """

    # Authentication – HTTP 401
    UNAUTHORIZED = "ERR_UNAUTHORIZED"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Validation – HTTP 400 (malformed request) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Payload – HTTP 413
    PAYLOAD_TOO_LARGE = "ERR_PAYLOAD_TOO_LARGE"

    # Collaborators – HTTP 502 / 503
    EXTERNAL_SERVICE = "ERR_EXTERNAL_SERVICE"
    NOT_CONFIGURED = "ERR_NOT_CONFIGURED"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.PAYLOAD_TOO_LARGE: 413,
    E.EXTERNAL_SERVICE: 502,
    E.NOT_CONFIGURED: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, current status, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


# ── Exception → response mapping ──────────────────────────────────────


def _handle_unauthorized(error: UnauthorizedError):
    return api_error(E.UNAUTHORIZED, str(error))


def _handle_forbidden(error: ForbiddenError):
    logger.info(
        "Forbidden: actor=%s action=%s endpoint=%s",
        error.user_id, error.action, request.endpoint,
    )
    return api_error(E.FORBIDDEN, str(error))


def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


def _handle_invalid_state(error: InvalidStateError):
    return api_error(
        E.CONFLICT_STATE, str(error),
        details={"action": error.action, "current_status": error.current_status},
    )


def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})


def _handle_configuration(error: ConfigurationError):
    return api_error(E.NOT_CONFIGURED, str(error))


def _handle_external(error: ExternalServiceError):
    return api_error(E.EXTERNAL_SERVICE, str(error), details={"service": error.service})


def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        if error.code == 404:
            code = E.NOT_FOUND
        elif error.code == 413:
            code = E.PAYLOAD_TOO_LARGE
        else:
            code = E.VALIDATION_INVALID if error.code < 500 else E.INTERNAL
        return api_error(code, error.description or error.name, status=error.code)
    logger.exception("Unexpected error endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


_HANDLERS = (
    (UnauthorizedError, _handle_unauthorized),
    (ForbiddenError, _handle_forbidden),
    (NotFoundError, _handle_not_found),
    (ValidationError, _handle_validation),
    (InvalidStateError, _handle_invalid_state),
    (ConflictError, _handle_conflict),
    (ConfigurationError, _handle_configuration),
    (ExternalServiceError, _handle_external),
)


def register_error_handlers(blueprint, *, catch_all: bool = True) -> None:
    """Register the engine exception handlers on a blueprint (or app)."""
    for exc_type, handler in _HANDLERS:
        blueprint.register_error_handler(exc_type, handler)
    if catch_all:
        blueprint.register_error_handler(Exception, _handle_unexpected)

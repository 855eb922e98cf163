"""Shared request-parsing helpers for the BPM blueprints.

get_json_body:  JSON object body or ValidationError (never None)
parse_bool:     tolerant boolean parsing for query strings and form fields
parse_id_list:  list of ids from JSON, or a comma-separated string
"""
from flask import request

from bpm.core.exceptions import ValidationError

_TRUE_VALUES = {"1", "true", "yes", "on"}


def get_json_body(required: bool = True) -> dict:
    """Return the request JSON object.

    Raises ValidationError when the body is missing (and ``required``) or
    is not a JSON object, so blueprints never deal with ``None``.
    """
    data = request.get_json(silent=True)
    if data is None:
        if required:
            raise ValidationError("Request body must be JSON", details={"body": "required"})
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "invalid"})
    return data


def parse_bool(value, default=False):
    """Parse true/false from JSON bools, form strings or query strings."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def parse_id_list(value):
    """Return a list of ids from a JSON list or a comma-separated string."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return [part.strip() for part in str(value).split(",") if part.strip()]

"""
Actor context middleware.

The engine has no login/session of its own: the surrounding application
authenticates the user and forwards the id in the ``X-User-Id`` header.
This middleware loads that user into ``g.actor`` for every API request.

- Header missing, unknown id or inactive user → ``g.actor = None``.
- Protected routes do not check anything here: every service call gets
  the actor explicitly and raises UnauthorizedError (→ 401) on None.

Usage:
    from bpm.middleware.actor import current_actor

    instance = instance_service.start_process_instance(current_actor(), ...)
"""

import logging

from flask import Flask, g, request

from bpm.models import db
from bpm.models.directory import User

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"


def current_actor():
    """Return the User loaded for this request, or None."""
    return g.get("actor")


def init_actor_context(app: Flask):
    """Register the before_request hook that resolves ``g.actor``."""

    @app.before_request
    def _load_actor():
        g.actor = None
        if not request.path.startswith("/api/"):
            return None

        user_id = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not user_id:
            return None

        user = db.session.get(User, user_id)
        if user is None:
            logger.info("Unknown actor id in %s header: %s", ACTOR_HEADER, user_id)
            return None
        if not user.is_active:
            logger.info("Inactive actor rejected", extra={"actor_id": user.id})
            return None

        g.actor = user
        return None

"""
Rate limiting configuration.

The Limiter instance is created in bpm/__init__.py with no default limits.
Task file uploads carry their own route-level limit (UPLOAD_RATE_LIMIT,
keyed by acting user, see task_bp); this module applies the
blueprint-level limits.

Usage:
    from bpm.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import current_app, g, request as flask_request

logger = logging.getLogger(__name__)


def actor_rate_limit_key():
    """Rate limit key: acting user if known, else remote IP."""
    actor = g.get("actor")
    if actor is not None:
        return f"user:{actor.id}"
    return flask_request.remote_addr or "unknown"


def upload_rate_limit():
    """Upload limit string from config, resolved per request."""
    return current_app.config.get("UPLOAD_RATE_LIMIT", "30 per minute")


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Directory + template authoring: 60/minute per actor
        - Task upload:                   UPLOAD_RATE_LIMIT (route-level)
        - Health check:                  exempt

    Rate limiting is disabled in testing mode (RATELIMIT_ENABLED=False).
    """
    if not app.config.get("RATELIMIT_ENABLED", True):
        logger.info("Rate limiter disabled (RATELIMIT_ENABLED=False)")
        return

    for bp_name in ("directory", "process_template"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute", key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    logger.info(
        "Rate limiter configured — admin: 60/min, upload: %s",
        app.config.get("UPLOAD_RATE_LIMIT"),
    )

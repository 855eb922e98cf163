"""
BPM Workflow Engine
Flask Application Factory.

Usage:
    from bpm import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from bpm.config import config
from bpm.models import db
from bpm.middleware.actor import init_actor_context
from bpm.middleware.logging_config import configure_logging
from bpm.middleware.rate_limiter import init_rate_limits
from bpm.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_actor_context(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from bpm.models import directory as _directory_models      # noqa: F401
    from bpm.models import template as _template_models        # noqa: F401
    from bpm.models import instance as _instance_models        # noqa: F401
    from bpm.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables in development (migrations own production) ───
    if app.config.get("DEBUG") and not app.config.get("TESTING"):
        with app.app_context():
            os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from bpm.blueprints.directory_bp import directory_bp
    from bpm.blueprints.health_bp import health_bp
    from bpm.blueprints.process_instance_bp import process_instance_bp
    from bpm.blueprints.process_template_bp import process_template_bp
    from bpm.blueprints.task_bp import task_bp

    app.register_blueprint(directory_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(process_instance_bp)
    app.register_blueprint(process_template_bp)
    app.register_blueprint(task_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("dispatch-notifications")
    def dispatch_notifications_cmd():
        """Deliver pending notification outbox rows."""
        from bpm.services.notification import NotificationService
        result = NotificationService.dispatch_pending()
        logger.info("Dispatched notifications: %s", result)

    @app.cli.command("retry-notifications")
    def retry_notifications_cmd():
        """Re-queue failed notification outbox rows and dispatch them."""
        from bpm.services.notification import NotificationService
        result = NotificationService.retry_failed()
        logger.info("Retried notifications: %s", result)

    # ── Health check (detailed version at /api/v1/health/live) ──────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "BPM Workflow Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def payload_too_large(e):
        return {"error": "Request body too large", "code": "ERR_PAYLOAD_TOO_LARGE"}, 413

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app

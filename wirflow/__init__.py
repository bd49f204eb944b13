"""
WIR Workflow Engine: Flask application factory.

    from wirflow import create_app
    app = create_app()           # APP_ENV, falling back to "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from wirflow.config import config
from wirflow.middleware.logging_config import configure_logging
from wirflow.middleware.rate_limiter import init_rate_limits
from wirflow.middleware.timing import init_request_timing
from wirflow.models import db

logger = logging.getLogger(__name__)

_JSON_BODY_TYPES = ("json", "multipart/form-data")


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores ON DELETE rules unless foreign keys are switched on per connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """Build the application for ``config_name`` (development / testing / production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")
    config_class = config[config_name]
    config_class.validate()

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "").split(",") if o.strip()]
    if origins and origins != ["*"]:
        CORS(app, origins=origins, expose_headers=["X-Request-ID"])
    else:
        CORS(app, expose_headers=["X-Request-ID"])

    init_request_timing(app)

    @app.before_request
    def _require_json_body():
        if request.method not in ("POST", "PATCH") or not request.path.startswith("/api/"):
            return
        content_type = request.content_type or ""
        if request.data and not any(t in content_type for t in _JSON_BODY_TYPES):
            abort(415, description="Content-Type must be application/json")

    # Register models on the metadata before create_all / Alembic autogenerate.
    from wirflow.models import access, checklist, wir  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            app.logger.warning("Schema bootstrap skipped: %s", exc)

    from wirflow.blueprints.checklist_bp import checklist_bp
    from wirflow.blueprints.wir_bp import wir_bp

    app.register_blueprint(wir_bp)
    app.register_blueprint(checklist_bp)
    init_rate_limits(app, limiter)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "WIR Workflow Engine"}

    _register_error_handlers(app)
    return app


def _register_error_handlers(app):
    """App-wide JSON bodies for errors raised outside the blueprint handlers."""

    @app.errorhandler(404)
    def _not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": f"{request.method} not allowed on {request.path}"}, 405

    @app.errorhandler(413)
    def _too_large(e):
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return {"error": f"Request body larger than {limit_mb} MB"}, 413

    @app.errorhandler(415)
    def _unsupported_media(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Rate limit exceeded", "detail": str(e.description)}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("Unhandled server error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

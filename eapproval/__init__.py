"""
Electronic Approval Engine

    from eapproval import create_app
    app = create_app("testing")

``create_app`` wires the extensions, the four API blueprints, request timing,
rate limits and the background job registry around one SQLAlchemy database.
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from eapproval.config import config
from eapproval.middleware.logging_config import configure_logging
from eapproval.middleware.rate_limiter import init_rate_limits
from eapproval.middleware.timing import init_request_timing
from eapproval.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    # SQLite ignores ON DELETE clauses unless asked per connection
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def _register_models():
    # metadata must know every table before create_all / autogenerate
    from eapproval.models import (  # noqa: F401
        audit,
        auto_approval,
        category,
        instance,
        organization,
        route_template,
        scheduling,
    )


def _register_error_pages(app):
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


def create_app(config_name=None):
    """Build the Flask app for ``config_name`` (default: $APP_ENV or development)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)
    init_request_timing(app)

    _register_models()
    db_url = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_url.startswith("sqlite:///") and ":memory:" not in db_url:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        db.create_all()

    # importing approval_bp pulls in auto_approval, which registers its job
    from eapproval.blueprints.approval_bp import approval_bp
    from eapproval.blueprints.auto_approval_bp import auto_approval_bp
    from eapproval.blueprints.category_bp import category_bp
    from eapproval.blueprints.route_template_bp import route_template_bp
    from eapproval.services.scheduler_service import SchedulerService

    for bp in (category_bp, route_template_bp, auto_approval_bp, approval_bp):
        app.register_blueprint(bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Electronic Approval Engine"}

    @app.cli.command("run-auto-approvals")
    def run_auto_approvals_cmd():
        """Apply every deferred auto-approval that is due."""
        outcome = SchedulerService.run_job("auto_approval_runner")
        logger.info("auto_approval_runner %s: %s", outcome["status"],
                    outcome["result"] or outcome["error"])

    _register_error_pages(app)
    init_rate_limits(app, limiter)
    SchedulerService.init_app(app)
    return app

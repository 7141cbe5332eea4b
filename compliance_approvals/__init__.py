"""
Compliance Approvals
Flask Application Factory.

Usage:
    from compliance_approvals import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event as _sa_event, engine as _sa_engine
from sqlalchemy.exc import SQLAlchemyError

from compliance_approvals.config import config
from compliance_approvals.models import db
from compliance_approvals.middleware.logging_config import configure_logging
from compliance_approvals.middleware.rate_limiter import init_rate_limits
from compliance_approvals.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
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
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def init_approval_engine(app):
    """Build the assignment engine for ``app`` and park it in ``app.extensions``.

    Must run inside an application context with the tables present, since
    persisted strategy settings are loaded from the database.
    """
    from compliance_approvals.services.assignment_engine import AssignmentEngine
    from compliance_approvals.services.reviewer_pool import DirectoryReviewerPool
    from compliance_approvals.services.store import SqlApprovalStore

    engine = AssignmentEngine.from_config(SqlApprovalStore(), DirectoryReviewerPool(), app.config)
    app.extensions["approval_engine"] = engine
    return engine


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
    app.config.from_object(config[config_name])

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    # ── Models (register tables with metadata) ───────────────────────────
    from compliance_approvals.models import approval as _approval_models    # noqa: F401
    from compliance_approvals.models import notification as _notification_models  # noqa: F401
    from compliance_approvals.models import directory as _directory_models  # noqa: F401

    # ── Tables + assignment engine ───────────────────────────────────────
    with app.app_context():
        if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and not app.testing:
            os.makedirs(app.instance_path, exist_ok=True)
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)
        init_approval_engine(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from compliance_approvals.blueprints.approval_bp import approval_bp
    from compliance_approvals.blueprints.health_bp import health_bp

    app.register_blueprint(approval_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("add-reviewer")
    @click.argument("reviewer_id")
    @click.option("--role", default="decision_maker", show_default=True)
    @click.option("--department", default=None)
    @click.option("--email", default=None)
    @click.option("--name", "display_name", default=None)
    def add_reviewer_cmd(reviewer_id, role, department, email, display_name):
        """Create or update a reviewer in the local directory."""
        from compliance_approvals.models.directory import Reviewer

        reviewer = db.session.get(Reviewer, reviewer_id) or Reviewer(id=reviewer_id)
        reviewer.role = role
        reviewer.department = department
        reviewer.email = email
        reviewer.display_name = display_name or reviewer_id
        reviewer.is_active = True
        db.session.add(reviewer)
        db.session.commit()
        logger.info("Reviewer %s saved (role=%s, department=%s)", reviewer_id, role, department)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app

"""
Service Log Engine
Flask Application Factory.

Usage:
    from servicelog import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os
import sys

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from servicelog.config import config
from servicelog.models import db
from servicelog.middleware.actor_context import init_actor_context
from servicelog.middleware.jwt_auth import init_jwt_middleware
from servicelog.middleware.logging_config import configure_logging
from servicelog.middleware.rate_limiter import init_rate_limits
from servicelog.middleware.timing import init_request_timing

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
    default_limits=[],                     # per-blueprint limits only
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
    os.makedirs(app.instance_path, exist_ok=True)  # dev SQLite file lives here

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing, then identity (order matters for g.request_id) ──
    init_request_timing(app)
    init_jwt_middleware(app)
    init_actor_context(app)

    # ── Rate limiter (after g.actor is available for the key) ────────────
    limiter.init_app(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH", "DELETE") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.get_data() and "json" not in ct:
                abort(415, description="Content-Type must be application/json")
        return None

    # ── Import all models so Alembic and create_all see them ─────────────
    from servicelog.models import organization as _organization_models  # noqa: F401
    from servicelog.models import service_plan as _service_plan_models  # noqa: F401
    from servicelog.models import audit as _audit_models                # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from servicelog.blueprints.health_bp import health_bp
    from servicelog.blueprints.service_log_bp import service_log_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(service_log_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("verify-audit-trail")
    @click.option("--organization-id", type=int, default=None,
                  help="Only check plans of this organization.")
    def verify_audit_trail_cmd(organization_id):
        """Replay every plan's audit trail and report status drift."""
        from servicelog.services.audit_trail import verify_all_plans
        failures = verify_all_plans(organization_id)
        for report in failures:
            click.echo(f"{report['plan_id']}: {'; '.join(report['problems'])}")
        if failures:
            click.echo(f"{len(failures)} plan(s) inconsistent with their audit trail.")
            sys.exit(1)
        click.echo("Audit trail consistent.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large", "code": "ERR_BAD_REQUEST"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description, "code": "ERR_BAD_REQUEST"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app

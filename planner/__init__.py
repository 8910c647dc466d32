"""
Consultant Allocation Planner
Flask Application Factory.

Usage:
    from planner import create_app
    app = create_app()           # defaults to APP_ENV, then "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from planner.config import config
from planner.models import db
from planner.middleware.jwt_auth import init_jwt_middleware
from planner.middleware.logging_config import configure_logging
from planner.middleware.rate_limiter import init_rate_limits
from planner.middleware.timing import init_request_timing
from planner.utils.errors import E, GENERIC_ERROR_MESSAGE, api_error

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
    default_limits=[],                     # no global limit; applied per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
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
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

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
    init_jwt_middleware(app)

    # ── Models (import so metadata is complete before create_all) ────────
    from planner.models import allocation as _allocation_models     # noqa: F401
    from planner.models import audit as _audit_models               # noqa: F401
    from planner.models import auth as _auth_models                 # noqa: F401
    from planner.models import notification as _notification_models  # noqa: F401
    from planner.models import project as _project_models           # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from planner.blueprints.allocation_bp import allocation_bp
    from planner.blueprints.approval_bp import approval_bp
    from planner.blueprints.health_bp import health_bp
    from planner.blueprints.hour_change_bp import hour_change_bp
    from planner.blueprints.notification_bp import notification_bp
    from planner.blueprints.weekly_plan_bp import weekly_plan_bp

    app.register_blueprint(allocation_bp)
    app.register_blueprint(weekly_plan_bp)
    app.register_blueprint(hour_change_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Drop and recreate all tables first.")
    def seed_demo_cmd(reset):
        """Seed demo users, a project with phases, and print bearer tokens."""
        from planner.services.demo_seed import seed_demo_data
        if reset:
            db.drop_all()
            db.create_all()
        result = seed_demo_data()
        for user in result["users"]:
            click.echo(f"{user['role']:<16} {user['email']:<28} {user['token']}")
        click.echo(f"Project {result['project_id']} with phases {result['phase_ids']}")

    @app.cli.command("detect-expired")
    def detect_expired_cmd():
        """Expire APPROVED allocations on ended phases that still have unplanned hours."""
        from planner.services.phase_end_alerts import detect_expired_allocations
        result = detect_expired_allocations()
        click.echo(f"Checked {result['checked']} allocations, expired {len(result['expired'])}")
        for allocation_id in result["expired"]:
            click.echo(f"  expired allocation {allocation_id}")
        if result["skipped"]:
            click.echo(f"Skipped (state changed): {result['skipped']}")

    @app.cli.command("phase-end-alerts")
    @click.option("--within-days", default=7, show_default=True, type=click.IntRange(0, 90),
                  help="Remind about phases ending within this many days.")
    def phase_end_alerts_cmd(within_days):
        """Notify PMs and consultants about unplanned hours on phases about to end."""
        from planner.services.phase_end_alerts import notify_phases_ending
        result = notify_phases_ending(within_days=within_days)
        click.echo(f"Reminders sent for {len(result['phase_ids'])} phases")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_REQUIRED, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error on %s", request.path, exc_info=True)
        return api_error(E.INTERNAL, GENERIC_ERROR_MESSAGE)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app

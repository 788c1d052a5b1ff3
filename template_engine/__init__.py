"""
Workflow Template Engine
Flask Application Factory.

Usage:
    from template_engine import create_app
    app = create_app()           # defaults to "development"
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

from template_engine.config import config
from template_engine.models import db
from template_engine.middleware.logging_config import configure_logging
from template_engine.middleware.rate_limiter import init_rate_limits
from template_engine.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


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
    default_limits=[],                     # no global limit — apply per-blueprint
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
    config_class = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(config_class() if config_name == "production" else config_class)

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

    # ── Import all models so Alembic can detect them ─────────────────────
    from template_engine.models import template as _template_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from template_engine.blueprints.health_bp import health_bp
    from template_engine.blueprints.template_bp import template_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(template_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("repair-ordering")
    def repair_ordering_cmd():
        """Complete reorders interrupted between staging and final pass."""
        from template_engine.services.ordering import repair_all_staged
        repaired = repair_all_staged()
        click.echo(f"Repaired {repaired} staged rows.")

    @app.cli.command("rebuild-role-usage")
    @click.option("--template-id", type=int, default=None, help="Only rebuild this template.")
    def rebuild_role_usage_cmd(template_id):
        """Recount template role usage from non-archived tasks."""
        from template_engine.services import role_usage_service
        if template_id is not None:
            roles = role_usage_service.rebuild_template_roles(template_id)
            click.echo(f"Template {template_id}: {roles} roles.")
            return
        result = role_usage_service.rebuild_all_template_roles()
        click.echo(f"Rebuilt role usage for {len(result)} templates.")

    @app.cli.command("seed-sample-template")
    def seed_sample_template_cmd():
        """Seed the "Feature Film" sample template."""
        from template_engine.services.sample_template import seed_sample_template
        template = seed_sample_template()
        if template is None:
            click.echo("Sample template already exists.")
        else:
            click.echo(f"Seeded sample template id={template.id}.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app

"""
Team Project Manager
Flask Application Factory.

Usage:
    from teamproject import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")

Startup order matters: logging first, then extensions, then the request
hooks (timing before JWT so every response is timed), then blueprints.
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as sa_engine
from sqlalchemy import event as sa_event
from sqlalchemy.exc import SQLAlchemyError

from teamproject.config import config
from teamproject.middleware.jwt_auth import init_jwt_middleware
from teamproject.middleware.logging_config import configure_logging
from teamproject.middleware.timing import init_request_timing
from teamproject.models import db
from teamproject.services.permission_service import permission_resolver
from teamproject.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)


@sa_event.listens_for(sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores ON DELETE rules unless foreign keys are switched on per connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()

# Only the public confirmation endpoint carries a limit.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _cors_origins(raw: str):
    if not raw or raw == "*":
        return "*"
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def create_app(config_name=None):
    """
    Build the application for ``config_name``.

    Args:
        config_name: "development", "testing" or "production".
                     Defaults to the APP_ENV env var, then "development".
    """
    config_name = config_name or os.getenv("APP_ENV", "development")
    config_class = config[config_name]

    app = Flask(__name__, instance_relative_config=True)
    # ProductionConfig validates its environment on instantiation.
    app.config.from_object(config_class() if config_name == "production" else config_class)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    CORS(app, origins=_cors_origins(app.config.get("CORS_ORIGINS", "*")))
    permission_resolver.init_app(app)

    init_request_timing(app)
    init_jwt_middleware(app)
    register_error_handlers(app)

    # Registers every table on db.metadata (create_all, Alembic autogenerate).
    from teamproject.models import activity, auth, confirmation, notification, project  # noqa: F401

    if not app.config.get("TESTING"):
        _create_tables(app)

    from teamproject.blueprints import register_blueprints
    register_blueprints(app, limiter)

    _register_cli(app)
    logger.debug("Application created (config=%s)", config_name)
    return app


def _create_tables(app):
    os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            app.logger.warning("db.create_all() failed: %s", exc)


def _register_cli(app):
    @app.cli.command("seed-permissions")
    def seed_permissions_cmd():
        """Seed the default roles, permissions and role grants."""
        from teamproject.services.permission_service import seed_default_permissions

        result = seed_default_permissions()
        logger.info("Seeded %s new permissions and %s new grants",
                    result["permissions"], result["grants"])

    @app.cli.command("send-reminders")
    def send_reminders_cmd():
        """Email assignees of open tasks due today, tomorrow or in two days."""
        from teamproject.services.reminder_service import send_due_reminders

        stats = send_due_reminders()
        logger.info("Sent %s reminders (%s emails), %s already sent today",
                    stats["reminders_sent"], stats["emails_sent"], stats["already_sent"])

"""
Team Project Manager
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'teamproject_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

# Stored user role -> application role. Lookups are case-insensitive;
# unknown stored roles map to "user".
DEFAULT_ROLE_MAPPING = {
    "ADMIN": "admin",
    "MANAGER": "manager",
    "PROJECT_MANAGER": "manager",  # legacy alias
    "EMPLOYEE": "user",
    "EMPLOYE": "user",  # legacy alias
}


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # JWT
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_ACCESS_EXPIRES = int(os.getenv("JWT_ACCESS_EXPIRES", "900"))
    JWT_ISSUER = os.getenv("JWT_ISSUER", "teamproject")
    JWT_LEEWAY = int(os.getenv("JWT_LEEWAY", "0"))

    # Logging: "json" or "readable"; unset picks by environment
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Permissions
    PERMISSION_CACHE_TTL = int(os.getenv("PERMISSION_CACHE_TTL", "300"))
    ROLE_MAPPING = DEFAULT_ROLE_MAPPING

    # Confirmation links
    CONFIRMATION_TOKEN_TTL_DAYS = int(os.getenv("CONFIRMATION_TOKEN_TTL_DAYS", "7"))
    CONFIRMATION_RATE_LIMIT = os.getenv("CONFIRMATION_RATE_LIMIT", "30 per minute")
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")

    # Notifications: fan-out on a background thread after commit
    NOTIFICATIONS_ASYNC = os.getenv("NOTIFICATIONS_ASYNC", "true").lower() == "true"

    # Email: Mailjet when keys are set, else SMTP when MAIL_SERVER is set,
    # else log-only mode.
    MAILJET_API_KEY = os.getenv("MAILJET_API_KEY")
    MAILJET_API_SECRET = os.getenv("MAILJET_API_SECRET")
    MAILJET_API_URL = os.getenv("MAILJET_API_URL", "https://api.mailjet.com/v3.1/send")
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_FROM_EMAIL = os.getenv("MAIL_FROM_EMAIL", "no-reply@tdrprojects.com")
    MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "TDR Projects")
    MAIL_TIMEOUT = int(os.getenv("MAIL_TIMEOUT", "10"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SECRET_KEY = "test-secret-key"
    RATELIMIT_ENABLED = False
    NOTIFICATIONS_ASYNC = False
    MAILJET_API_KEY = None
    MAILJET_API_SECRET = None
    MAIL_SERVER = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Heroku-style URLs use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

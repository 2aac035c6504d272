"""
Application factory, config and CLI tests.
"""

import pytest

from teamproject import create_app
from teamproject.config import ProductionConfig
from teamproject.models.auth import Permission


def test_testing_config(app):
    assert app.config["TESTING"] is True
    assert app.config["NOTIFICATIONS_ASYNC"] is False


def test_blueprints_registered(app):
    assert {"health_bp", "tasks", "stages", "task_dependencies", "confirmations"} <= set(app.blueprints)


def test_production_requires_database_url(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_app("production")


def test_seed_permissions_cli_is_idempotent(app):
    before = Permission.query.count()
    result = app.test_cli_runner().invoke(args=["seed-permissions"])
    assert result.exit_code == 0
    assert Permission.query.count() == before


def test_cors_preflight(client):
    res = client.options(
        "/api/v1/health",
        headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "GET"},
    )
    assert "Access-Control-Allow-Origin" in res.headers

"""
Team Project Manager
Blueprint registry.

Routes stay thin: decorators check authentication and the coarse role
permission, then one service call does the work.  Domain errors raised by
services become JSON envelopes in ``teamproject.utils.errors``.
"""

from flask import request

from teamproject.core.exceptions import ValidationError


def json_body() -> dict:
    """Request JSON object, or an empty dict when the body is absent."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Le corps de la requête doit être un objet JSON")
    return data


def register_blueprints(app, limiter) -> None:
    from teamproject.blueprints.confirmation_bp import confirmation_bp
    from teamproject.blueprints.dependency_bp import dependency_bp
    from teamproject.blueprints.health_bp import health_bp
    from teamproject.blueprints.stage_bp import stage_bp
    from teamproject.blueprints.task_bp import task_bp

    for bp in (health_bp, task_bp, stage_bp, dependency_bp, confirmation_bp):
        app.register_blueprint(bp)

    # Probes must never be throttled.
    limiter.exempt(health_bp)

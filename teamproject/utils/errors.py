"""Standardised API error responses.

Usage
-----
    from teamproject.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Tâche non trouvée")
    return api_error(E.VALIDATION_REQUIRED, "task_id et dependent_task_id sont requis")

Services raise ``teamproject.core.exceptions`` types instead;
``register_error_handlers`` turns those into the same response shape.
"""

from __future__ import annotations

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from teamproject.core.exceptions import (
    AccessDenied,
    AuthenticationRequired,
    ConflictError,
    DomainError,
    InvariantViolation,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR = "Erreur serveur"


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    INVARIANT = "ERR_INVARIANT"

    NOT_FOUND = "ERR_NOT_FOUND"

    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    FORBIDDEN = "ERR_FORBIDDEN"
    ACCESS_DENIED = "ERR_ACCESS_DENIED"

    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.UNAUTHENTICATED: 401,
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.INVARIANT: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.FORBIDDEN: 403,
    E.ACCESS_DENIED: 403,
    E.INTERNAL: 500,
}

# Most specific first: InvariantViolation subclasses keep their own code.
_EXCEPTION_STATUS: list[tuple[type[DomainError], int]] = [
    (AuthenticationRequired, 401),
    (PermissionDenied, 403),
    (AccessDenied, 403),
    (ValidationError, 400),
    (InvariantViolation, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
]


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for the UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.  Keys are also copied to the top level
        of the body (e.g. ``incomplete_tasks``).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "success": False,
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details
        for key, value in details.items():
            body.setdefault(key, value)

    return jsonify(body), http_status


def status_for(exc: DomainError) -> int:
    for exc_type, status in _EXCEPTION_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 400


def register_error_handlers(app):
    """Map the exception taxonomy to JSON responses once, app-wide."""

    @app.errorhandler(DomainError)
    def _handle_domain_error(exc: DomainError):
        status = status_for(exc)
        if status in (401, 403):
            logger.warning("%s: %s", type(exc).__name__, exc.message)
        return api_error(exc.code, exc.message, status=status, details=exc.details)

    @app.errorhandler(404)
    def _handle_404(_exc):
        return api_error(E.NOT_FOUND, "Ressource introuvable")

    @app.errorhandler(405)
    def _handle_405(_exc):
        return api_error(E.VALIDATION_INVALID, "Méthode non autorisée", status=405)

    @app.errorhandler(429)
    def _handle_429(_exc):
        return api_error(E.VALIDATION_INVALID, "Trop de requêtes", status=429)

    @app.errorhandler(Exception)
    def _handle_unexpected(exc):
        if isinstance(exc, HTTPException):
            return api_error(E.VALIDATION_INVALID, exc.description or exc.name, status=exc.code)
        logger.exception("Unhandled error: %s", exc)
        return api_error(E.INTERNAL, GENERIC_SERVER_ERROR)

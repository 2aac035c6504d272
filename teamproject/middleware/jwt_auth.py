"""
JWT Auth Middleware — resolves the Bearer token to ``g.current_user``.

``g.current_user`` is an ``AuthUser`` (stored role, mapped application role
and permission names) or None.  An invalid or expired token, or a token
for an inactive user, leaves it None; the route decorators decide whether
that is a 401.
"""

import logging

import jwt as pyjwt
from flask import g, request

from teamproject.core.identity import AuthUser
from teamproject.models import db
from teamproject.models.auth import User
from teamproject.services.jwt_service import decode_access_token
from teamproject.services.permission_service import map_role, permission_resolver

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/confirmations/",
)


def _load_auth_user(token: str) -> AuthUser | None:
    try:
        payload = decode_access_token(token)
    except pyjwt.ExpiredSignatureError:
        logger.info("Expired access token")
        return None
    except pyjwt.InvalidTokenError:
        logger.info("Invalid access token")
        return None

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    permissions = permission_resolver.permissions_for(map_role(user.role))
    return AuthUser.from_user(user, permissions)


def verify_auth() -> AuthUser | None:
    """Resolve the caller of the current request from its Authorization header."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return _load_auth_user(auth_header[7:])


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.current_user = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        g.current_user = verify_auth()

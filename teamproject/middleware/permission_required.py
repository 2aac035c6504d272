"""
Permission Decorators — JWT-aware RBAC decorators for route protection.

Usage:
    @bp.route("/tasks/<int:task_id>", methods=["PATCH"])
    @require_permission("tasks", "update")
    def update_task(task_id):
        ...

Both decorators answer 401 when ``g.current_user`` is not set.
``require_permission`` answers 403 with the resolver's denial message when
the caller's application role lacks the permission.
"""

import functools
import logging

from flask import g

from teamproject.core.identity import AuthUser
from teamproject.services.permission_service import permission_resolver
from teamproject.utils.errors import E, api_error

logger = logging.getLogger(__name__)

UNAUTHENTICATED_MESSAGE = "Non authentifié"


def current_user() -> AuthUser | None:
    return getattr(g, "current_user", None)


def require_auth(f):
    """Decorator: require an authenticated caller."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if current_user() is None:
            return api_error(E.UNAUTHENTICATED, UNAUTHENTICATED_MESSAGE)
        return f(*args, **kwargs)
    return decorated


def require_permission(resource: str, action: str):
    """
    Decorator: require the caller's role to hold ``action`` on ``resource``.

    Args:
        resource: e.g. "tasks"
        action: e.g. "update"
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = current_user()
            if user is None:
                return api_error(E.UNAUTHENTICATED, UNAUTHENTICATED_MESSAGE)

            check = permission_resolver.require_permission(user.app_role, resource, action)
            if not check.allowed:
                logger.warning(
                    "User %d denied: missing %s.%s on %s",
                    user.id, resource, action, f.__name__,
                )
                return api_error(E.FORBIDDEN, check.error)

            return f(*args, **kwargs)
        return decorated
    return decorator

"""
Permission Service — DB-driven RBAC on application roles, with cache.

Stored user roles (ADMIN / MANAGER / EMPLOYEE) map to application roles
(admin / manager / user) through the ``ROLE_MAPPING`` config table.  Grants
live in roles → role_permissions → permissions.

Evaluation is deny-by-default: a (role, resource, action) triple is allowed
only when one of the role's permissions matches it, either through the
wildcard entry (resource ``*``) or on the exact resource, and with action
``manage`` or the requested action.

The role→permission table is cached process-wide and rebuilt wholesale
when older than ``PERMISSION_CACHE_TTL`` seconds.  Reloads are single-flight:
concurrent callers past an expired TTL wait on one reload instead of racing.
A failed load is logged and answers "no permissions" (fail closed).
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from teamproject.config import DEFAULT_ROLE_MAPPING
from teamproject.core.exceptions import PermissionDenied
from teamproject.models import db
from teamproject.models.auth import Permission, Role, RolePermission

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300  # 5 minutes
WILDCARD_RESOURCE = "*"
MANAGE_ACTION = "manage"


# ═══════════════════════════════════════════════════════════════
# Role mapping
# ═══════════════════════════════════════════════════════════════
def configured_role_mapping() -> dict[str, str]:
    if has_app_context():
        return current_app.config.get("ROLE_MAPPING") or DEFAULT_ROLE_MAPPING
    return DEFAULT_ROLE_MAPPING


def map_role(stored_role: str | None, mapping: dict[str, str] | None = None) -> str:
    """Map a stored user role to ``admin`` / ``manager`` / ``user``."""
    if not stored_role:
        return "user"
    table = {k.upper(): v for k, v in (mapping or configured_role_mapping()).items()}
    return table.get(str(stored_role).strip().upper(), "user")


# ═══════════════════════════════════════════════════════════════
# Cache
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class GrantedPermission:
    name: str
    resource: str
    action: str


@dataclass(frozen=True)
class PermissionCheck:
    allowed: bool
    error: Optional[str] = None


PermissionTables = tuple[list[GrantedPermission], dict[str, list[GrantedPermission]]]


def load_permission_tables() -> PermissionTables:
    """Read the flat permission list and the role→permissions map."""
    try:
        permissions = [
            GrantedPermission(p.name, p.resource, p.action)
            for p in Permission.query.order_by(Permission.id).all()
        ]
        rows = (
            db.session.query(Role.name, Permission)
            .join(RolePermission, RolePermission.role_id == Role.id)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .all()
        )
    except SQLAlchemyError:
        db.session.rollback()
        raise

    role_permissions: dict[str, list[GrantedPermission]] = {}
    for role_name, perm in rows:
        role_permissions.setdefault(role_name, []).append(
            GrantedPermission(perm.name, perm.resource, perm.action)
        )
    return permissions, role_permissions


class PermissionCache:
    """
    Wholesale-reloaded role→permissions table.

    Args:
        ttl: seconds before the table is considered stale.
        clock: monotonic time source; tests inject a fake one.
        loader: callable returning ``(permissions, role_permissions)``.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        loader: Callable[[], PermissionTables] = load_permission_tables,
    ) -> None:
        self.ttl = ttl
        self.clock = clock
        self._loader = loader
        self._lock = threading.Lock()
        self._permissions: list[GrantedPermission] = []
        self._role_permissions: dict[str, list[GrantedPermission]] = {}
        self._loaded_at: float | None = None
        self.reload_count = 0

    def is_fresh(self) -> bool:
        loaded_at = self._loaded_at
        return loaded_at is not None and self.clock() - loaded_at <= self.ttl

    def role_permissions(self, role: str) -> list[GrantedPermission]:
        self._ensure_fresh()
        return list(self._role_permissions.get(role, []))

    def all_permissions(self) -> list[GrantedPermission]:
        self._ensure_fresh()
        return list(self._permissions)

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None

    def _ensure_fresh(self) -> None:
        if self.is_fresh():
            return
        with self._lock:
            # Another caller may have reloaded while we waited.
            if self.is_fresh():
                return
            self._reload()

    def _reload(self) -> None:
        self.reload_count += 1
        try:
            permissions, role_permissions = self._loader()
        except Exception:
            logger.exception("Permission tables could not be loaded; denying until next reload")
            self._permissions = []
            self._role_permissions = {}
            self._loaded_at = None
            return
        # Snapshot: later changes to the loader's objects must not leak in.
        self._permissions = list(permissions)
        self._role_permissions = {role: list(perms) for role, perms in role_permissions.items()}
        self._loaded_at = self.clock()
        logger.debug(
            "Permission cache reloaded: %d permissions, %d roles",
            len(permissions), len(role_permissions),
        )


# ═══════════════════════════════════════════════════════════════
# Resolver
# ═══════════════════════════════════════════════════════════════
class PermissionResolver:
    """Answers "may this application role ever do ``action`` on ``resource``"."""

    def __init__(self, cache: PermissionCache | None = None) -> None:
        self.cache = cache or PermissionCache()

    def init_app(self, app) -> None:
        self.cache.ttl = app.config.get("PERMISSION_CACHE_TTL", DEFAULT_CACHE_TTL)
        self.cache.invalidate()

    def has_permission(self, role: str, resource: str, action: str) -> bool:
        for perm in self.cache.role_permissions(role):
            if perm.action != MANAGE_ACTION and perm.action != action:
                continue
            if perm.resource == WILDCARD_RESOURCE or perm.resource == resource:
                return True
        return False

    def require_permission(self, role: str, resource: str, action: str) -> PermissionCheck:
        if self.has_permission(role, resource, action):
            return PermissionCheck(allowed=True)
        return PermissionCheck(
            allowed=False,
            error=f"Permission denied: {role} cannot {action} {resource}",
        )

    def ensure_permission(self, role: str, resource: str, action: str) -> None:
        """Raise PermissionDenied unless the role holds the permission."""
        check = self.require_permission(role, resource, action)
        if not check.allowed:
            logger.warning("Role %s denied %s on %s", role, action, resource)
            raise PermissionDenied(check.error, resource=resource, action=action)

    def permissions_for(self, role: str) -> list[str]:
        return sorted({p.name for p in self.cache.role_permissions(role)})

    def invalidate(self) -> None:
        self.cache.invalidate()


permission_resolver = PermissionResolver()


def has_permission(role: str, resource: str, action: str) -> bool:
    return permission_resolver.has_permission(role, resource, action)


def require_permission(role: str, resource: str, action: str) -> PermissionCheck:
    return permission_resolver.require_permission(role, resource, action)


def invalidate_all_cache() -> None:
    permission_resolver.invalidate()


# ═══════════════════════════════════════════════════════════════
# Default catalogue
# ═══════════════════════════════════════════════════════════════
_CRUD = ("create", "read", "update", "delete")

DEFAULT_PERMISSIONS: list[tuple[str, str, str, str]] = [
    # (name, resource, action, description)
    *[(f"projects.{a}", "projects", a, f"Projets: {a}") for a in _CRUD],
    *[(f"tasks.{a}", "tasks", a, f"Tâches: {a}") for a in _CRUD],
    ("tasks.assign", "tasks", "assign", "Assigner des tâches"),
    *[(f"stages.{a}", "stages", a, f"Étapes: {a}") for a in _CRUD],
    *[(f"documents.{a}", "documents", a, f"Documents: {a}") for a in _CRUD],
    *[(f"users.{a}", "users", a, f"Utilisateurs: {a}") for a in _CRUD],
    ("activity-logs.read", "activity-logs", "read", "Lire les logs d'activité"),
    ("dashboard.read", "dashboard", "read", "Lire le tableau de bord"),
    ("admin.access", WILDCARD_RESOURCE, MANAGE_ACTION, "Accès administrateur complet"),
]

_MANAGER_RESOURCES = {"projects", "tasks", "stages", "documents", "activity-logs", "dashboard"}
_USER_WRITE_RESOURCES = {"tasks", "stages", "documents"}


def _default_grant(role: str, resource: str, action: str, name: str) -> bool:
    if role == "admin":
        return True
    if role == "manager":
        return resource in _MANAGER_RESOURCES or name == "users.read"
    if role == "user":
        if resource in _USER_WRITE_RESOURCES:
            return action in ("create", "read", "update")
        return name in ("projects.read", "activity-logs.read", "dashboard.read")
    return False


def seed_default_permissions() -> dict:
    """
    Create the default permission catalogue and role grants.

    Idempotent: existing rows are kept, missing ones are added.  Commits and
    invalidates the cache.

    Returns:
        ``{"permissions": <new>, "grants": <new>}``
    """
    roles = {}
    for role_name in ("admin", "manager", "user"):
        role = Role.query.filter_by(name=role_name).first()
        if role is None:
            role = Role(name=role_name, description=f"Rôle {role_name}")
            db.session.add(role)
        roles[role_name] = role

    new_permissions = 0
    permissions = {}
    for name, resource, action, description in DEFAULT_PERMISSIONS:
        perm = Permission.query.filter_by(name=name).first()
        if perm is None:
            perm = Permission(name=name, resource=resource, action=action, description=description)
            db.session.add(perm)
            new_permissions += 1
        permissions[name] = perm
    db.session.flush()

    existing = {
        (rp.role_id, rp.permission_id)
        for rp in RolePermission.query.all()
    }
    new_grants = 0
    for role_name, role in roles.items():
        for name, perm in permissions.items():
            if not _default_grant(role_name, perm.resource, perm.action, name):
                continue
            if (role.id, perm.id) in existing:
                continue
            db.session.add(RolePermission(role_id=role.id, permission_id=perm.id))
            new_grants += 1

    db.session.commit()
    invalidate_all_cache()
    logger.info("Seeded %d permissions and %d role grants", new_permissions, new_grants)
    return {"permissions": new_permissions, "grants": new_grants}

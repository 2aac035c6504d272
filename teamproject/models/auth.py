"""
Auth Models — users, roles, permissions, role_permissions.

Users carry a single stored role (ADMIN | MANAGER | EMPLOYEE). The stored
role is mapped to an application role (admin | manager | user) through the
``ROLE_MAPPING`` config table; grants are attached to application roles.
"""

from datetime import datetime, timezone

from teamproject.models import db


STORED_ROLES = {"ADMIN", "MANAGER", "EMPLOYEE"}
APP_ROLES = {"admin", "manager", "user"}


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=False, unique=True, index=True)
    role = db.Column(db.String(30), nullable=False, default="EMPLOYEE")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
        }

    def to_summary(self):
        return {"id": self.id, "name": self.name, "email": self.email}

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"


# ═══════════════════════════════════════════════════════════════
# 2. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)  # admin, manager, user
    description = db.Column(db.String(300))

    role_permissions = db.relationship(
        "RolePermission", back_populates="role", cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Role {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 3. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)  # e.g. tasks.assign
    resource = db.Column(db.String(50), nullable=False)  # '*' = every resource
    action = db.Column(db.String(30), nullable=False)  # create, read, update, delete, assign, manage
    description = db.Column(db.String(300))

    __table_args__ = (
        db.UniqueConstraint("resource", "action", name="uq_permission_resource_action"),
    )

    role_permissions = db.relationship(
        "RolePermission", back_populates="permission", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "resource": self.resource,
            "action": self.action,
            "description": self.description,
        }


# ═══════════════════════════════════════════════════════════════
# 4. ROLE_PERMISSIONS (Junction table)
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")
    permission = db.relationship("Permission", back_populates="role_permissions")

"""Authenticated caller identity passed from the HTTP layer into services."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class AuthUser:
    id: int
    name: str
    email: str
    role: str  # stored role, e.g. "MANAGER"
    app_role: str  # mapped role: admin | manager | user
    permissions: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_user(cls, user, permissions=()):
        from teamproject.services.permission_service import map_role

        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            app_role=map_role(user.role),
            permissions=tuple(permissions),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "permissions": list(self.permissions),
        }

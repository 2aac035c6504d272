"""
Application-wide exception hierarchy.

Services raise these types; ``teamproject.utils.errors.register_error_handlers``
maps each of them to one HTTP status code, app-wide:

    AuthenticationRequired  401
    PermissionDenied        403   role lacks the coarse permission
    AccessDenied            403   role has it, but not on this entity
    ValidationError         400
    NotFoundError           404
    ConflictError           409
    InvariantViolation      400   operation would break a domain rule

Anything else is an unexpected error and surfaces as a generic 500.

Usage:
    from teamproject.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError("Task", 42, message="Tâche non trouvée")
    raise ValidationError("Aucun champ à mettre à jour")
"""


class DomainError(Exception):
    """Base class for every expected, user-facing failure."""

    code = "ERR_DOMAIN"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AuthenticationRequired(DomainError):
    code = "ERR_UNAUTHENTICATED"

    def __init__(self, message: str = "Non authentifié") -> None:
        super().__init__(message)


class PermissionDenied(DomainError):
    """The caller's role is never allowed to perform ``action`` on ``resource``."""

    code = "ERR_FORBIDDEN"

    def __init__(self, message: str, resource: str | None = None, action: str | None = None) -> None:
        self.resource = resource
        self.action = action
        super().__init__(message)


class AccessDenied(DomainError):
    """The caller's role holds the permission, but not for this entity."""

    code = "ERR_ACCESS_DENIED"


class ValidationError(DomainError):
    """Malformed or missing input, including cheap invariant pre-checks.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION"


class NotFoundError(DomainError):
    """Raised when a referenced entity does not exist.

    Args:
        resource: Model/entity name (e.g. "Task", "Stage").
        resource_id: The PK that was looked up. Logged, not returned.
        message: User-facing message; defaults to an English sentence.
    """

    code = "ERR_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = f"{resource}"
            if resource_id is not None:
                message += f" id={resource_id}"
            message += " not found"
        super().__init__(message)


class ConflictError(DomainError):
    """Raised when an operation would duplicate a unique resource.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
        message: User-facing message; defaults to an English sentence.
    """

    code = "ERR_CONFLICT"

    def __init__(
        self,
        resource: str,
        field: str,
        value=None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        if message is None:
            message = f"{resource} with {field}={value!r} already exists"
        super().__init__(message)


class InvariantViolation(DomainError):
    """The request is well-formed but would break a domain rule."""

    code = "ERR_INVARIANT"


class TransitionError(InvariantViolation):
    """Raised when a status transition is not allowed by the state machine."""

    code = "ERR_TRANSITION"

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"Transition de statut invalide ({entity}): {current} → {target}",
            details={"current_status": current, "target_status": target},
        )


class IncompleteTasksError(InvariantViolation):
    code = "ERR_INCOMPLETE_TASKS"

    def __init__(self, incomplete_tasks: int) -> None:
        self.incomplete_tasks = incomplete_tasks
        super().__init__(
            "Toutes les tâches de cette étape doivent être terminées avant de valider l'étape",
            details={"incomplete_tasks": incomplete_tasks},
        )


class CircularDependencyError(InvariantViolation):
    code = "ERR_CIRCULAR_DEPENDENCY"

    def __init__(self, task_id: int, dependent_task_id: int) -> None:
        self.task_id = task_id
        self.dependent_task_id = dependent_task_id
        super().__init__("Cette dépendance créerait une dépendance circulaire")

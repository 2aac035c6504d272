"""
Task dependency graph — edge creation with cycle detection.

Edge convention: ``TaskDependency(task_id=A, dependent_task_id=B)`` means A
must complete before B.  Traversal always follows task_id → dependent_task_id.

Adding A → B closes a cycle iff A is already reachable from B.
"""

import logging

from sqlalchemy import select

from teamproject.core.exceptions import (
    CircularDependencyError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from teamproject.core.identity import AuthUser
from teamproject.models import db
from teamproject.models.activity import write_activity
from teamproject.models.project import Task, TaskDependency

logger = logging.getLogger(__name__)


def has_circular_dependency(task_id: int, new_dependent_id: int) -> bool:
    """
    Return True if adding edge ``task_id → new_dependent_id`` would close a cycle.

    Walks the existing edges from ``new_dependent_id`` with a recursive CTE.
    ``UNION`` (not ``UNION ALL``) drops already-reached nodes, so the walk
    terminates even on graphs that already contain a cycle.
    """
    if task_id == new_dependent_id:
        return True

    reachable = (
        select(TaskDependency.dependent_task_id.label("node"))
        .where(TaskDependency.task_id == new_dependent_id)
        .cte("reachable", recursive=True)
    )
    reachable = reachable.union(
        select(TaskDependency.dependent_task_id)
        .join(reachable, TaskDependency.task_id == reachable.c.node)
    )
    hit = db.session.execute(
        select(reachable.c.node).where(reachable.c.node == task_id).limit(1)
    ).first()
    return hit is not None


def add_dependency(task_id, dependent_task_id, actor: AuthUser) -> TaskDependency:
    """
    Create the edge ``task_id → dependent_task_id``.

    Checks, in order: both ids given, not a self-dependency, both tasks
    exist, edge not already present, no cycle.
    """
    if not task_id or not dependent_task_id:
        raise ValidationError("task_id et dependent_task_id sont requis")
    try:
        task_id, dependent_task_id = int(task_id), int(dependent_task_id)
    except (TypeError, ValueError):
        raise ValidationError("task_id et dependent_task_id doivent être des entiers")
    if task_id == dependent_task_id:
        raise ValidationError("Une tâche ne peut pas dépendre d'elle-même")

    found = db.session.execute(
        select(Task.id).where(Task.id.in_([task_id, dependent_task_id]))
    ).scalars().all()
    if len(set(found)) != 2:
        raise NotFoundError(
            "Task", f"{task_id},{dependent_task_id}",
            message="Une ou plusieurs tâches spécifiées n'existent pas",
        )

    existing = TaskDependency.query.filter_by(
        task_id=task_id, dependent_task_id=dependent_task_id,
    ).first()
    if existing:
        raise ConflictError(
            "TaskDependency", "task_id,dependent_task_id", f"{task_id},{dependent_task_id}",
            message="Cette dépendance existe déjà",
        )

    if has_circular_dependency(task_id, dependent_task_id):
        logger.info("Rejected dependency %s -> %s: cycle", task_id, dependent_task_id)
        raise CircularDependencyError(task_id, dependent_task_id)

    try:
        dep = TaskDependency(task_id=task_id, dependent_task_id=dependent_task_id)
        db.session.add(dep)
        db.session.flush()
        write_activity(
            user_id=actor.id,
            action="create",
            entity_type="task_dependency",
            entity_id=dep.id,
            details=f"Dépendance créée: tâche {task_id} → tâche {dependent_task_id}",
            metadata={"task_id": task_id, "dependent_task_id": dependent_task_id},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Dependency %s -> %s created by user %s", task_id, dependent_task_id, actor.id)
    return dep


def remove_dependency(dependency_id: int, actor: AuthUser) -> None:
    dep = db.session.get(TaskDependency, dependency_id)
    if dep is None:
        raise NotFoundError("TaskDependency", dependency_id, message="Dépendance non trouvée")
    try:
        write_activity(
            user_id=actor.id,
            action="delete",
            entity_type="task_dependency",
            entity_id=dep.id,
            details=f"Dépendance supprimée: tâche {dep.task_id} → tâche {dep.dependent_task_id}",
            metadata={"task_id": dep.task_id, "dependent_task_id": dep.dependent_task_id},
        )
        db.session.delete(dep)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def list_dependencies(task_id: int | None = None) -> list[TaskDependency]:
    """All edges, or only those touching ``task_id`` on either side."""
    query = TaskDependency.query
    if task_id is not None:
        query = query.filter(
            db.or_(TaskDependency.task_id == task_id, TaskDependency.dependent_task_id == task_id)
        )
    return query.order_by(TaskDependency.id).all()

"""
Stage / Task Lifecycle Coordinator.

Every operation follows the same shape:
  1. load the entity (NotFoundError) and check entity-level access
     (AccessDenied); coarse role permissions are checked by the caller
  2. validate the request (ValidationError / InvariantViolation)
  3. mutate inside one transaction; any exception rolls it back
  4. after commit, hand notification contexts to the dispatcher

Cascades on stage completion:
  - a stage cannot complete while any of its tasks is not COMPLETED
  - completing the last open stage completes the project and drops an
    in-app PROJECT_COMPLETED notification for its manager
  - the next stage (smallest greater ``order``) moves PENDING → IN_PROGRESS

Task update notifications (first matching rule wins):
  a. assignee set changed and non-empty → TASK_ASSIGNED to each new assignee
  b. status changed → TASK_STATUS_CHANGED / TASK_COMPLETED to the assignees
  c. any other tracked field changed → TASK_UPDATED to the assignees
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from teamproject.core.exceptions import (
    AccessDenied,
    ConflictError,
    IncompleteTasksError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from teamproject.core.identity import AuthUser
from teamproject.models import db
from teamproject.models.activity import write_activity
from teamproject.models.auth import User
from teamproject.models.notification import Notification
from teamproject.models.project import (
    STAGE_STATUSES,
    TASK_PRIORITIES,
    TASK_RESPONSES,
    TASK_STATUSES,
    Project,
    Stage,
    Task,
    TaskDependency,
    TaskResponse,
    task_assignees,
    validate_stage_transition,
    validate_task_transition,
)
from teamproject.services.access import (
    can_delete_stage,
    can_edit_task,
    can_manage_project,
    can_respond_to_task,
    can_work_in_project,
)
from teamproject.services.confirmation_service import ConfirmationType
from teamproject.services.email_service import active_admins
from teamproject.services.notification_service import (
    ActionType,
    Actor,
    EntityRef,
    NotificationContext,
    TokenRequest,
    dispatch_notifications,
)
from teamproject.services.permission_service import permission_resolver
from teamproject.utils.helpers import parse_date, parse_int

logger = logging.getLogger(__name__)

TASK_FIELDS = ("title", "description", "status", "priority", "due_date", "project_id", "stage_id")
STAGE_FIELDS = ("name", "description", "order", "duration", "status")

NO_FIELDS_MESSAGE = "Aucun champ à mettre à jour"


# ── Loaders ──────────────────────────────────────────────────────────────────

def _load_task(task_id) -> Task:
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task", task_id, message="Tâche non trouvée")
    return task


def _load_stage(stage_id) -> Stage:
    stage = db.session.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError("Stage", stage_id, message="Étape introuvable")
    return stage


def _load_project(project_id, message="Projet introuvable") -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id, message=message)
    return project


def _project_assignee_ids(project_id: int) -> set[int]:
    rows = db.session.execute(
        select(task_assignees.c.user_id)
        .join(Task, Task.id == task_assignees.c.task_id)
        .where(Task.project_id == project_id)
        .distinct()
    ).scalars().all()
    return set(rows)


def _stage_assignees(stage_id: int) -> list[User]:
    return (
        User.query
        .join(task_assignees, task_assignees.c.user_id == User.id)
        .join(Task, Task.id == task_assignees.c.task_id)
        .filter(Task.stage_id == stage_id)
        .distinct()
        .order_by(User.id)
        .all()
    )


def _load_assignees(user_ids: set[int]) -> list[User]:
    if not user_ids:
        return []
    users = User.query.filter(User.id.in_(user_ids)).order_by(User.id).all()
    missing = user_ids - {u.id for u in users}
    if missing:
        raise ValidationError(
            "Utilisateur(s) assigné(s) introuvable(s)",
            details={"assignee_ids": sorted(missing)},
        )
    return users


def _parse_assignee_ids(raw) -> set[int]:
    if raw is None:
        return set()
    if not isinstance(raw, (list, tuple, set)):
        raise ValidationError("assignee_ids doit être une liste", details={"assignee_ids": raw})
    return {parse_int(v, "assignee_ids") for v in raw}


def _actor(user: AuthUser) -> Actor:
    return Actor(id=user.id, name=user.name, email=user.email, role=user.role)


def _task_entity(task: Task) -> EntityRef:
    return EntityRef(type="task", id=task.id, data=task.to_dict())


def _stage_entity(stage: Stage) -> EntityRef:
    return EntityRef(type="stage", id=stage.id, data=stage.to_dict())


def _normalise_status(value, allowed: set[str]) -> str:
    status = str(value or "").strip().upper()
    if status not in allowed:
        raise ValidationError(
            "Statut invalide", details={"status": value, "allowed": sorted(allowed)},
        )
    return status


def _parse_datetime(value) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (TypeError, ValueError):
        raise ValidationError("Date invalide", details={"completed_at": value})
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════
# Stages
# ═══════════════════════════════════════════════════════════════
def _complete_stage(stage: Stage, project: Project, actor: AuthUser) -> tuple[dict, list]:
    """Run the completion gate and its cascades, then commit.

    Returns ``(result, notification_contexts)``.  The caller owns rollback.
    """
    if not validate_stage_transition(stage.status, "COMPLETED"):
        raise TransitionError("stage", stage.status, "COMPLETED")

    incomplete = Task.query.filter(
        Task.stage_id == stage.id, Task.status != "COMPLETED",
    ).count()
    if incomplete:
        logger.info("Stage %s completion blocked by %d incomplete tasks", stage.id, incomplete)
        raise IncompleteTasksError(incomplete)

    stage.status = "COMPLETED"
    db.session.flush()

    manager = db.session.get(User, project.responsible_id) if project.responsible_id else None

    stages = Stage.query.filter_by(project_id=project.id).all()
    all_completed = all(s.status == "COMPLETED" for s in stages)
    if all_completed:
        project.status = "COMPLETED"
        if manager is not None:
            db.session.add(Notification(
                user_id=manager.id,
                type="PROJECT_COMPLETED",
                title="Projet terminé",
                message=f'Toutes les étapes du projet "{project.title}" ont été terminées',
                data_json=json.dumps({
                    "project_id": project.id,
                    "completed_by": actor.id,
                    "stages_count": len(stages),
                }),
            ))
        logger.info("Project %s completed: all %d stages done", project.id, len(stages))

    next_stage = (
        Stage.query
        .filter(Stage.project_id == project.id, Stage.order > stage.order)
        .order_by(Stage.order)
        .first()
    )
    advanced = None
    if next_stage is not None and next_stage.status == "PENDING":
        next_stage.status = "IN_PROGRESS"
        advanced = next_stage

    write_activity(
        user_id=actor.id,
        action="complete",
        entity_type="stage",
        entity_id=stage.id,
        details=f"Étape validée: {stage.name}",
        metadata={
            "project_id": project.id,
            "all_stages_completed": all_completed,
            "next_stage_id": advanced.id if advanced else None,
        },
    )
    db.session.commit()

    # Actor and admins hear about it even when nobody owns the project.
    contexts = [NotificationContext(
        action_type=ActionType.STAGE_COMPLETED,
        performed_by=_actor(actor),
        entity=_stage_entity(stage),
        affected_users=[Actor.from_user(manager)] if manager is not None else [],
        project_id=project.id,
        metadata={"project_title": project.title},
    )]

    result = {
        "success": True,
        "stage": stage.to_dict(),
        "all_stages_completed": all_completed,
        "next_stage": advanced.to_dict() if advanced else None,
        "notification_sent": all_completed and manager is not None,
        "project_manager": manager.to_summary() if (all_completed and manager) else None,
    }
    return result, contexts


def complete_stage(stage_id: int, actor: AuthUser) -> dict:
    """Complete a stage; see the module docstring for cascades."""
    stage = _load_stage(stage_id)
    project = _load_project(stage.project_id, message="Projet associé introuvable")
    if not can_work_in_project(actor.app_role, actor.id, project.manager_id,
                               _project_assignee_ids(project.id)):
        raise AccessDenied("Vous n'avez pas accès à cette étape")

    try:
        result, contexts = _complete_stage(stage, project, actor)
    except Exception:
        db.session.rollback()
        raise
    dispatch_notifications(contexts)
    return result


def create_stage(project_id: int, actor: AuthUser, data: dict) -> Stage:
    project = _load_project(project_id)
    if not can_manage_project(actor.app_role, actor.id, project.manager_id):
        raise AccessDenied("Seul le chef de projet peut créer des étapes")

    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Le nom de l'étape est requis", details={"name": "required"})

    if data.get("order") is None:
        current_max = db.session.execute(
            select(func.max(Stage.order)).where(Stage.project_id == project.id)
        ).scalar()
        order = (current_max or 0) + 1
    else:
        order = parse_int(data["order"], "order")
        if Stage.query.filter_by(project_id=project.id, order=order).first():
            raise ConflictError("Stage", "order", order, message="Une étape avec cet ordre existe déjà")

    duration = parse_int(data["duration"], "duration") if data.get("duration") is not None else None

    try:
        stage = Stage(
            project_id=project.id,
            name=name,
            description=data.get("description"),
            order=order,
            duration=duration,
            status="PENDING",
            created_by_id=actor.id,
        )
        db.session.add(stage)
        db.session.flush()
        write_activity(
            user_id=actor.id,
            action="create",
            entity_type="stage",
            entity_id=stage.id,
            details=f"Étape créée: {name}",
            metadata={"project_id": project.id, "order": order},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Stage", "order", order, message="Une étape avec cet ordre existe déjà")
    except Exception:
        db.session.rollback()
        raise
    return stage


def _apply_stage_fields(stage: Stage, updates: dict) -> list[str]:
    changed = []
    if "name" in updates:
        name = (updates["name"] or "").strip()
        if not name:
            raise ValidationError("Le nom de l'étape est requis", details={"name": "required"})
        if name != stage.name:
            stage.name = name
            changed.append("name")
    if "description" in updates and updates["description"] != stage.description:
        stage.description = updates["description"]
        changed.append("description")
    if "order" in updates:
        order = parse_int(updates["order"], "order")
        if order != stage.order:
            clash = Stage.query.filter(
                Stage.project_id == stage.project_id, Stage.order == order, Stage.id != stage.id,
            ).first()
            if clash:
                raise ConflictError("Stage", "order", order, message="Une étape avec cet ordre existe déjà")
            stage.order = order
            changed.append("order")
    if "duration" in updates:
        duration = None if updates["duration"] is None else parse_int(updates["duration"], "duration")
        if duration != stage.duration:
            stage.duration = duration
            changed.append("duration")
    return changed


def update_stage(stage_id: int, actor: AuthUser, data: dict) -> dict:
    """
    Update stage fields and/or status.

    Participants of the project may change the status; other fields need
    project management rights.  COMPLETED goes through the completion gate.

    Returns:
        ``{"stage": {...}, "completion": <complete_stage result> | None}``
    """
    stage = _load_stage(stage_id)
    project = _load_project(stage.project_id, message="Projet associé introuvable")

    updates = {k: data[k] for k in STAGE_FIELDS if k in data}
    if not updates:
        raise ValidationError(NO_FIELDS_MESSAGE)

    manages = can_manage_project(actor.app_role, actor.id, project.manager_id)
    if not manages and not can_work_in_project(actor.app_role, actor.id, project.manager_id,
                                               _project_assignee_ids(project.id)):
        raise AccessDenied("Vous n'avez pas accès à cette étape")
    if not manages and set(updates) - {"status"}:
        raise AccessDenied("Seul le chef de projet peut modifier cette étape")

    old_status = stage.status
    new_status = None
    if "status" in updates:
        new_status = _normalise_status(updates.pop("status"), STAGE_STATUSES)
        if new_status == old_status:
            new_status = None
        elif new_status != "COMPLETED" and not validate_stage_transition(old_status, new_status):
            raise TransitionError("stage", old_status, new_status)

    completion = None
    contexts = []
    try:
        changed = _apply_stage_fields(stage, updates)
        if new_status == "COMPLETED":
            completion, contexts = _complete_stage(stage, project, actor)
        else:
            if new_status is not None:
                stage.status = new_status
                changed.append("status")
            if changed:
                write_activity(
                    user_id=actor.id,
                    action="update",
                    entity_type="stage",
                    entity_id=stage.id,
                    details=f"Étape mise à jour: {stage.name}",
                    metadata={"changes": changed, "old_status": old_status, "new_status": stage.status},
                )
            db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if new_status is not None and new_status != "COMPLETED":
        contexts.append(_stage_status_context(stage, project, actor, old_status, new_status))
    dispatch_notifications(contexts)
    return {"stage": stage.to_dict(), "completion": completion}


def _stage_status_context(stage, project, actor, old_status, new_status) -> NotificationContext:
    metadata = {"old_status": old_status, "new_status": new_status, "project_title": project.title}
    if actor.app_role == "user":
        # Fan-out for employees reaches the project manager and admins.
        return NotificationContext(
            action_type=ActionType.STAGE_UPDATED,
            performed_by=_actor(actor),
            entity=_stage_entity(stage),
            project_id=project.id,
            metadata=metadata,
        )

    assignees = _stage_assignees(stage.id)
    token_request = None
    if assignees:
        token_request = TokenRequest(
            type=ConfirmationType.STAGE_STATUS_CHANGE,
            user_id=assignees[0].id,
            entity_type="stage",
            entity_id=stage.id,
            metadata={"old_status": old_status, "new_status": new_status},
        )
    return NotificationContext(
        action_type=ActionType.STAGE_UPDATED,
        performed_by=_actor(actor),
        entity=_stage_entity(stage),
        affected_users=[Actor.from_user(u) for u in assignees],
        project_id=project.id,
        metadata=metadata,
        token_request=token_request,
    )


def delete_stage(stage_id: int, actor: AuthUser) -> None:
    stage = _load_stage(stage_id)
    project = _load_project(stage.project_id, message="Projet associé introuvable")
    if not can_delete_stage(actor.app_role, actor.id, project.manager_id, stage.created_by_id):
        raise AccessDenied("Vous ne pouvez pas supprimer cette étape")

    try:
        detached = Task.query.filter_by(stage_id=stage.id).update(
            {"stage_id": None}, synchronize_session=False,
        )
        write_activity(
            user_id=actor.id,
            action="delete",
            entity_type="stage",
            entity_id=stage.id,
            details=f"Étape supprimée: {stage.name}",
            metadata={"project_id": project.id, "detached_tasks": detached},
        )
        db.session.delete(stage)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ═══════════════════════════════════════════════════════════════
# Tasks
# ═══════════════════════════════════════════════════════════════
def _resolve_stage_for(project: Project, stage_id) -> Stage | None:
    if stage_id in (None, ""):
        return None
    stage = db.session.get(Stage, parse_int(stage_id, "stage_id"))
    if stage is None:
        raise NotFoundError("Stage", stage_id, message="Étape introuvable")
    if stage.project_id != project.id:
        raise ValidationError(
            "L'étape n'appartient pas à ce projet",
            details={"stage_id": stage.id, "project_id": project.id},
        )
    return stage


def _assignment_contexts(task: Task, actor: AuthUser, users: list[User],
                         action: ActionType) -> list[NotificationContext]:
    """One context per assignee, each carrying its own TASK_ASSIGNMENT token."""
    return [
        NotificationContext(
            action_type=action,
            performed_by=_actor(actor),
            entity=_task_entity(task),
            affected_users=[Actor.from_user(user)],
            project_id=task.project_id,
            token_request=TokenRequest(
                type=ConfirmationType.TASK_ASSIGNMENT,
                user_id=user.id,
                entity_type="task",
                entity_id=task.id,
                metadata={"task_title": task.title, "assigned_by": actor.id},
            ),
        )
        for user in users
    ]


def create_task(project_id: int, actor: AuthUser, data: dict) -> Task:
    project = _load_project(project_id)
    if not can_manage_project(actor.app_role, actor.id, project.manager_id):
        raise AccessDenied("Seul le chef de projet peut créer des tâches")

    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("Le titre de la tâche est requis", details={"title": "required"})
    priority = str(data.get("priority") or "MEDIUM").upper()
    if priority not in TASK_PRIORITIES:
        raise ValidationError("Priorité invalide", details={"priority": data.get("priority")})
    stage = _resolve_stage_for(project, data.get("stage_id"))
    due_date = parse_date(data.get("due_date"))

    assignee_ids = _parse_assignee_ids(data.get("assignee_ids"))
    if assignee_ids:
        permission_resolver.ensure_permission(actor.app_role, "tasks", "assign")
    assignees = _load_assignees(assignee_ids)

    try:
        task = Task(
            project_id=project.id,
            stage_id=stage.id if stage else None,
            title=title,
            description=data.get("description"),
            status="TODO",
            priority=priority,
            due_date=due_date,
            created_by_id=actor.id,
        )
        task.assignees = assignees
        db.session.add(task)
        db.session.flush()
        write_activity(
            user_id=actor.id,
            action="create",
            entity_type="task",
            entity_id=task.id,
            details=f"Tâche créée: {title}",
            metadata={"project_id": project.id, "assignee_ids": sorted(assignee_ids)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    dispatch_notifications(_assignment_contexts(task, actor, assignees, ActionType.TASK_CREATED))
    return task


def update_task(task_id: int, actor: AuthUser, data: dict) -> Task:
    """
    Partial update of a task, including assignee replacement.

    ``tasks.assign`` is required when the assignee set changes; it is
    checked before the transaction starts.
    """
    task = _load_task(task_id)
    project = _load_project(task.project_id, message="Projet associé introuvable")
    old_assignee_ids = task.assignee_ids

    if not can_edit_task(actor.app_role, actor.id, old_assignee_ids, project.manager_id):
        raise AccessDenied("Vous n'avez pas les droits pour modifier cette tâche")

    updates = {k: data[k] for k in TASK_FIELDS if k in data}
    assignees_given = "assignee_ids" in data
    if not updates and not assignees_given:
        raise ValidationError(NO_FIELDS_MESSAGE)

    # ── Validation (no writes yet) ──
    new_assignees = None
    assignees_changed = False
    if assignees_given:
        new_assignee_ids = _parse_assignee_ids(data["assignee_ids"])
        assignees_changed = new_assignee_ids != old_assignee_ids
        if assignees_changed:
            permission_resolver.ensure_permission(actor.app_role, "tasks", "assign")
            new_assignees = _load_assignees(new_assignee_ids)

    target_project = project
    if "project_id" in updates:
        target_id = parse_int(updates["project_id"], "project_id")
        if target_id != project.id:
            target_project = _load_project(target_id)
            if not can_manage_project(actor.app_role, actor.id, target_project.manager_id):
                raise AccessDenied("Vous ne pouvez pas déplacer cette tâche vers ce projet")

    if "stage_id" in updates:
        target_stage = _resolve_stage_for(target_project, updates["stage_id"])
    elif target_project is not project and task.stage_id is not None:
        target_stage = _resolve_stage_for(target_project, task.stage_id)
    else:
        target_stage = task.stage

    old_status = task.status
    new_status = old_status
    if "status" in updates:
        new_status = _normalise_status(updates["status"], TASK_STATUSES)
        if new_status != old_status and not validate_task_transition(old_status, new_status):
            raise TransitionError("task", old_status, new_status)

    new_values = {}
    if "title" in updates:
        title = (updates["title"] or "").strip()
        if not title:
            raise ValidationError("Le titre de la tâche est requis", details={"title": "required"})
        new_values["title"] = title
    if "description" in updates:
        new_values["description"] = updates["description"]
    if "priority" in updates:
        priority = str(updates["priority"] or "").upper()
        if priority not in TASK_PRIORITIES:
            raise ValidationError("Priorité invalide", details={"priority": updates["priority"]})
        new_values["priority"] = priority
    if "due_date" in updates:
        new_values["due_date"] = parse_date(updates["due_date"])
    completed_at = _parse_datetime(data["completed_at"]) if data.get("completed_at") else None

    # ── Mutation ──
    changed: list[str] = []
    try:
        for field_name, value in new_values.items():
            if getattr(task, field_name) != value:
                setattr(task, field_name, value)
                changed.append(field_name)
        if target_project.id != task.project_id:
            task.project_id = target_project.id
            changed.append("project_id")
        target_stage_id = target_stage.id if target_stage else None
        if target_stage_id != task.stage_id:
            task.stage_id = target_stage_id
            changed.append("stage_id")
        if new_status != old_status:
            task.status = new_status
            changed.append("status")
            if new_status == "COMPLETED":
                task.completed_at = completed_at or datetime.now(timezone.utc)
            elif old_status == "COMPLETED":
                task.completed_at = None
        if assignees_changed:
            task.assignees = []
            db.session.flush()
            task.assignees = new_assignees
            changed.append("assignees")

        write_activity(
            user_id=actor.id,
            action="update",
            entity_type="task",
            entity_id=task.id,
            details=f"Tâche mise à jour: {task.title}",
            metadata={"changes": changed, "old_status": old_status, "new_status": new_status},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Task %s updated by user %s: %s", task.id, actor.id, changed)
    dispatch_notifications(_task_update_contexts(
        task, actor,
        old_status=old_status,
        old_assignee_ids=old_assignee_ids,
        assignees_changed=assignees_changed,
        changed=changed,
    ))
    return task


def _task_update_contexts(task, actor, *, old_status, old_assignee_ids,
                          assignees_changed, changed) -> list[NotificationContext]:
    assignees = sorted(task.assignees, key=lambda u: u.id)

    # (a) assignee set changed and non-empty
    if assignees_changed and assignees:
        added = [u for u in assignees if u.id not in old_assignee_ids]
        return _assignment_contexts(task, actor, added, ActionType.TASK_ASSIGNED)

    # (b) status changed
    if task.status != old_status:
        if task.status == "COMPLETED":
            action = ActionType.TASK_COMPLETED
        else:
            action = ActionType.TASK_STATUS_CHANGED
        token_request = None
        if actor.app_role != "user" and assignees:
            token_request = TokenRequest(
                type=ConfirmationType.TASK_STATUS_CHANGE,
                user_id=assignees[0].id,
                entity_type="task",
                entity_id=task.id,
                metadata={"old_status": old_status, "new_status": task.status},
            )
        return [NotificationContext(
            action_type=action,
            performed_by=_actor(actor),
            entity=_task_entity(task),
            affected_users=[Actor.from_user(u) for u in assignees],
            project_id=task.project_id,
            metadata={"old_status": old_status, "new_status": task.status},
            token_request=token_request,
        )]

    # (c) other tracked fields
    others = [c for c in changed if c not in ("status", "assignees")]
    if others:
        return [NotificationContext(
            action_type=ActionType.TASK_UPDATED,
            performed_by=_actor(actor),
            entity=_task_entity(task),
            affected_users=[Actor.from_user(u) for u in assignees],
            project_id=task.project_id,
            metadata={"changes": others},
        )]
    return []


def delete_task(task_id: int, actor: AuthUser) -> None:
    task = _load_task(task_id)
    project = _load_project(task.project_id, message="Projet associé introuvable")
    if not can_manage_project(actor.app_role, actor.id, project.manager_id):
        raise AccessDenied("Seul le chef de projet peut supprimer cette tâche")

    try:
        TaskDependency.query.filter(
            db.or_(TaskDependency.task_id == task.id, TaskDependency.dependent_task_id == task.id)
        ).delete(synchronize_session=False)
        TaskResponse.query.filter_by(task_id=task.id).delete(synchronize_session=False)
        task.assignees = []
        write_activity(
            user_id=actor.id,
            action="delete",
            entity_type="task",
            entity_id=task.id,
            details=f"Tâche supprimée: {task.title}",
            metadata={"project_id": project.id},
        )
        db.session.delete(task)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def refuse_task(task_id: int, actor: AuthUser, reason) -> Task:
    """An assignee refuses a task; the manager and admins are told why."""
    reason = (reason or "").strip() if isinstance(reason, str) else ""
    if not reason:
        raise ValidationError("La raison du refus est requise", details={"reason": "required"})

    task = _load_task(task_id)
    if not can_respond_to_task(actor.id, task.assignee_ids):
        raise AccessDenied("Vous ne pouvez refuser que les tâches qui vous sont assignées")
    if not validate_task_transition(task.status, "REFUSED"):
        raise TransitionError("task", task.status, "REFUSED")

    old_status = task.status
    try:
        task.status = "REFUSED"
        task.refusal_reason = reason
        write_activity(
            user_id=actor.id,
            action="refused",
            entity_type="task",
            entity_id=task.id,
            details=f"Tâche refusée: {task.title}",
            metadata={"reason": reason, "old_status": old_status},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    project = task.project
    affected: dict[int, User] = {}
    if project is not None and project.manager is not None:
        affected[project.manager.id] = project.manager
    for admin in active_admins():
        affected.setdefault(admin.id, admin)
    affected.pop(actor.id, None)

    dispatch_notifications([NotificationContext(
        action_type=ActionType.TASK_REFUSED,
        performed_by=_actor(actor),
        entity=_task_entity(task),
        affected_users=[Actor.from_user(u) for u in affected.values()],
        project_id=task.project_id,
        metadata={"reason": reason, "old_status": old_status, "new_status": "REFUSED"},
    )])
    return task


def respond_to_task(task_id: int, actor: AuthUser, response, reason=None) -> TaskResponse:
    """Record an assignee's one-time ``accepted`` / ``rejected`` answer."""
    response = str(response or "").strip().lower()
    if response not in TASK_RESPONSES:
        raise ValidationError('La réponse doit être "accepted" ou "rejected"',
                              details={"response": response})

    task = _load_task(task_id)
    existing = TaskResponse.query.filter_by(task_id=task.id, user_id=actor.id).first()
    if existing:
        raise ConflictError("TaskResponse", "task_id,user_id", f"{task.id},{actor.id}",
                            message="Vous avez déjà répondu à cette tâche")
    if not can_respond_to_task(actor.id, task.assignee_ids):
        raise AccessDenied("Vous n'êtes pas assigné à cette tâche")

    try:
        answer = TaskResponse(
            task_id=task.id,
            user_id=actor.id,
            response=response,
            reason=(reason or None) if response == "rejected" else None,
        )
        db.session.add(answer)
        if response == "accepted" and task.status == "TODO":
            task.status = "IN_PROGRESS"
        write_activity(
            user_id=actor.id,
            action="accept_task" if response == "accepted" else "reject_task",
            entity_type="task",
            entity_id=task.id,
            details="Assignation acceptée" if response == "accepted" else "Assignation rejetée",
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("TaskResponse", "task_id,user_id", f"{task.id},{actor.id}",
                            message="Vous avez déjà répondu à cette tâche")
    except Exception:
        db.session.rollback()
        raise
    return answer


def get_task_response(task_id: int, user_id: int) -> TaskResponse | None:
    _load_task(task_id)
    return TaskResponse.query.filter_by(task_id=task_id, user_id=user_id).first()

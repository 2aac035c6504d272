"""
Confirmation Token Service — single-use email links.

A token binds (type, user, entity) and lets the user act on a notification
without a session: start an assigned task, or acknowledge a status change.

Lifecycle:
    create_confirmation_token()   issued while notifications are fanned out
    confirm_token()               consumed exactly once (conditional UPDATE)
    execute_confirmation_action() runs the side effect for the token type

Tokens are never deleted; consumed ones keep ``confirmed=True``.
"""

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from teamproject.models import db
from teamproject.models.activity import write_activity
from teamproject.models.auth import User
from teamproject.models.confirmation import ConfirmationToken
from teamproject.models.project import Project, Stage, Task
from teamproject.services import email_templates
from teamproject.services.email_service import send_to_responsibles
from teamproject.utils.helpers import as_utc

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
DEFAULT_TTL_DAYS = 7

ERR_INVALID = "Token invalide ou expiré"
ERR_ALREADY_USED = "Ce token a déjà été utilisé"
ERR_EXPIRED = "Ce token a expiré"
ERR_SERVER = "Erreur serveur"


class ConfirmationType(str, Enum):
    TASK_ASSIGNMENT = "TASK_ASSIGNMENT"
    TASK_STATUS_CHANGE = "TASK_STATUS_CHANGE"
    STAGE_STATUS_CHANGE = "STAGE_STATUS_CHANGE"
    PROJECT_CREATED = "PROJECT_CREATED"


@dataclass(frozen=True)
class ConfirmationData:
    type: str
    user_id: int
    entity_type: str
    entity_id: int
    metadata: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "type": self.type,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class TokenResult:
    success: bool
    data: ConfirmationData | None = None
    error: str | None = None


def _ttl() -> timedelta:
    days = current_app.config.get("CONFIRMATION_TOKEN_TTL_DAYS", DEFAULT_TTL_DAYS)
    return timedelta(days=days)


def build_confirmation_url(token: str) -> str:
    base = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    return f"{base}/api/v1/confirmations/{token}"


# ═══════════════════════════════════════════════════════════════
# Issue / consume
# ═══════════════════════════════════════════════════════════════
def create_confirmation_token(
    type: ConfirmationType | str,
    user_id: int,
    entity_type: str,
    entity_id: int,
    metadata: dict | None = None,
) -> str | None:
    """
    Persist a new token and return it.

    Returns None when the row cannot be written; callers send the
    notification without a confirmation link in that case.
    """
    token = secrets.token_hex(TOKEN_BYTES)
    type_value = type.value if isinstance(type, ConfirmationType) else str(type)
    try:
        db.session.add(ConfirmationToken(
            token=token,
            type=type_value,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_json=json.dumps(metadata or {}, default=str),
            confirmed=False,
            expires_at=datetime.now(timezone.utc) + _ttl(),
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(
            "Confirmation token not created: type=%s user=%s %s/%s",
            type_value, user_id, entity_type, entity_id,
        )
        return None
    logger.info("Confirmation token issued: type=%s user=%s %s/%s",
                type_value, user_id, entity_type, entity_id)
    return token


def confirm_token(token: str) -> TokenResult:
    """
    Consume ``token``.

    Checks, in order: unknown token, already used, expired.  The consume
    step is a conditional UPDATE on ``confirmed = false``; a concurrent
    consumer that loses the race gets the "already used" answer.
    """
    try:
        row = db.session.get(ConfirmationToken, token) if token else None
        if row is None:
            return TokenResult(success=False, error=ERR_INVALID)
        if row.confirmed:
            return TokenResult(success=False, error=ERR_ALREADY_USED)
        now = datetime.now(timezone.utc)
        if as_utc(row.expires_at) < now:
            return TokenResult(success=False, error=ERR_EXPIRED)

        data = ConfirmationData(
            type=row.type,
            user_id=row.user_id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            metadata=row.token_metadata,
        )
        result = db.session.execute(
            update(ConfirmationToken)
            .where(ConfirmationToken.token == token, ConfirmationToken.confirmed.is_(False))
            .values(confirmed=True, confirmed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            return TokenResult(success=False, error=ERR_ALREADY_USED)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Token confirmation failed")
        return TokenResult(success=False, error=ERR_SERVER)

    logger.info("Confirmation token consumed: type=%s user=%s %s/%s",
                data.type, data.user_id, data.entity_type, data.entity_id)
    return TokenResult(success=True, data=data)


# ═══════════════════════════════════════════════════════════════
# Actions
# ═══════════════════════════════════════════════════════════════
def _actor_name(user_id: int) -> str:
    user = db.session.get(User, user_id)
    return user.name if user else f"Utilisateur #{user_id}"


def _notify_responsibles(project_id: int, template: str, context: dict, metadata: dict) -> None:
    rendered = email_templates.render(template, context)
    if rendered is None:
        logger.warning("Confirmation email template missing: %s", template)
        return
    subject, html = rendered
    sent = send_to_responsibles(project_id, subject, html, metadata=metadata)
    logger.info("Confirmation notice '%s' sent to %d responsibles", subject, sent)


def _start_assigned_task(data: ConfirmationData) -> bool:
    task = db.session.get(Task, data.entity_id)
    if task is None:
        logger.warning("Confirmed task %s no longer exists", data.entity_id)
        return False
    if task.status == "TODO":
        task.status = "IN_PROGRESS"
    elif task.status != "IN_PROGRESS":
        logger.warning("Task %s cannot be started from %s", task.id, task.status)
        return False
    write_activity(
        user_id=data.user_id,
        action="start",
        entity_type="task",
        entity_id=task.id,
        details=f"Tâche démarrée via confirmation email: {task.title}",
        metadata={"confirmation_type": data.type},
    )
    db.session.commit()

    # The status change stays committed even if the notice fails.
    _notify_responsibles(
        task.project_id,
        "task_started",
        {"title": task.title, "actor_name": _actor_name(data.user_id)},
        {"task_id": task.id, "action": "start", "confirmed_by": data.user_id},
    )
    return True


def _acknowledge_task(data: ConfirmationData) -> bool:
    task = db.session.get(Task, data.entity_id)
    if task is None:
        logger.warning("Acknowledged task %s no longer exists", data.entity_id)
        return False
    write_activity(
        user_id=data.user_id,
        action="acknowledge",
        entity_type="task",
        entity_id=task.id,
        details=f"Accusé de réception: {task.title}",
        metadata={"confirmation_type": data.type, **data.metadata},
    )
    db.session.commit()
    _notify_responsibles(
        task.project_id,
        "task_acknowledged",
        {"title": task.title, "actor_name": _actor_name(data.user_id)},
        {"task_id": task.id, "action": "acknowledge", "confirmed_by": data.user_id},
    )
    return True


def _acknowledge_stage(data: ConfirmationData) -> bool:
    stage = db.session.get(Stage, data.entity_id)
    if stage is None:
        logger.warning("Acknowledged stage %s no longer exists", data.entity_id)
        return False
    write_activity(
        user_id=data.user_id,
        action="acknowledge",
        entity_type="stage",
        entity_id=stage.id,
        details=f"Accusé de réception: Étape {stage.name}",
        metadata={"confirmation_type": data.type, **data.metadata},
    )
    db.session.commit()
    _notify_responsibles(
        stage.project_id,
        "stage_acknowledged",
        {"name": stage.name, "actor_name": _actor_name(data.user_id)},
        {"stage_id": stage.id, "action": "acknowledge", "confirmed_by": data.user_id},
    )
    return True


def _acknowledge_project(data: ConfirmationData) -> bool:
    project = db.session.get(Project, data.entity_id)
    if project is None:
        logger.warning("Acknowledged project %s no longer exists", data.entity_id)
        return False
    write_activity(
        user_id=data.user_id,
        action="acknowledge",
        entity_type="project",
        entity_id=project.id,
        details=f"Accusé de réception: {project.title}",
        metadata={"confirmation_type": data.type},
    )
    db.session.commit()
    return True


_HANDLERS = {
    ConfirmationType.TASK_ASSIGNMENT: _start_assigned_task,
    ConfirmationType.TASK_STATUS_CHANGE: _acknowledge_task,
    ConfirmationType.STAGE_STATUS_CHANGE: _acknowledge_stage,
    ConfirmationType.PROJECT_CREATED: _acknowledge_project,
}

_unhandled = set(ConfirmationType) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No confirmation handler for: {sorted(t.value for t in _unhandled)}")


def execute_confirmation_action(data: ConfirmationData) -> bool:
    """
    Run the side effect bound to a consumed token.

    Returns False on failure.  Effects already committed (e.g. the task
    status) are kept; the email notice is a separate failure domain.
    """
    try:
        confirmation_type = ConfirmationType(data.type)
    except ValueError:
        logger.warning("Unknown confirmation type %r, nothing to do", data.type)
        return True

    try:
        return _HANDLERS[confirmation_type](data)
    except Exception:
        db.session.rollback()
        logger.exception("Confirmation action failed: type=%s %s/%s",
                         data.type, data.entity_type, data.entity_id)
        return False

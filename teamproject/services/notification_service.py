"""
Notification Orchestrator — action-triggered email fan-out.

Given an action context (who did what, to which entity, affecting whom):
  1. resolve recipients from role-based fan-out rules
  2. issue the context's confirmation token, if it asks for one
  3. render and send one email per recipient, continuing past failures
  4. write one ActivityLog row summarising the fan-out

Fan-out rules (by the actor's role):
  EMPLOYEE  actor + project manager + every admin
  MANAGER   actor + every admin + affected users who are employees
  ADMIN     actor + affected users (+ project manager when there are any)
  other     nobody

``send_action_notification`` never raises: notification delivery must not
abort the mutation that triggered it.  Mutations hand their contexts to
``dispatch_notifications`` after commit.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from flask import current_app

from teamproject.models import db
from teamproject.models.activity import write_activity
from teamproject.models.project import Project
from teamproject.services import email_templates
from teamproject.services.confirmation_service import (
    ConfirmationType,
    build_confirmation_url,
    create_confirmation_token,
)
from teamproject.services.email_service import active_admins, send_email
from teamproject.services.permission_service import configured_role_mapping

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    TASK_CREATED = "TASK_CREATED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_REFUSED = "TASK_REFUSED"
    PROJECT_CREATED = "PROJECT_CREATED"
    PROJECT_UPDATED = "PROJECT_UPDATED"
    STAGE_CREATED = "STAGE_CREATED"
    STAGE_UPDATED = "STAGE_UPDATED"
    STAGE_COMPLETED = "STAGE_COMPLETED"


# Actions that are logged but never emailed.
TEMPLATELESS_ACTIONS = frozenset({ActionType.PROJECT_UPDATED, ActionType.STAGE_CREATED})


# ── Context types ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Actor:
    id: int
    name: str
    email: str
    role: str  # stored role: ADMIN | MANAGER | EMPLOYEE

    @classmethod
    def from_user(cls, user):
        return cls(id=user.id, name=user.name, email=user.email, role=user.role)


@dataclass(frozen=True)
class EntityRef:
    type: str
    id: int
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TokenRequest:
    type: ConfirmationType
    user_id: int
    entity_type: str
    entity_id: int
    metadata: dict = field(default_factory=dict)


@dataclass
class NotificationContext:
    action_type: ActionType | str
    performed_by: Actor
    entity: EntityRef
    affected_users: list[Actor] = field(default_factory=list)
    project_id: int | None = None
    metadata: dict = field(default_factory=dict)
    token_request: TokenRequest | None = None

    @property
    def action_name(self) -> str:
        if isinstance(self.action_type, ActionType):
            return self.action_type.value
        return str(self.action_type)


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str | None = None
    user_id: int | None = None


# ═══════════════════════════════════════════════════════════════
# Recipients
# ═══════════════════════════════════════════════════════════════
def _fanout_role(stored_role: str | None) -> str | None:
    """Application role for fan-out; None for roles outside the mapping table."""
    if not stored_role:
        return None
    table = {k.upper(): v for k, v in configured_role_mapping().items()}
    return table.get(stored_role.strip().upper())


def _project_manager(project_id: int | None):
    if project_id is None:
        return None
    project = db.session.get(Project, project_id)
    if project is None or project.manager is None:
        return None
    return project.manager


def _resolve_recipients(context: NotificationContext) -> list[Recipient]:
    actor = context.performed_by
    role = _fanout_role(actor.role)
    if role is None:
        logger.info("No fan-out rule for role %r (action %s)", actor.role, context.action_name)
        return []

    candidates: list[Recipient] = [Recipient(actor.email, actor.name, actor.id)]
    affected = context.affected_users or []

    if role == "user":
        manager = _project_manager(context.project_id)
        if manager is not None:
            candidates.append(Recipient(manager.email, manager.name, manager.id))
        candidates.extend(Recipient(a.email, a.name, a.id) for a in active_admins())
    elif role == "manager":
        candidates.extend(Recipient(a.email, a.name, a.id) for a in active_admins())
        candidates.extend(
            Recipient(u.email, u.name, u.id) for u in affected if _fanout_role(u.role) == "user"
        )
    elif role == "admin":
        candidates.extend(Recipient(u.email, u.name, u.id) for u in affected)
        if affected:
            manager = _project_manager(context.project_id)
            if manager is not None:
                candidates.append(Recipient(manager.email, manager.name, manager.id))

    seen: dict[str, Recipient] = {}
    for candidate in candidates:
        if not candidate.email:
            continue
        seen.setdefault(candidate.email.strip().lower(), candidate)
    return list(seen.values())


def determine_recipients(context: NotificationContext) -> list[str]:
    """Deduplicated recipient emails for ``context``."""
    return [r.email for r in _resolve_recipients(context)]


# ═══════════════════════════════════════════════════════════════
# Content
# ═══════════════════════════════════════════════════════════════
def _task_values(context):
    data = context.entity.data
    return {
        "title": data.get("title"),
        "description": data.get("description"),
        "priority": data.get("priority"),
        "due_date": data.get("due_date") or "—",
    }


def _status_values(context):
    return {
        "old_status": context.metadata.get("old_status"),
        "new_status": context.metadata.get("new_status"),
    }


def _task_assigned(context):
    return "task_assigned", _task_values(context)


def _task_status_changed(context):
    return "task_status_changed", {**_task_values(context), **_status_values(context)}


def _task_completed(context):
    return "task_completed", _task_values(context)


def _task_updated(context):
    changes = context.metadata.get("changes") or []
    return "task_updated", {**_task_values(context), "changes": ", ".join(changes)}


def _task_refused(context):
    return "task_refused", {**_task_values(context), "reason": context.metadata.get("reason")}


def _project_created(context):
    data = context.entity.data
    return "project_created", {
        "name": data.get("title") or data.get("name"),
        "description": data.get("description"),
    }


def _stage_completed(context):
    return "stage_completed", {
        "name": context.entity.data.get("name"),
        "project_title": context.metadata.get("project_title"),
    }


def _stage_updated(context):
    return "stage_updated", {"name": context.entity.data.get("name"), **_status_values(context)}


_CONTENT_BUILDERS: dict[ActionType, Callable[[NotificationContext], tuple[str, dict]]] = {
    ActionType.TASK_CREATED: _task_assigned,
    ActionType.TASK_ASSIGNED: _task_assigned,
    ActionType.TASK_STATUS_CHANGED: _task_status_changed,
    ActionType.TASK_COMPLETED: _task_completed,
    ActionType.TASK_UPDATED: _task_updated,
    ActionType.TASK_REFUSED: _task_refused,
    ActionType.PROJECT_CREATED: _project_created,
    ActionType.STAGE_COMPLETED: _stage_completed,
    ActionType.STAGE_UPDATED: _stage_updated,
}

_uncovered = set(ActionType) - set(_CONTENT_BUILDERS) - TEMPLATELESS_ACTIONS
if _uncovered:
    raise RuntimeError(f"No email content for action types: {sorted(a.value for a in _uncovered)}")

_CONFIRMATION_LABELS = {
    ConfirmationType.TASK_ASSIGNMENT.value: "Accepter et démarrer la tâche",
    ConfirmationType.TASK_STATUS_CHANGE.value: "Accuser réception",
    ConfirmationType.STAGE_STATUS_CHANGE.value: "Accuser réception",
    ConfirmationType.PROJECT_CREATED.value: "Accuser réception",
}


def generate_email_content(
    context: NotificationContext,
    recipient_name: str | None = None,
    recipient_user_id: int | None = None,
) -> EmailContent | None:
    """
    Render the email for ``context``; None when the action has no template.

    The confirmation link is only rendered for the user the token is bound
    to; every other recipient gets the plain notice.
    """
    try:
        action = ActionType(context.action_type)
    except ValueError:
        return None
    builder = _CONTENT_BUILDERS.get(action)
    if builder is None:
        return None

    template_name, values = builder(context)
    values["actor_name"] = context.performed_by.name
    values["recipient_name"] = recipient_name or ""
    token = context.metadata.get("confirmation_token")
    bound_user_id = context.metadata.get("confirmation_user_id")
    if token and recipient_user_id is not None and recipient_user_id == bound_user_id:
        values["confirmation_url"] = build_confirmation_url(token)
        values["confirmation_label"] = _CONFIRMATION_LABELS.get(
            context.metadata.get("confirmation_type"), "Confirmer",
        )
    rendered = email_templates.render(template_name, values)
    if rendered is None:
        return None
    return EmailContent(subject=rendered[0], html=rendered[1])


# ═══════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════
def _issue_token(context: NotificationContext) -> None:
    request = context.token_request
    if request is None:
        return
    token = create_confirmation_token(
        request.type, request.user_id, request.entity_type, request.entity_id, request.metadata,
    )
    if token is None:
        logger.warning("Sending %s without confirmation link", context.action_name)
        return
    context.metadata = {
        **context.metadata,
        "confirmation_token": token,
        "confirmation_type": request.type.value,
        "confirmation_user_id": request.user_id,
    }


def send_action_notification(context: NotificationContext) -> dict:
    """
    Fan out one action.  Never raises.

    Returns:
        ``{"recipients": [...], "sent": int, "failed": int, "skipped": int}``
    """
    summary = {"recipients": [], "sent": 0, "failed": 0, "skipped": 0}
    try:
        recipients = _resolve_recipients(context)
        if not recipients:
            logger.info("No recipients for %s on %s/%s",
                        context.action_name, context.entity.type, context.entity.id)
            return summary
        summary["recipients"] = [r.email for r in recipients]

        _issue_token(context)

        for recipient in recipients:
            try:
                content = generate_email_content(
                    context, recipient_name=recipient.name, recipient_user_id=recipient.user_id,
                )
                if content is None:
                    logger.info("No email template for %s, skipping %s",
                                context.action_name, recipient.email)
                    summary["skipped"] += 1
                    continue
                ok = send_email(
                    to=recipient.email,
                    subject=content.subject,
                    html=content.html,
                    user_id=recipient.user_id,
                    metadata={
                        "action_type": context.action_name,
                        "entity_type": context.entity.type,
                        "entity_id": context.entity.id,
                    },
                )
                summary["sent" if ok else "failed"] += 1
            except Exception:
                db.session.rollback()
                logger.exception("Notification to %s failed", recipient.email)
                summary["failed"] += 1

        write_activity(
            user_id=context.performed_by.id,
            action=context.action_name.lower(),
            entity_type=context.entity.type,
            entity_id=context.entity.id,
            details=f"Notifications sent to {len(recipients)} recipients",
            metadata={"recipients": summary["recipients"]},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Notification fan-out failed for %s", context.action_name)
    return summary


class NotificationDispatcher:
    """Runs fan-out after the triggering transaction has committed.

    With ``NOTIFICATIONS_ASYNC`` the contexts are processed on a daemon
    thread inside a fresh app context; otherwise inline.
    """

    def dispatch(self, contexts: list[NotificationContext]) -> None:
        contexts = [c for c in contexts if c is not None]
        if not contexts:
            return
        app = current_app._get_current_object()
        if not app.config.get("NOTIFICATIONS_ASYNC", True):
            self._run(contexts)
            return
        t = threading.Thread(
            target=self._run_in_background,
            args=(app, contexts),
            daemon=True,
            name="notification-dispatch",
        )
        t.start()

    @staticmethod
    def _run(contexts: list[NotificationContext]) -> None:
        for context in contexts:
            send_action_notification(context)

    def _run_in_background(self, app, contexts: list[NotificationContext]) -> None:
        with app.app_context():
            self._run(contexts)


notification_dispatcher = NotificationDispatcher()


def dispatch_notifications(contexts: list[NotificationContext]) -> None:
    notification_dispatcher.dispatch(contexts)

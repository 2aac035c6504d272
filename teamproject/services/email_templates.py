"""
Email templates for action notifications and confirmation acknowledgements.

Templates are plain ``str.format_map`` strings.  ``render`` HTML-escapes every
interpolated value for the body; the subject is left as plain text.
Missing keys render empty instead of raising.
"""

from __future__ import annotations

import html as _html
from typing import Any

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {header_color}; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
        {confirmation_block}
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">
            {app_name} — Notification automatique
        </p>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "task_assigned": {
        "subject": "Nouvelle tâche assignée: {title}",
        "heading": "Nouvelle tâche",
        "header_color": "#2563eb",
        "body": """
        <p>Bonjour {recipient_name},</p>
        <p><strong>{actor_name}</strong> vous a assigné la tâche <strong>{title}</strong>.</p>
        <p>Priorité: {priority} — Échéance: {due_date}</p>
        <p style="color: #64748b;">{description}</p>
        """,
    },
    "task_status_changed": {
        "subject": "Changement de statut: {title}",
        "heading": "Changement de statut",
        "header_color": "#7c3aed",
        "body": """
        <p><strong>{actor_name}</strong> a changé le statut de la tâche <strong>{title}</strong>.</p>
        <p>{old_status} → <strong>{new_status}</strong></p>
        """,
    },
    "task_completed": {
        "subject": "✅ Tâche terminée: {title}",
        "heading": "Tâche terminée",
        "header_color": "#16a34a",
        "body": """
        <p>La tâche <strong>{title}</strong> a été terminée par <strong>{actor_name}</strong>.</p>
        """,
    },
    "task_updated": {
        "subject": "Tâche mise à jour: {title}",
        "heading": "Tâche mise à jour",
        "header_color": "#0891b2",
        "body": """
        <p><strong>{actor_name}</strong> a modifié la tâche <strong>{title}</strong>.</p>
        <p>Champs modifiés: {changes}</p>
        """,
    },
    "task_refused": {
        "subject": "❌ Tâche refusée: {title}",
        "heading": "Tâche refusée",
        "header_color": "#dc2626",
        "body": """
        <p><strong>{actor_name}</strong> a refusé la tâche <strong>{title}</strong>.</p>
        <p>Raison: {reason}</p>
        """,
    },
    "project_created": {
        "subject": "🎉 Nouveau projet créé: {name}",
        "heading": "Nouveau projet",
        "header_color": "#2563eb",
        "body": """
        <p><strong>{actor_name}</strong> a créé le projet <strong>{name}</strong>.</p>
        <p style="color: #64748b;">{description}</p>
        """,
    },
    "stage_completed": {
        "subject": "✅ Étape complétée: {name}",
        "heading": "Étape complétée",
        "header_color": "#16a34a",
        "body": """
        <p>L'étape <strong>{name}</strong> du projet <strong>{project_title}</strong>
        a été validée par <strong>{actor_name}</strong>.</p>
        """,
    },
    "stage_updated": {
        "subject": "Étape mise à jour: {name}",
        "heading": "Étape mise à jour",
        "header_color": "#0891b2",
        "body": """
        <p><strong>{actor_name}</strong> a mis à jour l'étape <strong>{name}</strong>.</p>
        <p>{old_status} → <strong>{new_status}</strong></p>
        """,
    },
    # ── Confirmation acknowledgements (sent to project responsibles) ──
    "task_started": {
        "subject": "✅ Tâche démarrée: {title}",
        "heading": "Tâche démarrée",
        "header_color": "#16a34a",
        "body": """
        <p><strong>{actor_name}</strong> a confirmé et démarré la tâche <strong>{title}</strong>.</p>
        """,
    },
    "task_acknowledged": {
        "subject": "📧 Accusé de réception: {title}",
        "heading": "Accusé de réception",
        "header_color": "#475569",
        "body": """
        <p><strong>{actor_name}</strong> a pris connaissance du changement sur la tâche
        <strong>{title}</strong>.</p>
        """,
    },
    "stage_acknowledged": {
        "subject": "📧 Accusé de réception: Étape {name}",
        "heading": "Accusé de réception",
        "header_color": "#475569",
        "body": """
        <p><strong>{actor_name}</strong> a pris connaissance du changement sur l'étape
        <strong>{name}</strong>.</p>
        """,
    },
}

# ── Due-date reminders (sent to each assignee of an open task) ──
_REMINDER_BODY = """
        <p>Bonjour <strong>{recipient_name}</strong>,</p>
        <p><strong>Tâche :</strong> {title}</p>
        <p><strong>Projet :</strong> {project_title}</p>
        <p><strong>Date d'échéance :</strong> {due_date}</p>
        <p style="font-weight: bold;">⏰ Cette tâche {due_message}</p>
        <p style="color: #64748b; font-size: 14px;">
            Connectez-vous à la plateforme pour voir tous les détails de cette tâche.
        </p>
        """

for _name, _level, _color in (
    ("task_reminder_today", "URGENT", "#dc2626"),
    ("task_reminder_tomorrow", "IMPORTANT", "#ea580c"),
    ("task_reminder_in_2_days", "RAPPEL", "#2563eb"),
):
    _TEMPLATES[_name] = {
        "subject": _level + ": {title} {due_message}",
        "heading": f"🔔 {_level}",
        "header_color": _color,
        "body": _REMINDER_BODY,
    }


_CONFIRMATION_BLOCK = """
<p style="margin-top: 24px;">
    <a href="{confirmation_url}"
       style="background: #2563eb; color: white; padding: 10px 18px; border-radius: 6px;
              text-decoration: none; font-weight: 600;">{confirmation_label}</a>
</p>
"""


class _SafeDict(dict):
    """Dict that renders missing keys as an empty string."""

    def __missing__(self, key):
        return ""


def template_names() -> set[str]:
    return set(_TEMPLATES)


def render(name: str, context: dict[str, Any], app_name: str = "TDR Projects") -> tuple[str, str] | None:
    """Render template ``name`` into ``(subject, html)``; None if unknown."""
    template = _TEMPLATES.get(name)
    if template is None:
        return None

    plain = _SafeDict({k: "" if v is None else str(v) for k, v in context.items()})
    escaped = _SafeDict({k: _html.escape(v) for k, v in plain.items()})

    subject = template["subject"].format_map(plain)
    confirmation_block = ""
    if context.get("confirmation_url"):
        confirmation_block = _CONFIRMATION_BLOCK.format_map(_SafeDict({
            "confirmation_url": _html.escape(str(context["confirmation_url"]), quote=True),
            "confirmation_label": escaped.get("confirmation_label") or "Confirmer",
        }))
    html = _LAYOUT.format_map(_SafeDict({
        "header_color": template["header_color"],
        "heading": template["heading"],
        "body": template["body"].format_map(escaped),
        "confirmation_block": confirmation_block,
        "app_name": _html.escape(app_name),
    }))
    return subject, html

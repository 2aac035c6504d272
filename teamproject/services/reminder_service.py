"""
Reminder Service — due-date emails for open tasks.

Run once a day (``flask send-reminders``).  Every assignee of an open task
due today, tomorrow or in two days gets one email per window.  A
``TaskReminder`` row is claimed before sending, so a second run on the same
day (or a concurrent one) sends nothing for tasks already handled.
"""

import logging
from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError

from teamproject.models import db
from teamproject.models.notification import TaskReminder
from teamproject.models.project import Task
from teamproject.services import email_templates
from teamproject.services.email_service import send_email

logger = logging.getLogger(__name__)

# days until due -> reminder type
REMINDER_WINDOWS = {0: "today", 1: "tomorrow", 2: "in_2_days"}
CLOSED_STATUSES = ("COMPLETED", "CANCELLED")


def _due_message(days_left: int) -> str:
    if days_left == 0:
        return "est due aujourd'hui"
    if days_left == 1:
        return "est due demain"
    return f"est due dans {days_left} jours"


def _claim(task: Task, reminder_type: str, today: date) -> TaskReminder | None:
    """Insert the (task, type, day) row; None when another run already holds it."""
    exists = TaskReminder.query.filter_by(
        task_id=task.id, reminder_type=reminder_type, sent_on=today,
    ).first()
    if exists is not None:
        return None
    reminder = TaskReminder(task_id=task.id, reminder_type=reminder_type, sent_on=today)
    db.session.add(reminder)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return reminder


def _remind(task: Task, reminder_type: str, days_left: int) -> tuple[int, int]:
    sent = failed = 0
    values = {
        "title": task.title,
        "project_title": task.project.title if task.project else "",
        "due_date": task.due_date.strftime("%d/%m/%Y"),
        "due_message": _due_message(days_left),
    }
    for assignee in sorted(task.assignees, key=lambda u: u.id):
        if not assignee.email or not assignee.is_active:
            continue
        try:
            subject, html = email_templates.render(
                f"task_reminder_{reminder_type}", {**values, "recipient_name": assignee.name},
            )
            ok = send_email(
                to=assignee.email,
                subject=subject,
                html=html,
                user_id=assignee.id,
                metadata={"reminder_type": reminder_type, "task_id": task.id},
            )
        except Exception:
            logger.exception("Reminder for task %s to %s failed", task.id, assignee.email)
            ok = False
        if ok:
            sent += 1
        else:
            failed += 1
    return sent, failed


def send_due_reminders(today: date | None = None) -> dict:
    """
    Email the assignees of open tasks due within the reminder windows.

    Args:
        today: Reference day; defaults to the local date.

    Returns:
        {"tasks_processed", "reminders_sent", "already_sent", "emails_sent", "emails_failed"}
    """
    today = today or date.today()
    due_dates = [today + timedelta(days=d) for d in REMINDER_WINDOWS]
    tasks = (
        Task.query
        .filter(Task.due_date.in_(due_dates), Task.status.not_in(CLOSED_STATUSES))
        .order_by(Task.due_date, Task.id)
        .all()
    )

    stats = {
        "tasks_processed": 0,
        "reminders_sent": 0,
        "already_sent": 0,
        "emails_sent": 0,
        "emails_failed": 0,
    }
    for task in tasks:
        if not task.assignees:
            continue
        stats["tasks_processed"] += 1
        days_left = (task.due_date - today).days
        reminder_type = REMINDER_WINDOWS[days_left]

        reminder = _claim(task, reminder_type, today)
        if reminder is None:
            logger.info("Reminder %s already sent for task %s", reminder_type, task.id)
            stats["already_sent"] += 1
            continue

        sent, failed = _remind(task, reminder_type, days_left)
        reminder.recipients_count = sent
        db.session.commit()
        stats["reminders_sent"] += 1
        stats["emails_sent"] += sent
        stats["emails_failed"] += failed

    logger.info(
        "Reminders for %s: %d sent, %d already sent, %d emails (%d failed)",
        today.isoformat(), stats["reminders_sent"], stats["already_sent"],
        stats["emails_sent"], stats["emails_failed"],
    )
    return stats

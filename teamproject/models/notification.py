"""
Notification and email delivery models.

Models:
    - Notification: in-app notification row for one user
    - EmailLog: one row per outbound email attempt (PENDING -> SENT | FAILED)
    - TaskReminder: one row per (task, reminder window, day) already reminded
"""

import json
from datetime import datetime, timezone

from teamproject.models import db


EMAIL_STATUSES = {"PENDING", "SENT", "FAILED"}


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    data_json = db.Column(db.Text, default="{}")
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def data(self) -> dict:
        try:
            return json.loads(self.data_json) if self.data_json else {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EmailLog(db.Model):
    """
    Outbound email audit log.

    Every email attempt is logged here before delivery and updated after.
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    to_email = db.Column(db.String(255), nullable=False, index=True)
    subject = db.Column(db.String(500), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING", comment="PENDING | SENT | FAILED")
    error_message = db.Column(db.Text, nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    metadata_json = db.Column(db.Text, default="{}")
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "to_email": self.to_email,
            "subject": self.subject,
            "status": self.status,
            "error_message": self.error_message,
            "user_id": self.user_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.to_email} [{self.status}]>"


class TaskReminder(db.Model):
    """Due-date reminder already sent for a task; makes reruns on the same day no-ops."""

    __tablename__ = "task_reminders"
    __table_args__ = (
        db.UniqueConstraint("task_id", "reminder_type", "sent_on", name="uq_task_reminder_day"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    reminder_type = db.Column(db.String(20), nullable=False, comment="today | tomorrow | in_2_days")
    sent_on = db.Column(db.Date, nullable=False)
    recipients_count = db.Column(db.Integer, nullable=False, default=0)
    sent_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "reminder_type": self.reminder_type,
            "sent_on": self.sent_on.isoformat() if self.sent_on else None,
            "recipients_count": self.recipients_count,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    def __repr__(self):
        return f"<TaskReminder task={self.task_id} {self.reminder_type} {self.sent_on}>"

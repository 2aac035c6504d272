"""
Activity log model — append-only record of user actions.

Rows are written through ``write_activity`` and never read back by the
services.
"""

import json
from datetime import datetime, timezone

from teamproject.models import db


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = db.Column(db.String(50), nullable=False)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.Text, default="")
    metadata_json = db.Column(db.Text, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True,
    )

    __table_args__ = (
        db.Index("ix_activity_entity", "entity_type", "entity_id"),
    )

    @property
    def activity_metadata(self) -> dict:
        try:
            return json.loads(self.metadata_json) if self.metadata_json else {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_activity(
    *,
    user_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int | None,
    details: str = "",
    metadata: dict | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.
    """
    log = ActivityLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log

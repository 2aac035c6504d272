"""Single-use confirmation tokens embedded in notification emails."""

import json
from datetime import datetime, timezone

from teamproject.models import db


class ConfirmationToken(db.Model):
    """
    Opaque token binding (type, user, entity).

    Rows are never deleted: a consumed token keeps ``confirmed=True`` so the
    confirmation trail stays auditable.
    """

    __tablename__ = "confirmation_tokens"

    token = db.Column(db.String(128), primary_key=True)
    type = db.Column(db.String(40), nullable=False,
                     comment="TASK_ASSIGNMENT | TASK_STATUS_CHANGE | STAGE_STATUS_CHANGE | PROJECT_CREATED")
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    metadata_json = db.Column(db.Text, default="{}")
    confirmed = db.Column(db.Boolean, nullable=False, default=False)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def token_metadata(self) -> dict:
        try:
            return json.loads(self.metadata_json) if self.metadata_json else {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def __repr__(self):
        state = "used" if self.confirmed else "open"
        return f"<ConfirmationToken {self.type} user={self.user_id} {self.entity_type}/{self.entity_id} {state}>"

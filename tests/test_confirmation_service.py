"""
Confirmation token tests.

Tests cover:
  - Issue: 64 hex chars, TTL from config, persistence failure → None
  - Consume: unknown, already used, expired (in that order), single use
  - Actions per ConfirmationType, unknown type no-op, failures → False
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError

from teamproject.models import db
from teamproject.models.activity import ActivityLog
from teamproject.models.confirmation import ConfirmationToken
from teamproject.models.notification import EmailLog
from teamproject.services.confirmation_service import (
    ERR_ALREADY_USED,
    ERR_EXPIRED,
    ERR_INVALID,
    ConfirmationData,
    ConfirmationType,
    build_confirmation_url,
    confirm_token,
    create_confirmation_token,
    execute_confirmation_action,
)


def _token_for(task, user, type_=ConfirmationType.TASK_ASSIGNMENT, metadata=None):
    return create_confirmation_token(type_, user.id, "task", task.id, metadata)


# ═══════════════════════════════════════════════════════════════
# Issue
# ═══════════════════════════════════════════════════════════════

class TestCreateToken:
    def test_token_is_64_hex_chars(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        token = _token_for(task, employee)
        assert len(token) == 64
        int(token, 16)

    def test_row_is_persisted_with_ttl(self, app, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        token = _token_for(task, employee, metadata={"assigned_by": manager.id})
        row = db.session.get(ConfirmationToken, token)
        assert row.confirmed is False
        assert row.type == "TASK_ASSIGNMENT"
        assert row.token_metadata == {"assigned_by": manager.id}
        expires_at = row.expires_at.replace(tzinfo=row.expires_at.tzinfo or timezone.utc)
        expected = datetime.now(timezone.utc) + timedelta(days=app.config["CONFIRMATION_TOKEN_TTL_DAYS"])
        assert abs((expires_at - expected).total_seconds()) < 60

    def test_tokens_are_unique(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        assert _token_for(task, employee) != _token_for(task, employee)

    def test_persistence_failure_returns_none(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        with patch.object(db.session, "commit", side_effect=SQLAlchemyError("boom")):
            assert _token_for(task, employee) is None
        assert ConfirmationToken.query.count() == 0

    def test_confirmation_url(self, app):
        app.config["APP_BASE_URL"] = "https://projects.acme-corp.com/"
        try:
            assert build_confirmation_url("abc") == "https://projects.acme-corp.com/api/v1/confirmations/abc"
        finally:
            app.config["APP_BASE_URL"] = "http://localhost:5000"


# ═══════════════════════════════════════════════════════════════
# Consume
# ═══════════════════════════════════════════════════════════════

class TestConfirmToken:
    def test_unknown_token(self):
        result = confirm_token("0" * 64)
        assert result.success is False
        assert result.error == ERR_INVALID

    def test_empty_token(self):
        assert confirm_token("").error == ERR_INVALID

    def test_single_use(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        token = _token_for(task, employee)

        first = confirm_token(token)
        assert first.success is True
        assert first.data.type == "TASK_ASSIGNMENT"
        assert first.data.user_id == employee.id
        assert first.data.entity_id == task.id

        second = confirm_token(token)
        assert second.success is False
        assert second.error == ERR_ALREADY_USED

        row = db.session.get(ConfirmationToken, token)
        assert row.confirmed is True
        assert row.confirmed_at is not None

    def test_expired(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        token = _token_for(task, employee)
        row = db.session.get(ConfirmationToken, token)
        row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.session.commit()

        result = confirm_token(token)
        assert result.success is False
        assert result.error == ERR_EXPIRED
        assert db.session.get(ConfirmationToken, token).confirmed is False

    def test_used_is_reported_before_expired(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        token = _token_for(task, employee)
        assert confirm_token(token).success is True
        row = db.session.get(ConfirmationToken, token)
        row.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        db.session.commit()
        assert confirm_token(token).error == ERR_ALREADY_USED


# ═══════════════════════════════════════════════════════════════
# Actions
# ═══════════════════════════════════════════════════════════════

class TestExecuteAction:
    def _data(self, type_, user, entity_type, entity_id, metadata=None):
        return ConfirmationData(
            type=type_, user_id=user.id, entity_type=entity_type,
            entity_id=entity_id, metadata=metadata or {},
        )

    def test_task_assignment_starts_task(self, admin, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        ok = execute_confirmation_action(
            self._data("TASK_ASSIGNMENT", employee, "task", task.id),
        )
        assert ok is True
        db.session.expire_all()
        assert task.status == "IN_PROGRESS"

        log = ActivityLog.query.filter_by(action="start", entity_id=task.id).one()
        assert log.user_id == employee.id

        recipients = sorted(e.to_email for e in EmailLog.query.all())
        assert recipients == sorted([manager.email, admin.email])
        assert all(e.subject == f"✅ Tâche démarrée: {task.title}" for e in EmailLog.query.all())
        assert all(e.status == "SENT" for e in EmailLog.query.all())

    def test_task_assignment_on_started_task_is_ok(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), status="IN_PROGRESS", assignees=[employee])
        assert execute_confirmation_action(
            self._data("TASK_ASSIGNMENT", employee, "task", task.id),
        ) is True

    def test_task_assignment_on_cancelled_task_fails(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), status="CANCELLED", assignees=[employee])
        assert execute_confirmation_action(
            self._data("TASK_ASSIGNMENT", employee, "task", task.id),
        ) is False
        db.session.expire_all()
        assert task.status == "CANCELLED"

    def test_missing_task_fails(self, employee):
        assert execute_confirmation_action(
            self._data("TASK_ASSIGNMENT", employee, "task", 9999),
        ) is False

    def test_task_status_change_acknowledges(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), status="IN_REVIEW", assignees=[employee])
        assert execute_confirmation_action(
            self._data("TASK_STATUS_CHANGE", employee, "task", task.id, {"new_status": "IN_REVIEW"}),
        ) is True
        db.session.expire_all()
        assert task.status == "IN_REVIEW"
        assert ActivityLog.query.filter_by(action="acknowledge", entity_type="task").count() == 1
        subjects = {e.subject for e in EmailLog.query.all()}
        assert subjects == {f"📧 Accusé de réception: {task.title}"}

    def test_stage_status_change_acknowledges(self, manager, employee, make_project, make_stage):
        stage = make_stage(make_project(manager), order=1, name="Conception")
        assert execute_confirmation_action(
            self._data("STAGE_STATUS_CHANGE", employee, "stage", stage.id),
        ) is True
        subjects = {e.subject for e in EmailLog.query.all()}
        assert subjects == {"📧 Accusé de réception: Étape Conception"}

    def test_project_created_logs_without_email(self, manager, make_project):
        project = make_project(manager)
        assert execute_confirmation_action(
            self._data("PROJECT_CREATED", manager, "project", project.id),
        ) is True
        assert ActivityLog.query.filter_by(entity_type="project", action="acknowledge").count() == 1
        assert EmailLog.query.count() == 0

    def test_unknown_type_is_noop(self, employee):
        assert execute_confirmation_action(
            self._data("SOMETHING_ELSE", employee, "task", 1),
        ) is True
        assert ActivityLog.query.count() == 0

    def test_email_failure_keeps_status(self, manager, employee, make_project, make_task):
        task = make_task(make_project(manager), assignees=[employee])
        with patch(
            "teamproject.services.confirmation_service.send_to_responsibles",
            side_effect=RuntimeError("smtp down"),
        ):
            ok = execute_confirmation_action(
                self._data("TASK_ASSIGNMENT", employee, "task", task.id),
            )
        assert ok is False
        db.session.expire_all()
        assert task.status == "IN_PROGRESS"

    def test_every_type_has_a_handler(self):
        from teamproject.services import confirmation_service
        assert set(confirmation_service._HANDLERS) == set(ConfirmationType)

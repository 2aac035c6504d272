"""
Stage lifecycle tests.

Tests cover:
  - Completion gate on incomplete tasks
  - Cascades: project completion + in-app notification, next-stage advance
  - Access rules for completing, updating and deleting stages
  - create_stage ordering, update_stage field/status handling
"""

from unittest.mock import patch

import pytest

from teamproject.core.exceptions import (
    AccessDenied,
    ConflictError,
    IncompleteTasksError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from teamproject.models import db
from teamproject.models.activity import ActivityLog
from teamproject.models.confirmation import ConfirmationToken
from teamproject.models.notification import EmailLog, Notification
from teamproject.models.project import Stage, Task
from teamproject.services.lifecycle_service import (
    complete_stage,
    create_stage,
    delete_stage,
    update_stage,
)


@pytest.fixture()
def project(manager, make_project):
    return make_project(manager, title="Migration ERP")


class TestCompleteStage:
    def test_blocked_by_incomplete_tasks(self, manager, actor, project, make_stage, make_task):
        stage = make_stage(project, 1)
        make_task(project, stage, title="A", status="COMPLETED")
        make_task(project, stage, title="B", status="IN_PROGRESS")
        make_task(project, stage, title="C", status="TODO")

        with pytest.raises(IncompleteTasksError) as exc_info:
            complete_stage(stage.id, actor(manager))

        err = exc_info.value
        assert err.details["incomplete_tasks"] == 2
        assert err.message == (
            "Toutes les tâches de cette étape doivent être terminées avant de valider l'étape"
        )
        db.session.expire_all()
        assert db.session.get(Stage, stage.id).status == "PENDING"

    def test_cancelled_task_still_blocks(self, manager, actor, project, make_stage, make_task):
        stage = make_stage(project, 1)
        make_task(project, stage, status="CANCELLED")
        with pytest.raises(IncompleteTasksError):
            complete_stage(stage.id, actor(manager))

    def test_completes_and_advances_next_pending(self, manager, actor, project, make_stage, make_task):
        first = make_stage(project, 1, status="IN_PROGRESS")
        second = make_stage(project, 2)
        make_stage(project, 3)
        make_task(project, first, status="COMPLETED")

        result = complete_stage(first.id, actor(manager))

        assert result["success"] is True
        assert result["stage"]["status"] == "COMPLETED"
        assert result["all_stages_completed"] is False
        assert result["next_stage"]["id"] == second.id
        assert result["next_stage"]["status"] == "IN_PROGRESS"
        assert result["project_manager"] is None
        assert Notification.query.count() == 0

    def test_next_stage_uses_smallest_greater_order(self, manager, actor, project, make_stage):
        first = make_stage(project, 10)
        far = make_stage(project, 30)
        near = make_stage(project, 20)

        result = complete_stage(first.id, actor(manager))
        assert result["next_stage"]["id"] == near.id
        db.session.expire_all()
        assert db.session.get(Stage, far.id).status == "PENDING"

    def test_blocked_next_stage_is_not_advanced(self, manager, actor, project, make_stage):
        first = make_stage(project, 1)
        blocked = make_stage(project, 2, status="BLOCKED")
        result = complete_stage(first.id, actor(manager))
        assert result["next_stage"] is None
        db.session.expire_all()
        assert db.session.get(Stage, blocked.id).status == "BLOCKED"

    def test_last_stage_completes_project(self, admin, manager, actor, project, make_stage, make_task):
        make_stage(project, 1, status="COMPLETED")
        last = make_stage(project, 2, status="IN_PROGRESS")
        make_task(project, last, status="COMPLETED")

        result = complete_stage(last.id, actor(admin))

        assert result["all_stages_completed"] is True
        assert result["next_stage"] is None
        assert result["notification_sent"] is True
        assert result["project_manager"]["id"] == manager.id

        db.session.expire_all()
        assert project.status == "COMPLETED"
        note = Notification.query.one()
        assert note.user_id == manager.id
        assert note.type == "PROJECT_COMPLETED"
        assert note.title == "Projet terminé"
        assert note.message == 'Toutes les étapes du projet "Migration ERP" ont été terminées'
        assert note.data == {"project_id": project.id, "completed_by": admin.id, "stages_count": 2}

    def test_project_without_manager_notifies_creator(self, employee, admin, actor, make_project, make_stage):
        project = make_project(None, created_by=employee)
        stage = make_stage(project, 1)
        complete_stage(stage.id, actor(admin))
        assert Notification.query.one().user_id == employee.id

    def test_dispatches_stage_completed_to_manager(self, admin, manager, actor, project, make_stage):
        stage = make_stage(project, 1)
        complete_stage(stage.id, actor(admin))
        subjects = {(e.to_email, e.subject) for e in EmailLog.query.all()}
        assert (manager.email, f"✅ Étape complétée: {stage.name}") in subjects
        assert ActivityLog.query.filter_by(action="stage_completed").count() == 1

    def test_unowned_project_still_notifies_actor(self, admin, actor, make_project, make_stage):
        project = make_project(None)
        stage = make_stage(project, 1)
        make_stage(project, 2)

        result = complete_stage(stage.id, actor(admin))

        assert result["notification_sent"] is False
        assert result["project_manager"] is None
        assert [e.to_email for e in EmailLog.query.all()] == [admin.email]
        assert ActivityLog.query.filter_by(action="stage_completed").count() == 1

    def test_notification_sent_only_when_project_completes(self, manager, actor, project, make_stage):
        first = make_stage(project, 1)
        make_stage(project, 2)
        result = complete_stage(first.id, actor(manager))
        assert result["all_stages_completed"] is False
        assert result["notification_sent"] is False

    def test_already_completed_is_rejected(self, manager, actor, project, make_stage):
        stage = make_stage(project, 1, status="COMPLETED")
        with pytest.raises(TransitionError):
            complete_stage(stage.id, actor(manager))

    def test_assignee_may_complete(self, manager, employee, actor, project, make_stage, make_task):
        stage = make_stage(project, 1)
        make_task(project, stage, status="COMPLETED", assignees=[employee])
        assert complete_stage(stage.id, actor(employee))["success"] is True

    def test_outsider_is_denied(self, employee, actor, project, make_stage):
        stage = make_stage(project, 1)
        with pytest.raises(AccessDenied):
            complete_stage(stage.id, actor(employee))

    def test_unknown_stage(self, manager, actor):
        with pytest.raises(NotFoundError) as exc_info:
            complete_stage(4242, actor(manager))
        assert exc_info.value.message == "Étape introuvable"

    def test_notification_failure_keeps_completion(self, manager, actor, project, make_stage):
        stage = make_stage(project, 1)
        with patch(
            "teamproject.services.notification_service._resolve_recipients",
            side_effect=RuntimeError("smtp down"),
        ):
            result = complete_stage(stage.id, actor(manager))
        assert result["success"] is True
        db.session.expire_all()
        assert db.session.get(Stage, stage.id).status == "COMPLETED"


class TestCreateStage:
    def test_order_defaults_to_max_plus_one(self, manager, actor, project, make_stage):
        make_stage(project, 4)
        stage = create_stage(project.id, actor(manager), {"name": "Recette"})
        assert stage.order == 5
        assert stage.status == "PENDING"
        assert stage.created_by_id == manager.id
        assert ActivityLog.query.filter_by(entity_type="stage", action="create").count() == 1

    def test_first_stage_gets_order_one(self, manager, actor, project):
        assert create_stage(project.id, actor(manager), {"name": "Cadrage"}).order == 1

    def test_duplicate_order(self, manager, actor, project, make_stage):
        make_stage(project, 1)
        with pytest.raises(ConflictError):
            create_stage(project.id, actor(manager), {"name": "Doublon", "order": 1})

    def test_name_required(self, manager, actor, project):
        with pytest.raises(ValidationError):
            create_stage(project.id, actor(manager), {"name": "  "})

    def test_other_manager_denied(self, make_user, actor, project):
        other = make_user(role="MANAGER")
        with pytest.raises(AccessDenied):
            create_stage(project.id, actor(other), {"name": "Recette"})


class TestUpdateStage:
    def test_empty_update_rejected(self, manager, actor, project, make_stage):
        stage = make_stage(project, 1)
        with pytest.raises(ValidationError) as exc_info:
            update_stage(stage.id, actor(manager), {"unknown": 1})
        assert exc_info.value.message == "Aucun champ à mettre à jour"

    def test_fields_updated(self, manager, actor, project, make_stage):
        stage = make_stage(project, 1)
        result = update_stage(stage.id, actor(manager), {"name": "Conception", "duration": 10})
        assert result["stage"]["name"] == "Conception"
        assert result["stage"]["duration"] == 10
        assert result["completion"] is None

    def test_invalid_transition(self, manager, actor, project, make_stage):
        stage = make_stage(project, 1, status="BLOCKED")
        with pytest.raises(TransitionError):
            update_stage(stage.id, actor(manager), {"status": "COMPLETED"})

    def test_completed_status_goes_through_gate(self, manager, actor, project, make_stage, make_task):
        stage = make_stage(project, 1, status="IN_PROGRESS")
        make_task(project, stage, status="TODO")
        with pytest.raises(IncompleteTasksError):
            update_stage(stage.id, actor(manager), {"status": "COMPLETED"})

    def test_completed_status_runs_cascades(self, manager, actor, project, make_stage):
        stage = make_stage(project, 1, status="IN_PROGRESS")
        nxt = make_stage(project, 2)
        result = update_stage(stage.id, actor(manager), {"status": "COMPLETED"})
        assert result["completion"]["next_stage"]["id"] == nxt.id

    def test_manager_status_change_tokens_first_assignee(
        self, admin, manager, actor, project, make_stage, make_task, make_user,
    ):
        stage = make_stage(project, 1)
        first = make_user(role="EMPLOYEE")
        second = make_user(role="EMPLOYEE")
        make_task(project, stage, assignees=[second, first])

        update_stage(stage.id, actor(manager), {"status": "IN_PROGRESS"})

        token = ConfirmationToken.query.one()
        assert token.type == "STAGE_STATUS_CHANGE"
        assert token.user_id == first.id
        recipients = {e.to_email for e in EmailLog.query.all()}
        assert {first.email, second.email, admin.email, manager.email} == recipients

    def test_employee_status_change_reaches_manager(
        self, admin, manager, employee, actor, project, make_stage, make_task,
    ):
        stage = make_stage(project, 1)
        make_task(project, stage, assignees=[employee])

        update_stage(stage.id, actor(employee), {"status": "IN_PROGRESS"})

        assert ConfirmationToken.query.count() == 0
        recipients = {e.to_email for e in EmailLog.query.all()}
        assert recipients == {employee.email, manager.email, admin.email}

    def test_employee_cannot_rename(self, employee, actor, project, make_stage, make_task):
        stage = make_stage(project, 1)
        make_task(project, stage, assignees=[employee])
        with pytest.raises(AccessDenied):
            update_stage(stage.id, actor(employee), {"name": "Autre"})

    def test_order_clash(self, manager, actor, project, make_stage):
        make_stage(project, 1)
        second = make_stage(project, 2)
        with pytest.raises(ConflictError):
            update_stage(second.id, actor(manager), {"order": 1})


class TestDeleteStage:
    def test_tasks_are_detached(self, manager, actor, project, make_stage, make_task):
        stage = make_stage(project, 1)
        task = make_task(project, stage)
        delete_stage(stage.id, actor(manager))
        db.session.expire_all()
        assert db.session.get(Stage, stage.id) is None
        assert db.session.get(Task, task.id).stage_id is None
        assert ActivityLog.query.filter_by(entity_type="stage", action="delete").count() == 1

    def test_creator_may_delete(self, employee, actor, project, make_stage):
        stage = make_stage(project, 1, created_by=employee)
        delete_stage(stage.id, actor(employee))
        assert db.session.get(Stage, stage.id) is None

    def test_stranger_denied(self, employee, actor, project, make_stage):
        stage = make_stage(project, 1)
        with pytest.raises(AccessDenied):
            delete_stage(stage.id, actor(employee))

"""
End-to-end: assignment email link → confirmation endpoint → task started.
"""

from datetime import datetime, timedelta, timezone

from teamproject.models import db
from teamproject.models.confirmation import ConfirmationToken
from teamproject.models.notification import EmailLog
from teamproject.models.project import Task


def test_assignment_link_starts_task_once(client, admin, manager, employee, auth_headers, make_project):
    project = make_project(manager, title="Migration ERP")

    res = client.post(
        f"/api/v1/projects/{project.id}/tasks",
        json={"title": "Cartographie des flux", "assignee_ids": [employee.id]},
        headers=auth_headers(manager),
    )
    assert res.status_code == 201
    task_id = res.get_json()["task"]["id"]

    token = ConfirmationToken.query.filter_by(user_id=employee.id).one()
    assert token.type == "TASK_ASSIGNMENT"
    assert token.entity_id == task_id
    assignment_mail = EmailLog.query.filter_by(to_email=employee.email).one()
    assert assignment_mail.subject == "Nouvelle tâche assignée: Cartographie des flux"
    assert assignment_mail.status == "SENT"

    res = client.get(f"/api/v1/confirmations/{token.token}")
    assert res.status_code == 200
    body = res.get_json()
    assert body == {
        "success": True,
        "type": "TASK_ASSIGNMENT",
        "entity_type": "task",
        "entity_id": task_id,
        "action_executed": True,
    }
    db.session.expire_all()
    assert db.session.get(Task, task_id).status == "IN_PROGRESS"

    again = client.get(f"/api/v1/confirmations/{token.token}")
    assert again.status_code == 400
    assert again.get_json() == {"success": False, "error": "Ce token a déjà été utilisé"}


def test_confirmation_needs_no_auth_header(client):
    res = client.post("/api/v1/confirmations/" + "0" * 64)
    assert res.status_code == 400
    assert res.get_json()["success"] is False


def test_expired_link(client, employee, manager, make_project, make_task):
    project = make_project(manager)
    task = make_task(project, assignees=[employee])
    token = ConfirmationToken(
        token="f" * 64,
        type="TASK_ASSIGNMENT",
        user_id=employee.id,
        entity_type="task",
        entity_id=task.id,
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    db.session.add(token)
    db.session.commit()

    res = client.get(f"/api/v1/confirmations/{token.token}")
    assert res.status_code == 400
    assert res.get_json()["error"] == "Ce token a expiré"
    db.session.expire_all()
    assert db.session.get(Task, task.id).status == "TODO"

"""
Due-date reminder tests.

Tests cover:
  - Reminder windows: today, tomorrow, in two days; nothing outside them
  - Closed tasks, unassigned tasks and inactive assignees are skipped
  - One reminder per (task, window, day), also across reruns
  - flask send-reminders CLI command
"""

from datetime import date, timedelta
from unittest.mock import patch

import pytest

from teamproject.models.notification import EmailLog, TaskReminder
from teamproject.services.reminder_service import send_due_reminders

TODAY = date(2026, 3, 10)


@pytest.fixture()
def project(manager, make_project):
    return make_project(manager, title="Migration ERP")


@pytest.mark.parametrize("days, reminder_type, subject", [
    (0, "today", "URGENT: Maquettes est due aujourd'hui"),
    (1, "tomorrow", "IMPORTANT: Maquettes est due demain"),
    (2, "in_2_days", "RAPPEL: Maquettes est due dans 2 jours"),
])
def test_reminder_windows(employee, project, make_task, days, reminder_type, subject):
    task = make_task(project, assignees=[employee], due_date=TODAY + timedelta(days=days))

    stats = send_due_reminders(TODAY)

    assert stats["reminders_sent"] == 1
    assert stats["emails_sent"] == 1
    email = EmailLog.query.one()
    assert email.to_email == employee.email
    assert email.subject == subject
    reminder = TaskReminder.query.one()
    assert (reminder.task_id, reminder.reminder_type, reminder.sent_on) == (task.id, reminder_type, TODAY)
    assert reminder.recipients_count == 1


def test_outside_windows_is_ignored(employee, project, make_task):
    make_task(project, assignees=[employee], due_date=TODAY + timedelta(days=3))
    make_task(project, assignees=[employee], due_date=TODAY - timedelta(days=1))
    make_task(project, assignees=[employee])

    stats = send_due_reminders(TODAY)

    assert stats["tasks_processed"] == 0
    assert EmailLog.query.count() == 0


@pytest.mark.parametrize("status", ["COMPLETED", "CANCELLED"])
def test_closed_tasks_are_skipped(employee, project, make_task, status):
    make_task(project, assignees=[employee], status=status, due_date=TODAY)
    assert send_due_reminders(TODAY)["tasks_processed"] == 0
    assert TaskReminder.query.count() == 0


def test_every_active_assignee_is_reminded(employee, make_user, project, make_task):
    colleague = make_user(name="Carl Colleague")
    former = make_user(is_active=False)
    make_task(project, assignees=[employee, colleague, former], status="IN_REVIEW", due_date=TODAY)

    stats = send_due_reminders(TODAY)

    assert stats["emails_sent"] == 2
    assert {e.to_email for e in EmailLog.query.all()} == {employee.email, colleague.email}


def test_body_names_task_project_and_due_date(employee, project, make_task):
    make_task(project, title="Recette <finale>", assignees=[employee], due_date=TODAY + timedelta(days=1))
    sent = {}

    def capture(*, to, subject, html, **kwargs):
        sent[to] = html
        return True

    with patch("teamproject.services.reminder_service.send_email", side_effect=capture):
        send_due_reminders(TODAY)

    html = sent[employee.email]
    assert "Emma Employee" in html
    assert "Recette &lt;finale&gt;" in html
    assert "Migration ERP" in html
    assert "11/03/2026" in html


def test_unassigned_task_is_not_recorded(project, make_task):
    make_task(project, due_date=TODAY)
    assert send_due_reminders(TODAY)["tasks_processed"] == 0
    assert TaskReminder.query.count() == 0


def test_second_run_same_day_sends_nothing(employee, project, make_task):
    make_task(project, assignees=[employee], due_date=TODAY)
    make_task(project, assignees=[employee], due_date=TODAY + timedelta(days=2))

    first = send_due_reminders(TODAY)
    second = send_due_reminders(TODAY)

    assert first["reminders_sent"] == 2
    assert second["reminders_sent"] == 0
    assert second["already_sent"] == 2
    assert EmailLog.query.count() == 2
    assert TaskReminder.query.count() == 2


def test_next_day_moves_to_next_window(employee, project, make_task):
    make_task(project, assignees=[employee], due_date=TODAY + timedelta(days=1))

    send_due_reminders(TODAY)
    send_due_reminders(TODAY + timedelta(days=1))

    types = [r.reminder_type for r in TaskReminder.query.order_by(TaskReminder.sent_on).all()]
    assert types == ["tomorrow", "today"]
    assert EmailLog.query.count() == 2


def test_failed_delivery_is_counted_and_recorded(employee, project, make_task):
    make_task(project, assignees=[employee], due_date=TODAY)

    with patch("teamproject.services.reminder_service.send_email", side_effect=RuntimeError("smtp down")):
        stats = send_due_reminders(TODAY)

    assert stats["emails_failed"] == 1
    assert TaskReminder.query.one().recipients_count == 0


def test_send_reminders_cli(app, employee, project, make_task):
    make_task(project, assignees=[employee], due_date=date.today())

    runner = app.test_cli_runner()
    assert runner.invoke(args=["send-reminders"]).exit_code == 0
    assert runner.invoke(args=["send-reminders"]).exit_code == 0

    assert EmailLog.query.filter_by(to_email=employee.email).count() == 1
    assert TaskReminder.query.count() == 1

"""
Access predicates — entity-level authorization.

Permissions answer "can this role ever do X"; these answer "can this user do
X to this entity".  Both gates must pass for a mutation to proceed.  The
functions are pure: callers load ownership/assignment data beforehand.
"""

from collections.abc import Iterable


def can_manage_project(role: str, user_id: int, project_manager_id: int | None) -> bool:
    if role == "admin":
        return True
    return role == "manager" and project_manager_id is not None and project_manager_id == user_id


def can_edit_task(
    role: str,
    user_id: int,
    task_assignee_ids: Iterable[int],
    project_manager_id: int | None,
) -> bool:
    if can_manage_project(role, user_id, project_manager_id):
        return True
    return user_id in set(task_assignee_ids)


def can_delete_stage(
    role: str,
    user_id: int,
    project_manager_id: int | None,
    stage_created_by_id: int | None,
) -> bool:
    """Project managers and the stage's creator may delete it."""
    if can_manage_project(role, user_id, project_manager_id):
        return True
    return stage_created_by_id is not None and stage_created_by_id == user_id


def can_respond_to_task(user_id: int, task_assignee_ids: Iterable[int]) -> bool:
    """Only assignees may accept, reject or refuse a task."""
    return user_id in set(task_assignee_ids)


def can_work_in_project(
    role: str,
    user_id: int,
    project_manager_id: int | None,
    project_assignee_ids: Iterable[int],
) -> bool:
    """Managers of the project, or anyone assigned to one of its tasks."""
    if can_manage_project(role, user_id, project_manager_id):
        return True
    return user_id in set(project_assignee_ids)

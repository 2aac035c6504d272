"""
Task blueprint — task CRUD, refusal and assignee responses.

Endpoints summary:
    POST    /api/v1/projects/<pid>/tasks        create (tasks.create)
    PATCH   /api/v1/tasks/<id>                  update (tasks.update)
    DELETE  /api/v1/tasks/<id>                  delete (tasks.delete)
    POST    /api/v1/tasks/<id>/refuse           assignee refuses (tasks.update)
    GET     /api/v1/tasks/<id>/respond          caller's own response
    POST    /api/v1/tasks/<id>/respond          assignee accepts / rejects
"""

from flask import Blueprint, jsonify

from teamproject.blueprints import json_body
from teamproject.middleware.permission_required import (
    current_user,
    require_auth,
    require_permission,
)
from teamproject.services import lifecycle_service

task_bp = Blueprint("tasks", __name__, url_prefix="/api/v1")


@task_bp.route("/projects/<int:pid>/tasks", methods=["POST"])
@require_permission("tasks", "create")
def create_task(pid):
    task = lifecycle_service.create_task(pid, current_user(), json_body())
    return jsonify({"success": True, "task": task.to_dict()}), 201


@task_bp.route("/tasks/<int:task_id>", methods=["PATCH", "PUT"])
@require_permission("tasks", "update")
def update_task(task_id):
    task = lifecycle_service.update_task(task_id, current_user(), json_body())
    return jsonify({"success": True, "task": task.to_dict()})


@task_bp.route("/tasks/<int:task_id>", methods=["DELETE"])
@require_permission("tasks", "delete")
def delete_task(task_id):
    lifecycle_service.delete_task(task_id, current_user())
    return jsonify({"success": True, "message": "Tâche supprimée"})


@task_bp.route("/tasks/<int:task_id>/refuse", methods=["POST"])
@require_permission("tasks", "update")
def refuse_task(task_id):
    data = json_body()
    task = lifecycle_service.refuse_task(task_id, current_user(), data.get("reason"))
    return jsonify({"success": True, "task": task.to_dict()})


@task_bp.route("/tasks/<int:task_id>/respond", methods=["GET"])
@require_auth
def get_response(task_id):
    answer = lifecycle_service.get_task_response(task_id, current_user().id)
    return jsonify({"response": answer.to_dict() if answer else None})


@task_bp.route("/tasks/<int:task_id>/respond", methods=["POST"])
@require_auth
def respond(task_id):
    data = json_body()
    answer = lifecycle_service.respond_to_task(
        task_id, current_user(), data.get("response"), reason=data.get("reason"),
    )
    return jsonify({"success": True, "response": answer.to_dict()}), 201

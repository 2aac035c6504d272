"""
Task dependency blueprint.

Endpoints summary:
    GET     /api/v1/task-dependencies[?task_id=]    list edges (tasks.read)
    POST    /api/v1/task-dependencies               add edge (tasks.update)
    DELETE  /api/v1/task-dependencies/<id>          remove edge (tasks.update)
"""

from flask import Blueprint, jsonify, request

from teamproject.blueprints import json_body
from teamproject.middleware.permission_required import current_user, require_permission
from teamproject.services import dependency_service
from teamproject.utils.helpers import parse_int

dependency_bp = Blueprint("task_dependencies", __name__, url_prefix="/api/v1")


@dependency_bp.route("/task-dependencies", methods=["GET"])
@require_permission("tasks", "read")
def list_dependencies():
    task_id = request.args.get("task_id")
    deps = dependency_service.list_dependencies(
        parse_int(task_id, "task_id") if task_id else None,
    )
    return jsonify({"items": [d.to_dict() for d in deps], "total": len(deps)})


@dependency_bp.route("/task-dependencies", methods=["POST"])
@require_permission("tasks", "update")
def create_dependency():
    data = json_body()
    dep = dependency_service.add_dependency(
        data.get("task_id"), data.get("dependent_task_id"), current_user(),
    )
    return jsonify({"success": True, "dependency": dep.to_dict()}), 201


@dependency_bp.route("/task-dependencies/<int:dep_id>", methods=["DELETE"])
@require_permission("tasks", "update")
def delete_dependency(dep_id):
    dependency_service.remove_dependency(dep_id, current_user())
    return jsonify({"success": True, "message": "Dépendance supprimée"})

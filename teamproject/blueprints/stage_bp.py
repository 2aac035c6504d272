"""
Stage blueprint.

Endpoints summary:
    POST    /api/v1/projects/<pid>/stages       create (stages.create)
    PATCH   /api/v1/stages/<id>                 update fields / status (stages.update)
    DELETE  /api/v1/stages/<id>                 delete (stages.delete)
    POST    /api/v1/stages/<id>/complete        completion gate + cascades (stages.update)
"""

from flask import Blueprint, jsonify

from teamproject.blueprints import json_body
from teamproject.middleware.permission_required import current_user, require_permission
from teamproject.services import lifecycle_service

stage_bp = Blueprint("stages", __name__, url_prefix="/api/v1")


@stage_bp.route("/projects/<int:pid>/stages", methods=["POST"])
@require_permission("stages", "create")
def create_stage(pid):
    stage = lifecycle_service.create_stage(pid, current_user(), json_body())
    return jsonify({"success": True, "stage": stage.to_dict()}), 201


@stage_bp.route("/stages/<int:stage_id>", methods=["PATCH", "PUT"])
@require_permission("stages", "update")
def update_stage(stage_id):
    result = lifecycle_service.update_stage(stage_id, current_user(), json_body())
    return jsonify({"success": True, **result})


@stage_bp.route("/stages/<int:stage_id>", methods=["DELETE"])
@require_permission("stages", "delete")
def delete_stage(stage_id):
    lifecycle_service.delete_stage(stage_id, current_user())
    return jsonify({"success": True, "message": "Étape supprimée"})


@stage_bp.route("/stages/<int:stage_id>/complete", methods=["POST"])
@require_permission("stages", "update")
def complete_stage(stage_id):
    return jsonify(lifecycle_service.complete_stage(stage_id, current_user()))

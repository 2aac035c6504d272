"""
Confirmation blueprint — targets of the links embedded in notification emails.

Endpoints summary:
    GET|POST  /api/v1/confirmations/<token>    consume token + run its action

No session is required: the token itself is the credential.  Requests are
rate limited per remote address (``CONFIRMATION_RATE_LIMIT``).
"""

import logging

from flask import Blueprint, current_app, jsonify

from teamproject import limiter
from teamproject.services.confirmation_service import (
    confirm_token,
    execute_confirmation_action,
)

logger = logging.getLogger(__name__)

confirmation_bp = Blueprint("confirmations", __name__, url_prefix="/api/v1/confirmations")


def _confirmation_limit():
    return current_app.config.get("CONFIRMATION_RATE_LIMIT", "30 per minute")


@confirmation_bp.route("/<token>", methods=["GET", "POST"])
@limiter.limit(_confirmation_limit)
def confirm(token):
    result = confirm_token(token)
    if not result.success:
        logger.info("Confirmation rejected: %s", result.error)
        return jsonify({"success": False, "error": result.error}), 400

    data = result.data
    executed = execute_confirmation_action(data)
    return jsonify({
        "success": True,
        "type": data.type,
        "entity_type": data.entity_type,
        "entity_id": data.entity_id,
        "action_executed": executed,
    })

"""
Hour Change Request Blueprint.

Routes:
  POST   /hour-changes        – submit a change request
  GET    /hour-changes        – requests visible to the caller (?status=PENDING)
"""

from flask import Blueprint, jsonify, request

from planner.blueprints import current_actor, int_field, json_body
from planner.services import hour_change_service
from planner.utils.errors import register_error_handlers

hour_change_bp = Blueprint("hour_change_bp", __name__, url_prefix="/api/v1")
register_error_handlers(hour_change_bp)


@hour_change_bp.route("/hour-changes", methods=["POST"])
def create_hour_change():
    """Body: { phase_allocation_id, new_hours, weekly_allocation_id?, reason? }"""
    actor = current_actor()
    data = json_body()
    result = hour_change_service.create_request(
        actor,
        int_field(data, "phase_allocation_id"),
        data.get("new_hours"),
        weekly_allocation_id=int_field(data, "weekly_allocation_id", required=False),
        reason=data.get("reason"),
    )
    return jsonify(result), 201


@hour_change_bp.route("/hour-changes", methods=["GET"])
def list_hour_changes():
    actor = current_actor()
    items = hour_change_service.list_requests(actor, status=request.args.get("status"))
    return jsonify({"items": items, "total": len(items)})

"""
Weekly Plan Blueprint.

Routes:
  POST   /allocations/<aid>/weekly     – plan (or re-plan) one ISO week
  GET    /allocations/<aid>/weekly     – weekly rows of an allocation
"""

from flask import Blueprint, jsonify

from planner.blueprints import current_actor, json_body
from planner.core.exceptions import NotAuthorizedError
from planner.models.allocation import PhaseAllocation
from planner.services import weekly_plan_lifecycle
from planner.services.helpers.budget import approved_weekly_hours
from planner.services.helpers.queries import get_or_raise
from planner.services.permission import can_act_for_consultant
from planner.utils.errors import register_error_handlers

weekly_plan_bp = Blueprint("weekly_plan_bp", __name__, url_prefix="/api/v1")
register_error_handlers(weekly_plan_bp)


@weekly_plan_bp.route("/allocations/<int:aid>/weekly", methods=["POST"])
def propose_week(aid):
    """Body: { week_start_date: "YYYY-MM-DD", hours }

    Returns 201 for a new week, 200 when an existing week was superseded.
    """
    actor = current_actor()
    data = json_body()
    result = weekly_plan_lifecycle.propose_weekly_allocation(
        actor, aid, data.get("week_start_date"), data.get("hours"),
    )
    return jsonify(result), 200 if result["superseded"] else 201


@weekly_plan_bp.route("/allocations/<int:aid>/weekly", methods=["GET"])
def list_weeks(aid):
    actor = current_actor()
    allocation = get_or_raise(PhaseAllocation, aid)
    if not can_act_for_consultant(actor, allocation.phase.project, allocation.consultant_id):
        raise NotAuthorizedError(actor.user_id, "view weekly plan")
    weeks = [w.to_dict() for w in allocation.weekly_allocations]
    return jsonify({
        "phase_allocation_id": allocation.id,
        "allocated_hours": allocation.allocated_hours,
        "approved_weekly_hours": approved_weekly_hours(allocation.id),
        "items": weeks,
    })

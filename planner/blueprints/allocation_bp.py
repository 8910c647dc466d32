"""
Phase Allocation Blueprint.

Routes:
  POST   /phases/<phase_id>/allocations          – propose an allocation
  GET    /phases/<phase_id>/lock-status          – lock state for the caller
  GET    /allocations/<aid>                      – allocation with its weekly plan
  GET    /allocations/<aid>/history              – audit trail (project managers)
  PATCH  /allocations/<aid>/description          – edit consultant description
  POST   /allocations/<aid>/deletion             – request deletion
  POST   /allocations/<aid>/deletion/confirm     – Growth Team confirms deletion
  POST   /allocations/<aid>/deletion/cancel      – Growth Team restores allocation
"""

import logging

from flask import Blueprint, jsonify

from planner.blueprints import current_actor, int_field, json_body
from planner.core.exceptions import NotAuthorizedError
from planner.models.allocation import PhaseAllocation
from planner.models.audit import history_for
from planner.models.project import Phase
from planner.services import allocation_lifecycle
from planner.services.helpers.queries import get_or_raise, utcnow
from planner.services.permission import can_act_for_consultant, check_can_manage
from planner.services.phase_lock import lock_status
from planner.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

allocation_bp = Blueprint("allocation_bp", __name__, url_prefix="/api/v1")
register_error_handlers(allocation_bp)


@allocation_bp.route("/phases/<int:phase_id>/allocations", methods=["POST"])
def propose_allocation(phase_id):
    """Propose hours on a phase.

    Body: { hours, consultant_id?, description? }  (consultant_id defaults to caller)
    """
    actor = current_actor()
    data = json_body()
    consultant_id = int_field(data, "consultant_id", required=False)
    if consultant_id is None:
        consultant_id = actor.user_id
    result = allocation_lifecycle.propose_allocation(
        actor,
        consultant_id,
        phase_id,
        data.get("hours"),
        data.get("description"),
    )
    return jsonify(result), 201


@allocation_bp.route("/phases/<int:phase_id>/lock-status", methods=["GET"])
def get_lock_status(phase_id):
    actor = current_actor()
    phase = get_or_raise(Phase, phase_id)
    return jsonify(lock_status(phase, actor.is_growth_team, utcnow()))


@allocation_bp.route("/allocations/<int:aid>", methods=["GET"])
def get_allocation(aid):
    actor = current_actor()
    allocation = get_or_raise(PhaseAllocation, aid)
    if not can_act_for_consultant(actor, allocation.phase.project, allocation.consultant_id):
        raise NotAuthorizedError(actor.user_id, "view phase allocation")
    data = allocation.to_dict(include_weeks=True)
    data["available_transitions"] = allocation_lifecycle.get_available_transitions(allocation)
    return jsonify(data)


@allocation_bp.route("/allocations/<int:aid>/history", methods=["GET"])
def get_history(aid):
    actor = current_actor()
    allocation = get_or_raise(PhaseAllocation, aid)
    check_can_manage(actor, allocation.phase.project, "view allocation history")
    entries = [row.to_dict() for row in history_for("phase_allocation", aid)]
    return jsonify({"items": entries, "total": len(entries)})


@allocation_bp.route("/allocations/<int:aid>/description", methods=["PATCH"])
def update_description(aid):
    """Body: { description }"""
    actor = current_actor()
    data = json_body()
    return jsonify(allocation_lifecycle.update_description(aid, actor, data.get("description")))


@allocation_bp.route("/allocations/<int:aid>/deletion", methods=["POST"])
def request_deletion(aid):
    return jsonify(allocation_lifecycle.request_deletion(aid, current_actor()))


@allocation_bp.route("/allocations/<int:aid>/deletion/confirm", methods=["POST"])
def confirm_deletion(aid):
    return jsonify(allocation_lifecycle.confirm_deletion(aid, current_actor()))


@allocation_bp.route("/allocations/<int:aid>/deletion/cancel", methods=["POST"])
def cancel_deletion(aid):
    return jsonify(allocation_lifecycle.cancel_deletion(aid, current_actor()))

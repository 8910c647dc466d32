"""
Approval Queue Blueprint.

Routes:
  GET    /approvals/summary                        – pending counts for the dashboard
  GET    /approvals/phase-allocations              – pending phase allocations
  POST   /approvals/phase-allocations/<aid>        – approve / reject allocation
  GET    /approvals/weekly-allocations             – pending weeks grouped by ISO week
  POST   /approvals/weekly-allocations/<wid>       – approve / reject one week
  POST   /approvals/weekly-allocations/batch       – approve / reject many weeks
  POST   /approvals/hour-changes/<rid>             – approve / reject hour change
  GET    /approvals/phase-end-alerts               – unplanned hours on ending and ended phases

Decision bodies carry ``action``: "approve" | "reject".
"""

import logging

from flask import Blueprint, jsonify, request

from planner.blueprints import current_actor, json_body
from planner.core.exceptions import ValidationError
from planner.services import (
    allocation_lifecycle,
    approval_summary,
    hour_change_service,
    phase_end_alerts,
    weekly_plan_lifecycle,
)
from planner.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1/approvals")
register_error_handlers(approval_bp)


def _action(data: dict) -> str:
    action = data.get("action")
    if not isinstance(action, str) or action.strip().lower() not in ("approve", "reject"):
        raise ValidationError("action must be 'approve' or 'reject'", details={"action": action})
    return action.strip().upper()


# ═════════════════════════════════════════════════════════════════════════════
# SUMMARY
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/summary", methods=["GET"])
def summary():
    return jsonify(approval_summary.summarize(current_actor()))


# ═════════════════════════════════════════════════════════════════════════════
# PHASE ALLOCATIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/phase-allocations", methods=["GET"])
def pending_phase_allocations():
    items = allocation_lifecycle.list_pending_allocations(current_actor())
    return jsonify({"items": items, "total": len(items)})


@approval_bp.route("/phase-allocations/<int:aid>", methods=["POST"])
def decide_phase_allocation(aid):
    """Body: { action, modified_hours?, rejection_reason? }"""
    actor = current_actor()
    data = json_body()
    result = allocation_lifecycle.decide_allocation(
        aid,
        actor,
        _action(data),
        modified_hours=data.get("modified_hours"),
        rejection_reason=data.get("rejection_reason"),
    )
    return jsonify(result)


# ═════════════════════════════════════════════════════════════════════════════
# WEEKLY ALLOCATIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/weekly-allocations", methods=["GET"])
def pending_weekly_allocations():
    weeks = weekly_plan_lifecycle.list_pending_weekly_plans(current_actor())
    return jsonify({"weeks": weeks, "total_weeks": len(weeks)})


@approval_bp.route("/weekly-allocations/batch", methods=["POST"])
def decide_weekly_batch():
    """Body: { action, ids: [..], rejection_reason? }"""
    actor = current_actor()
    data = json_body()
    result = weekly_plan_lifecycle.decide_weekly_allocations_batch(
        data.get("ids"),
        actor,
        _action(data),
        rejection_reason=data.get("rejection_reason"),
    )
    return jsonify(result)


@approval_bp.route("/weekly-allocations/<int:wid>", methods=["POST"])
def decide_weekly_allocation(wid):
    """Body: { action, approved_hours?, rejection_reason? }"""
    actor = current_actor()
    data = json_body()
    result = weekly_plan_lifecycle.decide_weekly_allocation(
        wid,
        actor,
        _action(data),
        approved_hours=data.get("approved_hours"),
        rejection_reason=data.get("rejection_reason"),
    )
    return jsonify(result)


# ═════════════════════════════════════════════════════════════════════════════
# HOUR CHANGE REQUESTS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/hour-changes/<int:rid>", methods=["POST"])
def decide_hour_change(rid):
    """Body: { action, rejection_reason? }"""
    actor = current_actor()
    data = json_body()
    result = hour_change_service.decide_request(
        rid,
        actor,
        _action(data),
        rejection_reason=data.get("rejection_reason"),
    )
    return jsonify(result)


# ═════════════════════════════════════════════════════════════════════════════
# PHASE END ALERTS (Growth Team)
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/phase-end-alerts", methods=["GET"])
def phase_end_alerts_report():
    """Query: within_days (default 7)."""
    actor = current_actor()
    raw = request.args.get("within_days")
    within_days = phase_end_alerts.DEFAULT_WINDOW_DAYS
    if raw is not None:
        try:
            within_days = int(raw)
        except ValueError:
            raise ValidationError("within_days must be an integer", details={"within_days": raw})
    return jsonify(phase_end_alerts.unplanned_hours_report(actor, within_days=within_days))

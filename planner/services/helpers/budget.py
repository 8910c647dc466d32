"""
Phase allocation budget checks.

Approved weekly hours should stay within the parent's allocated_hours. Any
decision that writes either side of that comparison (a weekly approval, an
hour change on a week or on the phase total, an approval with modified hours)
calls ``budget_warning`` after its write. Exceeding the budget is advisory:
the caller still commits, a WARNING is logged and the returned dict is passed
back to the client.
"""

import logging

from sqlalchemy import func, select

from planner.models import db
from planner.models.allocation import PhaseAllocation, PlanningStatus, WeeklyAllocation

logger = logging.getLogger(__name__)


def approved_weekly_hours(phase_allocation_id: int) -> float:
    total = db.session.execute(
        select(func.coalesce(func.sum(WeeklyAllocation.hours), 0.0)).where(
            WeeklyAllocation.phase_allocation_id == phase_allocation_id,
            WeeklyAllocation.planning_status == PlanningStatus.APPROVED,
        )
    ).scalar_one()
    return float(total or 0.0)


def budget_warning(allocation: PhaseAllocation) -> dict | None:
    """None while within budget, otherwise the overrun details."""
    approved = approved_weekly_hours(allocation.id)
    if approved <= allocation.allocated_hours:
        return None
    excess = approved - allocation.allocated_hours
    logger.warning(
        "Approved weekly hours exceed phase allocation budget",
        extra={
            "phase_allocation_id": allocation.id,
            "approved_weekly_hours": approved,
            "allocated_hours": allocation.allocated_hours,
        },
    )
    return {
        "phase_allocation_id": allocation.id,
        "approved_weekly_hours": approved,
        "allocated_hours": allocation.allocated_hours,
        "excess_hours": excess,
        "message": (
            f"Approved weekly hours ({approved:g}h) exceed the phase allocation "
            f"budget ({allocation.allocated_hours:g}h) by {excess:g}h."
        ),
    }

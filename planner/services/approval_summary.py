"""
Pending-work summary for the approvals dashboard.

Counts are recomputed on every call. Growth Team sees repository-wide
numbers; anyone else sees the projects they manage (possibly none, giving
zeros). Weekly plans count distinct (week_number, year) buckets with at
least one PENDING row, i.e. weeks needing attention rather than rows.
"""

import logging

from sqlalchemy import func, select

from planner.models import db
from planner.models.allocation import (
    ApprovalStatus,
    HourChangeRequest,
    PhaseAllocation,
    PlanningStatus,
    RequestStatus,
    WeeklyAllocation,
)
from planner.models.project import Phase
from planner.services.permission import Actor, managed_project_ids_query

logger = logging.getLogger(__name__)


def _count(stmt) -> int:
    return int(db.session.execute(stmt).scalar_one() or 0)


def summarize(actor: Actor) -> dict:
    scoped = not actor.is_growth_team
    managed = managed_project_ids_query(actor.user_id) if scoped else None

    phase_q = (
        select(func.count(PhaseAllocation.id))
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .where(PhaseAllocation.approval_status == ApprovalStatus.PENDING)
    )

    buckets = (
        select(WeeklyAllocation.year, WeeklyAllocation.week_number)
        .join(PhaseAllocation, WeeklyAllocation.phase_allocation_id == PhaseAllocation.id)
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .where(WeeklyAllocation.planning_status == PlanningStatus.PENDING)
    )

    hour_q = (
        select(func.count(HourChangeRequest.id))
        .join(PhaseAllocation, HourChangeRequest.phase_allocation_id == PhaseAllocation.id)
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .where(HourChangeRequest.status == RequestStatus.PENDING)
    )

    if scoped:
        phase_q = phase_q.where(Phase.project_id.in_(managed))
        buckets = buckets.where(Phase.project_id.in_(managed))
        hour_q = hour_q.where(Phase.project_id.in_(managed))

    buckets = buckets.distinct().subquery()
    pending_phase = _count(phase_q)
    pending_weeks = _count(select(func.count()).select_from(buckets))
    pending_hours = _count(hour_q)

    summary = {
        "pendingPhaseAllocations": pending_phase,
        "pendingWeeklyPlans": pending_weeks,
        "pendingHourChanges": pending_hours,
        "totalPending": pending_phase + pending_weeks + pending_hours,
    }
    logger.debug(
        "Approval summary computed",
        extra={"actor_id": actor.user_id, "scoped": scoped, "total_pending": summary["totalPending"]},
    )
    return summary

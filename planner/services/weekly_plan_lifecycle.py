"""
Weekly Plan Lifecycle Service

Weekly allocations split an APPROVED phase allocation into ISO-week buckets:

    PENDING ──approve──▶ APPROVED
       └─────reject───▶ REJECTED

There is no deletion state. Proposing the same week again supersedes the row:
hours are replaced and the status drops back to PENDING.

Business rule: approved weekly hours should stay within the parent's
allocated_hours. Exceeding it is advisory only, because weekly plans are
drafted incrementally before the phase total is final. The decision succeeds,
a WARNING is logged and a ``budget_warning`` is returned.

Usage:
    from planner.services.weekly_plan_lifecycle import (
        propose_weekly_allocation, decide_weekly_allocation,
    )

    week = propose_weekly_allocation(actor, allocation_id, "2024-03-06", 16)
    result = decide_weekly_allocation(week["id"], pm_actor, "APPROVE")
    if result["budget_warning"]:
        ...
"""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from planner.core.exceptions import ConflictError, InvalidStateError, ValidationError
from planner.models import db
from planner.models.allocation import (
    ApprovalStatus,
    Decision,
    PhaseAllocation,
    PlanningStatus,
    WeeklyAllocation,
)
from planner.models.audit import write_audit
from planner.models.project import Phase
from planner.services.helpers.budget import budget_warning
from planner.services.helpers.queries import as_timestamp, compare_and_set, get_or_raise, utcnow
from planner.services.helpers.validation import clean_text, normalize_decision, parse_date, parse_hours
from planner.services.notification import NotificationService
from planner.services.permission import (
    Actor,
    check_can_act_for_consultant,
    check_can_manage,
    managed_project_ids_query,
)
from planner.services.phase_lock import ensure_editable

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 200


def week_bounds(day) -> tuple:
    """(monday, iso_year, iso_week) for the week containing ``day``."""
    monday = day - timedelta(days=day.weekday())
    iso = monday.isocalendar()
    return monday, iso[0], iso[1]


def _audit(weekly: WeeklyAllocation, project_id: int, action: str, actor: Actor, diff: dict) -> None:
    write_audit(
        entity_type="weekly_allocation",
        entity_id=weekly.id,
        action=f"weekly_allocation.{action}",
        actor_user_id=actor.user_id,
        project_id=project_id,
        diff=diff,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Proposal
# ═════════════════════════════════════════════════════════════════════════════


def propose_weekly_allocation(
    actor: Actor,
    phase_allocation_id: int,
    week_start_date,
    hours,
    *,
    now=None,
) -> dict:
    """
    Plan hours for one ISO week of an APPROVED phase allocation.

    The date is normalised to its Monday and the week must overlap the phase.

    Raises:
        NotFoundError, ValidationError, NotAuthorizedError, PhaseLockedError,
        InvalidStateError: parent allocation is not APPROVED.
    """
    now = now or utcnow()
    allocation = get_or_raise(PhaseAllocation, phase_allocation_id)
    phase = allocation.phase
    hours = parse_hours(hours, allow_zero=True)
    monday, year, week_number = week_bounds(parse_date(week_start_date, field="week_start_date"))

    if monday > phase.end_date or monday + timedelta(days=6) < phase.start_date:
        raise ValidationError(
            "Week does not overlap the phase",
            details={
                "week_start_date": monday.isoformat(),
                "phase_start": phase.start_date.isoformat(),
                "phase_end": phase.end_date.isoformat(),
            },
        )

    check_can_act_for_consultant(actor, phase.project, allocation.consultant_id, "plan weekly allocation")
    ensure_editable(phase, actor, now)
    if allocation.approval_status != ApprovalStatus.APPROVED:
        raise InvalidStateError(
            "PhaseAllocation", allocation.id, current=allocation.approval_status, action="plan weekly allocation",
        )

    weekly = db.session.execute(
        select(WeeklyAllocation).where(
            WeeklyAllocation.phase_allocation_id == allocation.id,
            WeeklyAllocation.year == year,
            WeeklyAllocation.week_number == week_number,
        )
    ).scalar_one_or_none()

    superseded = weekly is not None
    if superseded:
        diff = {
            "hours": {"old": weekly.hours, "new": hours},
            "planning_status": {"old": weekly.planning_status, "new": PlanningStatus.PENDING},
        }
        weekly.hours = hours
        weekly.week_start_date = monday
        weekly.planning_status = PlanningStatus.PENDING
        weekly.approved_by = None
        weekly.approved_at = None
        weekly.rejection_reason = None
    else:
        diff = {
            "hours": {"old": None, "new": hours},
            "planning_status": {"old": None, "new": PlanningStatus.PENDING},
        }
        weekly = WeeklyAllocation(
            phase_allocation_id=allocation.id,
            week_start_date=monday,
            week_number=week_number,
            year=year,
            hours=hours,
            planning_status=PlanningStatus.PENDING,
        )
        db.session.add(weekly)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("WeeklyAllocation", "week", f"{year}-W{week_number:02d}")

    _audit(weekly, phase.project_id, "propose", actor, diff)
    db.session.commit()

    logger.info(
        "Weekly allocation proposed",
        extra={
            "weekly_allocation_id": weekly.id,
            "phase_allocation_id": allocation.id,
            "year": year,
            "week_number": week_number,
            "superseded": superseded,
            "actor_id": actor.user_id,
        },
    )
    result = weekly.to_dict()
    result["superseded"] = superseded
    NotificationService.notify_timeline_changed(
        event="weekly_allocation.proposed",
        title="Weekly plan awaiting approval",
        message=f"{hours:g}h planned for {year}-W{week_number:02d} on phase '{phase.name}'.",
        entity_type="weekly_allocation",
        entity_id=weekly.id,
        project_id=phase.project_id,
        recipient_ids={phase.project.product_manager_id} - {actor.user_id},
    )
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


def _decide_one(weekly: WeeklyAllocation, actor: Actor, decision: str, *,
                approved_hours, rejection_reason, now) -> tuple[dict, dict | None]:
    """Authorize, lock-check and CAS one weekly row. Does not commit."""
    allocation = weekly.phase_allocation
    phase = allocation.phase
    action = "approve" if decision == Decision.APPROVE else "reject"

    check_can_manage(actor, phase.project, f"{action} weekly allocation")
    ensure_editable(phase, actor, now)
    if weekly.planning_status != PlanningStatus.PENDING:
        raise InvalidStateError(
            "WeeklyAllocation", weekly.id, current=weekly.planning_status, action=action,
        )

    previous_hours = weekly.hours
    values = {
        "planning_status": PlanningStatus.APPROVED if decision == Decision.APPROVE else PlanningStatus.REJECTED,
        "approved_by": actor.user_id,
        "approved_at": as_timestamp(now),
    }
    if decision == Decision.APPROVE and approved_hours is not None:
        values["hours"] = parse_hours(approved_hours, field="approved_hours", allow_zero=True)
    if decision == Decision.REJECT:
        values["rejection_reason"] = clean_text(rejection_reason, field="rejection_reason")

    compare_and_set(
        WeeklyAllocation,
        weekly.id,
        column=WeeklyAllocation.planning_status,
        expected=PlanningStatus.PENDING,
        values=values,
        action=action,
    )
    db.session.refresh(weekly)

    diff = {"planning_status": {"old": PlanningStatus.PENDING, "new": weekly.planning_status}}
    if weekly.hours != previous_hours:
        diff["hours"] = {"old": previous_hours, "new": weekly.hours}
    _audit(weekly, phase.project_id, action, actor, diff)

    warning = budget_warning(allocation) if decision == Decision.APPROVE else None
    return weekly.to_dict(), warning


def _notify_decided(weekly_dict: dict, actor: Actor, decision: str) -> None:
    allocation = db.session.get(PhaseAllocation, weekly_dict["phase_allocation_id"])
    if allocation is None:
        return
    verb = "approved" if decision == Decision.APPROVE else "rejected"
    NotificationService.notify_timeline_changed(
        event=f"weekly_allocation.{verb}",
        title=f"Weekly plan {verb}",
        message=f"Week {weekly_dict['year']}-W{weekly_dict['week_number']:02d} was {verb}.",
        entity_type="weekly_allocation",
        entity_id=weekly_dict["id"],
        project_id=allocation.phase.project_id,
        recipient_ids={allocation.consultant_id} - {actor.user_id},
    )


def decide_weekly_allocation(
    weekly_allocation_id: int,
    actor: Actor,
    decision: str,
    *,
    approved_hours=None,
    rejection_reason: str | None = None,
    now=None,
) -> dict:
    """
    Approve or reject a PENDING weekly allocation.

    Returns:
        {"weekly_allocation": {...}, "budget_warning": {...} | None}

    Raises:
        NotFoundError, ValidationError, NotAuthorizedError, PhaseLockedError,
        InvalidStateError: row is no longer PENDING.
    """
    now = now or utcnow()
    decision = normalize_decision(decision)
    weekly = get_or_raise(WeeklyAllocation, weekly_allocation_id)

    result, warning = _decide_one(
        weekly, actor, decision,
        approved_hours=approved_hours, rejection_reason=rejection_reason, now=now,
    )
    db.session.commit()

    logger.info(
        "Weekly allocation decided",
        extra={
            "weekly_allocation_id": result["id"],
            "decision": decision,
            "actor_id": actor.user_id,
            "budget_exceeded": warning is not None,
        },
    )
    _notify_decided(result, actor, decision)
    return {"weekly_allocation": result, "budget_warning": warning}


def decide_weekly_allocations_batch(
    weekly_allocation_ids: list[int],
    actor: Actor,
    decision: str,
    *,
    rejection_reason: str | None = None,
    now=None,
) -> dict:
    """
    Decide several weekly allocations in one transaction.

    All or nothing: if any row is missing, unauthorized, locked or no longer
    PENDING, nothing is committed and the error propagates.
    """
    now = now or utcnow()
    decision = normalize_decision(decision)
    if not isinstance(weekly_allocation_ids, (list, tuple)) or not weekly_allocation_ids:
        raise ValidationError("ids must be a non-empty list")
    if len(weekly_allocation_ids) > MAX_BATCH_SIZE:
        raise ValidationError(f"At most {MAX_BATCH_SIZE} ids per batch")
    ids = list(dict.fromkeys(weekly_allocation_ids))

    items = []
    warnings = {}
    try:
        for weekly_id in ids:
            weekly = get_or_raise(WeeklyAllocation, weekly_id)
            result, warning = _decide_one(
                weekly, actor, decision,
                approved_hours=None, rejection_reason=rejection_reason, now=now,
            )
            items.append(result)
            if warning:
                # Keep the latest total per parent
                warnings[warning["phase_allocation_id"]] = warning
    except Exception:
        db.session.rollback()
        raise
    db.session.commit()

    logger.info(
        "Weekly allocations decided in batch",
        extra={"count": len(items), "decision": decision, "actor_id": actor.user_id},
    )
    for item in items:
        _notify_decided(item, actor, decision)
    return {
        "decision": decision,
        "count": len(items),
        "items": items,
        "budget_warnings": list(warnings.values()),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def list_pending_weekly_plans(actor: Actor) -> list[dict]:
    """PENDING weekly rows in the actor's scope, grouped by ISO (year, week)."""
    stmt = (
        select(WeeklyAllocation)
        .join(PhaseAllocation, WeeklyAllocation.phase_allocation_id == PhaseAllocation.id)
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .where(WeeklyAllocation.planning_status == PlanningStatus.PENDING)
        .order_by(WeeklyAllocation.year, WeeklyAllocation.week_number, WeeklyAllocation.id)
    )
    if not actor.is_growth_team:
        stmt = stmt.where(Phase.project_id.in_(managed_project_ids_query(actor.user_id)))

    groups: dict[tuple[int, int], dict] = {}
    for weekly in db.session.execute(stmt).scalars().all():
        key = (weekly.year, weekly.week_number)
        group = groups.setdefault(key, {
            "year": weekly.year,
            "week_number": weekly.week_number,
            "week_start_date": weekly.week_start_date.isoformat(),
            "total_hours": 0.0,
            "items": [],
        })
        item = weekly.to_dict()
        item["consultant_id"] = weekly.phase_allocation.consultant_id
        item["phase_id"] = weekly.phase_allocation.phase_id
        group["items"].append(item)
        group["total_hours"] += weekly.hours
    return list(groups.values())

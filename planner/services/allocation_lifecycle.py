"""
Phase Allocation Lifecycle Service

Manages a consultant's hour budget on a phase:

    PENDING ──approve──▶ APPROVED ──request_deletion──▶ DELETION_PENDING
       │                    ▲                               │      │
       └──reject──▶ REJECTED└────────cancel_deletion────────┘      │
                                                    confirm_deletion ▼ (row removed)

APPROVED allocations on ended phases are moved to EXPIRED by
phase_end_alerts.detect_expired_allocations, not by an actor.

Every transition:
  1. loads the allocation and resolves phase → project in the same transaction
  2. consults the single authorization predicate (permission.can_manage_project)
  3. runs the phase lock guard unless the actor is Growth Team
  4. applies the status change with a compare-and-set UPDATE
  5. writes an audit row, commits, then notifies (best-effort)

Usage:
    from planner.services.allocation_lifecycle import propose_allocation, decide_allocation

    result = propose_allocation(actor, consultant_id=3, phase_id=9, hours=40)
    decide_allocation(result["id"], pm_actor, "APPROVE")
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from planner.core.exceptions import DuplicateAllocationError, InvalidStateError
from planner.models import db
from planner.models.allocation import (
    ApprovalStatus,
    Decision,
    HourChangeRequest,
    PhaseAllocation,
    WeeklyAllocation,
)
from planner.models.audit import write_audit
from planner.models.auth import User
from planner.models.project import Phase
from planner.services.helpers.budget import budget_warning
from planner.services.helpers.queries import as_timestamp, compare_and_set, get_or_raise, utcnow
from planner.services.helpers.validation import clean_text, normalize_decision, parse_hours
from planner.services.notification import NotificationService
from planner.services.permission import (
    Actor,
    check_can_act_for_consultant,
    check_can_manage,
    check_growth_team,
    managed_project_ids_query,
)
from planner.services.phase_lock import ensure_editable

logger = logging.getLogger(__name__)


ALLOCATION_TRANSITIONS = {
    "approve": {"from": ApprovalStatus.PENDING, "to": ApprovalStatus.APPROVED},
    "reject": {"from": ApprovalStatus.PENDING, "to": ApprovalStatus.REJECTED},
    "request_deletion": {"from": ApprovalStatus.APPROVED, "to": ApprovalStatus.DELETION_PENDING},
    "cancel_deletion": {"from": ApprovalStatus.DELETION_PENDING, "to": ApprovalStatus.APPROVED},
    "confirm_deletion": {"from": ApprovalStatus.DELETION_PENDING, "to": None},
}


def get_available_transitions(allocation: PhaseAllocation) -> list[str]:
    """Actions valid for the allocation's current status."""
    return [
        action for action, rule in ALLOCATION_TRANSITIONS.items()
        if rule["from"] == allocation.approval_status
    ]


def _transition(allocation: PhaseAllocation, action: str, values: dict | None = None) -> str:
    """CAS the allocation from the rule's source status; returns the previous status."""
    rule = ALLOCATION_TRANSITIONS[action]
    if allocation.approval_status != rule["from"]:
        raise InvalidStateError(
            "PhaseAllocation", allocation.id, current=allocation.approval_status, action=action,
        )
    compare_and_set(
        PhaseAllocation,
        allocation.id,
        column=PhaseAllocation.approval_status,
        expected=rule["from"],
        values={"approval_status": rule["to"], **(values or {})},
        action=action,
    )
    db.session.refresh(allocation)
    return rule["from"]


def _audit(allocation: PhaseAllocation, action: str, actor: Actor, diff: dict) -> None:
    write_audit(
        entity_type="phase_allocation",
        entity_id=allocation.id,
        action=f"phase_allocation.{action}",
        actor_user_id=actor.user_id,
        project_id=allocation.phase.project_id,
        diff=diff,
    )


def _notify(allocation_dict: dict, project, actor: Actor, event: str, title: str, message: str = "") -> None:
    recipients = {allocation_dict["consultant_id"], project.product_manager_id} - {actor.user_id}
    NotificationService.notify_timeline_changed(
        event=event,
        title=title,
        message=message,
        entity_type="phase_allocation",
        entity_id=allocation_dict["id"],
        project_id=project.id,
        recipient_ids=recipients,
    )


def _active_allocation_id(consultant_id: int, phase_id: int) -> int | None:
    return db.session.execute(
        select(PhaseAllocation.id).where(
            PhaseAllocation.consultant_id == consultant_id,
            PhaseAllocation.phase_id == phase_id,
            PhaseAllocation.approval_status != ApprovalStatus.REJECTED,
        )
    ).scalars().first()


# ═════════════════════════════════════════════════════════════════════════════
# Proposal
# ═════════════════════════════════════════════════════════════════════════════


def propose_allocation(
    actor: Actor,
    consultant_id: int,
    phase_id: int,
    hours,
    description: str | None = None,
    *,
    now=None,
) -> dict:
    """
    Propose a consultant's hour budget on a phase; the allocation starts PENDING.

    Raises:
        NotFoundError: unknown phase or consultant.
        ValidationError: hours not a positive number.
        NotAuthorizedError: proposing for someone else without managing the project.
        PhaseLockedError: phase ended and actor is not Growth Team.
        DuplicateAllocationError: a non-rejected allocation already exists for the pair.
    """
    now = now or utcnow()
    phase = get_or_raise(Phase, phase_id)
    get_or_raise(User, consultant_id)
    hours = parse_hours(hours)
    description = clean_text(description, field="description")

    check_can_act_for_consultant(actor, phase.project, consultant_id, "propose phase allocation")
    ensure_editable(phase, actor, now)

    if _active_allocation_id(consultant_id, phase_id) is not None:
        raise DuplicateAllocationError(consultant_id, phase_id)

    allocation = PhaseAllocation(
        consultant_id=consultant_id,
        phase_id=phase_id,
        allocated_hours=hours,
        approval_status=ApprovalStatus.PENDING,
        description=description,
    )
    db.session.add(allocation)
    try:
        db.session.flush()
    except IntegrityError:
        # Concurrent proposal won the partial unique index
        db.session.rollback()
        raise DuplicateAllocationError(consultant_id, phase_id)

    _audit(allocation, "propose", actor, {
        "approval_status": {"old": None, "new": ApprovalStatus.PENDING},
        "allocated_hours": {"old": None, "new": hours},
    })
    db.session.commit()

    logger.info(
        "Phase allocation proposed",
        extra={
            "allocation_id": allocation.id,
            "consultant_id": consultant_id,
            "phase_id": phase_id,
            "actor_id": actor.user_id,
        },
    )
    result = allocation.to_dict()
    _notify(
        result, phase.project, actor, "phase_allocation.proposed",
        "Allocation awaiting approval",
        f"{hours:g}h proposed on phase '{phase.name}'.",
    )
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Decision
# ═════════════════════════════════════════════════════════════════════════════


def decide_allocation(
    allocation_id: int,
    actor: Actor,
    decision: str,
    *,
    modified_hours=None,
    rejection_reason: str | None = None,
    now=None,
) -> dict:
    """
    Approve or reject a PENDING allocation.

    ``modified_hours`` lets the approver grant a different budget than was
    proposed; ``rejection_reason`` is stored on REJECT.
    An approval that leaves approved weekly hours above the granted budget
    still succeeds and returns the overrun as ``budget_warning``.

    Raises:
        NotFoundError, ValidationError, NotAuthorizedError, PhaseLockedError,
        InvalidStateError: allocation is no longer PENDING (including a lost race).
    """
    now = now or utcnow()
    decision = normalize_decision(decision)
    allocation = get_or_raise(PhaseAllocation, allocation_id)
    phase = allocation.phase
    project = phase.project

    action = "approve" if decision == Decision.APPROVE else "reject"
    check_can_manage(actor, project, f"{action} phase allocation")
    ensure_editable(phase, actor, now)

    previous_hours = allocation.allocated_hours
    values = {"approved_by": actor.user_id, "approved_at": as_timestamp(now)}
    if decision == Decision.APPROVE:
        if modified_hours is not None:
            values["allocated_hours"] = parse_hours(modified_hours, field="modified_hours")
    else:
        values["rejection_reason"] = clean_text(rejection_reason, field="rejection_reason")

    previous_status = _transition(allocation, action, values)

    diff = {"approval_status": {"old": previous_status, "new": allocation.approval_status}}
    if allocation.allocated_hours != previous_hours:
        diff["allocated_hours"] = {"old": previous_hours, "new": allocation.allocated_hours}
    if allocation.rejection_reason:
        diff["rejection_reason"] = {"old": None, "new": allocation.rejection_reason}
    _audit(allocation, action, actor, diff)
    warning = budget_warning(allocation) if decision == Decision.APPROVE else None
    db.session.commit()

    logger.info(
        "Phase allocation decided",
        extra={
            "allocation_id": allocation.id,
            "decision": decision,
            "actor_id": actor.user_id,
            "previous_status": previous_status,
            "budget_exceeded": warning is not None,
        },
    )
    result = allocation.to_dict()
    result["budget_warning"] = warning
    verb = "approved" if decision == Decision.APPROVE else "rejected"
    _notify(
        result, project, actor, f"phase_allocation.{verb}",
        f"Allocation {verb}",
        f"Allocation on phase '{phase.name}' was {verb}.",
    )
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Deletion (reversible until confirmed by the Growth Team)
# ═════════════════════════════════════════════════════════════════════════════


def request_deletion(allocation_id: int, actor: Actor, *, now=None) -> dict:
    """Move an APPROVED allocation to DELETION_PENDING."""
    now = now or utcnow()
    allocation = get_or_raise(PhaseAllocation, allocation_id)
    phase = allocation.phase

    check_can_act_for_consultant(actor, phase.project, allocation.consultant_id, "request allocation deletion")
    ensure_editable(phase, actor, now)

    previous_status = _transition(allocation, "request_deletion", {"deletion_requested_by": actor.user_id})
    _audit(allocation, "request_deletion", actor, {
        "approval_status": {"old": previous_status, "new": allocation.approval_status},
    })
    db.session.commit()

    logger.info(
        "Phase allocation deletion requested",
        extra={"allocation_id": allocation.id, "actor_id": actor.user_id},
    )
    result = allocation.to_dict()
    _notify(
        result, phase.project, actor, "phase_allocation.deletion_requested",
        "Allocation deletion requested",
        f"Deletion of an allocation on phase '{phase.name}' awaits Growth Team confirmation.",
    )
    return result


def cancel_deletion(allocation_id: int, actor: Actor) -> dict:
    """Restore a DELETION_PENDING allocation to APPROVED (Growth Team only)."""
    check_growth_team(actor, "cancel allocation deletion")
    allocation = get_or_raise(PhaseAllocation, allocation_id)

    previous_status = _transition(allocation, "cancel_deletion", {"deletion_requested_by": None})
    _audit(allocation, "cancel_deletion", actor, {
        "approval_status": {"old": previous_status, "new": allocation.approval_status},
    })
    db.session.commit()

    logger.info(
        "Phase allocation deletion cancelled",
        extra={"allocation_id": allocation.id, "actor_id": actor.user_id},
    )
    result = allocation.to_dict()
    _notify(
        result, allocation.phase.project, actor, "phase_allocation.deletion_cancelled",
        "Allocation deletion cancelled",
    )
    return result


def confirm_deletion(allocation_id: int, actor: Actor) -> dict:
    """
    Permanently remove a DELETION_PENDING allocation (Growth Team only).

    Weekly allocations and hour change requests of the allocation go with it.
    The status guard is part of the parent DELETE, so a concurrent cancel
    leaves the allocation intact.
    """
    check_growth_team(actor, "confirm allocation deletion")
    allocation = get_or_raise(PhaseAllocation, allocation_id)
    rule = ALLOCATION_TRANSITIONS["confirm_deletion"]
    if allocation.approval_status != rule["from"]:
        raise InvalidStateError(
            "PhaseAllocation", allocation.id, current=allocation.approval_status, action="confirm_deletion",
        )

    snapshot = allocation.to_dict()
    project = allocation.phase.project
    week_count = len(allocation.weekly_allocations)

    db.session.execute(
        delete(HourChangeRequest)
        .where(HourChangeRequest.phase_allocation_id == allocation.id)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        delete(WeeklyAllocation)
        .where(WeeklyAllocation.phase_allocation_id == allocation.id)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(
        delete(PhaseAllocation)
        .where(PhaseAllocation.id == allocation.id, PhaseAllocation.approval_status == rule["from"])
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = db.session.execute(
            select(PhaseAllocation.approval_status).where(PhaseAllocation.id == allocation_id)
        ).scalar_one_or_none()
        db.session.rollback()
        raise InvalidStateError("PhaseAllocation", allocation_id, current=current, action="confirm_deletion")

    db.session.expunge(allocation)
    write_audit(
        entity_type="phase_allocation",
        entity_id=snapshot["id"],
        action="phase_allocation.confirm_deletion",
        actor_user_id=actor.user_id,
        project_id=project.id,
        diff={
            "approval_status": {"old": rule["from"], "new": None},
            "allocated_hours": {"old": snapshot["allocated_hours"], "new": None},
            "weekly_allocations_removed": week_count,
        },
    )
    db.session.commit()

    logger.info(
        "Phase allocation deleted",
        extra={"allocation_id": snapshot["id"], "actor_id": actor.user_id, "weeks_removed": week_count},
    )
    _notify(snapshot, project, actor, "phase_allocation.deleted", "Allocation deleted")
    return {"deleted": True, "allocation": snapshot, "weekly_allocations_removed": week_count}


# ═════════════════════════════════════════════════════════════════════════════
# Description & queries
# ═════════════════════════════════════════════════════════════════════════════


def update_description(allocation_id: int, actor: Actor, description: str | None, *, now=None) -> dict:
    """Edit the consultant's free-text description on a live allocation."""
    now = now or utcnow()
    allocation = get_or_raise(PhaseAllocation, allocation_id)
    phase = allocation.phase

    check_can_act_for_consultant(actor, phase.project, allocation.consultant_id, "edit allocation description")
    ensure_editable(phase, actor, now)
    if allocation.approval_status == ApprovalStatus.REJECTED:
        raise InvalidStateError(
            "PhaseAllocation", allocation.id, current=allocation.approval_status, action="update_description",
        )

    old = allocation.description
    allocation.description = clean_text(description, field="description")
    _audit(allocation, "update_description", actor, {
        "description": {"old": old, "new": allocation.description},
    })
    db.session.commit()

    logger.info(
        "Phase allocation description updated",
        extra={"allocation_id": allocation.id, "actor_id": actor.user_id},
    )
    return allocation.to_dict()


def list_pending_allocations(actor: Actor) -> list[dict]:
    """PENDING allocations in the actor's approval scope, oldest first."""
    stmt = (
        select(PhaseAllocation)
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .where(PhaseAllocation.approval_status == ApprovalStatus.PENDING)
        .order_by(PhaseAllocation.created_at, PhaseAllocation.id)
    )
    if not actor.is_growth_team:
        stmt = stmt.where(Phase.project_id.in_(managed_project_ids_query(actor.user_id)))

    items = []
    for allocation in db.session.execute(stmt).scalars().all():
        d = allocation.to_dict()
        d["phase"] = allocation.phase.to_dict()
        d["consultant"] = allocation.consultant.to_dict() if allocation.consultant else None
        items.append(d)
    return items

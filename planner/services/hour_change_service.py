"""
Hour Change Request Service

A request proposes a new hour value for an existing allocation, either the
phase allocation itself or one of its weekly allocations:

    PENDING ──approve──▶ APPROVED   (requested_hours written onto the target)
       └─────reject───▶ REJECTED   (target untouched)

Both outcomes are terminal; further corrections need a new request.

Business rule: at most one PENDING request per target. The check runs in the
creating transaction and is backed by the partial unique index on
``target_key`` so two concurrent submissions cannot both succeed.
"""

import logging

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from planner.core.exceptions import (
    DuplicatePendingRequestError,
    InvalidStateError,
    ValidationError,
)
from planner.models import db
from planner.models.allocation import (
    ApprovalStatus,
    Decision,
    HourChangeRequest,
    PhaseAllocation,
    PlanningStatus,
    RequestStatus,
    REQUEST_STATUSES,
    WeeklyAllocation,
    phase_target_key,
    weekly_target_key,
)
from planner.models.audit import write_audit
from planner.models.project import Phase
from planner.services.helpers.budget import budget_warning
from planner.services.helpers.queries import as_timestamp, compare_and_set, get_or_raise, utcnow
from planner.services.helpers.validation import clean_text, normalize_decision, parse_hours
from planner.services.notification import NotificationService
from planner.services.permission import (
    Actor,
    check_can_act_for_consultant,
    check_can_manage,
    managed_project_ids_query,
)
from planner.services.phase_lock import ensure_editable

logger = logging.getLogger(__name__)


def _pending_request_id(target_key: str) -> int | None:
    return db.session.execute(
        select(HourChangeRequest.id).where(
            HourChangeRequest.target_key == target_key,
            HourChangeRequest.status == RequestStatus.PENDING,
        )
    ).scalars().first()


def _audit(req: HourChangeRequest, project_id: int, action: str, actor: Actor, diff: dict) -> None:
    write_audit(
        entity_type="hour_change_request",
        entity_id=req.id,
        action=f"hour_change_request.{action}",
        actor_user_id=actor.user_id,
        project_id=project_id,
        diff=diff,
    )


def create_request(
    requester: Actor,
    phase_allocation_id: int,
    new_hours,
    *,
    weekly_allocation_id: int | None = None,
    reason: str | None = None,
    now=None,
) -> dict:
    """
    Submit a PENDING hour change for a phase allocation or one of its weeks.

    Raises:
        NotFoundError: allocation (or weekly allocation) does not exist.
        ValidationError: negative hours, or the week belongs to another allocation.
        NotAuthorizedError: requester is neither the consultant nor a manager.
        InvalidStateError: the target allocation is not live, or the week was rejected.
        PhaseLockedError: phase ended and requester is not Growth Team.
        DuplicatePendingRequestError: target already has a PENDING request.
    """
    now = now or utcnow()
    allocation = get_or_raise(PhaseAllocation, phase_allocation_id)
    phase = allocation.phase
    new_hours = parse_hours(new_hours, field="new_hours", allow_zero=True)
    reason = clean_text(reason, field="reason")

    weekly = None
    if weekly_allocation_id is not None:
        weekly = get_or_raise(WeeklyAllocation, weekly_allocation_id)
        if weekly.phase_allocation_id != allocation.id:
            raise ValidationError(
                "Weekly allocation does not belong to the phase allocation",
                details={"weekly_allocation_id": weekly_allocation_id, "phase_allocation_id": allocation.id},
            )
        if weekly.planning_status not in (PlanningStatus.PENDING, PlanningStatus.APPROVED):
            raise InvalidStateError(
                "WeeklyAllocation", weekly.id, current=weekly.planning_status, action="request hour change",
            )
    if weekly is None and new_hours == 0:
        raise ValidationError("new_hours must be greater than zero for a phase allocation",
                              details={"new_hours": new_hours})

    check_can_act_for_consultant(requester, phase.project, allocation.consultant_id, "request hour change")
    if allocation.approval_status in (ApprovalStatus.REJECTED, ApprovalStatus.DELETION_PENDING):
        raise InvalidStateError(
            "PhaseAllocation", allocation.id, current=allocation.approval_status, action="request hour change",
        )
    ensure_editable(phase, requester, now)

    target_key = weekly_target_key(weekly.id) if weekly else phase_target_key(allocation.id)
    pending_id = _pending_request_id(target_key)
    if pending_id is not None:
        raise DuplicatePendingRequestError(target_key, pending_id)

    req = HourChangeRequest(
        requester_id=requester.user_id,
        phase_allocation_id=allocation.id,
        weekly_allocation_id=weekly.id if weekly else None,
        target_key=target_key,
        original_hours=weekly.hours if weekly else allocation.allocated_hours,
        requested_hours=new_hours,
        reason=reason,
        status=RequestStatus.PENDING,
    )
    db.session.add(req)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise DuplicatePendingRequestError(target_key)

    _audit(req, phase.project_id, "create", requester, {
        "status": {"old": None, "new": RequestStatus.PENDING},
        "hours": {"old": req.original_hours, "new": new_hours},
    })
    db.session.commit()

    logger.info(
        "Hour change requested",
        extra={
            "request_id": req.id,
            "target_key": target_key,
            "requested_hours": new_hours,
            "actor_id": requester.user_id,
        },
    )
    result = req.to_dict()
    NotificationService.notify_timeline_changed(
        event="hour_change_request.created",
        title="Hour change awaiting approval",
        message=f"Change from {req.original_hours:g}h to {new_hours:g}h requested on phase '{phase.name}'.",
        entity_type="hour_change_request",
        entity_id=req.id,
        project_id=phase.project_id,
        recipient_ids={phase.project.product_manager_id} - {requester.user_id},
    )
    return result


def decide_request(
    request_id: int,
    approver: Actor,
    decision: str,
    *,
    rejection_reason: str | None = None,
    now=None,
) -> dict:
    """
    Approve or reject a PENDING hour change request.

    APPROVE sets the request APPROVED and writes ``requested_hours`` onto the
    target in the same transaction. REJECT leaves the target untouched. The
    result carries ``budget_warning`` when the approval leaves the approved
    weekly hours above the phase allocation.

    Raises:
        NotFoundError, ValidationError, NotAuthorizedError,
        InvalidStateError: request already decided.
    """
    now = now or utcnow()
    decision = normalize_decision(decision)
    req = get_or_raise(HourChangeRequest, request_id)
    allocation = req.phase_allocation
    phase = allocation.phase
    action = "approve" if decision == Decision.APPROVE else "reject"

    check_can_manage(approver, phase.project, f"{action} hour change request")
    if req.status != RequestStatus.PENDING:
        raise InvalidStateError("HourChangeRequest", req.id, current=req.status, action=action)

    values = {
        "status": RequestStatus.APPROVED if decision == Decision.APPROVE else RequestStatus.REJECTED,
        "approver_id": approver.user_id,
        "decided_at": as_timestamp(now),
    }
    if decision == Decision.REJECT:
        values["rejection_reason"] = clean_text(rejection_reason, field="rejection_reason")

    compare_and_set(
        HourChangeRequest,
        req.id,
        column=HourChangeRequest.status,
        expected=RequestStatus.PENDING,
        values=values,
        action=action,
    )
    db.session.refresh(req)

    diff = {"status": {"old": RequestStatus.PENDING, "new": req.status}}
    if decision == Decision.APPROVE:
        if req.weekly_allocation_id is not None:
            target = req.weekly_allocation
            diff["weekly_hours"] = {"old": target.hours, "new": req.requested_hours}
            target.hours = req.requested_hours
        else:
            diff["allocated_hours"] = {"old": allocation.allocated_hours, "new": req.requested_hours}
            allocation.allocated_hours = req.requested_hours
    _audit(req, phase.project_id, action, approver, diff)
    warning = budget_warning(allocation) if decision == Decision.APPROVE else None
    db.session.commit()

    logger.info(
        "Hour change request decided",
        extra={
            "request_id": req.id,
            "decision": decision,
            "target_key": req.target_key,
            "actor_id": approver.user_id,
            "budget_exceeded": warning is not None,
        },
    )
    result = req.to_dict()
    result["budget_warning"] = warning
    verb = "approved" if decision == Decision.APPROVE else "rejected"
    NotificationService.notify_timeline_changed(
        event=f"hour_change_request.{verb}",
        title=f"Hour change {verb}",
        message=f"Requested change to {req.requested_hours:g}h was {verb}.",
        entity_type="hour_change_request",
        entity_id=req.id,
        project_id=phase.project_id,
        recipient_ids={req.requester_id, allocation.consultant_id} - {approver.user_id},
    )
    return result


def list_requests(actor: Actor, status: str | None = None) -> list[dict]:
    """
    Requests visible to the actor, newest first.

    Growth Team sees everything; others see requests on projects they manage
    plus the ones they submitted or that target their own allocations.
    """
    stmt = (
        select(HourChangeRequest)
        .join(PhaseAllocation, HourChangeRequest.phase_allocation_id == PhaseAllocation.id)
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .order_by(HourChangeRequest.created_at.desc(), HourChangeRequest.id.desc())
    )
    if status is not None:
        status = status.strip().upper()
        if status not in REQUEST_STATUSES:
            raise ValidationError(
                f"status must be one of {sorted(REQUEST_STATUSES)}", details={"status": status},
            )
        stmt = stmt.where(HourChangeRequest.status == status)
    if not actor.is_growth_team:
        stmt = stmt.where(or_(
            Phase.project_id.in_(managed_project_ids_query(actor.user_id)),
            HourChangeRequest.requester_id == actor.user_id,
            PhaseAllocation.consultant_id == actor.user_id,
        ))
    return [r.to_dict() for r in db.session.execute(stmt).scalars().all()]

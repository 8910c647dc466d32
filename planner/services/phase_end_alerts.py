"""
Phase End Alerts

Follow-up on allocations whose phase is ending or has ended while part of the
budget was never planned into approved weeks.

    unplanned_hours_report      Growth Team queue: phases ending within N days
                                or already ended, with their unplanned hours
    notify_phases_ending        reminder to PMs and consultants before the
                                phase locks
    detect_expired_allocations  APPROVED ──expire──▶ EXPIRED once the phase
                                has ended with unplanned hours

The last two run without a request (``flask phase-end-alerts`` and
``flask detect-expired``). Expiry is committed one allocation at a time, so an
allocation that changed state under the job is skipped without undoing the
ones already expired.

Usage:
    from planner.services.phase_end_alerts import detect_expired_allocations

    result = detect_expired_allocations()
    result["expired"]   # ids moved to EXPIRED
"""

import logging
from datetime import timedelta

from sqlalchemy import select

from planner.core.exceptions import InvalidStateError, ValidationError
from planner.models import db
from planner.models.allocation import ApprovalStatus, PhaseAllocation
from planner.models.audit import write_audit
from planner.models.auth import GlobalRole, User
from planner.models.project import Phase
from planner.services.helpers.budget import approved_weekly_hours
from planner.services.helpers.queries import compare_and_set, utcnow
from planner.services.notification import NotificationService
from planner.services.permission import Actor, check_growth_team
from planner.services.phase_lock import as_date, is_locked

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7
MAX_WINDOW_DAYS = 90

# Below this many unplanned hours an allocation counts as fully planned
UNPLANNED_TOLERANCE = 0.01

_OPEN_STATUSES = (ApprovalStatus.APPROVED, ApprovalStatus.EXPIRED)


def growth_team_ids() -> list[int]:
    return list(db.session.execute(
        select(User.id).where(User.role == GlobalRole.GROWTH_TEAM, User.is_active.is_(True))
    ).scalars().all())


def _unplanned_entry(allocation: PhaseAllocation) -> dict | None:
    planned = approved_weekly_hours(allocation.id)
    unplanned = allocation.allocated_hours - planned
    if unplanned <= UNPLANNED_TOLERANCE:
        return None
    return {
        "phase_allocation_id": allocation.id,
        "consultant_id": allocation.consultant_id,
        "approval_status": allocation.approval_status,
        "allocated_hours": allocation.allocated_hours,
        "approved_weekly_hours": planned,
        "unplanned_hours": round(unplanned, 2),
    }


def _phases_ending_by(last_day, first_day=None) -> list[Phase]:
    stmt = select(Phase).where(Phase.end_date <= last_day).order_by(Phase.end_date, Phase.id)
    if first_day is not None:
        stmt = stmt.where(Phase.end_date >= first_day)
    return list(db.session.execute(stmt).scalars().all())


def _phase_entry(phase: Phase, today) -> dict | None:
    allocations = [
        entry for entry in (
            _unplanned_entry(a) for a in phase.allocations if a.approval_status in _OPEN_STATUSES
        ) if entry
    ]
    if not allocations:
        return None
    return {
        "phase_id": phase.id,
        "phase_name": phase.name,
        "project_id": phase.project_id,
        "project_title": phase.project.title,
        "end_date": phase.end_date.isoformat(),
        "days_until_end": (phase.end_date - today).days,
        "total_unplanned_hours": round(sum(a["unplanned_hours"] for a in allocations), 2),
        "allocations": allocations,
    }


def unplanned_hours_report(actor: Actor, *, within_days=DEFAULT_WINDOW_DAYS, now=None) -> dict:
    """
    Phases with unplanned hours that end within ``within_days`` or have ended.

    ``ending_soon`` holds phases still editable (end date today or later),
    ``overdue`` the locked ones, most recently ended first.

    Raises:
        NotAuthorizedError: actor is not Growth Team.
        ValidationError: window outside 0..MAX_WINDOW_DAYS.
    """
    check_growth_team(actor, "view phase end alerts")
    if isinstance(within_days, bool) or not isinstance(within_days, int) \
            or not 0 <= within_days <= MAX_WINDOW_DAYS:
        raise ValidationError(
            f"within_days must be an integer between 0 and {MAX_WINDOW_DAYS}",
            details={"within_days": within_days},
        )
    now = now or utcnow()
    today = as_date(now)

    ending_soon, overdue = [], []
    for phase in _phases_ending_by(today + timedelta(days=within_days)):
        entry = _phase_entry(phase, today)
        if entry is None:
            continue
        (overdue if is_locked(phase, now) else ending_soon).append(entry)
    overdue.reverse()

    return {
        "as_of": today.isoformat(),
        "within_days": within_days,
        "ending_soon": ending_soon,
        "overdue": overdue,
    }


def notify_phases_ending(*, within_days=DEFAULT_WINDOW_DAYS, now=None) -> dict:
    """Remind PMs and consultants of unplanned hours on phases about to lock."""
    now = now or utcnow()
    today = as_date(now)
    notified = []
    for phase in _phases_ending_by(today + timedelta(days=within_days), first_day=today):
        entry = _phase_entry(phase, today)
        if entry is None:
            continue
        days = entry["days_until_end"]
        when = "today" if days == 0 else f"in {days} day{'' if days == 1 else 's'}"
        if phase.project.product_manager_id is not None:
            NotificationService.notify_timeline_changed(
                event="phase.ending",
                title="Phase ending with unplanned hours",
                message=(
                    f"Phase '{phase.name}' ({phase.project.title}) ends {when} with "
                    f"{entry['total_unplanned_hours']:g}h not yet planned."
                ),
                entity_type="phase",
                entity_id=phase.id,
                project_id=phase.project_id,
                recipient_ids={phase.project.product_manager_id},
                severity="warning",
            )
        for item in entry["allocations"]:
            NotificationService.notify_timeline_changed(
                event="phase.ending",
                title="Plan your remaining hours",
                message=(
                    f"Phase '{phase.name}' ends {when}. {item['unplanned_hours']:g}h of your "
                    f"allocation are not planned into approved weeks yet."
                ),
                entity_type="phase_allocation",
                entity_id=item["phase_allocation_id"],
                project_id=phase.project_id,
                recipient_ids={item["consultant_id"]},
                severity="warning",
            )
        notified.append(phase.id)

    logger.info(
        "Phase end reminders sent",
        extra={"phase_count": len(notified), "within_days": within_days},
    )
    return {"as_of": today.isoformat(), "phase_ids": notified}


# ═════════════════════════════════════════════════════════════════════════════
# Expiry
# ═════════════════════════════════════════════════════════════════════════════


def _notify_expired(allocation: PhaseAllocation, unplanned: float, growth_ids: list[int]) -> None:
    phase = allocation.phase
    project = phase.project
    consultant = allocation.consultant
    name = consultant.full_name or consultant.email
    common = {
        "event": "phase_allocation.expired",
        "entity_type": "phase_allocation",
        "entity_id": allocation.id,
        "project_id": project.id,
        "severity": "warning",
    }
    if project.product_manager_id is not None:
        NotificationService.notify_timeline_changed(
            title="Phase allocation expired",
            message=(
                f"{name} has {unplanned:.1f}h unplanned in '{phase.name}' ({project.title}). "
                f"Forfeit or reallocate these hours."
            ),
            recipient_ids={project.product_manager_id},
            **common,
        )
    if growth_ids:
        NotificationService.notify_timeline_changed(
            title="Expired allocation",
            message=f"{name} has {unplanned:.1f}h unplanned in '{phase.name}' ({project.title}).",
            recipient_ids=set(growth_ids),
            **common,
        )
    NotificationService.notify_timeline_changed(
        title="Phase ended with unplanned hours",
        message=(
            f"Your allocation for '{phase.name}' expired with {unplanned:.1f}h unplanned. "
            f"Contact your Product Manager if these hours need to be reallocated."
        ),
        recipient_ids={allocation.consultant_id},
        **common,
    )


def detect_expired_allocations(*, now=None) -> dict:
    """
    Move APPROVED allocations on ended phases with unplanned hours to EXPIRED.

    Each expiry is audited and committed on its own, then the PM, the Growth
    Team and the consultant are notified.

    Returns:
        {"checked": int, "expired": [ids], "skipped": [ids]}
    """
    now = now or utcnow()
    today = as_date(now)
    candidates = db.session.execute(
        select(PhaseAllocation.id)
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .where(
            PhaseAllocation.approval_status == ApprovalStatus.APPROVED,
            Phase.end_date < today,
        )
        .order_by(PhaseAllocation.id)
    ).scalars().all()

    growth_ids = growth_team_ids()
    expired, skipped = [], []
    for allocation_id in candidates:
        allocation = db.session.get(PhaseAllocation, allocation_id)
        if allocation is None:
            continue
        unplanned = allocation.allocated_hours - approved_weekly_hours(allocation.id)
        if unplanned <= UNPLANNED_TOLERANCE:
            continue
        try:
            compare_and_set(
                PhaseAllocation,
                allocation.id,
                column=PhaseAllocation.approval_status,
                expected=ApprovalStatus.APPROVED,
                values={"approval_status": ApprovalStatus.EXPIRED},
                action="expire",
            )
        except InvalidStateError as exc:
            logger.info(
                "Allocation changed state before expiry, skipped",
                extra={"allocation_id": allocation_id, "current": exc.current_status},
            )
            skipped.append(allocation_id)
            continue
        db.session.refresh(allocation)
        write_audit(
            entity_type="phase_allocation",
            entity_id=allocation.id,
            action="phase_allocation.expire",
            project_id=allocation.phase.project_id,
            diff={
                "approval_status": {"old": ApprovalStatus.APPROVED, "new": ApprovalStatus.EXPIRED},
                "unplanned_hours": {"old": None, "new": round(unplanned, 2)},
            },
        )
        db.session.commit()

        logger.info(
            "Phase allocation expired",
            extra={
                "allocation_id": allocation.id,
                "phase_id": allocation.phase_id,
                "unplanned_hours": unplanned,
                "allocated_hours": allocation.allocated_hours,
            },
        )
        expired.append(allocation.id)
        _notify_expired(allocation, unplanned, growth_ids)

    logger.info(
        "Expired allocation detection completed",
        extra={"checked": len(candidates), "expired": len(expired), "skipped": len(skipped)},
    )
    return {"checked": len(candidates), "expired": expired, "skipped": skipped}

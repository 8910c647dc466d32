"""
Phase Lock Evaluator

Decides whether a phase is still editable. A phase is locked once its end
date is in the past; the end date itself is still editable. Growth Team
members bypass the lock so they can correct historical data.

All functions take ``now`` explicitly (date or datetime). Services pass
``datetime.now(timezone.utc)`` at their boundary.

Usage:
    from planner.services.phase_lock import can_edit, ensure_editable

    if not can_edit(phase, actor.is_growth_team, now):
        ...

    ensure_editable(phase, actor, now)   # raises PhaseLockedError
"""

import logging
from datetime import date, datetime

from planner.core.exceptions import PhaseLockedError

logger = logging.getLogger(__name__)

UNLOCKED_MESSAGE = "This phase cannot be edited."


def as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def days_past_end(phase, now: date | datetime) -> int:
    """Whole days elapsed since the phase end date (0 or negative if not ended)."""
    return (as_date(now) - as_date(phase.end_date)).days


def is_locked(phase, now: date | datetime) -> bool:
    """True iff the phase end date lies strictly before ``now``."""
    return as_date(phase.end_date) < as_date(now)


def can_edit(phase, actor_is_growth_team: bool, now: date | datetime) -> bool:
    if actor_is_growth_team:
        return True
    return not is_locked(phase, now)


def lock_reason_message(phase, now: date | datetime) -> str:
    """Human-readable explanation of why the phase cannot be edited."""
    if not is_locked(phase, now):
        return UNLOCKED_MESSAGE
    days = days_past_end(phase, now)
    unit = "day" if days == 1 else "days"
    return f"This phase ended {days} {unit} ago and can no longer be edited."


def lock_status(phase, actor_is_growth_team: bool, now: date | datetime) -> dict:
    """Serializable lock state for the presentation layer."""
    locked = is_locked(phase, now)
    return {
        "phase_id": phase.id,
        "end_date": as_date(phase.end_date).isoformat(),
        "is_locked": locked,
        "can_edit": can_edit(phase, actor_is_growth_team, now),
        "days_past_end": max(days_past_end(phase, now), 0),
        "message": lock_reason_message(phase, now) if locked else None,
    }


def ensure_editable(phase, actor, now: date | datetime) -> None:
    """
    Guard called before any mutation touching a phase's allocations.

    Raises:
        PhaseLockedError: phase is locked and the actor is not Growth Team.
    """
    if can_edit(phase, actor.is_growth_team, now):
        return
    days = days_past_end(phase, now)
    logger.info(
        "Edit rejected on locked phase",
        extra={"phase_id": phase.id, "actor_id": actor.user_id, "days_past": days},
    )
    raise PhaseLockedError(phase.id, lock_reason_message(phase, now), days_past=days)

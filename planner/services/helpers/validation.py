"""Input normalisation shared by the lifecycle services."""

import math
from datetime import date, datetime

from planner.core.exceptions import ValidationError
from planner.models.allocation import DECISIONS

MAX_HOURS = 10_000
MAX_TEXT_LENGTH = 2000


def normalize_decision(decision: str) -> str:
    """Accept 'approve' / 'APPROVE' (and reject); anything else is a ValidationError."""
    value = (decision or "").strip().upper() if isinstance(decision, str) else ""
    if value not in DECISIONS:
        raise ValidationError(
            f"decision must be one of {sorted(DECISIONS)}",
            details={"decision": decision},
        )
    return value


def parse_hours(value, *, field: str = "hours", allow_zero: bool = False) -> float:
    """Coerce an hour quantity to float and enforce its bounds."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={field: value})
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value})
    if math.isnan(hours) or math.isinf(hours):
        raise ValidationError(f"{field} must be a finite number", details={field: value})
    if hours < 0 or (hours == 0 and not allow_zero):
        bound = "zero or greater" if allow_zero else "greater than zero"
        raise ValidationError(f"{field} must be {bound}", details={field: value})
    if hours > MAX_HOURS:
        raise ValidationError(f"{field} must not exceed {MAX_HOURS}", details={field: value})
    return hours


def clean_text(value, *, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: value})
    value = value.strip()
    if len(value) > MAX_TEXT_LENGTH:
        raise ValidationError(
            f"{field} must be at most {MAX_TEXT_LENGTH} characters", details={field: len(value)},
        )
    return value or None


def parse_date(value, *, field: str) -> date:
    """Accept a date, datetime or ISO 'YYYY-MM-DD' string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={field: value})

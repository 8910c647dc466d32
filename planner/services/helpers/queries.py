"""
Shared lookup and transition helpers for the lifecycle services.

Usage:
    allocation = get_or_raise(PhaseAllocation, allocation_id)
    phase = get_or_raise(Phase, phase_id, for_update=True)

    compare_and_set(
        PhaseAllocation, allocation.id,
        column=PhaseAllocation.approval_status, expected="PENDING",
        values={"approval_status": "APPROVED"}, action="approve",
    )
"""

import logging
from datetime import date, datetime, time, timezone

from sqlalchemy import select, update

from planner.core.exceptions import InvalidStateError, NotFoundError
from planner.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_timestamp(now: date | datetime) -> datetime:
    """Timestamp for decision columns when the caller injected a plain date."""
    if isinstance(now, datetime):
        return now
    return datetime.combine(now, time.min, tzinfo=timezone.utc)


def get_or_raise(model, pk: int, *, for_update: bool = False):
    """
    Fetch ``model`` by primary key or raise NotFoundError.

    ``for_update`` takes a row lock on backends that support it (PostgreSQL);
    SQLite ignores it and relies on its database-level write lock.
    """
    if pk is None:
        raise NotFoundError(resource=model.__name__)
    stmt = select(model).where(model.id == pk)
    if for_update:
        stmt = stmt.with_for_update()
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return obj


def compare_and_set(model, pk: int, *, column, expected: str, values: dict, action: str) -> None:
    """
    Apply ``values`` only if ``column`` still equals ``expected``.

    The UPDATE carries the expected status in its WHERE clause, so of two
    concurrent deciders only the first matches a row. The loser re-reads the
    current status and gets InvalidStateError. Everything the caller flushed
    earlier in the transaction is rolled back with it.

    Raises:
        InvalidStateError: no row in the expected status.
    """
    result = db.session.execute(
        update(model)
        .where(model.id == pk, column == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return
    current = db.session.execute(select(column).where(model.id == pk)).scalar_one_or_none()
    db.session.rollback()
    logger.info(
        "Compare-and-set lost",
        extra={"resource": model.__name__, "resource_id": pk, "expected": expected, "current": current},
    )
    raise InvalidStateError(model.__name__, pk, current=current, action=action)

"""
Allocation domain model.

Models:
    - PhaseAllocation:   a consultant's hour budget on a phase, subject to approval
    - WeeklyAllocation:  week-bucketed slice of a phase allocation's hours
    - HourChangeRequest: proposed new hour value for a phase or weekly allocation

Uniqueness invariants are backed by partial unique indexes so that two
concurrent transactions cannot both insert an active allocation for the same
(consultant, phase) pair, or two PENDING requests for the same target.
"""

from datetime import datetime, timezone

from planner.models import db


# ── Constants ────────────────────────────────────────────────────────────────

class ApprovalStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELETION_PENDING = "DELETION_PENDING"
    EXPIRED = "EXPIRED"


class PlanningStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RequestStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Decision:
    APPROVE = "APPROVE"
    REJECT = "REJECT"


APPROVAL_STATUSES = frozenset({
    ApprovalStatus.PENDING,
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.DELETION_PENDING,
    ApprovalStatus.EXPIRED,
})
PLANNING_STATUSES = frozenset({PlanningStatus.PENDING, PlanningStatus.APPROVED, PlanningStatus.REJECTED})
REQUEST_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.APPROVED, RequestStatus.REJECTED})
DECISIONS = frozenset({Decision.APPROVE, Decision.REJECT})


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════
# 1. PHASE ALLOCATIONS
# ═══════════════════════════════════════════════════════════════
class PhaseAllocation(db.Model):
    """
    Consultant hour budget on a phase.

    Business rules:
    - At most one allocation per (consultant, phase) whose status is not REJECTED.
    - APPROVED allocations are only removed through DELETION_PENDING and a
      Growth Team confirmation.
    - APPROVED allocations whose phase ended with unplanned hours are moved
      to EXPIRED by the detect-expired job; EXPIRED still counts as active.
    """

    __tablename__ = "phase_allocations"

    id = db.Column(db.Integer, primary_key=True)
    consultant_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    allocated_hours = db.Column(db.Float, nullable=False)
    approval_status = db.Column(
        db.String(20),
        nullable=False,
        default=ApprovalStatus.PENDING,
        comment="PENDING | APPROVED | REJECTED | DELETION_PENDING | EXPIRED",
    )
    description = db.Column(db.Text, nullable=True)

    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    deletion_requested_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index(
            "uq_phase_allocation_active",
            "consultant_id",
            "phase_id",
            unique=True,
            sqlite_where=db.text("approval_status != 'REJECTED'"),
            postgresql_where=db.text("approval_status != 'REJECTED'"),
        ),
        db.Index("ix_phase_allocation_status", "approval_status"),
    )

    consultant = db.relationship("User", foreign_keys=[consultant_id])
    phase = db.relationship("Phase", back_populates="allocations")
    weekly_allocations = db.relationship(
        "WeeklyAllocation",
        back_populates="phase_allocation",
        cascade="all, delete-orphan",
        order_by="WeeklyAllocation.week_start_date",
    )
    hour_change_requests = db.relationship(
        "HourChangeRequest", back_populates="phase_allocation", cascade="all, delete-orphan",
    )

    def to_dict(self, include_weeks=False):
        d = {
            "id": self.id,
            "consultant_id": self.consultant_id,
            "phase_id": self.phase_id,
            "allocated_hours": self.allocated_hours,
            "approval_status": self.approval_status,
            "description": self.description,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejection_reason": self.rejection_reason,
            "deletion_requested_by": self.deletion_requested_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_weeks:
            d["weekly_allocations"] = [w.to_dict() for w in self.weekly_allocations]
        return d

    def __repr__(self):
        return f"<PhaseAllocation #{self.id} c={self.consultant_id} p={self.phase_id} {self.approval_status}>"


# ═══════════════════════════════════════════════════════════════
# 2. WEEKLY ALLOCATIONS
# ═══════════════════════════════════════════════════════════════
class WeeklyAllocation(db.Model):
    """
    ISO-week slice of a phase allocation.

    One row per (phase allocation, year, week); proposing the same week again
    supersedes the row instead of soft-deleting it.
    """

    __tablename__ = "weekly_allocations"

    id = db.Column(db.Integer, primary_key=True)
    phase_allocation_id = db.Column(
        db.Integer, db.ForeignKey("phase_allocations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    week_start_date = db.Column(db.Date, nullable=False)
    week_number = db.Column(db.Integer, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    hours = db.Column(db.Float, nullable=False)
    planning_status = db.Column(
        db.String(20), nullable=False, default=PlanningStatus.PENDING, comment="PENDING | APPROVED | REJECTED",
    )

    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("phase_allocation_id", "year", "week_number", name="uq_weekly_allocation_week"),
        db.Index("ix_weekly_allocation_status_week", "planning_status", "year", "week_number"),
    )

    phase_allocation = db.relationship("PhaseAllocation", back_populates="weekly_allocations")

    def to_dict(self):
        return {
            "id": self.id,
            "phase_allocation_id": self.phase_allocation_id,
            "week_start_date": _iso(self.week_start_date),
            "week_number": self.week_number,
            "year": self.year,
            "hours": self.hours,
            "planning_status": self.planning_status,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejection_reason": self.rejection_reason,
        }

    def __repr__(self):
        return f"<WeeklyAllocation #{self.id} {self.year}-W{self.week_number:02d} {self.planning_status}>"


# ═══════════════════════════════════════════════════════════════
# 3. HOUR CHANGE REQUESTS
# ═══════════════════════════════════════════════════════════════
def phase_target_key(phase_allocation_id: int) -> str:
    return f"phase:{phase_allocation_id}"


def weekly_target_key(weekly_allocation_id: int) -> str:
    return f"weekly:{weekly_allocation_id}"


class HourChangeRequest(db.Model):
    """
    Proposed new hour value for an allocation.

    The target is the phase allocation itself, or one of its weekly
    allocations when weekly_allocation_id is set. target_key names that target
    so a single partial unique index can guard "one PENDING request per
    target". Resolved requests are never mutated again.
    """

    __tablename__ = "hour_change_requests"

    id = db.Column(db.Integer, primary_key=True)
    requester_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    phase_allocation_id = db.Column(
        db.Integer, db.ForeignKey("phase_allocations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    weekly_allocation_id = db.Column(
        db.Integer, db.ForeignKey("weekly_allocations.id", ondelete="CASCADE"), nullable=True,
    )
    target_key = db.Column(db.String(40), nullable=False)
    original_hours = db.Column(db.Float, nullable=False)
    requested_hours = db.Column(db.Float, nullable=False)
    reason = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=RequestStatus.PENDING, comment="PENDING | APPROVED | REJECTED",
    )

    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.Index(
            "uq_hour_change_pending_target",
            "target_key",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
        db.Index("ix_hour_change_status", "status"),
    )

    phase_allocation = db.relationship("PhaseAllocation", back_populates="hour_change_requests")
    weekly_allocation = db.relationship("WeeklyAllocation")

    def to_dict(self):
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "phase_allocation_id": self.phase_allocation_id,
            "weekly_allocation_id": self.weekly_allocation_id,
            "target": "weekly" if self.weekly_allocation_id else "phase",
            "original_hours": self.original_hours,
            "requested_hours": self.requested_hours,
            "reason": self.reason,
            "status": self.status,
            "approver_id": self.approver_id,
            "decided_at": _iso(self.decided_at),
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<HourChangeRequest #{self.id} {self.target_key} {self.status}>"

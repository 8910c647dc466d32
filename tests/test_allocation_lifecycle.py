"""
Tests for the phase allocation lifecycle service.

Covers: proposal (validation, duplicates, authorization, locking), approval
and rejection (including modified hours and double decisions), the deletion
workflow, description edits, pending queue scoping and audit/notification
side effects.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import func, select, update

from planner.core.exceptions import (
    DuplicateAllocationError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    PhaseLockedError,
    ValidationError,
)
from planner.models import db
from planner.models.allocation import ApprovalStatus, PhaseAllocation, PlanningStatus, WeeklyAllocation
from planner.models.audit import history_for, write_audit
from planner.models.notification import Notification
from planner.services import allocation_lifecycle as svc
from planner.services.weekly_plan_lifecycle import propose_weekly_allocation, week_bounds
from tests.conftest import actor_of, make_phase, make_project, make_user


# ── Helpers ──────────────────────────────────────────────────────────────


def _approved(consultant, phase, pm, hours=40):
    alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, hours)
    return svc.decide_allocation(alloc["id"], actor_of(pm), "APPROVE")


def _audit_actions(entity_id):
    return [row.action for row in history_for("phase_allocation", entity_id)]


# ── Proposal ─────────────────────────────────────────────────────────────


class TestPropose:
    def test_consultant_proposes_for_self(self, consultant, phase):
        result = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40, "Backend work")
        assert result["approval_status"] == ApprovalStatus.PENDING
        assert result["allocated_hours"] == 40.0
        assert result["description"] == "Backend work"
        assert result["approved_by"] is None
        assert _audit_actions(result["id"]) == ["phase_allocation.propose"]

    def test_pm_notified_on_proposal(self, consultant, pm, phase):
        svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        notes = Notification.query.filter_by(recipient_id=pm.id).all()
        assert len(notes) == 1
        assert notes[0].category == "timeline"

    def test_pm_proposes_for_consultant(self, consultant, pm, phase):
        result = svc.propose_allocation(actor_of(pm), consultant.id, phase.id, 16)
        assert result["consultant_id"] == consultant.id

    def test_consultant_cannot_propose_for_someone_else(self, consultant, phase):
        colleague = make_user("colleague@test.com")
        with pytest.raises(NotAuthorizedError):
            svc.propose_allocation(actor_of(consultant), colleague.id, phase.id, 16)

    @pytest.mark.parametrize("hours", [0, -5, "abc", None, True])
    def test_invalid_hours_rejected(self, consultant, phase, hours):
        with pytest.raises(ValidationError):
            svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, hours)
        assert PhaseAllocation.query.count() == 0

    def test_unknown_phase(self, consultant):
        with pytest.raises(NotFoundError):
            svc.propose_allocation(actor_of(consultant), consultant.id, 999, 10)

    def test_unknown_consultant(self, pm, phase):
        with pytest.raises(NotFoundError):
            svc.propose_allocation(actor_of(pm), 999, phase.id, 10)

    def test_duplicate_active_allocation(self, consultant, phase):
        svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        with pytest.raises(DuplicateAllocationError):
            svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 20)
        assert PhaseAllocation.query.count() == 1

    def test_repropose_after_rejection(self, consultant, pm, phase):
        first = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        svc.decide_allocation(first["id"], actor_of(pm), "REJECT", rejection_reason="Too many")
        second = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 30)
        assert second["id"] != first["id"]
        assert second["approval_status"] == ApprovalStatus.PENDING

    def test_locked_phase_blocks_consultant(self, consultant, ended_phase):
        with pytest.raises(PhaseLockedError) as exc_info:
            svc.propose_allocation(actor_of(consultant), consultant.id, ended_phase.id, 10)
        assert "days ago" in str(exc_info.value)

    def test_growth_team_bypasses_lock(self, growth, consultant, ended_phase):
        result = svc.propose_allocation(actor_of(growth), consultant.id, ended_phase.id, 10)
        assert result["approval_status"] == ApprovalStatus.PENDING

    def test_injected_now(self, consultant, phase):
        later = phase.end_date + timedelta(days=2)
        with pytest.raises(PhaseLockedError):
            svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 10, now=later)


# ── Decision ─────────────────────────────────────────────────────────────


class TestDecide:
    def test_approve(self, consultant, pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        result = svc.decide_allocation(alloc["id"], actor_of(pm), "approve")
        assert result["approval_status"] == ApprovalStatus.APPROVED
        assert result["approved_by"] == pm.id
        assert result["approved_at"] is not None
        assert _audit_actions(alloc["id"]) == ["phase_allocation.propose", "phase_allocation.approve"]

    def test_approve_with_modified_hours(self, consultant, pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        result = svc.decide_allocation(alloc["id"], actor_of(pm), "APPROVE", modified_hours=32)
        assert result["allocated_hours"] == 32.0
        assert result["budget_warning"] is None

    def test_modified_hours_below_planned_weeks_warns(self, consultant, pm, phase, caplog):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        monday, year, week_number = week_bounds(phase.start_date + timedelta(days=7))
        db.session.add(WeeklyAllocation(
            phase_allocation_id=alloc["id"], week_start_date=monday, year=year,
            week_number=week_number, hours=30, planning_status=PlanningStatus.APPROVED,
        ))
        db.session.commit()

        with caplog.at_level("WARNING", logger="planner.services.helpers.budget"):
            result = svc.decide_allocation(alloc["id"], actor_of(pm), "APPROVE", modified_hours=20)

        assert result["approval_status"] == ApprovalStatus.APPROVED
        assert result["budget_warning"]["excess_hours"] == 10.0
        assert any("exceed" in r.getMessage() for r in caplog.records)

    def test_reject_stores_reason(self, consultant, pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        result = svc.decide_allocation(alloc["id"], actor_of(pm), "REJECT", rejection_reason="Budget")
        assert result["approval_status"] == ApprovalStatus.REJECTED
        assert result["rejection_reason"] == "Budget"

    def test_consultant_notified_of_decision(self, consultant, pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        svc.decide_allocation(alloc["id"], actor_of(pm), "APPROVE")
        assert Notification.query.filter_by(recipient_id=consultant.id).count() == 1

    def test_second_decision_is_invalid_state(self, consultant, pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        svc.decide_allocation(alloc["id"], actor_of(pm), "APPROVE")
        with pytest.raises(InvalidStateError) as exc_info:
            svc.decide_allocation(alloc["id"], actor_of(pm), "REJECT")
        assert exc_info.value.current_status == ApprovalStatus.APPROVED

    def test_unknown_decision(self, consultant, pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        with pytest.raises(ValidationError):
            svc.decide_allocation(alloc["id"], actor_of(pm), "maybe")

    def test_consultant_cannot_approve(self, consultant, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        with pytest.raises(NotAuthorizedError):
            svc.decide_allocation(alloc["id"], actor_of(consultant), "APPROVE")
        assert db.session.get(PhaseAllocation, alloc["id"]).approval_status == ApprovalStatus.PENDING

    def test_unrelated_pm_cannot_approve(self, consultant, other_pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        with pytest.raises(NotAuthorizedError):
            svc.decide_allocation(alloc["id"], actor_of(other_pm), "APPROVE")

    def test_growth_team_can_approve_anything(self, consultant, growth, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        result = svc.decide_allocation(alloc["id"], actor_of(growth), "APPROVE")
        assert result["approval_status"] == ApprovalStatus.APPROVED

    def test_decision_on_locked_phase(self, consultant, pm, growth, ended_phase):
        alloc = svc.propose_allocation(actor_of(growth), consultant.id, ended_phase.id, 10)
        with pytest.raises(PhaseLockedError):
            svc.decide_allocation(alloc["id"], actor_of(pm), "APPROVE")

    def test_unknown_allocation(self, pm):
        with pytest.raises(NotFoundError):
            svc.decide_allocation(404, actor_of(pm), "APPROVE")


# ── Deletion ─────────────────────────────────────────────────────────────


class TestDeletion:
    def test_request_and_cancel(self, consultant, pm, growth, phase):
        alloc = _approved(consultant, phase, pm)
        pending = svc.request_deletion(alloc["id"], actor_of(consultant))
        assert pending["approval_status"] == ApprovalStatus.DELETION_PENDING
        assert pending["deletion_requested_by"] == consultant.id

        restored = svc.cancel_deletion(alloc["id"], actor_of(growth))
        assert restored["approval_status"] == ApprovalStatus.APPROVED
        assert restored["deletion_requested_by"] is None

    def test_request_requires_approved(self, consultant, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        with pytest.raises(InvalidStateError):
            svc.request_deletion(alloc["id"], actor_of(consultant))

    def test_only_growth_team_confirms(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        svc.request_deletion(alloc["id"], actor_of(pm))
        with pytest.raises(NotAuthorizedError):
            svc.confirm_deletion(alloc["id"], actor_of(pm))
        with pytest.raises(NotAuthorizedError):
            svc.cancel_deletion(alloc["id"], actor_of(pm))

    def test_confirm_removes_allocation_and_weeks(self, consultant, pm, growth, phase):
        alloc = _approved(consultant, phase, pm)
        propose_weekly_allocation(actor_of(consultant), alloc["id"], phase.start_date, 8)
        svc.request_deletion(alloc["id"], actor_of(consultant))

        result = svc.confirm_deletion(alloc["id"], actor_of(growth))
        assert result["deleted"] is True
        assert result["weekly_allocations_removed"] == 1
        assert db.session.get(PhaseAllocation, alloc["id"]) is None
        assert WeeklyAllocation.query.count() == 0
        assert _audit_actions(alloc["id"])[-1] == "phase_allocation.confirm_deletion"

    def test_confirm_requires_deletion_pending(self, consultant, pm, growth, phase):
        alloc = _approved(consultant, phase, pm)
        with pytest.raises(InvalidStateError):
            svc.confirm_deletion(alloc["id"], actor_of(growth))
        assert db.session.get(PhaseAllocation, alloc["id"]) is not None

    def test_pair_freed_after_confirmed_deletion(self, consultant, pm, growth, phase):
        alloc = _approved(consultant, phase, pm)
        svc.request_deletion(alloc["id"], actor_of(consultant))
        svc.confirm_deletion(alloc["id"], actor_of(growth))
        again = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 12)
        assert again["approval_status"] == ApprovalStatus.PENDING

    def test_available_transitions(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        obj = db.session.get(PhaseAllocation, alloc["id"])
        assert svc.get_available_transitions(obj) == ["request_deletion"]


# ── Description & queue ──────────────────────────────────────────────────


class TestDescription:
    def test_update(self, consultant, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        result = svc.update_description(alloc["id"], actor_of(consultant), "  API integration  ")
        assert result["description"] == "API integration"

    def test_rejected_allocation_is_frozen(self, consultant, pm, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        svc.decide_allocation(alloc["id"], actor_of(pm), "REJECT")
        with pytest.raises(InvalidStateError):
            svc.update_description(alloc["id"], actor_of(consultant), "late edit")

    def test_too_long(self, consultant, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        with pytest.raises(ValidationError):
            svc.update_description(alloc["id"], actor_of(consultant), "x" * 2001)


class TestPendingQueue:
    def test_pm_sees_only_managed_projects(self, consultant, pm, other_pm, phase):
        other_project = make_project("Other", other_pm)
        today = date.today()
        other_phase = make_phase(other_project, today, today + timedelta(days=30))
        svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        svc.propose_allocation(actor_of(other_pm), consultant.id, other_phase.id, 8)

        mine = svc.list_pending_allocations(actor_of(pm))
        assert [a["phase_id"] for a in mine] == [phase.id]
        assert mine[0]["consultant"]["id"] == consultant.id

    def test_growth_team_sees_all(self, consultant, growth, other_pm, phase):
        other_project = make_project("Other", other_pm)
        today = date.today()
        other_phase = make_phase(other_project, today, today + timedelta(days=30))
        svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        svc.propose_allocation(actor_of(other_pm), consultant.id, other_phase.id, 8)
        assert len(svc.list_pending_allocations(actor_of(growth))) == 2

    def test_consultant_sees_nothing(self, consultant, phase):
        svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        assert svc.list_pending_allocations(actor_of(consultant)) == []


# ── Concurrent writers ───────────────────────────────────────────────────


class TestConcurrentWriters:
    """Writers that both got past the pre-checks before either committed."""

    def test_index_rejects_second_active_allocation(self, consultant, pm, phase, monkeypatch):
        svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        monkeypatch.setattr(svc, "_active_allocation_id", lambda consultant_id, phase_id: None)

        with pytest.raises(DuplicateAllocationError):
            svc.propose_allocation(actor_of(pm), consultant.id, phase.id, 24)

        count = db.session.execute(
            select(func.count(PhaseAllocation.id)).where(
                PhaseAllocation.consultant_id == consultant.id, PhaseAllocation.phase_id == phase.id,
            )
        ).scalar_one()
        assert count == 1

    def test_decision_loses_to_concurrent_approval(self, consultant, pm, growth, phase):
        alloc = svc.propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
        # Loaded before the other approver writes, so the session still sees PENDING
        stale = db.session.get(PhaseAllocation, alloc["id"])
        assert stale.approval_status == ApprovalStatus.PENDING
        db.session.execute(
            update(PhaseAllocation)
            .where(PhaseAllocation.id == alloc["id"])
            .values(approval_status=ApprovalStatus.APPROVED, approved_by=growth.id)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InvalidStateError) as exc_info:
            svc.decide_allocation(alloc["id"], actor_of(pm), "REJECT", rejection_reason="Too late")

        assert exc_info.value.current_status == ApprovalStatus.APPROVED
        assert "phase_allocation.reject" not in _audit_actions(alloc["id"])


def test_audit_rejects_unknown_action(consultant, phase):
    with pytest.raises(ValueError):
        write_audit(entity_type="phase_allocation", entity_id=1, action="phase_allocation.teleport")

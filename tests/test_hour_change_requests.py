"""
Tests for hour change requests.

Covers: creation against phase and weekly targets, one PENDING request per
target, approval writing the new hours, rejection leaving hours untouched,
terminal states and visibility of the request list.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from planner.core.exceptions import (
    DuplicatePendingRequestError,
    InvalidStateError,
    NotAuthorizedError,
    PhaseLockedError,
    ValidationError,
)
from planner.models import db
from planner.models.allocation import (
    HourChangeRequest,
    PhaseAllocation,
    PlanningStatus,
    RequestStatus,
    WeeklyAllocation,
)
from planner.services import hour_change_service as svc
from planner.services.allocation_lifecycle import decide_allocation, propose_allocation, request_deletion
from planner.services.weekly_plan_lifecycle import decide_weekly_allocation, propose_weekly_allocation
from tests.conftest import actor_of, make_user


# ── Helpers ──────────────────────────────────────────────────────────────


def _approved(consultant, phase, pm, hours=40):
    alloc = propose_allocation(actor_of(consultant), consultant.id, phase.id, hours)
    return decide_allocation(alloc["id"], actor_of(pm), "APPROVE")


# ── Creation ─────────────────────────────────────────────────────────────


class TestCreate:
    def test_snapshot_original_hours(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30, reason="Scope cut")
        assert req["status"] == RequestStatus.PENDING
        assert req["original_hours"] == 40.0
        assert req["requested_hours"] == 30.0
        assert req["target"] == "phase"
        assert req["reason"] == "Scope cut"

    def test_second_pending_request_conflicts(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        first = svc.create_request(actor_of(consultant), alloc["id"], 30)
        with pytest.raises(DuplicatePendingRequestError) as exc_info:
            svc.create_request(actor_of(pm), alloc["id"], 35)
        assert exc_info.value.pending_request_id == first["id"]

    def test_zero_hours_rejected_for_phase_target(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        with pytest.raises(ValidationError):
            svc.create_request(actor_of(consultant), alloc["id"], 0)

    def test_stranger_cannot_request(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        stranger = make_user("stranger@test.com")
        with pytest.raises(NotAuthorizedError):
            svc.create_request(actor_of(stranger), alloc["id"], 30)

    def test_deletion_pending_allocation(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        request_deletion(alloc["id"], actor_of(consultant))
        with pytest.raises(InvalidStateError):
            svc.create_request(actor_of(consultant), alloc["id"], 30)

    def test_locked_phase(self, consultant, pm, growth, ended_phase):
        alloc = propose_allocation(actor_of(growth), consultant.id, ended_phase.id, 40)
        decide_allocation(alloc["id"], actor_of(growth), "APPROVE")
        with pytest.raises(PhaseLockedError):
            svc.create_request(actor_of(consultant), alloc["id"], 30)

    def test_weekly_target(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        week = propose_weekly_allocation(actor_of(consultant), alloc["id"], phase.start_date + timedelta(days=7), 16)
        req = svc.create_request(actor_of(consultant), alloc["id"], 0, weekly_allocation_id=week["id"])
        assert req["target"] == "weekly"
        assert req["original_hours"] == 16.0

        # The phase target is independent of its weeks
        phase_req = svc.create_request(actor_of(consultant), alloc["id"], 36)
        assert phase_req["target"] == "phase"

    def test_week_of_other_allocation(self, consultant, pm, phase):
        mine = _approved(consultant, phase, pm)
        other_consultant = make_user("other@test.com")
        theirs = propose_allocation(actor_of(pm), other_consultant.id, phase.id, 20)
        decide_allocation(theirs["id"], actor_of(pm), "APPROVE")
        week = propose_weekly_allocation(actor_of(pm), theirs["id"], phase.start_date + timedelta(days=7), 8)
        with pytest.raises(ValidationError):
            svc.create_request(actor_of(consultant), mine["id"], 4, weekly_allocation_id=week["id"])

    def test_rejected_week_cannot_be_changed(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        week = propose_weekly_allocation(actor_of(consultant), alloc["id"], phase.start_date + timedelta(days=7), 16)
        decide_weekly_allocation(week["id"], actor_of(pm), "REJECT", rejection_reason="Overbooked")

        with pytest.raises(InvalidStateError) as exc_info:
            svc.create_request(actor_of(consultant), alloc["id"], 8, weekly_allocation_id=week["id"])
        assert exc_info.value.current_status == PlanningStatus.REJECTED

    def test_approved_week_can_be_changed(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        week = propose_weekly_allocation(actor_of(consultant), alloc["id"], phase.start_date + timedelta(days=7), 16)
        decide_weekly_allocation(week["id"], actor_of(pm), "APPROVE")
        req = svc.create_request(actor_of(consultant), alloc["id"], 8, weekly_allocation_id=week["id"])
        assert req["original_hours"] == 16.0


# ── Decisions ────────────────────────────────────────────────────────────


class TestDecide:
    def test_approve_applies_hours(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm, hours=40)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30)

        result = svc.decide_request(req["id"], actor_of(pm), "APPROVE")

        assert result["status"] == RequestStatus.APPROVED
        assert result["approver_id"] == pm.id
        assert result["decided_at"] is not None
        assert db.session.get(PhaseAllocation, alloc["id"]).allocated_hours == 30.0

    def test_approval_frees_target_for_new_request(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30)
        svc.decide_request(req["id"], actor_of(pm), "APPROVE")

        follow_up = svc.create_request(actor_of(consultant), alloc["id"], 25)
        assert follow_up["original_hours"] == 30.0

    def test_reject_leaves_hours(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm, hours=40)
        req = svc.create_request(actor_of(consultant), alloc["id"], 60)
        result = svc.decide_request(req["id"], actor_of(pm), "REJECT", rejection_reason="No budget")
        assert result["status"] == RequestStatus.REJECTED
        assert result["rejection_reason"] == "No budget"
        assert db.session.get(PhaseAllocation, alloc["id"]).allocated_hours == 40.0

    def test_approve_weekly_target(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        week = propose_weekly_allocation(actor_of(consultant), alloc["id"], phase.start_date + timedelta(days=7), 16)
        req = svc.create_request(actor_of(consultant), alloc["id"], 12, weekly_allocation_id=week["id"])
        svc.decide_request(req["id"], actor_of(pm), "APPROVE")
        assert db.session.get(WeeklyAllocation, week["id"]).hours == 12.0
        assert db.session.get(PhaseAllocation, alloc["id"]).allocated_hours == 40.0

    def test_resolved_request_is_terminal(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30)
        svc.decide_request(req["id"], actor_of(pm), "REJECT")
        with pytest.raises(InvalidStateError) as exc_info:
            svc.decide_request(req["id"], actor_of(pm), "APPROVE")
        assert exc_info.value.current_status == RequestStatus.REJECTED

    def test_requester_cannot_decide(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30)
        with pytest.raises(NotAuthorizedError):
            svc.decide_request(req["id"], actor_of(consultant), "APPROVE")


class TestBudgetWarning:
    """Approved weekly hours compared with the allocation after each change."""

    def _week_approved(self, consultant, pm, phase, alloc_id, offset_days, hours):
        week = propose_weekly_allocation(
            actor_of(consultant), alloc_id, phase.start_date + timedelta(days=offset_days), hours,
        )
        decide_weekly_allocation(week["id"], actor_of(pm), "APPROVE")
        return week

    def test_phase_total_cut_below_planned_weeks(self, consultant, pm, phase, caplog):
        alloc = _approved(consultant, phase, pm, hours=40)
        self._week_approved(consultant, pm, phase, alloc["id"], 7, 35)
        req = svc.create_request(actor_of(consultant), alloc["id"], 10)

        with caplog.at_level("WARNING", logger="planner.services.helpers.budget"):
            result = svc.decide_request(req["id"], actor_of(pm), "APPROVE")

        assert result["status"] == RequestStatus.APPROVED
        warning = result["budget_warning"]
        assert warning["approved_weekly_hours"] == 35.0
        assert warning["allocated_hours"] == 10.0
        assert warning["excess_hours"] == 25.0
        assert any("exceed" in r.getMessage() for r in caplog.records)
        assert db.session.get(PhaseAllocation, alloc["id"]).allocated_hours == 10.0

    def test_week_raised_over_budget(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm, hours=40)
        self._week_approved(consultant, pm, phase, alloc["id"], 7, 24)
        second = self._week_approved(consultant, pm, phase, alloc["id"], 14, 16)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30, weekly_allocation_id=second["id"])

        result = svc.decide_request(req["id"], actor_of(pm), "APPROVE")

        assert result["budget_warning"]["approved_weekly_hours"] == 54.0
        assert result["budget_warning"]["excess_hours"] == 14.0

    def test_within_budget(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm, hours=40)
        self._week_approved(consultant, pm, phase, alloc["id"], 7, 16)
        req = svc.create_request(actor_of(consultant), alloc["id"], 20)
        assert svc.decide_request(req["id"], actor_of(pm), "APPROVE")["budget_warning"] is None

    def test_rejection_has_no_warning(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm, hours=40)
        self._week_approved(consultant, pm, phase, alloc["id"], 7, 35)
        req = svc.create_request(actor_of(consultant), alloc["id"], 10)
        assert svc.decide_request(req["id"], actor_of(pm), "REJECT")["budget_warning"] is None


# ── Concurrent writers ───────────────────────────────────────────────────


class TestConcurrentWriters:
    def test_index_rejects_second_pending_request(self, consultant, pm, phase, monkeypatch):
        alloc = _approved(consultant, phase, pm)
        svc.create_request(actor_of(consultant), alloc["id"], 30)
        monkeypatch.setattr(svc, "_pending_request_id", lambda target_key: None)

        with pytest.raises(DuplicatePendingRequestError):
            svc.create_request(actor_of(pm), alloc["id"], 35)

        pending = db.session.execute(
            select(func.count(HourChangeRequest.id)).where(
                HourChangeRequest.phase_allocation_id == alloc["id"],
                HourChangeRequest.status == RequestStatus.PENDING,
            )
        ).scalar_one()
        assert pending == 1

    def test_decision_loses_to_concurrent_rejection(self, consultant, pm, growth, phase):
        alloc = _approved(consultant, phase, pm, hours=40)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30)
        # Loaded before the other approver writes, so the session still sees PENDING
        stale = db.session.get(HourChangeRequest, req["id"])
        assert stale.status == RequestStatus.PENDING
        db.session.execute(
            update(HourChangeRequest)
            .where(HourChangeRequest.id == req["id"])
            .values(status=RequestStatus.REJECTED, approver_id=growth.id)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InvalidStateError) as exc_info:
            svc.decide_request(req["id"], actor_of(pm), "APPROVE")

        assert exc_info.value.current_status == RequestStatus.REJECTED
        assert db.session.get(PhaseAllocation, alloc["id"]).allocated_hours == 40.0


# ── Listing ──────────────────────────────────────────────────────────────


class TestList:
    def test_visibility(self, consultant, pm, other_pm, growth, phase):
        alloc = _approved(consultant, phase, pm)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30)

        assert [r["id"] for r in svc.list_requests(actor_of(consultant))] == [req["id"]]
        assert [r["id"] for r in svc.list_requests(actor_of(pm))] == [req["id"]]
        assert [r["id"] for r in svc.list_requests(actor_of(growth))] == [req["id"]]
        assert svc.list_requests(actor_of(other_pm)) == []

    def test_status_filter(self, consultant, pm, phase):
        alloc = _approved(consultant, phase, pm)
        req = svc.create_request(actor_of(consultant), alloc["id"], 30)
        svc.decide_request(req["id"], actor_of(pm), "APPROVE")
        assert svc.list_requests(actor_of(pm), status="pending") == []
        assert len(svc.list_requests(actor_of(pm), status="APPROVED")) == 1

    def test_bad_status_filter(self, pm):
        with pytest.raises(ValidationError):
            svc.list_requests(actor_of(pm), status="LOST")

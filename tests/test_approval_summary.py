"""
Tests for the approvals dashboard summary.
"""

from datetime import date, timedelta

from planner.services.allocation_lifecycle import decide_allocation, propose_allocation
from planner.services.approval_summary import summarize
from planner.services.hour_change_service import create_request
from planner.services.weekly_plan_lifecycle import propose_weekly_allocation
from tests.conftest import actor_of, add_member, make_phase, make_project, make_user


EMPTY = {
    "pendingPhaseAllocations": 0,
    "pendingWeeklyPlans": 0,
    "pendingHourChanges": 0,
    "totalPending": 0,
}


def _monday(day):
    return day - timedelta(days=day.weekday())


def test_empty(growth):
    assert summarize(actor_of(growth)) == EMPTY


def test_counts_and_scoping(consultant, pm, other_pm, growth, phase):
    second = make_user("second@test.com")

    # One approved allocation with two weekly rows in the same week bucket
    # (different consultants) and one in the next week
    a1 = propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
    decide_allocation(a1["id"], actor_of(pm), "APPROVE")
    a2 = propose_allocation(actor_of(pm), second.id, phase.id, 20)
    decide_allocation(a2["id"], actor_of(pm), "APPROVE")
    week = _monday(phase.start_date) + timedelta(weeks=1)
    propose_weekly_allocation(actor_of(consultant), a1["id"], week, 8)
    propose_weekly_allocation(actor_of(pm), a2["id"], week, 8)
    propose_weekly_allocation(actor_of(consultant), a1["id"], week + timedelta(weeks=1), 8)

    create_request(actor_of(consultant), a1["id"], 30)

    # A pending allocation on another PM's project
    other_project = make_project("Other", other_pm)
    today = date.today()
    other_phase = make_phase(other_project, today, today + timedelta(days=20))
    propose_allocation(actor_of(other_pm), consultant.id, other_phase.id, 10)

    assert summarize(actor_of(growth)) == {
        "pendingPhaseAllocations": 1,
        "pendingWeeklyPlans": 2,
        "pendingHourChanges": 1,
        "totalPending": 4,
    }
    assert summarize(actor_of(pm)) == {
        "pendingPhaseAllocations": 0,
        "pendingWeeklyPlans": 2,
        "pendingHourChanges": 1,
        "totalPending": 3,
    }
    assert summarize(actor_of(other_pm))["pendingPhaseAllocations"] == 1
    assert summarize(actor_of(consultant)) == EMPTY


def test_project_pm_membership_grants_scope(consultant, pm, phase, project):
    deputy = make_user("deputy@test.com", "PRODUCT_MANAGER")
    add_member(project, deputy, "PRODUCT_MANAGER")
    propose_allocation(actor_of(consultant), consultant.id, phase.id, 40)
    assert summarize(actor_of(deputy))["pendingPhaseAllocations"] == 1

"""Tests for the ``flask seed-demo`` command and its seeding service."""

from datetime import date

from planner.models import db
from planner.models.auth import User
from planner.models.project import Phase
from planner.services.demo_seed import seed_demo_data
from planner.services.jwt_service import decode_access_token


def test_seed_creates_users_and_phases():
    result = seed_demo_data(today=date(2024, 6, 1))

    assert {u["role"] for u in result["users"]} == {"GROWTH_TEAM", "PRODUCT_MANAGER", "CONSULTANT"}
    finished, running = (db.session.get(Phase, pid) for pid in result["phase_ids"])
    assert finished.end_date < date(2024, 6, 1) <= running.end_date

    for user in result["users"]:
        assert decode_access_token(user["token"])["sub"] == user["id"]


def test_seed_is_idempotent_for_users():
    seed_demo_data()
    seed_demo_data()
    assert User.query.count() == 3


def test_cli_command(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["seed-demo"])
    assert result.exit_code == 0
    assert "consultant@demo.local" in result.output

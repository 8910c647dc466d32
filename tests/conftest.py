"""
Shared pytest fixtures for the Consultant Allocation Planner test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - growth / pm / consultant / other_pm: users per role
    - project / phase / ended_phase: a PM-owned project and its phases
    - actor_for / auth_headers: identity helpers for services and HTTP

Factories commit rather than flush: lifecycle services roll the session back
on a lost compare-and-set, which would otherwise discard fixture rows.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from planner import create_app
from planner.models import db as _db
from planner.models.auth import GlobalRole, ProjectMember, ProjectRole, User
from planner.models.project import Phase, Project
from planner.services.jwt_service import generate_access_token
from planner.services.permission import Actor


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def make_user(email: str, role: str = GlobalRole.CONSULTANT, full_name: str = "Test User") -> User:
    u = User(email=email, full_name=full_name, role=role)
    _db.session.add(u)
    _db.session.commit()
    return u


def make_project(title: str = "Test Project", product_manager: User | None = None) -> Project:
    p = Project(title=title, product_manager_id=product_manager.id if product_manager else None)
    _db.session.add(p)
    _db.session.commit()
    return p


def make_phase(project: Project, start: date, end: date, name: str = "Build") -> Phase:
    ph = Phase(project_id=project.id, name=name, start_date=start, end_date=end)
    _db.session.add(ph)
    _db.session.commit()
    return ph


def add_member(project: Project, user: User, role: str = ProjectRole.CONSULTANT) -> ProjectMember:
    m = ProjectMember(project_id=project.id, user_id=user.id, role=role)
    _db.session.add(m)
    _db.session.commit()
    return m


def actor_of(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role)


def utc(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def growth():
    return make_user("growth@test.com", GlobalRole.GROWTH_TEAM, "Gina Growth")


@pytest.fixture()
def pm():
    return make_user("pm@test.com", GlobalRole.PRODUCT_MANAGER, "Pat Manager")


@pytest.fixture()
def other_pm():
    return make_user("other-pm@test.com", GlobalRole.PRODUCT_MANAGER, "Olly Other")


@pytest.fixture()
def consultant():
    return make_user("consultant@test.com", GlobalRole.CONSULTANT, "Casey Consultant")


@pytest.fixture()
def project(pm, consultant):
    """Project owned by ``pm`` with ``consultant`` as a member."""
    p = make_project("Rollout", pm)
    add_member(p, consultant)
    return p


@pytest.fixture()
def phase(project):
    """Phase that is running today, so it is editable by everyone."""
    today = date.today()
    return make_phase(project, today - timedelta(days=14), today + timedelta(days=42))


@pytest.fixture()
def ended_phase(project):
    """Phase that ended five days ago."""
    today = date.today()
    return make_phase(project, today - timedelta(days=60), today - timedelta(days=5), name="Discovery")


@pytest.fixture()
def actor_for():
    return actor_of


@pytest.fixture()
def auth_headers():
    """Factory: bearer headers for a user."""

    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {generate_access_token(user.id, user.role)}"}

    return _headers

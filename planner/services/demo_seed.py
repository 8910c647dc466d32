"""
Demo data for local development (``flask seed-demo``).

Creates one user per global role, a project owned by the Product Manager
with a finished phase and a running phase, and returns bearer tokens for
each user so the API can be exercised with curl.
"""

import logging
from datetime import date, timedelta

from sqlalchemy import select

from planner.models import db
from planner.models.auth import GlobalRole, ProjectMember, ProjectRole, User
from planner.models.project import Phase, Project
from planner.services.jwt_service import generate_access_token

logger = logging.getLogger(__name__)

DEMO_USERS = [
    ("growth@demo.local", "Gina Growth", GlobalRole.GROWTH_TEAM),
    ("pm@demo.local", "Pat Manager", GlobalRole.PRODUCT_MANAGER),
    ("consultant@demo.local", "Casey Consultant", GlobalRole.CONSULTANT),
]


def _get_or_create_user(email, full_name, role):
    user = db.session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        user = User(email=email, full_name=full_name, role=role)
        db.session.add(user)
        db.session.flush()
    return user


def seed_demo_data(today: date | None = None) -> dict:
    """Idempotent for users; adds a fresh demo project on each run."""
    today = today or date.today()
    users = {role: _get_or_create_user(email, name, role) for email, name, role in DEMO_USERS}
    pm = users[GlobalRole.PRODUCT_MANAGER]
    consultant = users[GlobalRole.CONSULTANT]

    project = Project(title="Demo Rollout", description="Seeded demo project", product_manager_id=pm.id)
    db.session.add(project)
    db.session.flush()

    finished = Phase(
        project_id=project.id, name="Discovery",
        start_date=today - timedelta(days=60), end_date=today - timedelta(days=31),
    )
    running = Phase(
        project_id=project.id, name="Build",
        start_date=today - timedelta(days=30), end_date=today + timedelta(days=60),
    )
    db.session.add_all([finished, running])
    db.session.add(ProjectMember(project_id=project.id, user_id=consultant.id, role=ProjectRole.CONSULTANT))
    db.session.commit()

    logger.info("Demo data seeded", extra={"project_id": project.id})
    return {
        "project_id": project.id,
        "phase_ids": [finished.id, running.id],
        "users": [
            {
                "id": u.id,
                "email": u.email,
                "role": u.role,
                "token": generate_access_token(u.id, u.role, expires_in=86400),
            }
            for u in users.values()
        ],
    }

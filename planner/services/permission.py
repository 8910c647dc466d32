"""
Approval authorization.

Every approval transition consults the same predicate, ``can_manage_project``:
an actor manages a project when they are Growth Team, the project's owning
Product Manager, or hold a PRODUCT_MANAGER membership on it.

Usage:
    from planner.services.permission import Actor, check_can_manage

    actor = Actor(user_id=7, role="PRODUCT_MANAGER")
    check_can_manage(actor, project, "approve phase allocation")   # raises NotAuthorizedError
"""

from dataclasses import dataclass

from sqlalchemy import select, union

from planner.core.exceptions import NotAuthorizedError
from planner.models import db
from planner.models.auth import GlobalRole, ProjectMember, ProjectRole
from planner.models.project import Project


@dataclass(frozen=True)
class Actor:
    """Authenticated identity asserted by the session provider."""

    user_id: int
    role: str

    @property
    def is_growth_team(self) -> bool:
        return self.role == GlobalRole.GROWTH_TEAM


def project_role(user_id: int, project_id: int) -> str | None:
    """Project-scoped role of a user, or None if not a member."""
    return db.session.execute(
        select(ProjectMember.role).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    ).scalar_one_or_none()


def can_manage_project(actor: Actor, project: Project) -> bool:
    if actor.is_growth_team:
        return True
    if project.product_manager_id is not None and project.product_manager_id == actor.user_id:
        return True
    return project_role(actor.user_id, project.id) == ProjectRole.PRODUCT_MANAGER


def check_can_manage(actor: Actor, project: Project, action: str) -> None:
    """
    Assert the actor manages the project.

    Raises:
        NotAuthorizedError: actor is neither Growth Team nor a Product Manager of the project.
    """
    if not can_manage_project(actor, project):
        raise NotAuthorizedError(
            actor.user_id, action, reason=f"not a Product Manager of project {project.id}",
        )


def can_act_for_consultant(actor: Actor, project: Project, consultant_id: int) -> bool:
    """The consultant themself, or anyone who manages the project."""
    return actor.user_id == consultant_id or can_manage_project(actor, project)


def check_can_act_for_consultant(actor: Actor, project: Project, consultant_id: int, action: str) -> None:
    if not can_act_for_consultant(actor, project, consultant_id):
        raise NotAuthorizedError(
            actor.user_id, action, reason=f"acting for consultant {consultant_id} requires project management rights",
        )


def check_growth_team(actor: Actor, action: str) -> None:
    if not actor.is_growth_team:
        raise NotAuthorizedError(actor.user_id, action, reason="Growth Team only")


def managed_project_ids_query(user_id: int):
    """Selectable of project ids the user manages (owner or PM membership)."""
    managed = union(
        select(Project.id.label("project_id")).where(Project.product_manager_id == user_id),
        select(ProjectMember.project_id.label("project_id")).where(
            ProjectMember.user_id == user_id,
            ProjectMember.role == ProjectRole.PRODUCT_MANAGER,
        ),
    ).subquery()
    return select(managed.c.project_id)


def managed_project_ids(actor: Actor) -> set[int] | None:
    """
    Project ids within the actor's approval scope.

    Returns None for Growth Team (unrestricted), otherwise a possibly empty set.
    """
    if actor.is_growth_team:
        return None
    return set(db.session.execute(managed_project_ids_query(actor.user_id)).scalars().all())

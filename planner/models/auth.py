"""
Auth Models: users and project memberships.

Global roles live on the user row; the Product-Manager capability can also be
granted per project through a ProjectMember row with role PRODUCT_MANAGER.
Credentials are not stored here: identity is asserted by the session provider.
"""

from datetime import datetime, timezone

from planner.models import db


# ── Constants ────────────────────────────────────────────────────────────────

class GlobalRole:
    CONSULTANT = "CONSULTANT"
    PRODUCT_MANAGER = "PRODUCT_MANAGER"
    GROWTH_TEAM = "GROWTH_TEAM"


class ProjectRole:
    CONSULTANT = "CONSULTANT"
    PRODUCT_MANAGER = "PRODUCT_MANAGER"


GLOBAL_ROLES = frozenset({GlobalRole.CONSULTANT, GlobalRole.PRODUCT_MANAGER, GlobalRole.GROWTH_TEAM})
PROJECT_ROLES = frozenset({ProjectRole.CONSULTANT, ProjectRole.PRODUCT_MANAGER})


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(30), nullable=False, default=GlobalRole.CONSULTANT)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    project_memberships = db.relationship(
        "ProjectMember", back_populates="user", lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id} {self.email} {self.role}>"


# ═══════════════════════════════════════════════════════════════
# 2. PROJECT MEMBERS
# ═══════════════════════════════════════════════════════════════
class ProjectMember(db.Model):
    """Project-scoped role assignment (CONSULTANT or PRODUCT_MANAGER)."""

    __tablename__ = "project_members"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(db.String(30), nullable=False, default=ProjectRole.CONSULTANT)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )

    user = db.relationship("User", back_populates="project_memberships")
    project = db.relationship("Project", back_populates="members")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
        }

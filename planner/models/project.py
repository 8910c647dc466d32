"""
Project domain model.

Models:
    - Project: client engagement with an optional owning Product Manager
    - Phase:   time-bounded project segment; its end date drives edit locking
"""

from datetime import datetime, timezone

from planner.models import db


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    product_manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    product_manager = db.relationship("User", foreign_keys=[product_manager_id])
    phases = db.relationship(
        "Phase", back_populates="project", cascade="all, delete-orphan", order_by="Phase.start_date",
    )
    members = db.relationship("ProjectMember", back_populates="project", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "product_manager_id": self.product_manager_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.title}>"


class Phase(db.Model):
    """
    Project phase.

    start_date and end_date are inclusive; once end_date is in the past the
    phase is locked for everyone except the Growth Team.
    """

    __tablename__ = "phases"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    project = db.relationship("Project", back_populates="phases")
    allocations = db.relationship(
        "PhaseAllocation", back_populates="phase", cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint("end_date >= start_date", name="ck_phase_dates"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }

    def __repr__(self):
        return f"<Phase {self.id}: {self.name} {self.start_date}..{self.end_date}>"

"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for approval transitions.
"""

import json
from datetime import UTC, datetime

from planner.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"phase_allocation", "weekly_allocation", "hour_change_request"}

AUDIT_ACTIONS = {
    # Phase allocation lifecycle
    "phase_allocation.propose",
    "phase_allocation.approve",
    "phase_allocation.reject",
    "phase_allocation.request_deletion",
    "phase_allocation.confirm_deletion",
    "phase_allocation.cancel_deletion",
    "phase_allocation.update_description",
    "phase_allocation.expire",
    # Weekly plan lifecycle
    "weekly_allocation.propose",
    "weekly_allocation.approve",
    "weekly_allocation.reject",
    # Hour change requests
    "hour_change_request.create",
    "hour_change_request.approve",
    "hour_change_request.reject",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every approval transition.

    One row per action. ``diff_json`` carries the old→new snapshot for the
    fields the transition touched. entity_id is not a foreign key so the row
    outlives a confirmed deletion.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: int | str,
    action: str,
    actor_user_id: int | None = None,
    project_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append an audit row inside the caller's transaction (flush, no commit),
    so a rolled-back transition leaves no trace.

    Raises:
        ValueError: unknown entity type or action name.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type!r}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action!r}")
    log = AuditLog(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log


def history_for(entity_type: str, entity_id: int | str) -> list[AuditLog]:
    """Audit rows of one entity, oldest first."""
    return (
        AuditLog.query
        .filter_by(entity_type=entity_type, entity_id=str(entity_id))
        .order_by(AuditLog.timestamp, AuditLog.id)
        .all()
    )

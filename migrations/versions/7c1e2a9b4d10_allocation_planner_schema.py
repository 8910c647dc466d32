"""allocation_planner_schema

Creates the allocation planning schema:
  - users, projects, project_members, phases
  - phase_allocations: partial unique index on (consultant_id, phase_id)
                       where approval_status != 'REJECTED'
  - weekly_allocations: one row per (phase allocation, ISO year, ISO week)
  - hour_change_requests: partial unique index on target_key where PENDING
  - notifications, audit_logs

Tables created conditionally so the migration can run against a database
that already received them via db.create_all() in development.

Revision ID: 7c1e2a9b4d10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e2a9b4d10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Users & projects ──────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "projects" not in existing:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("product_manager_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["product_manager_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_projects_product_manager_id", "projects", ["product_manager_id"])

    if "project_members" not in existing:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        )
        op.create_index("ix_project_members_project_id", "project_members", ["project_id"])
        op.create_index("ix_project_members_user_id", "project_members", ["user_id"])

    if "phases" not in existing:
        op.create_table(
            "phases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("end_date >= start_date", name="ck_phase_dates"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phases_project_id", "phases", ["project_id"])

    # ── Allocations ───────────────────────────────────────────────────────
    if "phase_allocations" not in existing:
        op.create_table(
            "phase_allocations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("consultant_id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("allocated_hours", sa.Float(), nullable=False),
            sa.Column("approval_status", sa.String(length=20), nullable=False,
                      comment="PENDING | APPROVED | REJECTED | DELETION_PENDING | EXPIRED"),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("approved_by", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("deletion_requested_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["consultant_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approved_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["deletion_requested_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phase_allocations_consultant_id", "phase_allocations", ["consultant_id"])
        op.create_index("ix_phase_allocations_phase_id", "phase_allocations", ["phase_id"])
        op.create_index("ix_phase_allocation_status", "phase_allocations", ["approval_status"])
        op.create_index(
            "uq_phase_allocation_active",
            "phase_allocations",
            ["consultant_id", "phase_id"],
            unique=True,
            sqlite_where=sa.text("approval_status != 'REJECTED'"),
            postgresql_where=sa.text("approval_status != 'REJECTED'"),
        )

    if "weekly_allocations" not in existing:
        op.create_table(
            "weekly_allocations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("phase_allocation_id", sa.Integer(), nullable=False),
            sa.Column("week_start_date", sa.Date(), nullable=False),
            sa.Column("week_number", sa.Integer(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("hours", sa.Float(), nullable=False),
            sa.Column("planning_status", sa.String(length=20), nullable=False,
                      comment="PENDING | APPROVED | REJECTED"),
            sa.Column("approved_by", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["phase_allocation_id"], ["phase_allocations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approved_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("phase_allocation_id", "year", "week_number", name="uq_weekly_allocation_week"),
        )
        op.create_index("ix_weekly_allocations_phase_allocation_id", "weekly_allocations", ["phase_allocation_id"])
        op.create_index(
            "ix_weekly_allocation_status_week", "weekly_allocations", ["planning_status", "year", "week_number"],
        )

    if "hour_change_requests" not in existing:
        op.create_table(
            "hour_change_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("requester_id", sa.Integer(), nullable=False),
            sa.Column("phase_allocation_id", sa.Integer(), nullable=False),
            sa.Column("weekly_allocation_id", sa.Integer(), nullable=True),
            sa.Column("target_key", sa.String(length=40), nullable=False),
            sa.Column("original_hours", sa.Float(), nullable=False),
            sa.Column("requested_hours", sa.Float(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="PENDING | APPROVED | REJECTED"),
            sa.Column("approver_id", sa.Integer(), nullable=True),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["requester_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_allocation_id"], ["phase_allocations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["weekly_allocation_id"], ["weekly_allocations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_hour_change_requests_requester_id", "hour_change_requests", ["requester_id"])
        op.create_index(
            "ix_hour_change_requests_phase_allocation_id", "hour_change_requests", ["phase_allocation_id"],
        )
        op.create_index("ix_hour_change_status", "hour_change_requests", ["status"])
        op.create_index(
            "uq_hour_change_pending_target",
            "hour_change_requests",
            ["target_key"],
            unique=True,
            sqlite_where=sa.text("status = 'PENDING'"),
            postgresql_where=sa.text("status = 'PENDING'"),
        )

    # ── Notifications & audit ─────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
        op.create_index("ix_notifications_project_id", "notifications", ["project_id"])

    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True, comment="JSON: {field: {old, new}}"),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_project_id", "audit_logs", ["project_id"])
        op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])


def downgrade():
    for table in (
        "audit_logs",
        "notifications",
        "hour_change_requests",
        "weekly_allocations",
        "phase_allocations",
        "phases",
        "project_members",
        "projects",
        "users",
    ):
        op.drop_table(table)

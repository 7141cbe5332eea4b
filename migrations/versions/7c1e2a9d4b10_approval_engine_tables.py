"""approval_engine_tables

Creates the approval workflow and assignment engine tables:
  - reviewers                 : local reviewer directory (identity projection)
  - approval_items            : items routed for approval (versioned status)
  - approval_assignments      : one row per reviewer task
  - approval_history_events   : append-only audit trail
  - approval_notifications    : queued in-app notifications
  - assignment_counters       : named counters (round-robin cursor)
  - assignment_settings       : persisted strategy settings (JSON)

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-19 09:12:44.518230
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e2a9d4b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Reviewer ──────────────────────────────────────────────────────────
    if "reviewers" not in existing:
        op.create_table(
            "reviewers",
            sa.Column("id", sa.String(length=150), nullable=False, comment="Identity string (uid)"),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("display_name", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.Column("department", sa.String(length=100), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_reviewers_role_department", "reviewers", ["role", "department"])

    # ── ApprovalItem ──────────────────────────────────────────────────────
    if "approval_items" not in existing:
        op.create_table(
            "approval_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column(
                "module_type", sa.String(length=30), nullable=False,
                comment="risk_assessment | system_registration | document | training",
            ),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("created_by", sa.String(length=150), nullable=False),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_items_status", "approval_items", ["status"])
        op.create_index("ix_approval_items_module_type", "approval_items", ["module_type"])

    # ── ApprovalAssignment ────────────────────────────────────────────────
    if "approval_assignments" not in existing:
        op.create_table(
            "approval_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("item_id", sa.Integer(), nullable=False),
            sa.Column("assigned_to", sa.String(length=150), nullable=False),
            sa.Column("assigned_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("is_auto_assigned", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["item_id"], ["approval_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_assignments_item_id", "approval_assignments", ["item_id"])
        op.create_index(
            "ix_approval_assignments_assignee_status", "approval_assignments",
            ["assigned_to", "status"],
        )

    # ── ApprovalHistoryEvent ──────────────────────────────────────────────
    if "approval_history_events" not in existing:
        op.create_table(
            "approval_history_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("item_id", sa.Integer(), nullable=False),
            sa.Column(
                "action", sa.String(length=30), nullable=False,
                comment="created | assigned | status_changed | reassigned",
            ),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="Item status at the time of the event"),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.Column(
                "performed_by", sa.String(length=150), nullable=False,
                comment="User identity or auto_assignment / manual_assignment sentinel",
            ),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["item_id"], ["approval_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_history_item_ts", "approval_history_events", ["item_id", "timestamp"])

    # ── ApprovalNotification ──────────────────────────────────────────────
    if "approval_notifications" not in existing:
        op.create_table(
            "approval_notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=False),
            sa.Column("item_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("type", sa.String(length=30), nullable=False, server_default="assignment",
                      comment="assignment | status_change"),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["item_id"], ["approval_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_notifications_recipient", "approval_notifications", ["recipient"])
        op.create_index("ix_approval_notifications_item_id", "approval_notifications", ["item_id"])

    # ── Counters & settings ───────────────────────────────────────────────
    if "assignment_counters" not in existing:
        op.create_table(
            "assignment_counters",
            sa.Column("name", sa.String(length=60), nullable=False),
            sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
            sa.PrimaryKeyConstraint("name"),
        )

    if "assignment_settings" not in existing:
        op.create_table(
            "assignment_settings",
            sa.Column("key", sa.String(length=60), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("key"),
        )


def downgrade():
    for table in (
        "assignment_settings",
        "assignment_counters",
        "approval_notifications",
        "approval_history_events",
        "approval_assignments",
        "approval_items",
        "reviewers",
    ):
        op.drop_table(table)

"""
Compliance Approvals
Approval domain models.

Models:
    - ApprovalItem: a unit of work awaiting review/approval
    - ApprovalAssignment: one reviewer's task on an item
    - ApprovalHistoryEvent: immutable, append-only audit trail
    - AssignmentCounter: named integer counters (round-robin cursor)
    - AssignmentSettingsRecord: persisted strategy settings
"""

from datetime import datetime, timezone

from compliance_approvals.models import db
from compliance_approvals.services.records import (
    AssignmentRecord,
    HistoryRecord,
    ItemRecord,
)

# ── Constants ────────────────────────────────────────────────────────────────

MODULE_TYPES = frozenset({"risk_assessment", "system_registration", "document", "training"})
PRIORITIES = frozenset({"low", "medium", "high"})

ITEM_STATUSES = frozenset({"pending", "in_review", "approved", "rejected", "cancelled"})
TERMINAL_STATUSES = frozenset({"approved", "rejected", "cancelled"})

ASSIGNMENT_STATUSES = frozenset({"pending", "in_progress", "completed"})
OPEN_ASSIGNMENT_STATUSES = frozenset({"pending", "in_progress"})

HISTORY_ACTIONS = frozenset({"created", "assigned", "status_changed", "reassigned"})

SYSTEM_ACTOR = "system"
AUTO_ASSIGNMENT_ACTOR = "auto_assignment"
MANUAL_ASSIGNMENT_ACTOR = "manual_assignment"


def _utcnow():
    return datetime.now(timezone.utc)


class ApprovalItem(db.Model):
    """
    A compliance artifact routed for approval.

    Business rules:
    - Created in ``pending``; mutated only by the lifecycle manager.
    - Never deleted, only moved to a terminal status.
    - ``completed_at`` is set iff status is approved / rejected / cancelled.
    - ``version`` is bumped on every status write; status updates are a
      compare-and-set on (id, version).
    """

    __tablename__ = "approval_items"
    __table_args__ = (
        db.Index("ix_approval_items_status", "status"),
        db.Index("ix_approval_items_module_type", "module_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    module_type = db.Column(
        db.String(30), nullable=False,
        comment="risk_assessment | system_registration | document | training",
    )
    status = db.Column(db.String(20), nullable=False, default="pending")
    priority = db.Column(db.String(10), nullable=False, default="medium")
    created_by = db.Column(db.String(150), nullable=False)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    assignments = db.relationship(
        "ApprovalAssignment", backref="item", lazy="dynamic",
        order_by="ApprovalAssignment.id",
    )

    def to_record(self) -> ItemRecord:
        return ItemRecord(
            id=self.id,
            title=self.title,
            description=self.description or "",
            module_type=self.module_type,
            status=self.status,
            priority=self.priority,
            created_by=self.created_by,
            created_at=self.created_at,
            due_date=self.due_date,
            completed_at=self.completed_at,
            version=self.version,
            updated_at=self.updated_at,
        )

    def __repr__(self):
        return f"<ApprovalItem {self.id}: {self.title[:40]} [{self.status}]>"


class ApprovalAssignment(db.Model):
    """A reviewer's task on one ApprovalItem."""

    __tablename__ = "approval_assignments"
    __table_args__ = (
        db.Index("ix_approval_assignments_assignee_status", "assigned_to", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("approval_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    assigned_to = db.Column(db.String(150), nullable=False)
    assigned_by = db.Column(db.String(150), nullable=False, default=SYSTEM_ACTOR)
    status = db.Column(db.String(20), nullable=False, default="pending")
    is_auto_assigned = db.Column(db.Boolean, nullable=False, default=False)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, default="")

    def to_record(self) -> AssignmentRecord:
        return AssignmentRecord(
            id=self.id,
            item_id=self.item_id,
            assigned_to=self.assigned_to,
            assigned_by=self.assigned_by,
            status=self.status,
            is_auto_assigned=self.is_auto_assigned,
            assigned_at=self.assigned_at,
            deadline=self.deadline,
            completed_at=self.completed_at,
            notes=self.notes or "",
        )

    def __repr__(self):
        return f"<ApprovalAssignment {self.id}: item={self.item_id} -> {self.assigned_to} [{self.status}]>"


class ApprovalHistoryEvent(db.Model):
    """
    Immutable audit record for an approval item.

    One row per lifecycle event. Rows are never updated or deleted.
    """

    __tablename__ = "approval_history_events"
    __table_args__ = (
        db.Index("ix_approval_history_item_ts", "item_id", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("approval_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    action = db.Column(
        db.String(30), nullable=False,
        comment="created | assigned | status_changed | reassigned",
    )
    status = db.Column(db.String(20), nullable=False, comment="Item status at the time of the event")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    performed_by = db.Column(
        db.String(150), nullable=False,
        comment="User identity or auto_assignment / manual_assignment sentinel",
    )
    notes = db.Column(db.Text, default="")

    def to_record(self) -> HistoryRecord:
        return HistoryRecord(
            id=self.id,
            item_id=self.item_id,
            action=self.action,
            status=self.status,
            timestamp=self.timestamp,
            performed_by=self.performed_by,
            notes=self.notes or "",
        )

    def __repr__(self):
        return f"<ApprovalHistoryEvent {self.id}: item={self.item_id} {self.action} -> {self.status}>"


class AssignmentCounter(db.Model):
    """Named monotonically increasing counter."""

    __tablename__ = "assignment_counters"

    name = db.Column(db.String(60), primary_key=True)
    value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<AssignmentCounter {self.name}={self.value}>"


class AssignmentSettingsRecord(db.Model):
    """Persisted assignment strategy settings (JSON payload keyed by name)."""

    __tablename__ = "assignment_settings"

    key = db.Column(db.String(60), primary_key=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<AssignmentSettingsRecord {self.key}>"

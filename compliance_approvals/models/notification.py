"""
Compliance Approvals
Notification domain model.

Models:
    - ApprovalNotification: queued in-app message for a reviewer or submitter
"""

from datetime import datetime, timezone

from compliance_approvals.models import db
from compliance_approvals.services.records import NotificationRecord


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {"assignment", "status_change"}


class ApprovalNotification(db.Model):
    """
    Queued notification entity.

    One record per recipient per event. Written in the same transaction as
    the assignment or status change that caused it; delivery is handled
    elsewhere.
    """

    __tablename__ = "approval_notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), nullable=False, index=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("approval_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    type = db.Column(db.String(30), nullable=False, default="assignment", comment="assignment | status_change")
    priority = db.Column(db.String(10), nullable=False, default="medium")

    # Read tracking
    is_read = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_record(self) -> NotificationRecord:
        return NotificationRecord(
            id=self.id,
            recipient=self.recipient,
            item_id=self.item_id,
            title=self.title,
            message=self.message or "",
            type=self.type,
            priority=self.priority,
            created_at=self.created_at,
            is_read=self.is_read,
        )

    def __repr__(self):
        return f"<ApprovalNotification {self.id}: {self.recipient} {self.title[:40]}>"

"""
Compliance Approvals
Reviewer directory model.

The identity subsystem owns users and roles; this table is the local
projection the reviewer pool reads from.
"""

from datetime import datetime, timezone

from compliance_approvals.models import db

REVIEWER_ROLES = frozenset({
    "admin",
    "approval_manager",
    "decision_maker",
    "compliance_officer",
    "operator",
    "developer",
})


class Reviewer(db.Model):
    """A directory entry for a user who may review approval items."""

    __tablename__ = "reviewers"
    __table_args__ = (
        db.Index("ix_reviewers_role_department", "role", "department"),
    )

    id = db.Column(db.String(150), primary_key=True, comment="Identity string (uid)")
    email = db.Column(db.String(255), nullable=True, unique=True)
    display_name = db.Column(db.String(255), default="")
    role = db.Column(db.String(30), nullable=False)
    department = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "department": self.department,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Reviewer {self.id} ({self.role}/{self.department})>"

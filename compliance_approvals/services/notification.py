"""
Compliance Approvals
Notification bookkeeping.

Builds notification rows inside the caller's store transaction. The engine
never delivers anything; a separate consumer reads the queued rows.
"""

from compliance_approvals.services.records import ItemRecord

ASSIGNMENT_TITLE = "New Approval Assignment"
STATUS_CHANGE_TITLE = "Approval Status Updated"


class NotificationService:
    """Stateless helpers over an ApprovalStore."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def queue_assignment_notifications(store, item: ItemRecord, assignees, *, created_at):
        """One ``assignment`` notification per assignee."""
        return [
            store.add_notification(
                recipient=assignee,
                item_id=item.id,
                title=ASSIGNMENT_TITLE,
                message=f"You have been assigned to review: {item.title}",
                type="assignment",
                priority=item.priority,
                created_at=created_at,
            )
            for assignee in assignees
        ]

    @staticmethod
    def queue_status_notifications(store, item: ItemRecord, recipients, *, actor, created_at):
        """One ``status_change`` notification per distinct recipient, actor excluded."""
        targets = []
        for recipient in recipients:
            if recipient and recipient != actor and recipient not in targets:
                targets.append(recipient)
        return [
            store.add_notification(
                recipient=recipient,
                item_id=item.id,
                title=STATUS_CHANGE_TITLE,
                message=f"The approval process for {item.title} is now {item.status}",
                type="status_change",
                priority=item.priority,
                created_at=created_at,
            )
            for recipient in targets
        ]

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(store, recipient, unread_only=False, item_id=None):
        """Notifications for a recipient, newest first."""
        return store.list_notifications(recipient, unread_only=unread_only, item_id=item_id)

    @staticmethod
    def unread_count(store, recipient):
        return len(store.list_notifications(recipient, unread_only=True))

"""
Approval Item Lifecycle Manager

Owns the item status state machine:

    pending ──assign──▶ in_review ──approve──▶ approved
       │                   │ └────reject───▶ rejected
       └──────cancel───────┴─────cancel────▶ cancelled

approved / rejected / cancelled are terminal. A forced or manual
re-assignment of an in_review item is recorded as a ``reassigned`` history
event without a status change.

Every status change writes exactly one history event carrying the new
status. Status writes are a compare-and-set on the item version, and all
writes of a call (status, history, assignment close-out, notifications)
share one store transaction.

Usage:
    from compliance_approvals.services.lifecycle import LifecycleManager

    lifecycle = LifecycleManager(store, reviewer_pool)
    item = lifecycle.transition_status(item_id=7, new_status="approved",
                                       actor_id="r1", notes="Looks good")
"""

from __future__ import annotations

import logging
from datetime import datetime

from compliance_approvals.core.exceptions import (
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from compliance_approvals.models.approval import (
    AUTO_ASSIGNMENT_ACTOR,
    ITEM_STATUSES,
    MODULE_TYPES,
    PRIORITIES,
    TERMINAL_STATUSES,
)
from compliance_approvals.services.notification import NotificationService
from compliance_approvals.services.records import HistoryRecord, ItemRecord
from compliance_approvals.services.store import utcnow

logger = logging.getLogger(__name__)


# Item transition rules: current status -> reachable statuses
ITEM_TRANSITIONS = {
    "pending": frozenset({"in_review", "cancelled"}),
    "in_review": frozenset({"approved", "rejected", "cancelled"}),
    "approved": frozenset(),
    "rejected": frozenset(),
    "cancelled": frozenset(),
}

# Statuses a caller may request directly; in_review is reached by assignment only.
DECISION_STATUSES = frozenset({"approved", "rejected", "cancelled"})

APPROVER_ROLES = frozenset({"admin", "approval_manager"})
WITHDRAW_ROLES = frozenset({"admin"})


def validate_transition(current: str, target: str) -> dict:
    """Validate whether ``current -> target`` is a legal status change.

    Returns:
        {"valid": bool, "from": str, "to": str, "reason": str|None}
    """
    allowed = ITEM_TRANSITIONS.get(current)
    if allowed is None:
        return {"valid": False, "from": current, "to": target,
                "reason": f"Unknown status: {current}"}
    if current in TERMINAL_STATUSES:
        return {"valid": False, "from": current, "to": target,
                "reason": f"'{current}' is a terminal status"}
    if target not in allowed:
        return {"valid": False, "from": current, "to": target,
                "reason": f"Cannot move from '{current}' to '{target}'"}
    return {"valid": True, "from": current, "to": target, "reason": None}


def available_transitions(status: str) -> list[str]:
    """Statuses reachable from ``status``, sorted."""
    return sorted(ITEM_TRANSITIONS.get(status, ()))


class LifecycleManager:
    """Applies item status transitions through an ApprovalStore."""

    def __init__(self, store, reviewer_pool, clock=utcnow) -> None:
        self.store = store
        self.reviewer_pool = reviewer_pool
        self.clock = clock

    # ── Submission ───────────────────────────────────────────────────────

    def submit_item(
        self,
        *,
        title: str,
        module_type: str,
        created_by: str,
        description: str = "",
        priority: str = "medium",
        due_date: datetime | None = None,
    ) -> ItemRecord:
        """Create an item in ``pending`` with its ``created`` history event."""
        errors = {}
        if not (title or "").strip():
            errors["title"] = "title is required"
        if module_type not in MODULE_TYPES:
            errors["module_type"] = f"must be one of {sorted(MODULE_TYPES)}"
        if priority not in PRIORITIES:
            errors["priority"] = f"must be one of {sorted(PRIORITIES)}"
        if not created_by:
            errors["created_by"] = "created_by is required"
        if errors:
            raise ValidationError("Invalid approval item", details=errors)

        with self.store.transaction():
            item = self.store.add_item(
                title=title.strip(),
                description=description or "",
                module_type=module_type,
                priority=priority,
                created_by=created_by,
                due_date=due_date,
            )
            self.store.append_history(
                item_id=item.id,
                action="created",
                status=item.status,
                performed_by=created_by,
                timestamp=item.created_at,
                notes=f"Submitted {module_type} for approval",
            )

        logger.info(
            "Approval item submitted",
            extra={"item_id": item.id, "module_type": module_type, "actor": created_by},
        )
        return item

    # ── Transitions used inside the assignment transaction ───────────────

    def mark_in_review(self, item: ItemRecord, *, actor: str = AUTO_ASSIGNMENT_ACTOR,
                       notes: str = "", timestamp: datetime | None = None) -> tuple[ItemRecord, HistoryRecord]:
        """pending -> in_review with an ``assigned`` history event.

        Must run inside an open store transaction holding the item lock.
        """
        return self._apply(item, "in_review", action="assigned", actor=actor,
                           notes=notes, timestamp=timestamp or self.clock())

    def record_reassignment(self, item: ItemRecord, *, actor: str, notes: str = "",
                            timestamp: datetime | None = None) -> HistoryRecord:
        """Record a re-assignment of an in_review item (no status change)."""
        if item.status != "in_review":
            raise InvalidTransitionError(
                item.id, item.status, "in_review",
                reason="only items in review can be re-assigned",
            )
        return self.store.append_history(
            item_id=item.id,
            action="reassigned",
            status=item.status,
            performed_by=actor,
            timestamp=timestamp or self.clock(),
            notes=notes,
        )

    # ── Decision entry point ─────────────────────────────────────────────

    def transition_status(self, item_id: int, new_status: str, actor_id: str, notes: str = "") -> ItemRecord:
        """Approve, reject or cancel an item.

        Raises:
            ValidationError: unknown status value.
            NotFoundError: no such item.
            InvalidTransitionError: illegal from the current status.
            AuthorizationError: actor may not take this decision.
        """
        if new_status not in ITEM_STATUSES:
            raise ValidationError(
                f"Unknown status '{new_status}'",
                details={"status": f"must be one of {sorted(DECISION_STATUSES)}"},
            )

        with self.store.transaction():
            item = self.store.lock_item(item_id)
            if item is None:
                raise NotFoundError(resource="ApprovalItem", resource_id=item_id)

            if new_status not in DECISION_STATUSES:
                raise InvalidTransitionError(
                    item.id, item.status, new_status,
                    reason="this status is only reachable through assignment",
                )
            check = validate_transition(item.status, new_status)
            if not check["valid"]:
                raise InvalidTransitionError(item.id, item.status, new_status, reason=check["reason"])

            assignments = self.store.list_assignments(item.id)
            self._authorize(item, new_status, actor_id, assignments)

            now = self.clock()
            note = f"Status changed from {item.status} to {new_status}"
            if notes:
                note += f": {notes}"
            updated, _event = self._apply(item, new_status, action="status_changed",
                                          actor=actor_id, notes=note, timestamp=now)

            self.store.complete_open_assignments(
                item.id, completed_at=now, notes=f"Closed: item {new_status} by {actor_id}",
            )
            NotificationService.queue_status_notifications(
                self.store, updated,
                [item.created_by] + [a.assigned_to for a in assignments],
                actor=actor_id, created_at=now,
            )

        logger.info(
            "Approval item %s: %s -> %s", item_id, item.status, new_status,
            extra={"item_id": item_id, "actor": actor_id, "status": new_status},
        )
        return updated

    # ── Internals ────────────────────────────────────────────────────────

    def _authorize(self, item: ItemRecord, new_status: str, actor_id: str, assignments) -> None:
        if new_status == "cancelled":
            if actor_id and actor_id == item.created_by:
                return
            if self.reviewer_pool.has_role(actor_id, WITHDRAW_ROLES):
                return
            raise AuthorizationError(actor_id, f"cancel approval item {item.id}")

        if any(a.assigned_to == actor_id and a.is_open for a in assignments):
            return
        if self.reviewer_pool.has_role(actor_id, APPROVER_ROLES):
            return
        verb = "approve" if new_status == "approved" else "reject"
        raise AuthorizationError(actor_id, f"{verb} approval item {item.id}")

    def _apply(self, item: ItemRecord, target: str, *, action: str, actor: str,
               notes: str, timestamp: datetime) -> tuple[ItemRecord, HistoryRecord]:
        check = validate_transition(item.status, target)
        if not check["valid"]:
            raise InvalidTransitionError(item.id, item.status, target, reason=check["reason"])

        updated = self.store.update_item_status(
            item.id,
            expected_version=item.version,
            status=target,
            completed_at=timestamp if target in TERMINAL_STATUSES else None,
        )
        if updated is None:
            raise ConcurrentUpdateError(item.id, item.status, target)

        event = self.store.append_history(
            item_id=item.id,
            action=action,
            status=updated.status,
            performed_by=actor,
            timestamp=timestamp,
            notes=notes,
        )
        return updated, event

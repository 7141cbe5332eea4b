"""
Approval store adapters.

The engine talks to persistence only through ``ApprovalStore``. Two
implementations ship:

    - SqlApprovalStore:       Flask-SQLAlchemy session; item row locked with
                              SELECT ... FOR UPDATE and status writes guarded
                              by a (id, version) compare-and-set.
    - InMemoryApprovalStore:  reference implementation with per-item locks
                              and an undo journal for rollback.

Transaction contract:
    with store.transaction():
        item = store.lock_item(item_id)     # serialises writers on this item
        ...reads and writes...
    # commit on normal exit; every write rolled back on any exception.

Persistence failures surface as StoreError; engine errors raised inside the
block propagate unchanged after the rollback. Nothing is retried.

``advance_counter`` is its own atomic increment-and-read and must be called
outside an open transaction.
"""

from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from compliance_approvals.core.exceptions import ApprovalError, StoreError, ValidationError
from compliance_approvals.models import db
from compliance_approvals.models.approval import (
    ApprovalAssignment,
    ApprovalHistoryEvent,
    ApprovalItem,
    AssignmentCounter,
    AssignmentSettingsRecord,
    HISTORY_ACTIONS,
    OPEN_ASSIGNMENT_STATUSES,
)
from compliance_approvals.models.notification import ApprovalNotification
from compliance_approvals.services.records import (
    AssignmentRecord,
    HistoryRecord,
    ItemRecord,
    NotificationRecord,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_history_action(action: str) -> None:
    if action not in HISTORY_ACTIONS:
        raise ValidationError(
            f"Unknown history action '{action}'",
            details={"action": f"must be one of {sorted(HISTORY_ACTIONS)}"},
        )


class ApprovalStore(ABC):
    """Abstract CRUD + counter access over items, assignments, history and notifications."""

    @abstractmethod
    @contextmanager
    def transaction(self):
        """Open a unit of work; commit on exit, roll back on any exception."""

    # ── Items ────────────────────────────────────────────────────────────

    @abstractmethod
    def get_item(self, item_id: int) -> ItemRecord | None:
        """Read an item without locking."""

    @abstractmethod
    def lock_item(self, item_id: int) -> ItemRecord | None:
        """Read an item and hold its write lock until the transaction ends."""

    @abstractmethod
    def list_items(self, *, status: str | None = None, module_type: str | None = None,
                   priority: str | None = None, search: str | None = None) -> list[ItemRecord]:
        """Items ordered newest first. ``search`` is a case-insensitive title match."""

    @abstractmethod
    def add_item(self, *, title: str, module_type: str, priority: str, created_by: str,
                 description: str = "", due_date: datetime | None = None) -> ItemRecord:
        """Insert an item in ``pending``."""

    @abstractmethod
    def update_item_status(self, item_id: int, *, expected_version: int, status: str,
                           completed_at: datetime | None) -> ItemRecord | None:
        """Compare-and-set the status. Returns None when the version moved on."""

    # ── Assignments ──────────────────────────────────────────────────────

    @abstractmethod
    def list_assignments(self, item_id: int) -> list[AssignmentRecord]:
        """Assignments for an item ordered by id."""

    @abstractmethod
    def add_assignment(self, *, item_id: int, assigned_to: str, assigned_by: str,
                       is_auto_assigned: bool, assigned_at: datetime,
                       deadline: datetime | None = None, notes: str = "") -> AssignmentRecord:
        """Insert a ``pending`` assignment."""

    @abstractmethod
    def complete_open_assignments(self, item_id: int, *, completed_at: datetime,
                                  notes: str | None = None) -> list[AssignmentRecord]:
        """Mark every open assignment of the item ``completed``."""

    @abstractmethod
    def pending_workload(self, reviewer_ids: list[str]) -> dict[str, int]:
        """Count of ``pending`` assignments per reviewer (zero-filled)."""

    # ── History ──────────────────────────────────────────────────────────

    @abstractmethod
    def append_history(self, *, item_id: int, action: str, status: str, performed_by: str,
                       timestamp: datetime, notes: str = "") -> HistoryRecord:
        """Append one immutable history event."""

    @abstractmethod
    def list_history(self, item_id: int) -> list[HistoryRecord]:
        """History for an item, oldest first."""

    # ── Notifications ────────────────────────────────────────────────────

    @abstractmethod
    def add_notification(self, *, recipient: str, item_id: int, title: str, message: str,
                         type: str, priority: str, created_at: datetime) -> NotificationRecord:
        """Queue one notification."""

    @abstractmethod
    def list_notifications(self, recipient: str, *, unread_only: bool = False,
                           item_id: int | None = None) -> list[NotificationRecord]:
        """Notifications for a recipient, newest first."""

    # ── Counters & settings ──────────────────────────────────────────────

    @abstractmethod
    def advance_counter(self, name: str, step: int = 1) -> int:
        """Atomically add ``step`` to the named counter and return the new value."""

    @abstractmethod
    def load_settings(self, key: str) -> dict | None:
        """Return a persisted settings payload or None."""

    @abstractmethod
    def save_settings(self, key: str, payload: dict) -> None:
        """Persist a settings payload (inside the caller's transaction)."""


# ═════════════════════════════════════════════════════════════════════════════
# SQL implementation
# ═════════════════════════════════════════════════════════════════════════════


class SqlApprovalStore(ApprovalStore):
    """Store backed by the Flask-SQLAlchemy session of the current app context."""

    def __init__(self, session=None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    @contextmanager
    def transaction(self):
        try:
            yield self
            self.session.commit()
        except ApprovalError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Approval store transaction failed")
            raise StoreError(f"Database error: {exc.__class__.__name__}") from exc
        except Exception:
            self.session.rollback()
            raise

    @contextmanager
    def _guard(self):
        """Translate driver errors raised outside a transaction block."""
        try:
            yield
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Approval store operation failed")
            raise StoreError(f"Database error: {exc.__class__.__name__}") from exc

    # ── Items ────────────────────────────────────────────────────────────

    def get_item(self, item_id):
        with self._guard():
            row = self.session.get(ApprovalItem, item_id, populate_existing=True)
            return row.to_record() if row else None

    def lock_item(self, item_id):
        with self._guard():
            row = self.session.execute(
                select(ApprovalItem)
                .where(ApprovalItem.id == item_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            return row.to_record() if row else None

    def list_items(self, *, status=None, module_type=None, priority=None, search=None):
        stmt = select(ApprovalItem)
        if status:
            stmt = stmt.where(ApprovalItem.status == status)
        if module_type:
            stmt = stmt.where(ApprovalItem.module_type == module_type)
        if priority:
            stmt = stmt.where(ApprovalItem.priority == priority)
        if search:
            stmt = stmt.where(ApprovalItem.title.ilike(f"%{search}%"))
        stmt = stmt.order_by(ApprovalItem.created_at.desc(), ApprovalItem.id.desc())
        with self._guard():
            return [row.to_record() for row in self.session.execute(stmt).scalars()]

    def add_item(self, *, title, module_type, priority, created_by, description="", due_date=None):
        now = utcnow()
        row = ApprovalItem(
            title=title,
            description=description,
            module_type=module_type,
            priority=priority,
            created_by=created_by,
            due_date=due_date,
            status="pending",
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        self.session.flush()
        return row.to_record()

    def update_item_status(self, item_id, *, expected_version, status, completed_at):
        result = self.session.execute(
            update(ApprovalItem)
            .where(ApprovalItem.id == item_id, ApprovalItem.version == expected_version)
            .values(
                status=status,
                completed_at=completed_at,
                version=ApprovalItem.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        row = self.session.get(ApprovalItem, item_id, populate_existing=True)
        return row.to_record()

    # ── Assignments ──────────────────────────────────────────────────────

    def list_assignments(self, item_id):
        with self._guard():
            rows = self.session.execute(
                select(ApprovalAssignment)
                .where(ApprovalAssignment.item_id == item_id)
                .order_by(ApprovalAssignment.id)
                .execution_options(populate_existing=True)
            ).scalars()
            return [row.to_record() for row in rows]

    def add_assignment(self, *, item_id, assigned_to, assigned_by, is_auto_assigned,
                       assigned_at, deadline=None, notes=""):
        row = ApprovalAssignment(
            item_id=item_id,
            assigned_to=assigned_to,
            assigned_by=assigned_by,
            status="pending",
            is_auto_assigned=is_auto_assigned,
            assigned_at=assigned_at,
            deadline=deadline,
            notes=notes,
        )
        self.session.add(row)
        self.session.flush()
        return row.to_record()

    def complete_open_assignments(self, item_id, *, completed_at, notes=None):
        rows = self.session.execute(
            select(ApprovalAssignment).where(
                ApprovalAssignment.item_id == item_id,
                ApprovalAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES),
            )
        ).scalars().all()
        for row in rows:
            row.status = "completed"
            row.completed_at = completed_at
            if notes:
                row.notes = f"{row.notes}\n{notes}".strip() if row.notes else notes
        self.session.flush()
        return [row.to_record() for row in rows]

    def pending_workload(self, reviewer_ids):
        workload = {rid: 0 for rid in reviewer_ids}
        if not reviewer_ids:
            return workload
        with self._guard():
            rows = self.session.execute(
                select(ApprovalAssignment.assigned_to, func.count(ApprovalAssignment.id))
                .where(
                    ApprovalAssignment.status == "pending",
                    ApprovalAssignment.assigned_to.in_(list(reviewer_ids)),
                )
                .group_by(ApprovalAssignment.assigned_to)
            ).all()
        for assignee, cnt in rows:
            workload[assignee] = cnt
        return workload

    # ── History ──────────────────────────────────────────────────────────

    def append_history(self, *, item_id, action, status, performed_by, timestamp, notes=""):
        _check_history_action(action)
        row = ApprovalHistoryEvent(
            item_id=item_id,
            action=action,
            status=status,
            performed_by=performed_by,
            timestamp=timestamp,
            notes=notes,
        )
        self.session.add(row)
        self.session.flush()
        return row.to_record()

    def list_history(self, item_id):
        with self._guard():
            rows = self.session.execute(
                select(ApprovalHistoryEvent)
                .where(ApprovalHistoryEvent.item_id == item_id)
                .order_by(ApprovalHistoryEvent.timestamp.asc(), ApprovalHistoryEvent.id.asc())
            ).scalars()
            return [row.to_record() for row in rows]

    # ── Notifications ────────────────────────────────────────────────────

    def add_notification(self, *, recipient, item_id, title, message, type, priority, created_at):
        row = ApprovalNotification(
            recipient=recipient,
            item_id=item_id,
            title=title,
            message=message,
            type=type,
            priority=priority,
            created_at=created_at,
            is_read=False,
        )
        self.session.add(row)
        self.session.flush()
        return row.to_record()

    def list_notifications(self, recipient, *, unread_only=False, item_id=None):
        stmt = select(ApprovalNotification).where(ApprovalNotification.recipient == recipient)
        if unread_only:
            stmt = stmt.where(ApprovalNotification.is_read.is_(False))
        if item_id is not None:
            stmt = stmt.where(ApprovalNotification.item_id == item_id)
        stmt = stmt.order_by(ApprovalNotification.created_at.desc(), ApprovalNotification.id.desc())
        with self._guard():
            return [row.to_record() for row in self.session.execute(stmt).scalars()]

    # ── Counters & settings ──────────────────────────────────────────────

    def _bump_counter(self, name, step):
        return self.session.execute(
            update(AssignmentCounter)
            .where(AssignmentCounter.name == name)
            .values(value=AssignmentCounter.value + step)
            .execution_options(synchronize_session=False)
        ).rowcount

    def advance_counter(self, name, step=1):
        with self.transaction():
            if not self._bump_counter(name, step):
                # First use creates the row; if a concurrent caller created it
                # first, fall back to the increment.
                try:
                    self.session.add(AssignmentCounter(name=name, value=step))
                    self.session.flush()
                except IntegrityError:
                    self.session.rollback()
                    self._bump_counter(name, step)
            value = self.session.execute(
                select(AssignmentCounter.value).where(AssignmentCounter.name == name)
            ).scalar_one()
        return value

    def load_settings(self, key):
        with self._guard():
            row = self.session.get(AssignmentSettingsRecord, key, populate_existing=True)
            return dict(row.payload) if row else None

    def save_settings(self, key, payload):
        row = self.session.get(AssignmentSettingsRecord, key)
        if row is None:
            row = AssignmentSettingsRecord(key=key, payload=dict(payload))
            self.session.add(row)
        else:
            row.payload = dict(payload)
        self.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# In-memory reference implementation
# ═════════════════════════════════════════════════════════════════════════════


class InMemoryApprovalStore(ApprovalStore):
    """Thread-safe in-process store.

    Writers on the same item serialise on a per-item lock taken by
    ``lock_item``; different items never share a lock. Each transaction keeps
    a thread-local undo journal that is replayed in reverse on failure.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._item_locks: dict[int, threading.RLock] = defaultdict(threading.RLock)
        self._local = threading.local()

        self._items: dict[int, ItemRecord] = {}
        self._assignments: dict[int, AssignmentRecord] = {}
        self._history: dict[int, HistoryRecord] = {}
        self._notifications: dict[int, NotificationRecord] = {}
        self._counters: dict[str, int] = {}
        self._settings: dict[str, dict] = {}

        self._ids = {
            "item": itertools.count(1),
            "assignment": itertools.count(1),
            "history": itertools.count(1),
            "notification": itertools.count(1),
        }

    # ── Transaction plumbing ─────────────────────────────────────────────

    @contextmanager
    def transaction(self):
        if getattr(self._local, "journal", None) is not None:
            # Joined to the enclosing unit of work on this thread.
            yield self
            return

        self._local.journal = []
        self._local.held = []
        try:
            yield self
        except BaseException:
            with self._mutex:
                for undo in reversed(self._local.journal):
                    undo()
            raise
        finally:
            held = self._local.held
            self._local.journal = None
            self._local.held = None
            for lock in reversed(held):
                lock.release()

    def _record_undo(self, undo) -> None:
        journal = getattr(self._local, "journal", None)
        if journal is not None:
            journal.append(undo)

    def _next_id(self, kind: str) -> int:
        return next(self._ids[kind])

    # ── Items ────────────────────────────────────────────────────────────

    def get_item(self, item_id):
        with self._mutex:
            return self._items.get(item_id)

    def lock_item(self, item_id):
        held = getattr(self._local, "held", None)
        if held is None:
            raise RuntimeError("lock_item() requires an open transaction")
        with self._mutex:
            lock = self._item_locks[item_id]
        lock.acquire()
        held.append(lock)
        return self.get_item(item_id)

    def list_items(self, *, status=None, module_type=None, priority=None, search=None):
        with self._mutex:
            items = list(self._items.values())
        if status:
            items = [i for i in items if i.status == status]
        if module_type:
            items = [i for i in items if i.module_type == module_type]
        if priority:
            items = [i for i in items if i.priority == priority]
        if search:
            needle = search.lower()
            items = [i for i in items if needle in i.title.lower()]
        return sorted(items, key=lambda i: (i.created_at, i.id), reverse=True)

    def add_item(self, *, title, module_type, priority, created_by, description="", due_date=None):
        now = utcnow()
        with self._mutex:
            record = ItemRecord(
                id=self._next_id("item"),
                title=title,
                description=description,
                module_type=module_type,
                status="pending",
                priority=priority,
                created_by=created_by,
                created_at=now,
                due_date=due_date,
                version=1,
                updated_at=now,
            )
            self._items[record.id] = record
        self._record_undo(lambda: self._items.pop(record.id, None))
        return record

    def update_item_status(self, item_id, *, expected_version, status, completed_at):
        with self._mutex:
            current = self._items.get(item_id)
            if current is None or current.version != expected_version:
                return None
            updated = replace(
                current,
                status=status,
                completed_at=completed_at,
                version=current.version + 1,
                updated_at=utcnow(),
            )
            self._items[item_id] = updated

        def _undo():
            self._items[item_id] = current

        self._record_undo(_undo)
        return updated

    # ── Assignments ──────────────────────────────────────────────────────

    def list_assignments(self, item_id):
        with self._mutex:
            rows = [a for a in self._assignments.values() if a.item_id == item_id]
        return sorted(rows, key=lambda a: a.id)

    def add_assignment(self, *, item_id, assigned_to, assigned_by, is_auto_assigned,
                       assigned_at, deadline=None, notes=""):
        with self._mutex:
            record = AssignmentRecord(
                id=self._next_id("assignment"),
                item_id=item_id,
                assigned_to=assigned_to,
                assigned_by=assigned_by,
                status="pending",
                is_auto_assigned=is_auto_assigned,
                assigned_at=assigned_at,
                deadline=deadline,
                notes=notes,
            )
            self._assignments[record.id] = record
        self._record_undo(lambda: self._assignments.pop(record.id, None))
        return record

    def complete_open_assignments(self, item_id, *, completed_at, notes=None):
        changed = []
        previous = []
        with self._mutex:
            for record in list(self._assignments.values()):
                if record.item_id != item_id or record.status not in OPEN_ASSIGNMENT_STATUSES:
                    continue
                new_notes = record.notes
                if notes:
                    new_notes = f"{record.notes}\n{notes}".strip() if record.notes else notes
                updated = replace(record, status="completed", completed_at=completed_at, notes=new_notes)
                self._assignments[record.id] = updated
                previous.append(record)
                changed.append(updated)

        def _undo():
            for record in previous:
                self._assignments[record.id] = record

        self._record_undo(_undo)
        return sorted(changed, key=lambda a: a.id)

    def pending_workload(self, reviewer_ids):
        workload = {rid: 0 for rid in reviewer_ids}
        with self._mutex:
            for record in self._assignments.values():
                if record.status == "pending" and record.assigned_to in workload:
                    workload[record.assigned_to] += 1
        return workload

    # ── History ──────────────────────────────────────────────────────────

    def append_history(self, *, item_id, action, status, performed_by, timestamp, notes=""):
        _check_history_action(action)
        with self._mutex:
            record = HistoryRecord(
                id=self._next_id("history"),
                item_id=item_id,
                action=action,
                status=status,
                timestamp=timestamp,
                performed_by=performed_by,
                notes=notes,
            )
            self._history[record.id] = record
        self._record_undo(lambda: self._history.pop(record.id, None))
        return record

    def list_history(self, item_id):
        with self._mutex:
            rows = [h for h in self._history.values() if h.item_id == item_id]
        return sorted(rows, key=lambda h: (h.timestamp, h.id))

    # ── Notifications ────────────────────────────────────────────────────

    def add_notification(self, *, recipient, item_id, title, message, type, priority, created_at):
        with self._mutex:
            record = NotificationRecord(
                id=self._next_id("notification"),
                recipient=recipient,
                item_id=item_id,
                title=title,
                message=message,
                type=type,
                priority=priority,
                created_at=created_at,
                is_read=False,
            )
            self._notifications[record.id] = record
        self._record_undo(lambda: self._notifications.pop(record.id, None))
        return record

    def list_notifications(self, recipient, *, unread_only=False, item_id=None):
        with self._mutex:
            rows = [n for n in self._notifications.values() if n.recipient == recipient]
        if unread_only:
            rows = [n for n in rows if not n.is_read]
        if item_id is not None:
            rows = [n for n in rows if n.item_id == item_id]
        return sorted(rows, key=lambda n: (n.created_at, n.id), reverse=True)

    # ── Counters & settings ──────────────────────────────────────────────

    def advance_counter(self, name, step=1):
        with self._mutex:
            value = self._counters.get(name, 0) + step
            self._counters[name] = value
        return value

    def load_settings(self, key):
        with self._mutex:
            payload = self._settings.get(key)
        return dict(payload) if payload is not None else None

    def save_settings(self, key, payload):
        with self._mutex:
            previous = self._settings.get(key)
            self._settings[key] = dict(payload)

        def _undo():
            if previous is None:
                self._settings.pop(key, None)
            else:
                self._settings[key] = previous

        self._record_undo(_undo)

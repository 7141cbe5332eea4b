"""
Store-agnostic value objects passed between the engine and its store.

The SQL store converts ORM rows with ``to_record()``; the in-memory store
keeps these directly. Services and blueprints only ever see records.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


class _Serializable:
    def to_dict(self) -> dict:
        return {f.name: _iso(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class ItemRecord(_Serializable):
    id: int
    title: str
    module_type: str
    status: str
    priority: str
    created_by: str
    created_at: datetime
    description: str = ""
    due_date: datetime | None = None
    completed_at: datetime | None = None
    version: int = 1
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AssignmentRecord(_Serializable):
    id: int
    item_id: int
    assigned_to: str
    assigned_by: str
    status: str
    is_auto_assigned: bool
    assigned_at: datetime
    deadline: datetime | None = None
    completed_at: datetime | None = None
    notes: str = ""

    @property
    def is_open(self) -> bool:
        return self.status != "completed"


@dataclass(frozen=True)
class HistoryRecord(_Serializable):
    id: int
    item_id: int
    action: str
    status: str
    timestamp: datetime
    performed_by: str
    notes: str = ""


@dataclass(frozen=True)
class NotificationRecord(_Serializable):
    id: int
    recipient: str
    item_id: int
    title: str
    message: str
    type: str
    priority: str
    created_at: datetime
    is_read: bool = False


@dataclass(frozen=True)
class Candidate:
    """A reviewer offered by the pool provider."""

    reviewer_id: str
    department: str | None = None


@dataclass
class AssignmentResult(_Serializable):
    """Outcome of an auto or manual assignment call."""

    item_id: int
    assigned: bool
    assignees: list[str] = field(default_factory=list)
    strategy: str | None = None
    status: str | None = None
    reason: str | None = None

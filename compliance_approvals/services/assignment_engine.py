"""
Approval Assignment Engine

Routes an approval item to reviewers and keeps the item, its assignments,
history and notifications consistent.

    auto_assign(item_id, force_assign=False)
        strategy picks reviewers from the pool -> one transaction writes the
        assignments, moves the item to in_review (or records a reassignment),
        appends one history event and queues one notification per assignee.

    manual_assign(item_id, assignee_ids, actor_id, notes, deadline)
        same write sequence with caller-supplied reviewers; requires an
        approval-manager role.

Strategy settings are owned by the engine instance. They are seeded from the
Flask config (``APPROVAL_*`` keys), overlaid with whatever was persisted
under ``assignment`` in the settings table, and replaced atomically by
``update_settings``.

Reads that feed the strategy (round-robin cursor, workload counts) happen
before the write transaction. The "already assigned" check is repeated
inside it against the locked item, so two concurrent auto_assign calls on
one item produce exactly one set of assignments.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Mapping

from compliance_approvals.core.exceptions import (
    AlreadyAssignedError,
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    NoEligibleReviewersError,
    NotFoundError,
    ValidationError,
)
from compliance_approvals.models.approval import (
    AUTO_ASSIGNMENT_ACTOR,
    ITEM_STATUSES,
    MANUAL_ASSIGNMENT_ACTOR,
    MODULE_TYPES,
    PRIORITIES,
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
)
from compliance_approvals.services.lifecycle import LifecycleManager
from compliance_approvals.services.notification import NotificationService
from compliance_approvals.services.records import AssignmentResult, ItemRecord
from compliance_approvals.services.store import as_utc, utcnow
from compliance_approvals.services.strategies import (
    DEFAULT_DEPARTMENT_MAP,
    DEFAULT_MAX_REVIEWERS,
    STRATEGY_TYPES,
    DepartmentBased,
    ExpertiseBased,
    RoundRobin,
    SelectionContext,
    Strategy,
    WorkloadBalanced,
    round_robin_span,
    select_reviewers,
)

logger = logging.getLogger(__name__)

SETTINGS_KEY = "assignment"
DEFAULT_ELIGIBLE_ROLES = ["admin", "decision_maker"]
MANUAL_ASSIGN_ROLES = frozenset({"admin", "approval_manager", "decision_maker"})
SETTINGS_ADMIN_ROLES = frozenset({"admin"})

RECENT_WINDOW = timedelta(days=30)
DUE_SOON_WINDOW = timedelta(days=2)


# ═════════════════════════════════════════════════════════════════════════════
# Settings
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class AssignmentSettings:
    """Strategy configuration for auto-assignment."""

    enabled: bool = True
    strategy_type: str = WorkloadBalanced.name
    roles: list[str] = field(default_factory=lambda: list(DEFAULT_ELIGIBLE_ROLES))
    departments: list[str] | None = None
    department_map: dict[str, list[str]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_DEPARTMENT_MAP)
    )
    expertise_map: dict[str, list[str]] = field(default_factory=dict)
    max_reviewers: int = DEFAULT_MAX_REVIEWERS
    max_workload: int | None = None
    fallback_user_id: str | None = None

    @classmethod
    def from_config(cls, config: Mapping) -> "AssignmentSettings":
        """Build settings from ``APPROVAL_*`` keys of a Flask config."""
        defaults = cls()
        payload = {
            "enabled": config.get("APPROVAL_AUTO_ASSIGN_ON_SUBMIT", defaults.enabled),
            "strategy_type": config.get("APPROVAL_STRATEGY") or defaults.strategy_type,
            "roles": config.get("APPROVAL_ELIGIBLE_ROLES") or defaults.roles,
            "department_map": config.get("APPROVAL_DEPARTMENT_MAP") or defaults.department_map,
            "expertise_map": config.get("APPROVAL_EXPERTISE_MAP") or defaults.expertise_map,
            "max_reviewers": config.get("APPROVAL_MAX_REVIEWERS") or defaults.max_reviewers,
            "max_workload": config.get("APPROVAL_MAX_WORKLOAD"),
            "fallback_user_id": config.get("APPROVAL_FALLBACK_USER_ID") or None,
        }
        return defaults.merged(payload)

    def merged(self, partial: Mapping) -> "AssignmentSettings":
        """Return a copy with ``partial`` applied. Raises ValidationError."""
        errors = validate_settings(partial)
        if errors:
            raise ValidationError("Invalid assignment settings", details=errors)
        data = self.to_dict()
        data.update(copy.deepcopy(dict(partial)))
        return AssignmentSettings(**data)

    def to_dict(self) -> dict:
        return copy.deepcopy(asdict(self))


SETTING_KEYS = frozenset(f.name for f in fields(AssignmentSettings))


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_string_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) and v for v in value)


def _is_module_map(value) -> bool:
    return isinstance(value, dict) and all(
        isinstance(k, str) and _is_string_list(v) for k, v in value.items()
    )


def validate_settings(partial: Mapping) -> dict:
    """Field-level errors for a (partial) settings payload; empty when valid."""
    if not isinstance(partial, Mapping):
        return {"settings": "must be an object"}

    errors = {}
    for key in sorted(set(partial) - SETTING_KEYS):
        errors[key] = "unknown setting"

    checks = {
        "enabled": (lambda v: isinstance(v, bool), "must be a boolean"),
        "strategy_type": (lambda v: v in STRATEGY_TYPES, f"must be one of {list(STRATEGY_TYPES)}"),
        "roles": (lambda v: _is_string_list(v) and len(v) > 0, "must be a non-empty list of roles"),
        "departments": (lambda v: v is None or _is_string_list(v), "must be null or a list of departments"),
        "department_map": (_is_module_map, "must map module types to lists of departments"),
        "expertise_map": (_is_module_map, "must map module types to lists of reviewer ids"),
        "max_reviewers": (_is_positive_int, "must be a positive integer"),
        "max_workload": (lambda v: v is None or _is_positive_int(v), "must be null or a positive integer"),
        "fallback_user_id": (lambda v: v is None or (isinstance(v, str) and v.strip()),
                             "must be null or a reviewer id"),
    }
    for key, (check, message) in checks.items():
        if key in partial and not check(partial[key]):
            errors[key] = message
    return errors


def build_strategy(settings: AssignmentSettings) -> Strategy:
    """Turn the configured strategy name into its strategy value."""
    match settings.strategy_type:
        case RoundRobin.name:
            return RoundRobin()
        case WorkloadBalanced.name:
            return WorkloadBalanced(max_workload=settings.max_workload)
        case DepartmentBased.name:
            return DepartmentBased(department_map=settings.department_map)
        case ExpertiseBased.name:
            return ExpertiseBased(
                expertise_map=settings.expertise_map,
                department_map=settings.department_map,
            )
        case other:
            raise ValidationError(f"Unknown strategy type '{other}'")


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════


class AssignmentEngine:
    """Orchestrates reviewer selection and the assignment write sequence."""

    def __init__(self, store, reviewer_pool, settings: AssignmentSettings | None = None,
                 lifecycle: LifecycleManager | None = None, clock=utcnow) -> None:
        self.store = store
        self.reviewer_pool = reviewer_pool
        self.clock = clock
        self.lifecycle = lifecycle or LifecycleManager(store, reviewer_pool, clock=clock)
        self._settings = settings or AssignmentSettings()
        self._settings_lock = threading.Lock()

    @classmethod
    def from_config(cls, store, reviewer_pool, config: Mapping) -> "AssignmentEngine":
        engine = cls(store, reviewer_pool, AssignmentSettings.from_config(config))
        engine.load_persisted_settings()
        return engine

    # ── Settings ─────────────────────────────────────────────────────────

    def get_settings(self) -> AssignmentSettings:
        with self._settings_lock:
            return copy.deepcopy(self._settings)

    def load_persisted_settings(self) -> AssignmentSettings:
        """Overlay settings saved by a previous ``update_settings``."""
        payload = self.store.load_settings(SETTINGS_KEY)
        if payload:
            with self._settings_lock:
                try:
                    self._settings = self._settings.merged(payload)
                except ValidationError as exc:
                    logger.warning(
                        "Ignoring persisted assignment settings: %s", exc,
                        extra={"details": exc.details},
                    )
        return self.get_settings()

    def update_settings(self, partial: Mapping, *, actor_id: str | None) -> AssignmentSettings:
        """Validate, persist and swap in new settings (admin only)."""
        if not self.reviewer_pool.has_role(actor_id, SETTINGS_ADMIN_ROLES):
            raise AuthorizationError(actor_id, "update assignment settings")

        with self._settings_lock:
            updated = self._settings.merged(partial)
            with self.store.transaction():
                self.store.save_settings(SETTINGS_KEY, updated.to_dict())
            self._settings = updated

        logger.info(
            "Assignment settings updated",
            extra={"actor": actor_id, "strategy": updated.strategy_type, "changed": sorted(partial)},
        )
        return copy.deepcopy(updated)

    # ── Submission ───────────────────────────────────────────────────────

    def submit_item(self, **item_fields) -> tuple[ItemRecord, AssignmentResult | None]:
        """Create an item and, when enabled, auto-assign it straight away.

        An item nobody can review stays ``pending``; the returned result says
        why instead of failing the submission.
        """
        item = self.lifecycle.submit_item(**item_fields)
        settings = self.get_settings()
        if not settings.enabled:
            return item, None

        try:
            result = self.auto_assign(item.id)
        except NoEligibleReviewersError as exc:
            logger.warning(
                "Submitted item left pending: %s", exc,
                extra={"item_id": item.id, "strategy": exc.strategy},
            )
            result = AssignmentResult(
                item_id=item.id, assigned=False, strategy=exc.strategy,
                status=item.status, reason=str(exc),
            )
        return self.store.get_item(item.id), result

    # ── Auto assignment ──────────────────────────────────────────────────

    def auto_assign(self, item_id: int, force_assign: bool = False) -> AssignmentResult:
        """Assign reviewers to an item with the configured strategy.

        Raises:
            NotFoundError: no such item.
            AlreadyAssignedError: the item has assignments and ``force_assign`` is off.
            InvalidTransitionError: the item is already decided.
            NoEligibleReviewersError: nobody selected and no fallback reviewer.
        """
        item = self._get_item(item_id)
        assignments = self.store.list_assignments(item_id)
        open_ids = {a.assigned_to for a in assignments if a.is_open}
        if assignments and not force_assign:
            raise AlreadyAssignedError(item_id, sorted(open_ids))
        self._ensure_assignable(item)

        settings = self.get_settings()
        strategy = build_strategy(settings)
        pool = [
            c for c in self.reviewer_pool.list_eligible(settings.roles, settings.departments)
            if c.reviewer_id not in open_ids
        ]
        context = self._selection_context(strategy, settings, pool)
        picks = select_reviewers(strategy, item, pool, context)

        if not picks:
            fallback = settings.fallback_user_id
            if not fallback or fallback in open_ids:
                logger.warning(
                    "No eligible reviewers for item %s", item_id,
                    extra={"item_id": item_id, "strategy": strategy.name, "pool_size": len(pool)},
                )
                raise NoEligibleReviewersError(item_id, strategy.name)
            logger.info(
                "Strategy selected nobody, using fallback reviewer",
                extra={"item_id": item_id, "strategy": strategy.name, "actor": fallback},
            )
            picks = [fallback]

        return self._assign(
            item_id,
            picks,
            performed_by=AUTO_ASSIGNMENT_ACTOR,
            assigned_by=SYSTEM_ACTOR,
            is_auto_assigned=True,
            force_assign=force_assign,
            strategy_name=strategy.name,
            describe=lambda names: f"Auto-assigned to {', '.join(names)} using {strategy.name} strategy",
        )

    def _selection_context(self, strategy: Strategy, settings: AssignmentSettings, pool) -> SelectionContext:
        match strategy:
            case RoundRobin(counter_name=counter_name):
                span = round_robin_span(pool, settings.max_reviewers)
                cursor = 0
                if span:
                    cursor = self.store.advance_counter(counter_name, span) - span
                return SelectionContext(max_reviewers=settings.max_reviewers, cursor=cursor)
            case WorkloadBalanced():
                workload = self.store.pending_workload([c.reviewer_id for c in pool])
                return SelectionContext(max_reviewers=settings.max_reviewers, workload=workload)
            case _:
                return SelectionContext(max_reviewers=settings.max_reviewers)

    # ── Manual assignment ────────────────────────────────────────────────

    def manual_assign(self, item_id: int, assignee_ids, actor_id: str | None,
                      notes: str = "", deadline: datetime | None = None) -> AssignmentResult:
        """Assign caller-chosen reviewers to an item.

        Raises:
            AuthorizationError: actor lacks an approval-manager role.
            ValidationError: no assignees given.
            NotFoundError: no such item.
            AlreadyAssignedError: every assignee already holds an open assignment.
            InvalidTransitionError: the item is already decided.
        """
        if not self.reviewer_pool.has_role(actor_id, MANUAL_ASSIGN_ROLES):
            raise AuthorizationError(actor_id, f"assign reviewers to approval item {item_id}")

        assignees: list[str] = []
        for raw in assignee_ids or []:
            value = str(raw).strip() if raw is not None else ""
            if value and value not in assignees:
                assignees.append(value)
        if not assignees:
            raise ValidationError("At least one assignee is required", details={"assignees": "required"})

        item = self._get_item(item_id)
        self._ensure_assignable(item)

        def describe(names):
            text = f"Manually assigned to {', '.join(names)} by {actor_id}"
            return f"{text}: {notes}" if notes else text

        return self._assign(
            item_id,
            assignees,
            performed_by=MANUAL_ASSIGNMENT_ACTOR,
            assigned_by=actor_id,
            is_auto_assigned=False,
            force_assign=True,
            strategy_name="manual",
            describe=describe,
            assignment_notes=notes,
            deadline=deadline,
        )

    # ── Shared write sequence ────────────────────────────────────────────

    def _assign(self, item_id, picks, *, performed_by, assigned_by, is_auto_assigned,
                force_assign, strategy_name, describe, assignment_notes="", deadline=None) -> AssignmentResult:
        """Write assignments, the item transition and notifications in one transaction.

        ``describe`` formats the history note from the reviewers actually
        written, after those already holding an open assignment are dropped.
        """
        now = self.clock()
        with self.store.transaction():
            item = self.store.lock_item(item_id)
            if item is None:
                raise NotFoundError(resource="ApprovalItem", resource_id=item_id)

            existing = self.store.list_assignments(item_id)
            open_ids = {a.assigned_to for a in existing if a.is_open}
            if existing and not force_assign:
                raise AlreadyAssignedError(item_id, sorted(open_ids))

            assignees = [p for p in picks if p not in open_ids]
            if not assignees:
                raise AlreadyAssignedError(item_id, sorted(open_ids))
            notes = describe(assignees)

            for assignee in assignees:
                self.store.add_assignment(
                    item_id=item_id,
                    assigned_to=assignee,
                    assigned_by=assigned_by,
                    is_auto_assigned=is_auto_assigned,
                    assigned_at=now,
                    deadline=deadline,
                    notes=assignment_notes,
                )

            if item.status == "pending":
                try:
                    item, _event = self.lifecycle.mark_in_review(
                        item, actor=performed_by, notes=notes, timestamp=now,
                    )
                except ConcurrentUpdateError as exc:
                    raise AlreadyAssignedError(item_id, sorted(open_ids)) from exc
            else:
                self.lifecycle.record_reassignment(item, actor=performed_by, notes=notes, timestamp=now)

            NotificationService.queue_assignment_notifications(
                self.store, item, assignees, created_at=now,
            )

        logger.info(
            "Assigned item %s to %s", item_id, ", ".join(assignees),
            extra={"item_id": item_id, "strategy": strategy_name, "actor": performed_by},
        )
        return AssignmentResult(
            item_id=item_id,
            assigned=True,
            assignees=assignees,
            strategy=strategy_name,
            status=item.status,
        )

    def _get_item(self, item_id: int) -> ItemRecord:
        item = self.store.get_item(item_id)
        if item is None:
            raise NotFoundError(resource="ApprovalItem", resource_id=item_id)
        return item

    @staticmethod
    def _ensure_assignable(item: ItemRecord) -> None:
        if item.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                item.id, item.status, "in_review", reason=f"'{item.status}' is a terminal status",
            )

    # ── Statistics ───────────────────────────────────────────────────────

    def statistics(self, now: datetime | None = None) -> dict:
        """Dashboard counters over every item in the store."""
        now = as_utc(now) if now else self.clock()
        items = self.store.list_items()

        by_status = Counter({status: 0 for status in ITEM_STATUSES})
        by_module = Counter({module: 0 for module in MODULE_TYPES})
        by_priority = Counter({priority: 0 for priority in PRIORITIES})
        recent = 0
        due_soon = 0
        approval_hours = []

        for item in items:
            by_status[item.status] += 1
            by_module[item.module_type] += 1
            by_priority[item.priority] += 1

            created_at = as_utc(item.created_at)
            if created_at >= now - RECENT_WINDOW:
                recent += 1

            due_date = as_utc(item.due_date)
            if item.status not in TERMINAL_STATUSES and due_date and now <= due_date <= now + DUE_SOON_WINDOW:
                due_soon += 1

            if item.status == "approved" and item.completed_at:
                elapsed = as_utc(item.completed_at) - created_at
                approval_hours.append(elapsed.total_seconds() / 3600)

        average = round(sum(approval_hours) / len(approval_hours), 1) if approval_hours else None
        return {
            "total": len(items),
            "by_status": dict(sorted(by_status.items())),
            "by_module_type": dict(sorted(by_module.items())),
            "by_priority": dict(sorted(by_priority.items())),
            "created_last_30_days": recent,
            "due_within_2_days": due_soon,
            "average_approval_hours": average,
        }

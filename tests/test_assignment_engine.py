"""
Assignment engine unit tests (in-memory store).

Tests cover:
  - Workload scenario: r1/r2/r3 -> ["r1", "r3"], in_review, 2 notifications, 1 history event
  - Idempotence, force re-assignment, racing auto-assign calls
  - Round-robin cursor persistence across calls
  - Fallback reviewer and the no-eligible-reviewer path
  - All-or-nothing writes when the store fails mid-transaction
  - Manual assignment rules and authorization
  - Settings validation/persistence and statistics
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from compliance_approvals.core.exceptions import (
    AlreadyAssignedError,
    AuthorizationError,
    InvalidTransitionError,
    NoEligibleReviewersError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from compliance_approvals.services.assignment_engine import (
    SETTINGS_KEY,
    AssignmentEngine,
    AssignmentSettings,
    build_strategy,
)
from compliance_approvals.services.reviewer_pool import StaticReviewer, StaticReviewerPool
from compliance_approvals.services.store import InMemoryApprovalStore
from compliance_approvals.services.strategies import ExpertiseBased, RoundRobin, WorkloadBalanced


def _make_pool(*extra):
    return StaticReviewerPool([
        StaticReviewer("admin1", "admin", "Legal & Compliance"),
        StaticReviewer("mgr1", "approval_manager", "Legal & Compliance"),
        StaticReviewer("r1", "decision_maker", "IT"),
        StaticReviewer("r2", "decision_maker", "HR"),
        StaticReviewer("r3", "decision_maker", "R&D"),
        StaticReviewer("op1", "operator", "IT"),
        *extra,
    ])


def _make_engine(store=None, pool=None, **settings):
    settings.setdefault("roles", ["decision_maker"])
    return AssignmentEngine(
        store or InMemoryApprovalStore(),
        pool or _make_pool(),
        AssignmentSettings(**settings),
    )


def _make_item(store, module_type="risk_assessment", **overrides):
    fields = {
        "title": "Quarterly access review",
        "module_type": module_type,
        "priority": "high",
        "created_by": "alice",
    }
    fields.update(overrides)
    return store.add_item(**fields)


def _add_workload(store, reviewer_id, count):
    holder = _make_item(store, title=f"backlog for {reviewer_id}")
    for _ in range(count):
        store.add_assignment(
            item_id=holder.id, assigned_to=reviewer_id, assigned_by="system",
            is_auto_assigned=True, assigned_at=datetime.now(timezone.utc),
        )


class FailingNotificationStore(InMemoryApprovalStore):
    """Store whose notification insert fails after the other writes happened."""

    def add_notification(self, **kwargs):
        raise StoreError("notification insert failed")


# ═════════════════════════════════════════════════════════════════════════
# AUTO ASSIGN
# ═════════════════════════════════════════════════════════════════════════

class TestAutoAssign:
    def test_workload_scenario(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store, strategy_type="workload_balanced", max_reviewers=2)
        _add_workload(store, "r2", 2)
        _add_workload(store, "r3", 1)
        item = _make_item(store)

        result = engine.auto_assign(item.id)

        assert result.assigned is True
        assert result.assignees == ["r1", "r3"]
        assert result.strategy == "workload_balanced"
        assert result.status == "in_review"
        assert store.get_item(item.id).status == "in_review"

        assignments = store.list_assignments(item.id)
        assert [(a.assigned_to, a.status, a.is_auto_assigned, a.assigned_by) for a in assignments] == [
            ("r1", "pending", True, "system"),
            ("r3", "pending", True, "system"),
        ]

        notifications = (
            store.list_notifications("r1", item_id=item.id)
            + store.list_notifications("r3", item_id=item.id)
        )
        assert len(notifications) == 2
        assert {n.title for n in notifications} == {"New Approval Assignment"}
        assert all(n.priority == "high" for n in notifications)
        assert notifications[0].message == "You have been assigned to review: Quarterly access review"

        history = store.list_history(item.id)
        assert len(history) == 1
        assert history[0].action == "assigned"
        assert history[0].status == "in_review"
        assert history[0].performed_by == "auto_assignment"
        assert history[0].notes == "Auto-assigned to r1, r3 using workload_balanced strategy"

    def test_second_call_is_idempotent(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)
        engine.auto_assign(item.id)
        version = store.get_item(item.id).version

        with pytest.raises(AlreadyAssignedError) as exc:
            engine.auto_assign(item.id)

        assert sorted(exc.value.assignees) == ["r1", "r2"]
        assert len(store.list_assignments(item.id)) == 2
        assert len(store.list_history(item.id)) == 1
        assert store.get_item(item.id).version == version

    def test_missing_item(self):
        with pytest.raises(NotFoundError):
            _make_engine().auto_assign(42)

    def test_pending_item_has_no_assignments_until_assigned(self):
        store = InMemoryApprovalStore()
        item = _make_item(store)
        assert store.get_item(item.id).status == "pending"
        assert store.list_assignments(item.id) == []
        _make_engine(store).auto_assign(item.id)
        assert any(a.is_open for a in store.list_assignments(item.id))

    def test_force_assign_on_in_review_records_reassignment(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store, max_reviewers=1)
        item = _make_item(store)
        first = engine.auto_assign(item.id)
        version = store.get_item(item.id).version

        second = engine.auto_assign(item.id, force_assign=True)

        assert second.assigned is True
        assert second.assignees != first.assignees
        assert store.get_item(item.id).status == "in_review"
        assert store.get_item(item.id).version == version
        actions = [h.action for h in store.list_history(item.id)]
        assert actions == ["assigned", "reassigned"]

    def test_force_assign_on_decided_item_is_rejected(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store, pool=_make_pool())
        item = _make_item(store)
        engine.auto_assign(item.id)
        engine.lifecycle.transition_status(item.id, "approved", "r1")

        with pytest.raises(InvalidTransitionError):
            engine.auto_assign(item.id, force_assign=True)

    def test_racing_calls_produce_one_winner(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)

        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []
        guard = threading.Lock()

        def _run():
            barrier.wait()
            try:
                result = engine.auto_assign(item.id)
            except AlreadyAssignedError as exc:
                result = exc
            with guard:
                outcomes.append(result)

        threads = [threading.Thread(target=_run) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        winners = [o for o in outcomes if not isinstance(o, AlreadyAssignedError)]
        losers = [o for o in outcomes if isinstance(o, AlreadyAssignedError)]
        assert len(outcomes) == workers
        assert len(winners) == 1
        assert len(losers) == workers - 1
        assert len(store.list_assignments(item.id)) == 2
        assert [h.action for h in store.list_history(item.id)] == ["assigned"]


class TestRoundRobinCursor:
    def test_consecutive_items_walk_the_pool(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store, strategy_type="round_robin", max_reviewers=1)

        picks = []
        for _ in range(4):
            item = _make_item(store)
            picks.extend(engine.auto_assign(item.id).assignees)

        assert picks == ["r1", "r2", "r3", "r1"]

    def test_cursor_advances_by_number_of_picks(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store, strategy_type="round_robin", max_reviewers=2)

        first = engine.auto_assign(_make_item(store).id).assignees
        second = engine.auto_assign(_make_item(store).id).assignees

        assert first == ["r1", "r2"]
        assert second == ["r3", "r1"]
        assert store.advance_counter("round_robin", 0) == 4


class TestNoEligibleReviewers:
    def test_raises_without_writes(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store, strategy_type="department_based", department_map={})
        item = _make_item(store)

        with pytest.raises(NoEligibleReviewersError) as exc:
            engine.auto_assign(item.id)

        assert exc.value.strategy == "department_based"
        assert store.get_item(item.id).status == "pending"
        assert store.list_assignments(item.id) == []
        assert store.list_history(item.id) == []

    def test_fallback_reviewer_used(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(
            store, strategy_type="department_based", department_map={}, fallback_user_id="admin1",
        )
        item = _make_item(store)

        result = engine.auto_assign(item.id)

        assert result.assignees == ["admin1"]
        assert store.get_item(item.id).status == "in_review"

    def test_expertise_strategy_uses_allowlist(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(
            store, strategy_type="expertise_based", expertise_map={"document": ["r3", "r2"]},
        )
        item = _make_item(store, module_type="document")
        assert engine.auto_assign(item.id).assignees == ["r3", "r2"]


class TestAtomicity:
    def test_store_failure_rolls_back_everything(self):
        store = FailingNotificationStore()
        engine = _make_engine(store)
        item = _make_item(store)

        with pytest.raises(StoreError):
            engine.auto_assign(item.id)

        current = store.get_item(item.id)
        assert current.status == "pending"
        assert current.version == item.version
        assert store.list_assignments(item.id) == []
        assert store.list_history(item.id) == []

    def test_store_failure_on_decision_keeps_item_in_review(self):
        store = FailingNotificationStore()
        engine = _make_engine(store)
        item = _make_item(store)
        # Seed the review state directly; assignment itself would notify
        store.add_assignment(
            item_id=item.id, assigned_to="r1", assigned_by="system",
            is_auto_assigned=True, assigned_at=datetime.now(timezone.utc),
        )
        in_review = store.update_item_status(item.id, expected_version=1, status="in_review",
                                             completed_at=None)

        with pytest.raises(StoreError):
            engine.lifecycle.transition_status(item.id, "approved", "r1")

        assert store.get_item(item.id) == in_review
        assert [a.status for a in store.list_assignments(item.id)] == ["pending"]
        assert store.list_history(item.id) == []


# ═════════════════════════════════════════════════════════════════════════
# MANUAL ASSIGN
# ═════════════════════════════════════════════════════════════════════════

class TestManualAssign:
    def test_assigns_and_moves_to_in_review(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)
        deadline = datetime.now(timezone.utc) + timedelta(days=3)

        result = engine.manual_assign(item.id, ["r2", "r2", "r3"], actor_id="mgr1",
                                      notes="Needs HR sign-off", deadline=deadline)

        assert result.assignees == ["r2", "r3"]
        assert result.strategy == "manual"
        assignments = store.list_assignments(item.id)
        assert all(not a.is_auto_assigned for a in assignments)
        assert {a.assigned_by for a in assignments} == {"mgr1"}
        assert {a.deadline for a in assignments} == {deadline}
        assert {a.notes for a in assignments} == {"Needs HR sign-off"}

        history = store.list_history(item.id)
        assert len(history) == 1
        assert history[0].performed_by == "manual_assignment"
        assert history[0].status == "in_review"
        assert history[0].notes == "Manually assigned to r2, r3 by mgr1: Needs HR sign-off"

    def test_unauthorized_actor_writes_nothing(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)

        for actor in ("op1", "stranger", None):
            with pytest.raises(AuthorizationError):
                engine.manual_assign(item.id, ["r1"], actor_id=actor)

        assert store.list_assignments(item.id) == []
        assert store.get_item(item.id).status == "pending"

    def test_empty_assignees(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)
        with pytest.raises(ValidationError):
            engine.manual_assign(item.id, ["", None], actor_id="admin1")

    def test_adding_reviewer_to_in_review_item(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)
        engine.manual_assign(item.id, ["r1"], actor_id="admin1")

        result = engine.manual_assign(item.id, ["r1", "r2"], actor_id="admin1")

        assert result.assignees == ["r2"]
        assert [h.action for h in store.list_history(item.id)] == ["assigned", "reassigned"]
        assert store.get_item(item.id).status == "in_review"

    def test_reassignment_history_names_only_new_reviewers(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)
        engine.manual_assign(item.id, ["r1"], actor_id="mgr1")

        result = engine.manual_assign(item.id, ["r1", "r3"], actor_id="mgr1", notes="R&D input")

        assert result.assignees == ["r3"]
        last = store.list_history(item.id)[-1]
        assert last.action == "reassigned"
        assert last.notes == "Manually assigned to r3 by mgr1: R&D input"
        assert [n.recipient for n in store.list_notifications("r3", item_id=item.id)] == ["r3"]

    def test_only_existing_assignees_is_already_assigned(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        item = _make_item(store)
        engine.manual_assign(item.id, ["r1"], actor_id="admin1")

        with pytest.raises(AlreadyAssignedError):
            engine.manual_assign(item.id, ["r1"], actor_id="admin1")
        assert len(store.list_assignments(item.id)) == 1


# ═════════════════════════════════════════════════════════════════════════
# SUBMISSION
# ═════════════════════════════════════════════════════════════════════════

class TestSubmitItem:
    def test_submit_auto_assigns_when_enabled(self):
        engine = _make_engine()
        item, result = engine.submit_item(title="Laptop policy", module_type="document", created_by="alice")
        assert result.assigned is True
        assert item.status == "in_review"
        assert [h.action for h in engine.store.list_history(item.id)] == ["created", "assigned"]

    def test_submit_without_reviewers_stays_pending(self):
        engine = _make_engine(strategy_type="department_based", department_map={})
        item, result = engine.submit_item(title="Laptop policy", module_type="document", created_by="alice")
        assert item.status == "pending"
        assert result.assigned is False
        assert result.reason

    def test_submit_when_disabled(self):
        engine = _make_engine(enabled=False)
        item, result = engine.submit_item(title="Laptop policy", module_type="document", created_by="alice")
        assert result is None
        assert item.status == "pending"


# ═════════════════════════════════════════════════════════════════════════
# SETTINGS
# ═════════════════════════════════════════════════════════════════════════

class TestSettings:
    def test_defaults(self):
        settings = AssignmentSettings()
        assert settings.strategy_type == "workload_balanced"
        assert settings.max_reviewers == 2
        assert settings.roles == ["admin", "decision_maker"]
        assert settings.department_map["training"] == ["HR", "Legal & Compliance"]

    def test_from_config(self):
        settings = AssignmentSettings.from_config({
            "APPROVAL_STRATEGY": "round_robin",
            "APPROVAL_MAX_REVIEWERS": 3,
            "APPROVAL_AUTO_ASSIGN_ON_SUBMIT": False,
            "APPROVAL_FALLBACK_USER_ID": "admin1",
        })
        assert settings.strategy_type == "round_robin"
        assert settings.max_reviewers == 3
        assert settings.enabled is False
        assert settings.fallback_user_id == "admin1"

    def test_build_strategy(self):
        assert isinstance(build_strategy(AssignmentSettings(strategy_type="round_robin")), RoundRobin)
        strategy = build_strategy(AssignmentSettings(max_workload=4))
        assert strategy == WorkloadBalanced(max_workload=4)
        expert = build_strategy(AssignmentSettings(strategy_type="expertise_based",
                                                   expertise_map={"document": ["r1"]}))
        assert isinstance(expert, ExpertiseBased)

    def test_update_persists(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)

        updated = engine.update_settings({"strategy_type": "round_robin", "max_reviewers": 3},
                                         actor_id="admin1")

        assert updated.strategy_type == "round_robin"
        assert engine.get_settings().max_reviewers == 3
        assert store.load_settings(SETTINGS_KEY)["strategy_type"] == "round_robin"

        restarted = AssignmentEngine(store, _make_pool())
        assert restarted.load_persisted_settings().strategy_type == "round_robin"

    @pytest.mark.parametrize("partial", [
        {"strategy_type": "random"},
        {"max_reviewers": 0},
        {"max_reviewers": True},
        {"roles": []},
        {"colour": "blue"},
        {"department_map": {"document": "IT"}},
    ])
    def test_invalid_update_rejected(self, partial):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        before = engine.get_settings()

        with pytest.raises(ValidationError):
            engine.update_settings(partial, actor_id="admin1")

        assert engine.get_settings() == before
        assert store.load_settings(SETTINGS_KEY) is None

    def test_only_admin_updates(self):
        engine = _make_engine()
        with pytest.raises(AuthorizationError):
            engine.update_settings({"max_reviewers": 1}, actor_id="mgr1")

    def test_get_settings_returns_copy(self):
        engine = _make_engine()
        settings = engine.get_settings()
        settings.roles.append("operator")
        assert "operator" not in engine.get_settings().roles


# ═════════════════════════════════════════════════════════════════════════
# STATISTICS
# ═════════════════════════════════════════════════════════════════════════

class TestStatistics:
    def test_counts(self):
        store = InMemoryApprovalStore()
        engine = _make_engine(store)
        now = datetime.now(timezone.utc)

        due_soon = _make_item(store, module_type="document", priority="low",
                              due_date=now + timedelta(days=1))
        _make_item(store, module_type="training", due_date=now + timedelta(days=10))
        approved = _make_item(store)
        engine.auto_assign(approved.id)
        engine.lifecycle.transition_status(approved.id, "approved", "r1")

        stats = engine.statistics()

        assert stats["total"] == 3
        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["approved"] == 1
        assert stats["by_status"]["rejected"] == 0
        assert stats["by_module_type"] == {
            "document": 1, "risk_assessment": 1, "system_registration": 0, "training": 1,
        }
        assert stats["by_priority"]["low"] == 1
        assert stats["created_last_30_days"] == 3
        assert stats["due_within_2_days"] == 1
        assert stats["average_approval_hours"] is not None
        assert stats["average_approval_hours"] >= 0
        assert due_soon.id in {i.id for i in store.list_items(status="pending")}

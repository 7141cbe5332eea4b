"""
Reviewer selection strategies.

A strategy is one of four frozen dataclasses; ``select_reviewers`` matches on
the variant exhaustively, so adding a fifth variant without handling it is
flagged by type checkers through ``assert_never``.

    RoundRobin        walk the pool (sorted by identity) from a persisted cursor
    WorkloadBalanced  fewest pending assignments first, identity breaks ties
    DepartmentBased   pool members of the departments mapped from module type
    ExpertiseBased    per-module-type expert allowlist, department fallback

Selection is pure: everything that lives in the store (cursor position,
workload counts) is read by the caller and handed in via SelectionContext.
The result never exceeds ``context.max_reviewers``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Mapping, Sequence, assert_never

from compliance_approvals.services.records import Candidate, ItemRecord

DEFAULT_MAX_REVIEWERS = 2

ROUND_ROBIN_COUNTER = "round_robin"

DEFAULT_DEPARTMENT_MAP: dict[str, list[str]] = {
    "risk_assessment": ["Legal & Compliance", "IT"],
    "system_registration": ["IT", "R&D"],
    "document": ["Legal & Compliance"],
    "training": ["HR", "Legal & Compliance"],
}


@dataclass(frozen=True)
class RoundRobin:
    name: ClassVar[str] = "round_robin"
    counter_name: str = ROUND_ROBIN_COUNTER


@dataclass(frozen=True)
class WorkloadBalanced:
    name: ClassVar[str] = "workload_balanced"
    max_workload: int | None = None


@dataclass(frozen=True)
class DepartmentBased:
    name: ClassVar[str] = "department_based"
    department_map: Mapping[str, Sequence[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class ExpertiseBased:
    name: ClassVar[str] = "expertise_based"
    expertise_map: Mapping[str, Sequence[str]] = field(default_factory=dict)
    department_map: Mapping[str, Sequence[str]] = field(default_factory=dict)


Strategy = RoundRobin | WorkloadBalanced | DepartmentBased | ExpertiseBased

STRATEGY_TYPES = (
    RoundRobin.name,
    WorkloadBalanced.name,
    DepartmentBased.name,
    ExpertiseBased.name,
)


@dataclass(frozen=True)
class SelectionContext:
    """Store-derived inputs for one selection.

    Attributes:
        max_reviewers: Fan-out cap for this item.
        cursor: Round-robin start offset (counter value before this call's advance).
        workload: Pending-assignment count per reviewer id.
    """

    max_reviewers: int = DEFAULT_MAX_REVIEWERS
    cursor: int = 0
    workload: Mapping[str, int] = field(default_factory=dict)


def unique_candidates(pool: Sequence[Candidate]) -> list[Candidate]:
    """Drop duplicate reviewer ids (first occurrence wins), sort by identity."""
    seen: dict[str, Candidate] = {}
    for candidate in pool:
        seen.setdefault(candidate.reviewer_id, candidate)
    return sorted(seen.values(), key=lambda c: c.reviewer_id)


def round_robin_span(pool: Sequence[Candidate], max_reviewers: int) -> int:
    """How many positions one round-robin selection consumes."""
    return min(max_reviewers, len(unique_candidates(pool)))


def select_reviewers(
    strategy: Strategy,
    item: ItemRecord,
    pool: Sequence[Candidate],
    context: SelectionContext | None = None,
) -> list[str]:
    """Return the reviewer ids to assign, at most ``context.max_reviewers``.

    An empty list is a legitimate outcome ("no eligible reviewers"), never an
    error and never a random pick.
    """
    context = context or SelectionContext()
    cap = max(context.max_reviewers, 0)
    candidates = unique_candidates(pool)
    if not candidates or cap == 0:
        return []

    match strategy:
        case RoundRobin():
            picks = _round_robin(candidates, context.cursor, cap)
        case WorkloadBalanced(max_workload=limit):
            picks = _least_loaded(candidates, context.workload, limit)
        case DepartmentBased(department_map=department_map):
            picks = _by_department(candidates, item.module_type, department_map)
        case ExpertiseBased(expertise_map=expertise_map, department_map=department_map):
            experts = list(expertise_map.get(item.module_type) or [])
            if experts:
                picks = _by_allowlist(candidates, experts)
            else:
                picks = _by_department(candidates, item.module_type, department_map)
        case _:
            assert_never(strategy)

    return picks[:cap]


# ── Policies ─────────────────────────────────────────────────────────────────


def _round_robin(candidates: list[Candidate], cursor: int, cap: int) -> list[str]:
    size = len(candidates)
    start = cursor % size
    return [candidates[(start + offset) % size].reviewer_id for offset in range(min(cap, size))]


def _least_loaded(candidates: list[Candidate], workload: Mapping[str, int], limit: int | None) -> list[str]:
    ranked = sorted(candidates, key=lambda c: (workload.get(c.reviewer_id, 0), c.reviewer_id))
    if limit is not None:
        ranked = [c for c in ranked if workload.get(c.reviewer_id, 0) < limit]
    return [c.reviewer_id for c in ranked]


def _by_department(
    candidates: list[Candidate],
    module_type: str,
    department_map: Mapping[str, Sequence[str]],
) -> list[str]:
    departments = set(department_map.get(module_type) or [])
    if not departments:
        return []
    return [c.reviewer_id for c in candidates if c.department in departments]


def _by_allowlist(candidates: list[Candidate], experts: Sequence[str]) -> list[str]:
    eligible = {c.reviewer_id for c in candidates}
    picks: list[str] = []
    for expert in experts:
        if expert in eligible and expert not in picks:
            picks.append(expert)
    return picks

"""
Reviewer pool and role checks.

The identity subsystem owns users and roles. The engine only needs two
questions answered:

    list_eligible(roles, departments=None) -> [Candidate]
    has_role(actor_id, allowed_roles) -> bool

DirectoryReviewerPool answers them from the ``reviewers`` table;
StaticReviewerPool from an in-process mapping (tests, scripts).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select

from compliance_approvals.models import db
from compliance_approvals.models.directory import Reviewer
from compliance_approvals.services.records import Candidate

logger = logging.getLogger(__name__)


class ReviewerPoolProvider(ABC):
    """Identity lookups consumed by the assignment engine."""

    @abstractmethod
    def list_eligible(self, roles: Iterable[str], departments: Iterable[str] | None = None) -> list[Candidate]:
        """Active reviewers holding one of ``roles`` (optionally within ``departments``)."""

    @abstractmethod
    def has_role(self, actor_id: str | None, allowed_roles: Iterable[str]) -> bool:
        """True when the actor exists, is active and holds one of ``allowed_roles``."""


class DirectoryReviewerPool(ReviewerPoolProvider):
    """Pool backed by the local reviewer directory table."""

    def list_eligible(self, roles, departments=None):
        roles = list(roles or [])
        if not roles:
            return []
        stmt = select(Reviewer).where(Reviewer.is_active.is_(True), Reviewer.role.in_(roles))
        if departments:
            stmt = stmt.where(Reviewer.department.in_(list(departments)))
        rows = db.session.execute(stmt.order_by(Reviewer.id)).scalars().all()
        return [Candidate(reviewer_id=r.id, department=r.department) for r in rows]

    def has_role(self, actor_id, allowed_roles):
        if not actor_id:
            return False
        reviewer = db.session.get(Reviewer, actor_id)
        if reviewer is None or not reviewer.is_active:
            logger.debug("Role check for unknown or inactive actor %s", actor_id)
            return False
        return reviewer.role in set(allowed_roles)


@dataclass(frozen=True)
class StaticReviewer:
    reviewer_id: str
    role: str
    department: str | None = None
    is_active: bool = True


class StaticReviewerPool(ReviewerPoolProvider):
    """Pool over a fixed list of reviewers."""

    def __init__(self, reviewers: Iterable[StaticReviewer] = ()) -> None:
        self._reviewers = {r.reviewer_id: r for r in reviewers}

    def add(self, reviewer_id: str, role: str, department: str | None = None, is_active: bool = True) -> None:
        self._reviewers[reviewer_id] = StaticReviewer(reviewer_id, role, department, is_active)

    def list_eligible(self, roles, departments=None):
        roles = set(roles or [])
        wanted = set(departments) if departments else None
        picked = [
            r for r in self._reviewers.values()
            if r.is_active and r.role in roles and (wanted is None or r.department in wanted)
        ]
        return [
            Candidate(reviewer_id=r.reviewer_id, department=r.department)
            for r in sorted(picked, key=lambda r: r.reviewer_id)
        ]

    def has_role(self, actor_id, allowed_roles):
        reviewer = self._reviewers.get(actor_id) if actor_id else None
        return bool(reviewer and reviewer.is_active and reviewer.role in set(allowed_roles))

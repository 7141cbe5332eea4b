"""
Shared pytest fixtures for the Compliance Approvals test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, fresh engine (autouse)
    - client: Flask test client (function-scoped)
    - engine: The app's AssignmentEngine (SQL store + reviewer directory)
    - reviewers: Pre-created reviewer directory rows
"""

import pytest

from compliance_approvals import create_app, init_approval_engine
from compliance_approvals.models import db as _db
from compliance_approvals.models.directory import Reviewer


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rebuild the engine, recreate tables after."""
    with app.app_context():
        # Settings live on the engine instance; start every test from config
        init_approval_engine(app)
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def engine(app):
    return app.extensions["approval_engine"]


# ── Convenience fixtures ─────────────────────────────────────────────────


REVIEWER_ROWS = [
    # id, role, department
    ("admin1", "admin", "Legal & Compliance"),
    ("mgr1", "approval_manager", "Legal & Compliance"),
    ("r1", "decision_maker", "IT"),
    ("r2", "decision_maker", "HR"),
    ("r3", "decision_maker", "R&D"),
    ("op1", "operator", "IT"),
]


@pytest.fixture()
def reviewers():
    """Seed the reviewer directory and return the rows."""
    rows = []
    for reviewer_id, role, department in REVIEWER_ROWS:
        row = Reviewer(
            id=reviewer_id,
            email=f"{reviewer_id}@example.com",
            display_name=reviewer_id.upper(),
            role=role,
            department=department,
            is_active=True,
        )
        _db.session.add(row)
        rows.append(row)
    _db.session.commit()
    return rows

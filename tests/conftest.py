"""
Shared pytest fixtures for the Electronic Approval Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant_id: Tenant scope used by every test
    - captured_events: TransitionEvents dispatched during the test
    - Factory helpers: make_category, make_template, make_member
"""

import pytest

from eapproval import create_app
from eapproval.models import db as _db
from eapproval.models.organization import OrgMember
from eapproval.services import category_service, route_template_service
from eapproval.services.transition_events import (
    register_transition_listener,
    unregister_transition_listener,
)

TEST_TENANT_ID = 1
OTHER_TENANT_ID = 2


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
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def tenant_id():
    return TEST_TENANT_ID


@pytest.fixture()
def captured_events():
    """Collect every dispatched TransitionEvent for the duration of a test."""
    events = []

    def _capture(event):
        events.append(event)

    register_transition_listener(_capture)
    yield events
    unregister_transition_listener(_capture)


# ── Factory helpers ──────────────────────────────────────────────────────


LEAVE_SCHEMA = [
    {"name": "start_date", "type": "date", "required": True},
    {"name": "end_date", "type": "date", "required": True},
    {"name": "reason", "type": "textarea", "constraints": {"max_length": 500}},
]

EXPENSE_SCHEMA = [
    {"name": "amount", "type": "currency", "required": True, "constraints": {"max": 10_000_000}},
    {"name": "purpose", "type": "text", "required": True},
    {"name": "receipts", "type": "file", "constraints": {"max_files": 3}},
]


def make_category(code="LEAVE_REQUEST", schema=None, tenant=TEST_TENANT_ID, **extra) -> dict:
    data = {"code": code, "name": code.replace("_", " ").title(),
            "field_schema": LEAVE_SCHEMA if schema is None else schema}
    data.update(extra)
    return category_service.create_category(tenant, data)


def stage(approvers, mode="ALL", stage_type="APPROVAL", name=None) -> dict:
    return {
        "name": name,
        "mode": mode,
        "stage_type": stage_type,
        "approvers": [a if isinstance(a, dict) else {"user_id": a} for a in approvers],
    }


def make_template(stages, category_id=None, tenant=TEST_TENANT_ID, **extra) -> dict:
    data = {"name": extra.pop("name", "Template"), "category_id": category_id, "stages": stages}
    data.update(extra)
    return route_template_service.create_template(tenant, data)


def make_member(user_id, manager=None, level=0, department=None, tenant=TEST_TENANT_ID) -> OrgMember:
    member = OrgMember(
        tenant_id=tenant,
        user_id=user_id,
        manager_user_id=manager,
        level=level,
        department_id=department,
        display_name=f"User {user_id}",
    )
    _db.session.add(member)
    _db.session.commit()
    return member


LEAVE_PAYLOAD = {"start_date": "2026-03-02", "end_date": "2026-03-04", "reason": "Family trip"}

"""
Shared pytest fixtures for the approval engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - roles / users / project: pre-created identity fixtures
    - pr_matrix: the two-step PR matrix (order 2 above 1,000,000)
    - auth_headers: factory for Bearer headers
    - make_role / make_user / make_rule / make_delegation: ORM helper factories
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app import create_app
from app.models import db as _db
from app.models.approval import ApprovalDelegation, ApprovalMatrixRule
from app.models.auth import Role, User, UserRole
from app.models.project import Project
from app.services.jwt_service import generate_access_token


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


# ── ORM helper factories ─────────────────────────────────────────────────


@pytest.fixture()
def make_role():
    def _make(code, *, top_admin=False, override=False, name=None):
        role = Role(
            code=code,
            name=name or code.replace("_", " ").title(),
            is_top_admin=top_admin,
            can_override_approvals=override,
        )
        _db.session.add(role)
        _db.session.commit()
        return role
    return _make


@pytest.fixture()
def make_user():
    def _make(email, *roles, manager=None, department=None, active=True):
        user = User(
            email=email,
            full_name=email.split("@")[0].title(),
            department=department,
            is_active=active,
            manager_id=manager.id if manager else None,
        )
        _db.session.add(user)
        _db.session.flush()
        for role in roles:
            _db.session.add(UserRole(user_id=user.id, role_id=role.id))
        _db.session.commit()
        _db.session.refresh(user)
        return user
    return _make


@pytest.fixture()
def make_rule():
    def _make(role, step_order=1, *, doc_type="PR", project=None, min_amount=None,
              max_amount=None, department=None, escalation_hours=None):
        rule = ApprovalMatrixRule(
            doc_type=doc_type,
            project_id=project.id if project else None,
            min_amount=Decimal(str(min_amount)) if min_amount is not None else None,
            max_amount=Decimal(str(max_amount)) if max_amount is not None else None,
            department=department,
            role_id=role.id,
            step_order=step_order,
            escalation_hours=escalation_hours,
        )
        _db.session.add(rule)
        _db.session.commit()
        return rule
    return _make


@pytest.fixture()
def make_delegation():
    def _make(from_user, to_user, *, start=None, end=None, active=True):
        now = datetime.now(timezone.utc)
        delegation = ApprovalDelegation(
            from_user_id=from_user.id,
            to_user_id=to_user.id,
            start_date=start or now - timedelta(days=1),
            end_date=end or now + timedelta(days=7),
            is_active=active,
        )
        _db.session.add(delegation)
        _db.session.commit()
        return delegation
    return _make


# ── Identity fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def roles(make_role):
    """erp_admin (top admin), project_manager, finance_manager, procurement_officer."""
    return {
        "admin": make_role("erp_admin", top_admin=True, override=True),
        "pm": make_role("project_manager"),
        "finance": make_role("finance_manager"),
        "buyer": make_role("procurement_officer"),
    }


@pytest.fixture()
def users(roles, make_user):
    """admin → pm → buyer management chain, plus a finance manager and a spare PM."""
    admin = make_user("admin@erp.test", roles["admin"])
    pm = make_user("pm@erp.test", roles["pm"], manager=admin)
    return {
        "admin": admin,
        "pm": pm,
        "pm2": make_user("pm2@erp.test", roles["pm"], manager=admin),
        "finance": make_user("finance@erp.test", roles["finance"], manager=admin),
        "buyer": make_user("buyer@erp.test", roles["buyer"], manager=pm),
        "outsider": make_user("outsider@erp.test"),
    }


@pytest.fixture()
def project():
    proj = Project(code="PRJ-1", name="Plant Expansion")
    _db.session.add(proj)
    _db.session.commit()
    return proj


@pytest.fixture()
def pr_matrix(roles, make_rule):
    """PR: order 1 project_manager for any amount, order 2 erp_admin above 1,000,000."""
    return [
        make_rule(roles["pm"], 1, min_amount=0, escalation_hours=24),
        make_rule(roles["admin"], 2, min_amount="1000000.01", escalation_hours=48),
    ]


@pytest.fixture()
def auth_headers():
    """Factory: Bearer headers for a user (optionally with an Idempotency-Key)."""
    def _headers(user, idempotency_key=None):
        headers = {"Authorization": f"Bearer {generate_access_token(user.id, user.role_codes)}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers
    return _headers

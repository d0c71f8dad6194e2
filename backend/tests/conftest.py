"""
Pytest fixtures for the member ledger tests.

Provides an in-memory database, a test client, and helpers to build accounts,
plans, memberships and registry records directly.
"""

from datetime import timedelta

import pytest
from fitsense import create_app
from fitsense.extensions import db
from fitsense.models import User, Plan, Membership, MembershipPayment, MemberRecord
from fitsense.models.accounts import ROLE_ADMIN, ROLE_MEMBER
from fitsense.models.memberships import MEMBERSHIP_ACTIVE
from fitsense.services.auth_service import create_account
from fitsense.services.ledger_service import build_entry, replace_entries
from fitsense.time_utils import utcnow


ADMIN_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'STATS_CACHE_SECONDS': 10,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def sent_emails(app):
    """Capture outgoing emails instead of logging them."""
    sent = []
    app.config['EMAIL_DISPATCHER'] = lambda to, subject, body: sent.append((to, subject, body))
    yield sent
    app.config['EMAIL_DISPATCHER'] = None


@pytest.fixture(scope='function')
def monthly_plan(db_session):
    plan = Plan(name="Monthly", price_cents=100000, duration_days=30, is_active=True)
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture(scope='function')
def quarterly_plan(db_session):
    plan = Plan(name="Quarterly", price_cents=270000, duration_days=90, is_active=True)
    db_session.add(plan)
    db_session.commit()
    return plan


def make_member(name="Asha Rao", email="asha@example.com", phone=None, role=ROLE_MEMBER) -> User:
    user = User(name=name, email=email, phone=phone, password_hash="x", role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    return user


def make_membership(user, plan, *, status=MEMBERSHIP_ACTIVE, start=None) -> Membership:
    start = start or utcnow().date()
    membership = Membership(
        user_id=user.id,
        plan_id=plan.id,
        start_date=start,
        end_date=start + timedelta(days=plan.duration_days),
        status=status,
    )
    db.session.add(membership)
    db.session.commit()
    return membership


def make_live_payment(membership, amount_cents, *, mode="CASH", paid_at=None) -> MembershipPayment:
    payment = MembershipPayment(
        membership_id=membership.id,
        user_id=membership.user_id,
        amount_cents=amount_cents,
        payment_mode=mode,
        paid_at=paid_at or utcnow(),
    )
    db.session.add(payment)
    db.session.commit()
    return payment


def make_record(name="Walk In", email=None, phone=None, amounts=(), **fields) -> MemberRecord:
    """Registry record with one manual entry per amount."""
    fields.setdefault("is_signed_up", False)
    record = MemberRecord(name=name, email=email, phone=phone, **fields)
    if record.plan_total_cents is None:
        record.plan_total_cents = 0
    now = utcnow()
    replace_entries(record, [
        build_entry(
            entry_id=str(index + 1),
            amount_cents=amount,
            payment_mode="CASH",
            notes="",
            paid_at=now,
            recorded_by=None,
        )
        for index, amount in enumerate(amounts)
    ])
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture(scope='function')
def admin_user(db_session):
    return create_account(
        name="Front Desk", email="desk@gym.local", phone=None,
        password=ADMIN_PASSWORD, role=ROLE_ADMIN,
    )


@pytest.fixture(scope='function')
def super_admin_user(db_session):
    return create_account(
        name="Owner", email="owner@gym.local", phone=None,
        password=ADMIN_PASSWORD, role=ROLE_ADMIN, is_super_admin=True,
    )


def get_auth_token(client, email: str, password: str) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.email, ADMIN_PASSWORD))


@pytest.fixture(scope='function')
def super_headers(client, super_admin_user):
    return auth_headers(get_auth_token(client, super_admin_user.email, ADMIN_PASSWORD))

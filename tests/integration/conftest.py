"""
Fixtures for SQLite-backed credcore tests.

Every test gets a fresh file-backed SQLite database (tmp_path), so threads in
the concurrency tests open real separate connections. Writers serialise on
BEGIN IMMEDIATE the same way they serialise on account row locks in postgres.
"""

from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker

from credcore.services.approvals import engine as approvals
from credcore.services.approvals import routing
from credcore.services.ledger import ledger
from credcore.services.shared.database import create_all_tables, make_engine
from credcore.services.shared.models import ApprovalLevel, RequestType

COMPANY = "acme"
TEAM    = "procurement"


@pytest.fixture
def db_engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'credcore.db'}")
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def account(db):
    """Company account with 1000 base credits and no bonus."""
    return ledger.open_account(
        db,
        company_id=COMPANY,
        subscription_tier="professional",
        subscription_start=date(2026, 1, 1),
        subscription_end=date(2026, 12, 31),
        base_credits=1000,
        bonus_credits=0,
    )


@pytest.fixture
def approvers(db):
    """One team approver (appr-1) and one company admin (boss-1) on TEAM."""
    return [
        routing.assign_approver(db, COMPANY, TEAM, "appr-1", ApprovalLevel.approver),
        routing.assign_approver(db, COMPANY, TEAM, "boss-1", ApprovalLevel.admin),
    ]


@pytest.fixture
def make_rule(db):
    def _make(min_credits, max_credits, role, escalation_hours=None, escalate_to=None, priority=0):
        return routing.create_rule(
            db, COMPANY,
            min_credits=min_credits,
            max_credits=max_credits,
            approver_role=role,
            escalation_hours=escalation_hours,
            escalate_to=escalate_to,
            priority=priority,
        )
    return _make


@pytest.fixture
def make_request(db):
    def _make(credits, requester="req-1", team=TEAM, request_type=RequestType.analyst_qa, **kwargs):
        return approvals.create_request(
            db,
            company_id=COMPANY,
            team_id=team,
            requester_id=requester,
            request_type=request_type,
            title=f"{request_type.value} for {credits} credits",
            estimated_credits=credits,
            **kwargs,
        )
    return _make

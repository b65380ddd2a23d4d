"""
Team budgets carved out of a company's credit pool.

Allocations are advisory: team_budget() reports how much of a team's period
allocation is spent or reserved, but nothing here ever blocks a spend. The
company balance in ledger.py is the only hard limit.
"""

from datetime import date, datetime, time, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from credcore.services.ledger import ledger
from credcore.services.shared.database import transactional
from credcore.services.shared.errors import InvalidAmount
from credcore.services.shared.models import (
    ApprovalRequest, CreditAllocation, CreditHold, EntryDirection, HoldStatus,
    LedgerEntry, ReferenceType, TransactionKind, utcnow,
)

logger = structlog.get_logger()


@transactional
def set_team_allocation(
    db: Session,
    account_id: str,
    team_id: str,
    allocated_credits: int,
    period_start: date,
    period_end: date,
) -> CreditAllocation:
    """Upsert the allocation for (account, team, period_start)."""
    if isinstance(allocated_credits, bool) or not isinstance(allocated_credits, int) or allocated_credits < 0:
        raise InvalidAmount("allocated_credits must be a non-negative integer", detail={"allocated_credits": allocated_credits})
    if period_end <= period_start:
        raise InvalidAmount(
            "period_end must be after period_start",
            detail={"period_start": str(period_start), "period_end": str(period_end)},
        )

    ledger.lock_account(db, account_id)
    now = utcnow()
    allocation = (
        db.query(CreditAllocation)
        .filter(
            CreditAllocation.account_id == account_id,
            CreditAllocation.team_id == team_id,
            CreditAllocation.period_start == period_start,
        )
        .first()
    )
    if allocation is None:
        allocation = CreditAllocation(
            account_id=account_id,
            team_id=team_id,
            period_start=period_start,
            created_at=now,
        )
        db.add(allocation)
    allocation.allocated_credits = allocated_credits
    allocation.period_end = period_end
    allocation.updated_at = now
    db.flush()

    logger.info(
        "team_allocation_set",
        account_id=account_id,
        team_id=team_id,
        allocated=allocated_credits,
        period_start=str(period_start),
        period_end=str(period_end),
    )
    return allocation


def _allocation_on(db: Session, account_id: str, team_id: str, on_date: date) -> Optional[CreditAllocation]:
    return (
        db.query(CreditAllocation)
        .filter(
            CreditAllocation.account_id == account_id,
            CreditAllocation.team_id == team_id,
            CreditAllocation.period_start <= on_date,
            CreditAllocation.period_end >= on_date,
        )
        .order_by(CreditAllocation.period_start.desc())
        .first()
    )


def team_budget(db: Session, account_id: str, team_id: str, on_date: Optional[date] = None) -> dict[str, Any]:
    """
    Allocated vs consumed credits for a team in the period containing `on_date`.
    spent = debits minus refunds booked against the team's requests in the period.
    Without an allocation the whole history counts and allocated is 0.
    """
    account = ledger.get_account(db, account_id)
    on_date = on_date or utcnow().date()
    allocation = _allocation_on(db, account_id, team_id, on_date)

    team_requests = select(ApprovalRequest.id).where(
        ApprovalRequest.company_id == account.company_id,
        ApprovalRequest.team_id == team_id,
    )

    def _sum(*criteria) -> int:
        q = db.query(func.coalesce(func.sum(LedgerEntry.amount), 0)).filter(
            LedgerEntry.account_id == account_id,
            LedgerEntry.reference_type == ReferenceType.request,
            LedgerEntry.reference_id.in_(team_requests),
            *criteria,
        )
        if allocation is not None:
            q = q.filter(
                LedgerEntry.created_at >= datetime.combine(allocation.period_start, time.min),
                LedgerEntry.created_at < datetime.combine(allocation.period_end + timedelta(days=1), time.min),
            )
        return int(q.scalar())

    debits  = _sum(LedgerEntry.direction == EntryDirection.debit)
    refunds = _sum(LedgerEntry.direction == EntryDirection.credit, LedgerEntry.kind == TransactionKind.refund)
    reserved = int(
        db.query(func.coalesce(func.sum(CreditHold.amount), 0))
        .filter(
            CreditHold.account_id == account_id,
            CreditHold.status == HoldStatus.active,
            CreditHold.request_id.in_(team_requests),
        )
        .scalar()
    )

    allocated = allocation.allocated_credits if allocation else 0
    spent = debits - refunds
    return {
        "account_id":   account_id,
        "team_id":      team_id,
        "period_start": allocation.period_start if allocation else None,
        "period_end":   allocation.period_end if allocation else None,
        "allocated":    allocated,
        "spent":        spent,
        "reserved":     reserved,
        "remaining":    allocated - spent - reserved,
    }

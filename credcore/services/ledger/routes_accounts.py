"""
Credit account routes.

  POST /api/accounts                               open the company account (admin)
  GET  /api/accounts/{id}                          account row
  GET  /api/accounts/{id}/balance                  derived balance
  GET  /api/accounts/{id}/transactions             ledger history, newest first
  POST /api/accounts/{id}/spend                    funds-checked direct spend
  POST /api/accounts/{id}/allocations              mid-cycle top-up (admin)
  POST /api/accounts/{id}/adjustments              signed correction (admin)
  PUT  /api/accounts/{id}/teams/{team}/budget      set team allocation (admin)
  GET  /api/accounts/{id}/teams/{team}/budget      team budget report
"""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from credcore.services.ledger import allocations, ledger
from credcore.services.shared.auth import Actor, get_actor
from credcore.services.shared.database import get_db
from credcore.services.shared.errors import Unauthorized
from credcore.services.shared.models import CreditAccount, TransactionKind
from credcore.services.shared.schemas import (
    AccountCreate, AccountOut, AdjustRequest, AllocateRequest, BalanceOut,
    HistoryOut, LedgerEntryOut, SpendRequest, TeamAllocationSet, TeamBudgetOut,
)

router = APIRouter()


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise Unauthorized("Admin role required", detail={"actor_id": actor.user_id})


def account_for_actor(db: Session, account_id: str, actor: Actor) -> CreditAccount:
    account = ledger.get_account(db, account_id)
    if not actor.company_id:
        raise Unauthorized("X-Company-Id header is required", detail={"actor_id": actor.user_id})
    if actor.company_id != account.company_id:
        raise Unauthorized("Account belongs to another company", detail={"account_id": account_id})
    return account


@router.post("/accounts", response_model=AccountOut, status_code=201)
def open_account(req: AccountCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _require_admin(actor)
    return ledger.open_account(
        db,
        company_id=req.company_id,
        subscription_tier=req.subscription_tier,
        subscription_start=req.subscription_start,
        subscription_end=req.subscription_end,
        base_credits=req.base_credits,
        bonus_credits=req.bonus_credits,
    )


@router.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return account_for_actor(db, account_id, actor)


@router.get("/accounts/{account_id}/balance", response_model=BalanceOut)
def get_balance(account_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    account_for_actor(db, account_id, actor)
    return ledger.compute_balance(db, account_id)


@router.get("/accounts/{account_id}/transactions", response_model=HistoryOut)
def list_transactions(
    account_id: str,
    start:  Optional[datetime]        = None,
    end:    Optional[datetime]        = None,
    kind:   Optional[TransactionKind] = None,
    limit:  int                       = Query(50, ge=1, le=500),
    offset: int                       = Query(0, ge=0),
    actor:  Actor                     = Depends(get_actor),
    db:     Session                   = Depends(get_db),
):
    account_for_actor(db, account_id, actor)
    return ledger.history(db, account_id, start=start, end=end, kind=kind, limit=limit, offset=offset)


@router.post("/accounts/{account_id}/spend", response_model=LedgerEntryOut, status_code=201)
def spend(account_id: str, req: SpendRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    account_for_actor(db, account_id, actor)
    return ledger.direct_spend(
        db, account_id, req.amount,
        idempotency_key=req.idempotency_key,
        reference_type=req.reference_type,
        reference_id=req.reference_id,
        description=req.description,
        actor_id=actor.user_id,
    )


@router.post("/accounts/{account_id}/allocations", response_model=LedgerEntryOut, status_code=201)
def allocate(account_id: str, req: AllocateRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _require_admin(actor)
    account_for_actor(db, account_id, actor)
    return ledger.allocate(
        db, account_id, req.amount,
        idempotency_key=req.idempotency_key,
        description=req.description,
        actor_id=actor.user_id,
    )


@router.post("/accounts/{account_id}/adjustments", response_model=LedgerEntryOut, status_code=201)
def adjust(account_id: str, req: AdjustRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _require_admin(actor)
    account_for_actor(db, account_id, actor)
    return ledger.adjust(
        db, account_id, req.delta,
        idempotency_key=req.idempotency_key,
        description=req.description,
        actor_id=actor.user_id,
    )


@router.put("/accounts/{account_id}/teams/{team_id}/budget", response_model=TeamBudgetOut)
def set_team_budget(
    account_id: str,
    team_id: str,
    req: TeamAllocationSet,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    _require_admin(actor)
    account_for_actor(db, account_id, actor)
    allocations.set_team_allocation(
        db, account_id, team_id, req.allocated_credits, req.period_start, req.period_end,
    )
    return allocations.team_budget(db, account_id, team_id, on_date=req.period_start)


@router.get("/accounts/{account_id}/teams/{team_id}/budget", response_model=TeamBudgetOut)
def get_team_budget(
    account_id: str,
    team_id: str,
    on_date: Optional[date] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    account_for_actor(db, account_id, actor)
    return allocations.team_budget(db, account_id, team_id, on_date=on_date)

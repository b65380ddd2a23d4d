"""
Hold routes. The approvals service drives holds in-process; these endpoints
exist for operators and for callers that manage reservations themselves.

  POST /api/holds                 place a hold for a request
  GET  /api/holds/{id}            hold row
  POST /api/holds/{id}/release    release (no ledger entry)
  POST /api/holds/{id}/convert    convert into a hold_conversion debit
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from credcore.services.ledger import holds
from credcore.services.ledger.routes_accounts import account_for_actor
from credcore.services.shared.auth import Actor, get_actor
from credcore.services.shared.database import get_db
from credcore.services.shared.schemas import (
    HoldConvertRequest, HoldConvertedOut, HoldCreate, HoldOut, HoldPlacedOut,
)

router = APIRouter()


@router.post("/holds", response_model=HoldPlacedOut, status_code=201)
def place_hold(req: HoldCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    account_for_actor(db, req.account_id, actor)
    placed = holds.place_hold(db, req.account_id, req.request_id, req.amount, idempotency_key=req.idempotency_key)
    return {"hold": placed.hold, "available": placed.available}


@router.get("/holds/{hold_id}", response_model=HoldOut)
def get_hold(hold_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    hold = holds.get_hold(db, hold_id)
    account_for_actor(db, hold.account_id, actor)
    return hold


@router.post("/holds/{hold_id}/release", response_model=HoldOut)
def release_hold(hold_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    account_for_actor(db, holds.get_hold(db, hold_id).account_id, actor)
    return holds.release_hold(db, hold_id)


@router.post("/holds/{hold_id}/convert", response_model=HoldConvertedOut)
def convert_hold(
    hold_id: str,
    req: HoldConvertRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    account_for_actor(db, holds.get_hold(db, hold_id).account_id, actor)
    entry = holds.convert_hold(
        db, hold_id,
        idempotency_key=req.idempotency_key,
        description=req.description,
        actor_id=actor.user_id,
    )
    return {"hold_id": hold_id, "ledger_entry_id": entry.id}

"""
credcore Hold Manager
---------------------
Reserves credits for a pending request and drives the reservation to a
terminal state:

  active -> converted   approve: hold_conversion debit + status change, one transaction
  active -> released    deny / cancel: no ledger entry, the credits were never debited
  active -> expired     sweeper: same effect as release

Lock order is account row, then hold row.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from credcore.services.ledger import ledger
from credcore.services.shared.database import transactional
from credcore.services.shared.errors import (
    ConflictingKey, DuplicateHold, IllegalTransition, UnknownHold, UnknownRequest,
)
from credcore.services.shared.models import (
    ApprovalRequest, CreditHold, EntryDirection, HoldStatus, LedgerEntry,
    ReferenceType, TransactionKind, utcnow,
)

logger = structlog.get_logger()


@dataclass
class PlacedHold:
    hold: CreditHold
    available: int


def get_hold(db: Session, hold_id: str) -> CreditHold:
    hold = db.get(CreditHold, hold_id)
    if hold is None:
        raise UnknownHold(f"Hold {hold_id} not found", detail={"hold_id": hold_id})
    return hold


def hold_for_request(db: Session, request_id: str) -> Optional[CreditHold]:
    return db.query(CreditHold).filter(CreditHold.request_id == request_id).first()


def active_holds(db: Session, account_id: str) -> list[CreditHold]:
    ledger.get_account(db, account_id)
    return (
        db.query(CreditHold)
        .filter(CreditHold.account_id == account_id, CreditHold.status == HoldStatus.active)
        .order_by(CreditHold.created_at)
        .all()
    )


def _lock_hold(db: Session, hold_id: str) -> CreditHold:
    """Lock the owning account, then the hold itself."""
    hold = get_hold(db, hold_id)
    ledger.lock_account(db, hold.account_id)
    return (
        db.query(CreditHold)
        .filter(CreditHold.id == hold_id)
        .with_for_update()
        .populate_existing()
        .one()
    )


@transactional
def place_hold(
    db: Session,
    account_id: str,
    request_id: str,
    amount: int,
    *,
    idempotency_key: str,
) -> PlacedHold:
    """
    Reserve `amount` for `request_id`. The funds check counts every other active
    hold on the account, so concurrent reservations cannot oversubscribe it.
    """
    ledger.require_positive(amount)
    ledger.lock_account(db, account_id)

    if db.get(ApprovalRequest, request_id) is None:
        raise UnknownRequest(f"Request {request_id} not found", detail={"request_id": request_id})

    existing = hold_for_request(db, request_id)
    if existing is not None:
        if idempotency_key is not None and existing.idempotency_key == idempotency_key:
            if existing.account_id != account_id or existing.amount != amount:
                raise ConflictingKey(
                    f"Idempotency key '{idempotency_key}' was already used for a different hold",
                    detail={"hold_id": existing.id, "amount": existing.amount},
                )
            return PlacedHold(existing, ledger.compute_balance(db, account_id)["available"])
        raise DuplicateHold(
            f"Request {request_id} already has a hold",
            detail={"request_id": request_id, "hold_id": existing.id, "status": existing.status.value},
        )

    ledger.ensure_funds(db, account_id, amount)

    hold = CreditHold(
        account_id=account_id,
        request_id=request_id,
        amount=amount,
        status=HoldStatus.active,
        idempotency_key=idempotency_key,
        created_at=utcnow(),
    )
    db.add(hold)
    db.flush()

    available = ledger.compute_balance(db, account_id)["available"]
    logger.info("hold_placed", hold_id=hold.id, account_id=account_id, request_id=request_id, amount=amount, available=available)
    return PlacedHold(hold, available)


def _finish(db: Session, hold_id: str, target: HoldStatus) -> CreditHold:
    hold = _lock_hold(db, hold_id)
    if hold.status == target:
        return hold
    if hold.status != HoldStatus.active:
        raise IllegalTransition(
            f"Cannot move {hold.status.value} hold to {target.value}",
            detail={"hold_id": hold_id, "status": hold.status.value},
        )
    hold.status = target
    hold.released_at = utcnow()
    logger.info(f"hold_{target.value}", hold_id=hold.id, request_id=hold.request_id, amount=hold.amount)
    return hold


@transactional
def release_hold(db: Session, hold_id: str) -> CreditHold:
    """Return the reserved credits. Releasing a released hold is a no-op."""
    return _finish(db, hold_id, HoldStatus.released)


@transactional
def expire_hold(db: Session, hold_id: str) -> CreditHold:
    """Sweeper-only counterpart of release_hold."""
    return _finish(db, hold_id, HoldStatus.expired)


@transactional
def convert_hold(
    db: Session,
    hold_id: str,
    *,
    idempotency_key: str,
    description: str = "",
    actor_id: Optional[str] = None,
) -> LedgerEntry:
    """
    Turn an active hold into a `hold_conversion` debit and mark it converted.
    No funds check: the amount was already reserved, so available is unchanged.
    A replay with the same key returns the entry written the first time.
    """
    hold = _lock_hold(db, hold_id)

    if hold.status == HoldStatus.converted:
        entry = ledger.find_by_key(db, hold.account_id, idempotency_key)
        if entry is None or entry.kind != TransactionKind.hold_conversion or entry.reference_id != hold.request_id:
            raise IllegalTransition(
                f"Hold {hold_id} was already converted under another key",
                detail={"hold_id": hold_id, "idempotency_key": idempotency_key},
            )
        return entry
    if hold.status != HoldStatus.active:
        raise IllegalTransition(
            f"Cannot convert {hold.status.value} hold",
            detail={"hold_id": hold_id, "status": hold.status.value},
        )

    entry = ledger.append_entry(
        db, hold.account_id, EntryDirection.debit, hold.amount, TransactionKind.hold_conversion,
        reference_type=ReferenceType.request,
        reference_id=hold.request_id,
        description=description,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
    )
    hold.status = HoldStatus.converted
    hold.converted_at = utcnow()
    logger.info("hold_converted", hold_id=hold.id, request_id=hold.request_id, amount=hold.amount, entry_id=entry.id)
    return entry

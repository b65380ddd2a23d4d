"""
credcore Ledger Store
---------------------
Append-only journal of credit/debit entries with per-account idempotency keys,
plus the derived balance.

  available = base + bonus + ledger_credits - ledger_debits - reserved

The four sums are separate aggregate queries. Joining entries to holds would
multiply rows and inflate every sum.

Every mutation locks the account row first, so two writers on one account run
one after the other and the funds check always sees committed state.
"""

from datetime import date, datetime
from typing import Any, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from credcore.services.shared.database import transactional
from credcore.services.shared.errors import (
    ConflictingKey, InsufficientFunds, InvalidAmount, UnknownAccount,
)
from credcore.services.shared.models import (
    CreditAccount, CreditHold, EntryDirection, HoldStatus, LedgerEntry,
    ReferenceType, TransactionKind, as_utc, utcnow,
)

logger = structlog.get_logger()

MAX_HISTORY_PAGE = 500


def require_positive(amount: Any, what: str = "amount") -> int:
    # bool is an int subclass; True must not pass as 1 credit
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"{what} must be a positive integer", detail={what: amount})
    return amount


# ── Accounts ──────────────────────────────────────────────────────────────────

def lock_account(db: Session, account_id: str) -> CreditAccount:
    """SELECT ... FOR UPDATE the account row. Must be the first lock a mutation takes."""
    account = (
        db.query(CreditAccount)
        .filter(CreditAccount.id == account_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if account is None:
        raise UnknownAccount(f"Account {account_id} not found", detail={"account_id": account_id})
    return account


def lock_account_for_company(db: Session, company_id: str, required: bool = True) -> Optional[CreditAccount]:
    account = (
        db.query(CreditAccount)
        .filter(CreditAccount.company_id == company_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if account is None and required:
        raise UnknownAccount(
            f"No credit account for company {company_id}",
            detail={"company_id": company_id},
        )
    return account


def get_account(db: Session, account_id: str) -> CreditAccount:
    account = db.get(CreditAccount, account_id)
    if account is None:
        raise UnknownAccount(f"Account {account_id} not found", detail={"account_id": account_id})
    return account


def get_account_for_company(db: Session, company_id: str) -> CreditAccount:
    account = db.query(CreditAccount).filter(CreditAccount.company_id == company_id).first()
    if account is None:
        raise UnknownAccount(
            f"No credit account for company {company_id}",
            detail={"company_id": company_id},
        )
    return account


@transactional
def open_account(
    db: Session,
    company_id: str,
    subscription_tier: str,
    subscription_start: date,
    subscription_end: date,
    base_credits: int,
    bonus_credits: int = 0,
) -> CreditAccount:
    """
    Create the one credit account for a company.
    The subscription grant is stored on the row only; no ledger entry is written.
    """
    for name, value in (("base_credits", base_credits), ("bonus_credits", bonus_credits)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidAmount(f"{name} must be a non-negative integer", detail={name: value})
    if subscription_end < subscription_start:
        raise InvalidAmount(
            "subscription_end must not precede subscription_start",
            detail={"subscription_start": str(subscription_start), "subscription_end": str(subscription_end)},
        )

    existing = db.query(CreditAccount).filter(CreditAccount.company_id == company_id).first()
    if existing is not None:
        raise ConflictingKey(
            f"Company {company_id} already has a credit account",
            detail={"company_id": company_id, "account_id": existing.id},
        )

    now = utcnow()
    account = CreditAccount(
        company_id=company_id,
        subscription_tier=subscription_tier,
        subscription_start=subscription_start,
        subscription_end=subscription_end,
        base_credits=base_credits,
        bonus_credits=bonus_credits,
        created_at=now,
        updated_at=now,
    )
    db.add(account)
    db.flush()
    logger.info(
        "account_opened",
        account_id=account.id,
        company_id=company_id,
        tier=subscription_tier,
        base_credits=base_credits,
        bonus_credits=bonus_credits,
    )
    return account


# ── Balance ───────────────────────────────────────────────────────────────────

def _sum_entries(db: Session, account_id: str, direction: EntryDirection) -> int:
    return int(
        db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .filter(LedgerEntry.account_id == account_id, LedgerEntry.direction == direction)
        .scalar()
    )


def _sum_active_holds(db: Session, account_id: str) -> int:
    return int(
        db.query(func.coalesce(func.sum(CreditHold.amount), 0))
        .filter(CreditHold.account_id == account_id, CreditHold.status == HoldStatus.active)
        .scalar()
    )


def compute_balance(db: Session, account_id: str, today: Optional[date] = None) -> dict[str, Any]:
    """
    Derived balance for an account. Read-only.

    Called inside a mutation (after lock_account) it sees the transaction's own
    writes; called on its own it reads the latest committed snapshot.
    """
    account = get_account(db, account_id)
    credits  = _sum_entries(db, account_id, EntryDirection.credit)
    debits   = _sum_entries(db, account_id, EntryDirection.debit)
    reserved = _sum_active_holds(db, account_id)

    available = account.base_credits + account.bonus_credits + credits - debits - reserved
    today = today or utcnow().date()
    return {
        "account_id":        account.id,
        "base":              account.base_credits,
        "bonus":             account.bonus_credits,
        "ledger_credits":    credits,
        "ledger_debits":     debits,
        "reserved":          reserved,
        "available":         available,
        "used":              debits,
        "subscription_tier": account.subscription_tier,
        "subscription_end":  account.subscription_end,
        "days_remaining":    max(0, (account.subscription_end - today).days),
    }


def ensure_funds(db: Session, account_id: str, amount: int) -> None:
    available = compute_balance(db, account_id)["available"]
    if available < amount:
        logger.info("insufficient_credits", account_id=account_id, available=available, required=amount)
        raise InsufficientFunds(
            f"Insufficient credits: {available} available, {amount} required",
            detail={"available": available, "required": amount},
        )


# ── Entries ───────────────────────────────────────────────────────────────────

def find_by_key(db: Session, account_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
    return (
        db.query(LedgerEntry)
        .filter(LedgerEntry.account_id == account_id, LedgerEntry.idempotency_key == idempotency_key)
        .first()
    )


def _check_replay(
    existing: LedgerEntry,
    direction: EntryDirection,
    amount: int,
    kind: TransactionKind,
    reference_type: Optional[ReferenceType],
    reference_id: Optional[str],
) -> LedgerEntry:
    """Return `existing` if it records the same write, else raise ConflictingKey."""
    mismatched = [
        name for name, stored, given in (
            ("direction",      existing.direction,      direction),
            ("amount",         existing.amount,         amount),
            ("kind",           existing.kind,           kind),
            ("reference_type", existing.reference_type, reference_type),
            ("reference_id",   existing.reference_id,   reference_id),
        )
        if stored != given
    ]
    if mismatched:
        raise ConflictingKey(
            f"Idempotency key '{existing.idempotency_key}' was already used for a different entry",
            detail={"idempotency_key": existing.idempotency_key, "entry_id": existing.id, "mismatched": mismatched},
        )
    return existing


@transactional
def append_entry(
    db: Session,
    account_id: str,
    direction: EntryDirection,
    amount: int,
    kind: TransactionKind,
    *,
    reference_type: Optional[ReferenceType] = None,
    reference_id: Optional[str] = None,
    description: str = "",
    actor_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> LedgerEntry:
    """
    Insert one ledger entry. With an idempotency key, a replay carrying the same
    direction, amount, kind and reference returns the stored entry unchanged.
    No funds check here; callers that debit use direct_spend or adjust.
    """
    require_positive(amount)
    direction = EntryDirection(direction)
    kind = TransactionKind(kind)
    reference_type = ReferenceType(reference_type) if reference_type is not None else None

    lock_account(db, account_id)

    if idempotency_key is not None:
        existing = find_by_key(db, account_id, idempotency_key)
        if existing is not None:
            logger.info("ledger_entry_replayed", account_id=account_id, entry_id=existing.id, idempotency_key=idempotency_key)
            return _check_replay(existing, direction, amount, kind, reference_type, reference_id)

    entry = LedgerEntry(
        account_id=account_id,
        direction=direction,
        amount=amount,
        kind=kind,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
        created_at=utcnow(),
    )
    db.add(entry)
    db.flush()
    logger.info(
        "ledger_entry_appended",
        account_id=account_id,
        entry_id=entry.id,
        direction=direction.value,
        kind=kind.value,
        amount=amount,
        reference=f"{reference_type.value}:{reference_id}" if reference_type else None,
    )
    return entry


def _checked_debit(
    db: Session,
    account_id: str,
    amount: int,
    kind: TransactionKind,
    idempotency_key: str,
    reference_type: Optional[ReferenceType],
    reference_id: Optional[str],
    description: str,
    actor_id: Optional[str],
) -> LedgerEntry:
    lock_account(db, account_id)
    # A replay must return the original entry even if the balance has since dropped
    existing = find_by_key(db, account_id, idempotency_key) if idempotency_key is not None else None
    if existing is not None:
        return _check_replay(existing, EntryDirection.debit, amount, kind, reference_type, reference_id)

    ensure_funds(db, account_id, amount)
    return append_entry(
        db, account_id, EntryDirection.debit, amount, kind,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
    )


@transactional
def direct_spend(
    db: Session,
    account_id: str,
    amount: int,
    *,
    idempotency_key: str,
    reference_type: Optional[ReferenceType] = None,
    reference_id: Optional[str] = None,
    description: str = "",
    actor_id: Optional[str] = None,
) -> LedgerEntry:
    """Funds-checked debit of kind `spend`."""
    require_positive(amount)
    reference_type = ReferenceType(reference_type) if reference_type is not None else None
    return _checked_debit(
        db, account_id, amount, TransactionKind.spend, idempotency_key,
        reference_type, reference_id, description, actor_id,
    )


@transactional
def allocate(
    db: Session,
    account_id: str,
    amount: int,
    *,
    idempotency_key: str,
    description: str = "Mid-cycle top-up",
    actor_id: Optional[str] = None,
) -> LedgerEntry:
    """Mid-cycle top-up. The subscription grant itself is never booked here."""
    return append_entry(
        db, account_id, EntryDirection.credit, amount, TransactionKind.allocation,
        reference_type=ReferenceType.admin,
        description=description,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
    )


@transactional
def refund(
    db: Session,
    account_id: str,
    amount: int,
    *,
    idempotency_key: str,
    reference_type: Optional[ReferenceType] = None,
    reference_id: Optional[str] = None,
    description: str = "",
    actor_id: Optional[str] = None,
) -> LedgerEntry:
    return append_entry(
        db, account_id, EntryDirection.credit, amount, TransactionKind.refund,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
    )


@transactional
def adjust(
    db: Session,
    account_id: str,
    delta: int,
    *,
    idempotency_key: str,
    description: str,
    actor_id: Optional[str] = None,
) -> LedgerEntry:
    """
    Signed admin correction. Positive delta credits, negative delta debits and
    is funds-checked like a spend.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise InvalidAmount("delta must be a non-zero integer", detail={"delta": delta})

    if delta > 0:
        return append_entry(
            db, account_id, EntryDirection.credit, delta, TransactionKind.adjustment,
            reference_type=ReferenceType.admin,
            description=description,
            actor_id=actor_id,
            idempotency_key=idempotency_key,
        )
    return _checked_debit(
        db, account_id, -delta, TransactionKind.adjustment, idempotency_key,
        ReferenceType.admin, None, description, actor_id,
    )


# ── History ───────────────────────────────────────────────────────────────────

def history(
    db: Session,
    account_id: str,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    kind: Optional[TransactionKind] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """Entries newest first, filtered by time window [start, end) and kind."""
    get_account(db, account_id)
    limit = max(1, min(limit, MAX_HISTORY_PAGE))
    offset = max(0, offset)

    q = db.query(LedgerEntry).filter(LedgerEntry.account_id == account_id)
    if start is not None:
        q = q.filter(LedgerEntry.created_at >= as_utc(start))
    if end is not None:
        q = q.filter(LedgerEntry.created_at < as_utc(end))
    if kind is not None:
        q = q.filter(LedgerEntry.kind == TransactionKind(kind))

    total = q.count()
    entries = (
        q.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {"entries": entries, "total": total, "has_more": offset + len(entries) < total}


def entries_for_reference(db: Session, reference_type: ReferenceType, reference_id: str) -> list[LedgerEntry]:
    return (
        db.query(LedgerEntry)
        .filter(LedgerEntry.reference_type == reference_type, LedgerEntry.reference_id == reference_id)
        .order_by(LedgerEntry.created_at)
        .all()
    )

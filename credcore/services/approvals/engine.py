"""
credcore Approval Engine
------------------------
Owns the request state machine and coordinates the Hold Manager and Ledger
Store so each transition commits together with its money movement and its
audit event.

  draft ──submit──► pending ──approve──► approved ──fulfil──► fulfilled
    │    (auto level: draft ──► approved, debited immediately)
    │                 ├─deny────► denied
    │                 ├─cancel──► cancelled
    │                 └─expire──► expired
    └──cancel──► cancelled          approved ──cancel──► cancelled

Idempotency keys derived from the request id:
  spend:<rid>    auto-approved debit
  hold:<rid>     reservation on submit
  convert:<rid>  hold conversion on approve
  truing:<rid>   fulfilment delta (debit or refund)
  refund:<rid>   refund on cancel after approval (REFUND_ON_CANCEL)

Every status change, reassignment or comment appends exactly one
ApprovalEvent, numbered by `sequence` under the request row lock.
"""

import os
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from credcore.services.approvals import routing
from credcore.services.ledger import holds, ledger
from credcore.services.shared.auth import Actor, ActorRole
from credcore.services.shared.database import transactional
from credcore.services.shared.errors import (
    ConflictingKey, IllegalTransition, InvalidAmount, RuleMisconfigured,
    Unauthorized, UnknownHold, UnknownRequest,
)
from credcore.services.shared.models import (
    ApprovalEvent, ApprovalEventType, ApprovalLevel,
    ApprovalRequest, CreditAccount, HoldStatus, ReferenceType, RequestStatus,
    RequestType, as_utc, utcnow,
)

logger = structlog.get_logger()

DEFAULT_SLA_HOURS: int          = int(os.getenv("DEFAULT_SLA_HOURS", "72"))
ALLOW_DEFAULT_ROUTING: bool     = os.getenv("ALLOW_DEFAULT_ROUTING", "true").lower() == "true"
REFUND_ON_CANCEL: bool          = os.getenv("REFUND_ON_CANCEL", "false").lower() == "true"
NEARING_ESCALATION_HOURS: float = float(os.getenv("NEARING_ESCALATION_HOURS", "4"))
MAX_ESCALATIONS: int            = int(os.getenv("MAX_ESCALATIONS", "1"))

VALID_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.draft:     frozenset({RequestStatus.pending, RequestStatus.approved, RequestStatus.cancelled}),
    RequestStatus.pending:   frozenset({RequestStatus.approved, RequestStatus.denied, RequestStatus.cancelled, RequestStatus.expired}),
    RequestStatus.approved:  frozenset({RequestStatus.fulfilled, RequestStatus.cancelled}),
    RequestStatus.denied:    frozenset(),
    RequestStatus.cancelled: frozenset(),
    RequestStatus.expired:   frozenset(),
    RequestStatus.fulfilled: frozenset(),
}


# ── Pure rules ────────────────────────────────────────────────────────────────

def check_transition(current: RequestStatus, target: RequestStatus) -> None:
    if target not in VALID_TRANSITIONS[RequestStatus(current)]:
        raise IllegalTransition(
            f"Cannot move request from {RequestStatus(current).value} to {RequestStatus(target).value}",
            detail={"from": RequestStatus(current).value, "to": RequestStatus(target).value},
        )


def can_approve(request: ApprovalRequest, user_id: str, role: str) -> bool:
    """Pending, not the requester, and either an admin or the assigned approver."""
    if request.status != RequestStatus.pending:
        return False
    if user_id == request.requester_id:
        return False
    if role == ActorRole.admin:
        return True
    return role == ActorRole.approver and user_id == request.current_approver_id


def can_cancel(request: ApprovalRequest, user_id: str, role: str) -> bool:
    return user_id == request.requester_id or role == ActorRole.admin


def can_fulfil(request: ApprovalRequest, user_id: str, role: str) -> bool:
    return role in (ActorRole.admin, ActorRole.approver) or user_id == request.decided_by


def escalation_eligible(request: ApprovalRequest, max_escalations: Optional[int] = None) -> bool:
    limit = MAX_ESCALATIONS if max_escalations is None else max_escalations
    rule = request.rule
    return (
        request.status == RequestStatus.pending
        and rule is not None
        and rule.escalate_to is not None
        and request.escalation_count < limit
    )


def hours_until(deadline: Optional[datetime], now: datetime) -> Optional[float]:
    if deadline is None:
        return None
    return round((deadline - now).total_seconds() / 3600, 2)


# ── Internals ─────────────────────────────────────────────────────────────────

def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utcnow()


def get_request(db: Session, request_id: str) -> ApprovalRequest:
    request = db.get(ApprovalRequest, request_id)
    if request is None:
        raise UnknownRequest(f"Request {request_id} not found", detail={"request_id": request_id})
    return request


def _lock(db: Session, request_id: str, account: str = "none") -> tuple[Optional[CreditAccount], ApprovalRequest]:
    """
    Lock the company account (account="required" or "optional"), then the request.
    Account first, always, so request locks never wait behind a ledger writer
    that is waiting on us.
    """
    request = get_request(db, request_id)
    locked_account = None
    if account != "none":
        locked_account = ledger.lock_account_for_company(db, request.company_id, required=(account == "required"))
    request = (
        db.query(ApprovalRequest)
        .filter(ApprovalRequest.id == request_id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    return locked_account, request


def _emit(
    db: Session,
    request: ApprovalRequest,
    event_type: ApprovalEventType,
    *,
    actor_id: Optional[str],
    is_system: bool = False,
    from_status: Optional[RequestStatus] = None,
    to_status: Optional[RequestStatus] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ApprovalEvent:
    last = (
        db.query(func.coalesce(func.max(ApprovalEvent.sequence), 0))
        .filter(ApprovalEvent.request_id == request.id)
        .scalar()
    )
    event = ApprovalEvent(
        request_id=request.id,
        sequence=int(last) + 1,
        event_type=event_type,
        actor_id=actor_id,
        is_system=is_system,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        metadata_json=metadata or {},
        created_at=now or utcnow(),
    )
    request.events.append(event)
    db.flush()
    return event


def _transition(
    db: Session,
    request: ApprovalRequest,
    target: RequestStatus,
    event_type: ApprovalEventType,
    now: datetime,
    *,
    actor_id: Optional[str],
    is_system: bool = False,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> ApprovalEvent:
    previous = request.status
    check_transition(previous, target)
    request.status = target
    request.updated_at = now
    return _emit(
        db, request, event_type,
        actor_id=actor_id,
        is_system=is_system,
        from_status=previous,
        to_status=target,
        reason=reason,
        metadata=metadata,
        now=now,
    )


def _request_reference(request: ApprovalRequest) -> dict[str, Any]:
    return {"reference_type": ReferenceType.request, "reference_id": request.id}


# ── Lifecycle operations ──────────────────────────────────────────────────────

@transactional
def create_request(
    db: Session,
    *,
    company_id: str,
    team_id: str,
    requester_id: str,
    request_type: RequestType,
    title: str,
    estimated_credits: int,
    description: Optional[str] = None,
    context: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """
    Insert a draft. A caller-chosen `request_id` makes creation retry-safe: the
    same id with the same attributes returns the stored draft.
    """
    ledger.require_positive(estimated_credits, "estimated_credits")
    request_type = RequestType(request_type)
    now = _now(now)

    if request_id is not None:
        existing = db.get(ApprovalRequest, request_id)
        if existing is not None:
            same = (
                existing.company_id == company_id
                and existing.team_id == team_id
                and existing.requester_id == requester_id
                and existing.request_type == request_type
                and existing.title == title
                and existing.estimated_credits == estimated_credits
            )
            if not same:
                raise ConflictingKey(
                    f"Request id {request_id} already exists with different attributes",
                    detail={"request_id": request_id},
                )
            return existing

    kwargs = {"id": request_id} if request_id is not None else {}
    request = ApprovalRequest(
        company_id=company_id,
        team_id=team_id,
        requester_id=requester_id,
        request_type=request_type,
        status=RequestStatus.draft,
        title=title,
        description=description,
        context=context or {},
        estimated_credits=estimated_credits,
        escalation_count=0,
        created_at=now,
        updated_at=now,
        **kwargs,
    )
    db.add(request)
    db.flush()
    _emit(
        db, request, ApprovalEventType.created,
        actor_id=requester_id,
        to_status=RequestStatus.draft,
        metadata={"estimated_credits": estimated_credits, "request_type": request_type.value},
        now=now,
    )
    logger.info("request_created", request_id=request.id, company_id=company_id, team_id=team_id, estimated=estimated_credits)
    return request


@transactional
def submit(db: Session, request_id: str, actor: Actor, *, now: Optional[datetime] = None) -> ApprovalRequest:
    """
    Route and submit a draft.
      auto level: debit `spend:<rid>` and approve immediately
      otherwise:  hold `hold:<rid>`, assign an approver, start the SLA clock
    A repeated submit of an already-submitted request returns it unchanged.
    """
    now = _now(now)
    account, request = _lock(db, request_id, account="required")

    if actor.user_id != request.requester_id:
        raise Unauthorized("Only the requester can submit a request", detail={"request_id": request_id})
    if request.submitted_at is not None:
        return request
    if request.status != RequestStatus.draft:
        check_transition(request.status, RequestStatus.pending)

    rule = routing.find_rule(db, request.company_id, request.estimated_credits)
    if rule is None:
        if not ALLOW_DEFAULT_ROUTING:
            raise RuleMisconfigured(
                f"No active approval rule covers {request.estimated_credits} credits",
                detail={"company_id": request.company_id, "estimated_credits": request.estimated_credits},
            )
        level = ApprovalLevel.admin
    else:
        level = rule.approver_role

    request.approval_level = level
    request.rule_id = rule.id if rule else None
    request.submitted_at = now

    if level == ApprovalLevel.auto:
        entry = ledger.direct_spend(
            db, account.id, request.estimated_credits,
            idempotency_key=f"spend:{request.id}",
            description=f"Auto-approved: {request.title}",
            actor_id=request.requester_id,
            **_request_reference(request),
        )
        request.decided_at = now
        _transition(
            db, request, RequestStatus.approved, ApprovalEventType.auto_approved, now,
            actor_id=None,
            is_system=True,
            metadata={"ledger_entry_id": entry.id, "rule_id": request.rule_id},
        )
        logger.info("request_auto_approved", request_id=request.id, amount=request.estimated_credits, entry_id=entry.id)
        return request

    placed = holds.place_hold(
        db, account.id, request.id, request.estimated_credits,
        idempotency_key=f"hold:{request.id}",
    )
    request.current_approver_id = routing.pick_approver(
        db, request.company_id, request.team_id, level, request.estimated_credits,
        exclude=[request.requester_id],
        today=now.date(),
    )
    sla_hours = rule.escalation_hours if rule is not None and rule.escalation_hours else DEFAULT_SLA_HOURS
    request.expires_at = now + timedelta(hours=sla_hours)
    _transition(
        db, request, RequestStatus.pending, ApprovalEventType.submitted, now,
        actor_id=actor.user_id,
        metadata={
            "hold_id":             placed.hold.id,
            "available":           placed.available,
            "approval_level":      level.value,
            "current_approver_id": request.current_approver_id,
            "rule_id":             request.rule_id,
        },
    )
    logger.info(
        "request_submitted",
        request_id=request.id,
        level=level.value,
        approver=request.current_approver_id,
        expires_at=request.expires_at.isoformat(),
    )
    return request


def _active_hold(db: Session, request: ApprovalRequest):
    hold = holds.hold_for_request(db, request.id)
    if hold is None:
        raise UnknownHold(f"Request {request.id} has no hold", detail={"request_id": request.id})
    return hold


@transactional
def approve(
    db: Session,
    request_id: str,
    actor: Actor,
    *,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    now = _now(now)
    _, request = _lock(db, request_id, account="required")

    if request.status == RequestStatus.approved and request.decided_by == actor.user_id:
        return request
    if request.status != RequestStatus.pending:
        raise IllegalTransition(
            f"Cannot approve a {request.status.value} request",
            detail={"from": request.status.value, "to": RequestStatus.approved.value},
        )
    if not can_approve(request, actor.user_id, actor.role):
        raise Unauthorized(
            "Actor may not approve this request",
            detail={"request_id": request_id, "actor_id": actor.user_id, "current_approver_id": request.current_approver_id},
        )

    hold = _active_hold(db, request)
    entry = holds.convert_hold(
        db, hold.id,
        idempotency_key=f"convert:{request.id}",
        description=f"Approved: {request.title}",
        actor_id=actor.user_id,
    )
    request.decided_by = actor.user_id
    request.decided_at = now
    request.decision_reason = note
    _transition(
        db, request, RequestStatus.approved, ApprovalEventType.approved, now,
        actor_id=actor.user_id,
        reason=note,
        metadata={"hold_id": hold.id, "ledger_entry_id": entry.id},
    )
    logger.info("request_approved", request_id=request.id, approver=actor.user_id, amount=hold.amount)
    return request


@transactional
def deny(
    db: Session,
    request_id: str,
    actor: Actor,
    *,
    reason: str,
    code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    if not reason or not reason.strip():
        raise InvalidAmount("A reason is required to deny a request")
    now = _now(now)
    _, request = _lock(db, request_id, account="required")

    if request.status == RequestStatus.denied and request.decided_by == actor.user_id:
        return request
    check_transition(request.status, RequestStatus.denied)
    if not can_approve(request, actor.user_id, actor.role):
        raise Unauthorized(
            "Actor may not deny this request",
            detail={"request_id": request_id, "actor_id": actor.user_id},
        )

    hold = holds.release_hold(db, _active_hold(db, request).id)
    request.decided_by = actor.user_id
    request.decided_at = now
    request.decision_reason = reason
    _transition(
        db, request, RequestStatus.denied, ApprovalEventType.denied, now,
        actor_id=actor.user_id,
        reason=reason,
        metadata={"hold_id": hold.id, "code": code},
    )
    logger.info("request_denied", request_id=request.id, approver=actor.user_id, code=code)
    return request


@transactional
def cancel(
    db: Session,
    request_id: str,
    actor: Actor,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """
    Cancel from draft, pending or approved. An active hold is released. Credits
    already booked by an approval stay booked unless REFUND_ON_CANCEL is set.
    """
    now = _now(now)
    account, request = _lock(db, request_id, account="optional")

    if not can_cancel(request, actor.user_id, actor.role):
        raise Unauthorized(
            "Only the requester or an admin can cancel a request",
            detail={"request_id": request_id, "actor_id": actor.user_id},
        )
    if request.status == RequestStatus.cancelled:
        return request
    previous = request.status
    check_transition(previous, RequestStatus.cancelled)

    metadata: dict[str, Any] = {}
    hold = holds.hold_for_request(db, request.id)
    if hold is not None and hold.status == HoldStatus.active:
        holds.release_hold(db, hold.id)
        metadata["hold_id"] = hold.id
    if previous == RequestStatus.approved and REFUND_ON_CANCEL:
        entry = ledger.refund(
            db, account.id, request.estimated_credits,
            idempotency_key=f"refund:{request.id}",
            description=f"Cancelled after approval: {request.title}",
            actor_id=actor.user_id,
            **_request_reference(request),
        )
        metadata["refund_entry_id"] = entry.id

    _transition(
        db, request, RequestStatus.cancelled, ApprovalEventType.cancelled, now,
        actor_id=actor.user_id,
        reason=reason,
        metadata=metadata,
    )
    logger.info("request_cancelled", request_id=request.id, actor=actor.user_id, previous=previous.value)
    return request


@transactional
def escalate(
    db: Session,
    request_id: str,
    *,
    now: Optional[datetime] = None,
    max_escalations: Optional[int] = None,
) -> ApprovalRequest:
    """
    System-triggered: move a pending request to its rule's escalate-to level,
    reassign it and extend the deadline by the rule's escalation interval.
    """
    now = _now(now)
    _, request = _lock(db, request_id)

    if request.status != RequestStatus.pending:
        raise IllegalTransition("Only pending requests escalate", detail={"status": request.status.value})
    if not escalation_eligible(request, max_escalations):
        raise IllegalTransition(
            f"Request {request_id} cannot be escalated",
            detail={"escalation_count": request.escalation_count, "rule_id": request.rule_id},
        )

    rule = request.rule
    previous_level = request.approval_level
    previous_approver = request.current_approver_id
    new_approver = routing.pick_approver(
        db, request.company_id, request.team_id, rule.escalate_to, request.estimated_credits,
        exclude=[request.requester_id],
        today=now.date(),
    )

    request.escalation_count += 1
    request.approval_level = rule.escalate_to
    request.current_approver_id = new_approver or previous_approver
    request.expires_at = max(request.expires_at or now, now) + timedelta(hours=rule.escalation_hours)
    request.updated_at = now
    _emit(
        db, request, ApprovalEventType.escalated,
        actor_id=None,
        is_system=True,
        from_status=RequestStatus.pending,
        to_status=RequestStatus.pending,
        reason=f"SLA breached; escalated to {rule.escalate_to.value}",
        metadata={
            "escalation_count": request.escalation_count,
            "from_level":       previous_level.value if previous_level else None,
            "to_level":         rule.escalate_to.value,
            "from_approver_id": previous_approver,
            "to_approver_id":   request.current_approver_id,
            "expires_at":       request.expires_at.isoformat(),
        },
        now=now,
    )
    logger.info(
        "request_escalated",
        request_id=request.id,
        to_level=rule.escalate_to.value,
        approver=request.current_approver_id,
        escalation_count=request.escalation_count,
    )
    return request


@transactional
def expire(db: Session, request_id: str, *, now: Optional[datetime] = None) -> ApprovalRequest:
    """System-triggered: release the hold and close the request as expired."""
    now = _now(now)
    _, request = _lock(db, request_id, account="required")

    if request.status == RequestStatus.expired:
        return request
    check_transition(request.status, RequestStatus.expired)

    hold = holds.expire_hold(db, _active_hold(db, request).id)
    _transition(
        db, request, RequestStatus.expired, ApprovalEventType.expired, now,
        actor_id=None,
        is_system=True,
        reason="SLA deadline passed without a decision",
        metadata={"hold_id": hold.id, "escalation_count": request.escalation_count},
    )
    logger.info("request_expired", request_id=request.id, amount=hold.amount)
    return request


@transactional
def fulfil(
    db: Session,
    request_id: str,
    actor: Actor,
    *,
    actual_credits: int,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """
    Record what the work actually cost and true up against the estimate under
    key `truing:<rid>`: an extra debit when it cost more, a refund when less.
    """
    if isinstance(actual_credits, bool) or not isinstance(actual_credits, int) or actual_credits < 0:
        raise InvalidAmount("actual_credits must be a non-negative integer", detail={"actual_credits": actual_credits})
    now = _now(now)
    account, request = _lock(db, request_id, account="required")

    if request.status == RequestStatus.fulfilled:
        if request.actual_credits == actual_credits:
            return request
        raise ConflictingKey(
            f"Request {request_id} was already fulfilled with {request.actual_credits} credits",
            detail={"actual_credits": request.actual_credits},
        )
    check_transition(request.status, RequestStatus.fulfilled)
    if not can_fulfil(request, actor.user_id, actor.role):
        raise Unauthorized(
            "Actor may not fulfil this request",
            detail={"request_id": request_id, "actor_id": actor.user_id},
        )

    delta = actual_credits - request.estimated_credits
    metadata: dict[str, Any] = {"delta": delta}
    if delta > 0:
        entry = ledger.direct_spend(
            db, account.id, delta,
            idempotency_key=f"truing:{request.id}",
            description=f"Fulfilment true-up: {request.title}",
            actor_id=actor.user_id,
            **_request_reference(request),
        )
        metadata["truing_entry_id"] = entry.id
    elif delta < 0:
        entry = ledger.refund(
            db, account.id, -delta,
            idempotency_key=f"truing:{request.id}",
            description=f"Fulfilment under estimate: {request.title}",
            actor_id=actor.user_id,
            **_request_reference(request),
        )
        metadata["truing_entry_id"] = entry.id

    request.actual_credits = actual_credits
    request.fulfilled_at = now
    _transition(
        db, request, RequestStatus.fulfilled, ApprovalEventType.fulfilled, now,
        actor_id=actor.user_id,
        metadata=metadata,
    )
    logger.info("request_fulfilled", request_id=request.id, estimated=request.estimated_credits, actual=actual_credits)
    return request


@transactional
def add_comment(
    db: Session,
    request_id: str,
    actor: Actor,
    body: str,
    *,
    now: Optional[datetime] = None,
) -> ApprovalEvent:
    if not body or not body.strip():
        raise InvalidAmount("Comment body must not be empty")
    now = _now(now)
    _, request = _lock(db, request_id)
    event = _emit(db, request, ApprovalEventType.comment, actor_id=actor.user_id, reason=body, now=now)
    request.updated_at = now
    return event


# ── Queries ───────────────────────────────────────────────────────────────────

def list_requests(
    db: Session,
    *,
    company_id: Optional[str] = None,
    team_id: Optional[str] = None,
    requester_id: Optional[str] = None,
    approver_id: Optional[str] = None,
    statuses: Optional[Iterable[RequestStatus]] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    limit = max(1, min(limit, 500))
    offset = max(0, offset)

    q = db.query(ApprovalRequest)
    if company_id is not None:
        q = q.filter(ApprovalRequest.company_id == company_id)
    if team_id is not None:
        q = q.filter(ApprovalRequest.team_id == team_id)
    if requester_id is not None:
        q = q.filter(ApprovalRequest.requester_id == requester_id)
    if approver_id is not None:
        q = q.filter(
            (ApprovalRequest.current_approver_id == approver_id) | (ApprovalRequest.decided_by == approver_id)
        )
    if statuses:
        q = q.filter(ApprovalRequest.status.in_([RequestStatus(s) for s in statuses]))

    total = q.count()
    rows = (
        q.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {"requests": rows, "total": total, "has_more": offset + len(rows) < total}


def approval_queue(db: Session, actor: Actor, *, now: Optional[datetime] = None) -> dict[str, Any]:
    """
    Pending requests assigned to the actor, soonest deadline first. Admins also
    see admin-level requests that no one could be assigned to.
    """
    now = _now(now)
    assigned = ApprovalRequest.current_approver_id == actor.user_id
    if actor.role == ActorRole.admin:
        assigned = assigned | (
            (ApprovalRequest.current_approver_id == None)  # noqa: E711
            & (ApprovalRequest.approval_level == ApprovalLevel.admin)
        )

    q = db.query(ApprovalRequest).filter(ApprovalRequest.status == RequestStatus.pending, assigned)
    if actor.company_id is not None:
        q = q.filter(ApprovalRequest.company_id == actor.company_id)
    rows = q.order_by(ApprovalRequest.expires_at, ApprovalRequest.created_at).all()

    items = [{"request": r, "hours_until_deadline": hours_until(r.expires_at, now)} for r in rows]
    nearing = [
        item for item in items
        if item["hours_until_deadline"] is not None and item["hours_until_deadline"] <= NEARING_ESCALATION_HOURS
    ]
    return {"total_pending": len(items), "items": items, "nearing_escalation": nearing}

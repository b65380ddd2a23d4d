"""
credcore sweepers
-----------------
Advance pending requests whose SLA deadline has passed:

  escalation sweep  due, rule has an escalate-to level, escalation_count < max
  expiration sweep  due and not eligible for further escalation

Each request is handled in its own session and transaction, oldest deadline
first. Eligibility is re-checked under the request lock, so overlapping or
repeated sweeps never apply a transition twice. A failure on one request is
logged and the sweep moves on.
"""

import asyncio
import os
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import Session

from credcore.services.approvals import engine
from credcore.services.shared.database import SessionLocal, transactional
from credcore.services.shared.errors import CreditCoreError
from credcore.services.shared.models import ApprovalRequest, RequestStatus, as_utc, utcnow

logger = structlog.get_logger()

SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))


def _due_request_ids(db: Session, now: datetime) -> list[str]:
    rows = (
        db.query(ApprovalRequest.id)
        .filter(
            ApprovalRequest.status == RequestStatus.pending,
            ApprovalRequest.expires_at != None,  # noqa: E711
            ApprovalRequest.expires_at <= now,
        )
        .order_by(ApprovalRequest.expires_at, ApprovalRequest.id)
        .all()
    )
    return [r[0] for r in rows]


def _is_due(request: ApprovalRequest, now: datetime) -> bool:
    return (
        request.status == RequestStatus.pending
        and request.expires_at is not None
        and request.expires_at <= now
    )


@transactional
def _escalate_if_due(db: Session, request_id: str, now: datetime, max_escalations: int) -> bool:
    request = engine.get_request(db, request_id)
    if not _is_due(request, now) or not engine.escalation_eligible(request, max_escalations):
        return False
    engine.escalate(db, request_id, now=now, max_escalations=max_escalations)
    return True


@transactional
def _expire_if_due(db: Session, request_id: str, now: datetime, max_escalations: int) -> bool:
    request = engine.get_request(db, request_id)
    if not _is_due(request, now) or engine.escalation_eligible(request, max_escalations):
        return False
    engine.expire(db, request_id, now=now)
    return True


def _sweep(
    name: str,
    step: Callable[[Session, str, datetime, int], bool],
    session_factory: Callable[[], Session],
    now: Optional[datetime],
    max_escalations: Optional[int],
) -> int:
    now = as_utc(now) if now is not None else utcnow()
    limit = engine.MAX_ESCALATIONS if max_escalations is None else max_escalations

    db = session_factory()
    try:
        request_ids = _due_request_ids(db, now)
    finally:
        db.close()

    count = 0
    for request_id in request_ids:
        db = session_factory()
        try:
            if step(db, request_id, now, limit):
                count += 1
        except CreditCoreError as exc:
            logger.warning(f"{name}_request_error", request_id=request_id, kind=exc.kind, error=exc.message)
        finally:
            db.close()

    logger.info(f"{name}_complete", processed=count, candidates=len(request_ids))
    return count


def run_escalation_sweep(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    now: Optional[datetime] = None,
    max_escalations: Optional[int] = None,
) -> int:
    """Escalate every due, eligible pending request. Returns how many were escalated."""
    return _sweep("escalation_sweep", _escalate_if_due, session_factory, now, max_escalations)


def run_expiration_sweep(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    now: Optional[datetime] = None,
    max_escalations: Optional[int] = None,
) -> int:
    """Expire every due pending request that cannot escalate further. Returns how many expired."""
    return _sweep("expiration_sweep", _expire_if_due, session_factory, now, max_escalations)


def run_sweep_once(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    now: Optional[datetime] = None,
    max_escalations: Optional[int] = None,
) -> dict[str, int]:
    now = as_utc(now) if now is not None else utcnow()
    escalated = run_escalation_sweep(session_factory, now=now, max_escalations=max_escalations)
    expired = run_expiration_sweep(session_factory, now=now, max_escalations=max_escalations)
    return {"escalated": escalated, "expired": expired}


async def run_sweep_loop(interval_seconds: int = SWEEP_INTERVAL_SECONDS):
    """Background loop: escalation then expiration sweep every `interval_seconds`."""
    logger.info("sweep_loop_started", interval=interval_seconds)
    while True:
        try:
            result = await asyncio.get_event_loop().run_in_executor(None, run_sweep_once)
            if result["escalated"] or result["expired"]:
                logger.info("sweep_cycle_complete", **result)
        except Exception as exc:
            logger.error("sweep_loop_error", error=str(exc))
        await asyncio.sleep(interval_seconds)

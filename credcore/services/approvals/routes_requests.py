"""
Approval request routes.

Request lifecycle:
  POST /api/requests                   create draft (requester = caller)
  POST /api/requests/{id}/submit       route; auto-approve or hold + assign
  POST /api/requests/{id}/approve      convert hold, status=approved
  POST /api/requests/{id}/deny         release hold, status=denied
  POST /api/requests/{id}/cancel       release hold if any, status=cancelled
  POST /api/requests/{id}/fulfil       true up against the estimate
  POST /api/requests/{id}/comments     comment event
  GET  /api/requests                   filtered list, newest first
  GET  /api/requests/{id}              request with its events
  GET  /api/approvals/queue            caller's pending queue
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from credcore.services.approvals import engine
from credcore.services.shared.auth import Actor, get_actor
from credcore.services.shared.database import get_db
from credcore.services.shared.errors import Unauthorized, UnknownRequest
from credcore.services.shared.models import ApprovalRequest, RequestStatus
from credcore.services.shared.schemas import (
    ApprovalEventOut, ApprovalQueueOut, ApprovalRequestDetailOut, ApprovalRequestOut,
    CancelRequest, CommentCreate, DecisionRequest, DenyRequest, FulfilRequest,
    RequestCreate, RequestListOut,
)

router = APIRouter()


def _require_company(actor: Actor) -> str:
    if not actor.company_id:
        raise Unauthorized("X-Company-Id header is required", detail={"actor_id": actor.user_id})
    return actor.company_id


def _visible(db: Session, request_id: str, actor: Actor) -> ApprovalRequest:
    request = engine.get_request(db, request_id)
    if request.company_id != _require_company(actor):
        # other companies' requests read as missing
        raise UnknownRequest(f"Request {request_id} not found", detail={"request_id": request_id})
    return request


@router.post("/requests", response_model=ApprovalRequestOut, status_code=201)
def create_request(req: RequestCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return engine.create_request(
        db,
        company_id=_require_company(actor),
        team_id=req.team_id,
        requester_id=actor.user_id,
        request_type=req.request_type,
        title=req.title,
        description=req.description,
        context=req.context,
        estimated_credits=req.estimated_credits,
    )


@router.get("/requests", response_model=RequestListOut)
def list_requests(
    team_id:      Optional[str]                 = None,
    requester_id: Optional[str]                 = None,
    approver_id:  Optional[str]                 = None,
    status:       Optional[list[RequestStatus]] = Query(None),
    limit:        int                           = Query(50, ge=1, le=500),
    offset:       int                           = Query(0, ge=0),
    actor:        Actor                         = Depends(get_actor),
    db:           Session                       = Depends(get_db),
):
    return engine.list_requests(
        db,
        company_id=_require_company(actor),
        team_id=team_id,
        requester_id=requester_id,
        approver_id=approver_id,
        statuses=status,
        limit=limit,
        offset=offset,
    )


@router.get("/requests/{request_id}", response_model=ApprovalRequestDetailOut)
def get_request(request_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return _visible(db, request_id, actor)


@router.post("/requests/{request_id}/submit", response_model=ApprovalRequestOut)
def submit(request_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _visible(db, request_id, actor)
    return engine.submit(db, request_id, actor)


@router.post("/requests/{request_id}/approve", response_model=ApprovalRequestOut)
def approve(
    request_id: str,
    req: Optional[DecisionRequest] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    _visible(db, request_id, actor)
    return engine.approve(db, request_id, actor, note=req.note if req else None)


@router.post("/requests/{request_id}/deny", response_model=ApprovalRequestOut)
def deny(request_id: str, req: DenyRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _visible(db, request_id, actor)
    return engine.deny(db, request_id, actor, reason=req.reason, code=req.code)


@router.post("/requests/{request_id}/cancel", response_model=ApprovalRequestOut)
def cancel(
    request_id: str,
    req: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    _visible(db, request_id, actor)
    return engine.cancel(db, request_id, actor, reason=req.reason if req else None)


@router.post("/requests/{request_id}/fulfil", response_model=ApprovalRequestOut)
def fulfil(request_id: str, req: FulfilRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _visible(db, request_id, actor)
    return engine.fulfil(db, request_id, actor, actual_credits=req.actual_credits)


@router.post("/requests/{request_id}/comments", response_model=ApprovalEventOut, status_code=201)
def add_comment(request_id: str, req: CommentCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _visible(db, request_id, actor)
    return engine.add_comment(db, request_id, actor, req.body)


@router.get("/approvals/queue", response_model=ApprovalQueueOut)
def approval_queue(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    _require_company(actor)
    return engine.approval_queue(db, actor)

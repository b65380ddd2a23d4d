"""
Routing configuration routes (admin only for writes).

  GET    /api/rules                            active rules (?include_inactive=true for all)
  POST   /api/rules                            create rule
  POST   /api/rules/defaults                   seed the three default tiers
  PATCH  /api/rules/{id}                       update rule
  DELETE /api/rules/{id}                       deactivate rule
  GET    /api/assignments                      approver assignments (?team_id=)
  POST   /api/assignments                      assign approver (upsert on team + user)
  PUT    /api/assignments/{id}/delegation      set delegation window
  DELETE /api/assignments/{id}/delegation      clear delegation
  DELETE /api/assignments/{id}                 deactivate assignment
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from credcore.services.approvals import routing
from credcore.services.shared.auth import Actor, get_actor
from credcore.services.shared.database import get_db
from credcore.services.shared.errors import Unauthorized
from credcore.services.shared.schemas import (
    AssignmentCreate, AssignmentOut, DelegationSet, RuleCreate, RuleOut, RuleUpdate,
)

router = APIRouter()


def _admin_company(actor: Actor) -> str:
    if not actor.is_admin:
        raise Unauthorized("Admin role required", detail={"actor_id": actor.user_id})
    return _company(actor)


def _company(actor: Actor) -> str:
    if not actor.company_id:
        raise Unauthorized("X-Company-Id header is required", detail={"actor_id": actor.user_id})
    return actor.company_id


# ── Rules ─────────────────────────────────────────────────────────────────────

@router.get("/rules", response_model=list[RuleOut])
def list_rules(include_inactive: bool = False, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.list_rules(db, _company(actor), include_inactive=include_inactive)


@router.post("/rules", response_model=RuleOut, status_code=201)
def create_rule(req: RuleCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.create_rule(db, _admin_company(actor), **req.model_dump())


@router.post("/rules/defaults", response_model=list[RuleOut], status_code=201)
def seed_default_rules(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.seed_default_rules(db, _admin_company(actor))


@router.patch("/rules/{rule_id}", response_model=RuleOut)
def update_rule(rule_id: str, req: RuleUpdate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.update_rule(db, rule_id, _admin_company(actor), **req.model_dump(exclude_unset=True))


@router.delete("/rules/{rule_id}", response_model=RuleOut)
def deactivate_rule(rule_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.deactivate_rule(db, rule_id, _admin_company(actor))


# ── Assignments ───────────────────────────────────────────────────────────────

@router.get("/assignments", response_model=list[AssignmentOut])
def list_assignments(
    team_id: Optional[str] = None,
    include_inactive: bool = False,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return routing.list_assignments(db, _company(actor), team_id=team_id, include_inactive=include_inactive)


@router.post("/assignments", response_model=AssignmentOut, status_code=201)
def assign_approver(req: AssignmentCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.assign_approver(
        db, _admin_company(actor), req.team_id, req.user_id, req.approver_level, req.approval_ceiling,
    )


@router.put("/assignments/{assignment_id}/delegation", response_model=AssignmentOut)
def set_delegation(
    assignment_id: str,
    req: DelegationSet,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return routing.set_delegation(
        db, assignment_id, req.delegated_to, req.delegation_start, req.delegation_end,
        company_id=_admin_company(actor),
    )


@router.delete("/assignments/{assignment_id}/delegation", response_model=AssignmentOut)
def clear_delegation(assignment_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.clear_delegation(db, assignment_id, _admin_company(actor))


@router.delete("/assignments/{assignment_id}", response_model=AssignmentOut)
def deactivate_assignment(assignment_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return routing.deactivate_assignment(db, assignment_id, _admin_company(actor))

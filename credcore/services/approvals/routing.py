"""
credcore routing
----------------
Threshold rules decide a request's approval level; approver assignments decide
who handles it.

Rule matching: active rules of the company with min <= amount <= max (null max
is unbounded), lowest priority first.

Approver selection for a level and team:
  1. active assignments at that level; admins also count at approver level
  2. drop assignments whose approval_ceiling is below the amount
  3. the effective user is the delegate while today is inside the delegation
     window, otherwise the assignee
  4. drop the requester
  5. fewest pending requests wins, ties broken by user id
"""

from datetime import date
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from credcore.services.shared.database import transactional
from credcore.services.shared.errors import (
    InvalidAmount, RuleMisconfigured, UnknownAssignment, UnknownRule,
)
from credcore.services.shared.models import (
    ApprovalLevel, ApprovalRequest, ApprovalRule, ApproverAssignment,
    RequestStatus, utcnow,
)

logger = structlog.get_logger()

# (min, max, role, escalation_hours, escalate_to, priority)
DEFAULT_RULES = [
    (0,    499,  ApprovalLevel.auto,     None, None,                1),
    (500,  2000, ApprovalLevel.approver, 48,   ApprovalLevel.admin, 2),
    (2001, None, ApprovalLevel.admin,    None, None,                3),
]


# ── Rules ─────────────────────────────────────────────────────────────────────

def validate_rule(
    min_credits: int,
    max_credits: Optional[int],
    approver_role: ApprovalLevel,
    escalation_hours: Optional[int],
    escalate_to: Optional[ApprovalLevel],
) -> None:
    if isinstance(min_credits, bool) or not isinstance(min_credits, int) or min_credits < 0:
        raise InvalidAmount("min_credits must be a non-negative integer", detail={"min_credits": min_credits})
    if max_credits is not None and max_credits <= min_credits:
        raise RuleMisconfigured(
            "max_credits must be greater than min_credits",
            detail={"min_credits": min_credits, "max_credits": max_credits},
        )
    if (escalation_hours is None) != (escalate_to is None):
        raise RuleMisconfigured(
            "escalation_hours and escalate_to must be set together",
            detail={"escalation_hours": escalation_hours, "escalate_to": escalate_to},
        )
    if escalation_hours is not None and escalation_hours <= 0:
        raise RuleMisconfigured("escalation_hours must be positive", detail={"escalation_hours": escalation_hours})
    if escalate_to == ApprovalLevel.auto:
        raise RuleMisconfigured("A rule cannot escalate to auto approval")


def find_rule(db: Session, company_id: str, amount: int) -> Optional[ApprovalRule]:
    return (
        db.query(ApprovalRule)
        .filter(
            ApprovalRule.company_id == company_id,
            ApprovalRule.is_active == True,  # noqa: E712
            ApprovalRule.min_credits <= amount,
            (ApprovalRule.max_credits == None) | (ApprovalRule.max_credits >= amount),  # noqa: E711
        )
        .order_by(ApprovalRule.priority, ApprovalRule.created_at, ApprovalRule.id)
        .first()
    )


def get_rule(db: Session, rule_id: str, company_id: Optional[str] = None) -> ApprovalRule:
    rule = db.get(ApprovalRule, rule_id)
    if rule is None or (company_id is not None and rule.company_id != company_id):
        raise UnknownRule(f"Rule {rule_id} not found", detail={"rule_id": rule_id})
    return rule


def list_rules(db: Session, company_id: str, include_inactive: bool = False) -> list[ApprovalRule]:
    q = db.query(ApprovalRule).filter(ApprovalRule.company_id == company_id)
    if not include_inactive:
        q = q.filter(ApprovalRule.is_active == True)  # noqa: E712
    return q.order_by(ApprovalRule.priority, ApprovalRule.min_credits).all()


@transactional
def create_rule(
    db: Session,
    company_id: str,
    *,
    min_credits: int,
    max_credits: Optional[int] = None,
    approver_role: ApprovalLevel,
    escalation_hours: Optional[int] = None,
    escalate_to: Optional[ApprovalLevel] = None,
    priority: int = 0,
) -> ApprovalRule:
    approver_role = ApprovalLevel(approver_role)
    escalate_to = ApprovalLevel(escalate_to) if escalate_to is not None else None
    validate_rule(min_credits, max_credits, approver_role, escalation_hours, escalate_to)

    now = utcnow()
    rule = ApprovalRule(
        company_id=company_id,
        min_credits=min_credits,
        max_credits=max_credits,
        approver_role=approver_role,
        escalation_hours=escalation_hours,
        escalate_to=escalate_to,
        priority=priority,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(rule)
    db.flush()
    logger.info("rule_created", rule_id=rule.id, company_id=company_id, role=approver_role.value, min=min_credits, max=max_credits)
    return rule


@transactional
def update_rule(db: Session, rule_id: str, company_id: Optional[str] = None, **changes: Any) -> ApprovalRule:
    """Apply `changes` (only the fields given) and re-validate the rule as a whole."""
    rule = get_rule(db, rule_id, company_id)
    allowed = {"min_credits", "max_credits", "approver_role", "escalation_hours", "escalate_to", "priority", "is_active"}
    unknown = set(changes) - allowed
    if unknown:
        raise RuleMisconfigured(f"Unknown rule fields: {sorted(unknown)}")

    merged = {
        "min_credits":      rule.min_credits,
        "max_credits":      rule.max_credits,
        "approver_role":    rule.approver_role,
        "escalation_hours": rule.escalation_hours,
        "escalate_to":      rule.escalate_to,
    }
    merged.update({k: v for k, v in changes.items() if k in merged})
    merged["approver_role"] = ApprovalLevel(merged["approver_role"])
    if merged["escalate_to"] is not None:
        merged["escalate_to"] = ApprovalLevel(merged["escalate_to"])
    validate_rule(**merged)

    for field, value in merged.items():
        setattr(rule, field, value)
    if changes.get("priority") is not None:
        rule.priority = changes["priority"]
    if changes.get("is_active") is not None:
        rule.is_active = changes["is_active"]
    rule.updated_at = utcnow()
    logger.info("rule_updated", rule_id=rule.id, fields=sorted(changes))
    return rule


@transactional
def deactivate_rule(db: Session, rule_id: str, company_id: Optional[str] = None) -> ApprovalRule:
    rule = get_rule(db, rule_id, company_id)
    rule.is_active = False
    rule.updated_at = utcnow()
    logger.info("rule_deactivated", rule_id=rule.id)
    return rule


@transactional
def seed_default_rules(db: Session, company_id: str) -> list[ApprovalRule]:
    """Insert the three default tiers unless the company already has rules."""
    existing = list_rules(db, company_id, include_inactive=True)
    if existing:
        return existing
    return [
        create_rule(
            db, company_id,
            min_credits=lo, max_credits=hi, approver_role=role,
            escalation_hours=hours, escalate_to=target, priority=priority,
        )
        for lo, hi, role, hours, target, priority in DEFAULT_RULES
    ]


# ── Assignments ───────────────────────────────────────────────────────────────

def get_assignment(db: Session, assignment_id: str, company_id: Optional[str] = None) -> ApproverAssignment:
    assignment = db.get(ApproverAssignment, assignment_id)
    if assignment is None or (company_id is not None and assignment.company_id != company_id):
        raise UnknownAssignment(f"Assignment {assignment_id} not found", detail={"assignment_id": assignment_id})
    return assignment


def list_assignments(
    db: Session,
    company_id: str,
    team_id: Optional[str] = None,
    include_inactive: bool = False,
) -> list[ApproverAssignment]:
    q = db.query(ApproverAssignment).filter(ApproverAssignment.company_id == company_id)
    if team_id is not None:
        q = q.filter(ApproverAssignment.team_id == team_id)
    if not include_inactive:
        q = q.filter(ApproverAssignment.is_active == True)  # noqa: E712
    return q.order_by(ApproverAssignment.team_id, ApproverAssignment.user_id).all()


@transactional
def assign_approver(
    db: Session,
    company_id: str,
    team_id: str,
    user_id: str,
    approver_level: ApprovalLevel,
    approval_ceiling: Optional[int] = None,
) -> ApproverAssignment:
    """Upsert on (team, user); re-assigning reactivates a deactivated row."""
    approver_level = ApprovalLevel(approver_level)
    if approver_level == ApprovalLevel.auto:
        raise RuleMisconfigured("Approver level must be approver or admin")
    if approval_ceiling is not None and approval_ceiling < 0:
        raise InvalidAmount("approval_ceiling must be non-negative", detail={"approval_ceiling": approval_ceiling})

    now = utcnow()
    assignment = (
        db.query(ApproverAssignment)
        .filter(ApproverAssignment.team_id == team_id, ApproverAssignment.user_id == user_id)
        .first()
    )
    if assignment is None:
        assignment = ApproverAssignment(team_id=team_id, user_id=user_id, created_at=now)
        db.add(assignment)
    assignment.company_id = company_id
    assignment.approver_level = approver_level
    assignment.approval_ceiling = approval_ceiling
    assignment.is_active = True
    assignment.updated_at = now
    db.flush()
    logger.info("approver_assigned", assignment_id=assignment.id, team_id=team_id, user_id=user_id, level=approver_level.value)
    return assignment


@transactional
def set_delegation(
    db: Session,
    assignment_id: str,
    delegated_to: str,
    delegation_start: date,
    delegation_end: date,
    company_id: Optional[str] = None,
) -> ApproverAssignment:
    assignment = get_assignment(db, assignment_id, company_id)
    if delegation_end < delegation_start:
        raise InvalidAmount(
            "delegation_end must not precede delegation_start",
            detail={"delegation_start": str(delegation_start), "delegation_end": str(delegation_end)},
        )
    if delegated_to == assignment.user_id:
        raise InvalidAmount("An approver cannot delegate to themselves", detail={"user_id": delegated_to})
    assignment.delegated_to = delegated_to
    assignment.delegation_start = delegation_start
    assignment.delegation_end = delegation_end
    assignment.updated_at = utcnow()
    logger.info("delegation_set", assignment_id=assignment.id, delegated_to=delegated_to)
    return assignment


@transactional
def clear_delegation(db: Session, assignment_id: str, company_id: Optional[str] = None) -> ApproverAssignment:
    assignment = get_assignment(db, assignment_id, company_id)
    assignment.delegated_to = None
    assignment.delegation_start = None
    assignment.delegation_end = None
    assignment.updated_at = utcnow()
    return assignment


@transactional
def deactivate_assignment(db: Session, assignment_id: str, company_id: Optional[str] = None) -> ApproverAssignment:
    assignment = get_assignment(db, assignment_id, company_id)
    assignment.is_active = False
    assignment.updated_at = utcnow()
    logger.info("approver_deactivated", assignment_id=assignment.id)
    return assignment


# ── Approver selection ────────────────────────────────────────────────────────

def levels_for(level: ApprovalLevel) -> list[ApprovalLevel]:
    if level == ApprovalLevel.approver:
        return [ApprovalLevel.approver, ApprovalLevel.admin]
    return [ApprovalLevel.admin]


def effective_user(assignment: ApproverAssignment, today: date) -> str:
    if (
        assignment.delegated_to
        and assignment.delegation_start is not None
        and assignment.delegation_end is not None
        and assignment.delegation_start <= today <= assignment.delegation_end
    ):
        return assignment.delegated_to
    return assignment.user_id


def candidate_users(
    assignments: Iterable[ApproverAssignment],
    amount: int,
    today: date,
    exclude: Iterable[str] = (),
) -> list[str]:
    """Effective users able to decide `amount`, deduplicated, in no particular order."""
    excluded = set(exclude)
    users = []
    for a in assignments:
        if a.approval_ceiling is not None and a.approval_ceiling < amount:
            continue
        user = effective_user(a, today)
        if user in excluded or user in users:
            continue
        users.append(user)
    return users


def rank_candidates(users: Iterable[str], queue_sizes: dict[str, int]) -> list[str]:
    return sorted(users, key=lambda u: (queue_sizes.get(u, 0), u))


def pending_queue_sizes(db: Session, users: list[str]) -> dict[str, int]:
    if not users:
        return {}
    rows = (
        db.query(ApprovalRequest.current_approver_id, func.count(ApprovalRequest.id))
        .filter(
            ApprovalRequest.status == RequestStatus.pending,
            ApprovalRequest.current_approver_id.in_(users),
        )
        .group_by(ApprovalRequest.current_approver_id)
        .all()
    )
    return {user: int(count) for user, count in rows}


def available_approvers(
    db: Session,
    company_id: str,
    team_id: str,
    level: ApprovalLevel,
    amount: int,
    *,
    exclude: Iterable[str] = (),
    today: Optional[date] = None,
) -> list[str]:
    """Eligible effective users for the level, best candidate first."""
    today = today or utcnow().date()
    assignments = (
        db.query(ApproverAssignment)
        .filter(
            ApproverAssignment.company_id == company_id,
            ApproverAssignment.team_id == team_id,
            ApproverAssignment.is_active == True,  # noqa: E712
            ApproverAssignment.approver_level.in_(levels_for(level)),
        )
        .all()
    )
    users = candidate_users(assignments, amount, today, exclude)
    return rank_candidates(users, pending_queue_sizes(db, users))


def pick_approver(
    db: Session,
    company_id: str,
    team_id: str,
    level: ApprovalLevel,
    amount: int,
    *,
    exclude: Iterable[str] = (),
    today: Optional[date] = None,
) -> Optional[str]:
    ranked = available_approvers(db, company_id, team_id, level, amount, exclude=exclude, today=today)
    if not ranked:
        logger.warning("no_approver_available", company_id=company_id, team_id=team_id, level=level.value, amount=amount)
        return None
    return ranked[0]

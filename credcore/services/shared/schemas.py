"""
Pydantic request/response schemas for all credcore services.
All API responses use these schemas for type safety and documentation.
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from credcore.services.shared.models import (
    ApprovalEventType, ApprovalLevel, EntryDirection, HoldStatus,
    ReferenceType, RequestStatus, RequestType, TransactionKind,
)


# ── Accounts & balance ────────────────────────────────────────────────────────

class AccountCreate(BaseModel):
    company_id: str
    subscription_tier: str
    subscription_start: date
    subscription_end: date
    base_credits: int = Field(..., ge=0)
    bonus_credits: int = Field(0, ge=0)


class AccountOut(BaseModel):
    id: str
    company_id: str
    subscription_tier: str
    subscription_start: date
    subscription_end: date
    base_credits: int
    bonus_credits: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BalanceOut(BaseModel):
    account_id: str
    base: int
    bonus: int
    ledger_credits: int
    ledger_debits: int
    reserved: int
    available: int
    used: int
    subscription_tier: str
    subscription_end: date
    days_remaining: int


# ── Ledger entries ────────────────────────────────────────────────────────────

class LedgerEntryOut(BaseModel):
    id: str
    account_id: str
    direction: EntryDirection
    amount: int
    kind: TransactionKind
    reference_type: Optional[ReferenceType]
    reference_id: Optional[str]
    description: str
    actor_id: Optional[str]
    idempotency_key: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class HistoryOut(BaseModel):
    entries: list[LedgerEntryOut]
    total: int
    has_more: bool


class SpendRequest(BaseModel):
    amount: int
    idempotency_key: str
    reference_type: Optional[ReferenceType] = None
    reference_id: Optional[str] = None
    description: str = ""


class AllocateRequest(BaseModel):
    amount: int
    idempotency_key: str
    description: str = "Mid-cycle top-up"


class AdjustRequest(BaseModel):
    delta: int = Field(..., description="Signed credit adjustment; negative values debit")
    idempotency_key: str
    description: str = Field(..., min_length=1)


# ── Team budgets ──────────────────────────────────────────────────────────────

class TeamAllocationSet(BaseModel):
    allocated_credits: int = Field(..., ge=0)
    period_start: date
    period_end: date


class TeamBudgetOut(BaseModel):
    account_id: str
    team_id: str
    period_start: Optional[date]
    period_end: Optional[date]
    allocated: int
    spent: int
    reserved: int
    remaining: int


# ── Holds ─────────────────────────────────────────────────────────────────────

class HoldCreate(BaseModel):
    account_id: str
    request_id: str
    amount: int
    idempotency_key: str


class HoldOut(BaseModel):
    id: str
    account_id: str
    request_id: str
    amount: int
    status: HoldStatus
    created_at: datetime
    released_at: Optional[datetime]
    converted_at: Optional[datetime]

    class Config:
        from_attributes = True


class HoldPlacedOut(BaseModel):
    hold: HoldOut
    available: int


class HoldConvertRequest(BaseModel):
    idempotency_key: str
    description: str = "Hold converted"


class HoldConvertedOut(BaseModel):
    hold_id: str
    ledger_entry_id: str


# ── Approval requests ─────────────────────────────────────────────────────────

class RequestCreate(BaseModel):
    team_id: str
    request_type: RequestType
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    context: dict[str, Any] = {}
    estimated_credits: int


class DecisionRequest(BaseModel):
    note: Optional[str] = None


class DenyRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    code: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class FulfilRequest(BaseModel):
    actual_credits: int = Field(..., ge=0)


class CommentCreate(BaseModel):
    body: str = Field(..., min_length=1)


class ApprovalEventOut(BaseModel):
    id: str
    request_id: str
    sequence: int
    event_type: ApprovalEventType
    actor_id: Optional[str]
    is_system: bool
    from_status: Optional[RequestStatus]
    to_status: Optional[RequestStatus]
    reason: Optional[str]
    metadata_json: dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True


class ApprovalRequestOut(BaseModel):
    id: str
    company_id: str
    team_id: str
    requester_id: str
    request_type: RequestType
    status: RequestStatus
    title: str
    description: Optional[str]
    context: dict[str, Any]
    estimated_credits: int
    actual_credits: Optional[int]
    approval_level: Optional[ApprovalLevel]
    rule_id: Optional[str]
    current_approver_id: Optional[str]
    escalation_count: int
    decision_reason: Optional[str]
    decided_by: Optional[str]
    created_at: datetime
    updated_at: datetime
    submitted_at: Optional[datetime]
    decided_at: Optional[datetime]
    fulfilled_at: Optional[datetime]
    expires_at: Optional[datetime]

    class Config:
        from_attributes = True


class ApprovalRequestDetailOut(ApprovalRequestOut):
    events: list[ApprovalEventOut] = []


class RequestListOut(BaseModel):
    requests: list[ApprovalRequestOut]
    total: int
    has_more: bool


class QueueItemOut(BaseModel):
    request: ApprovalRequestOut
    hours_until_deadline: Optional[float]


class ApprovalQueueOut(BaseModel):
    total_pending: int
    items: list[QueueItemOut]
    nearing_escalation: list[QueueItemOut]


# ── Rules & assignments ───────────────────────────────────────────────────────

class RuleCreate(BaseModel):
    min_credits: int = Field(..., ge=0)
    max_credits: Optional[int] = None
    approver_role: ApprovalLevel
    escalation_hours: Optional[int] = Field(None, gt=0)
    escalate_to: Optional[ApprovalLevel] = None
    priority: int = 0


class RuleUpdate(BaseModel):
    min_credits: Optional[int] = Field(None, ge=0)
    max_credits: Optional[int] = None
    approver_role: Optional[ApprovalLevel] = None
    escalation_hours: Optional[int] = Field(None, gt=0)
    escalate_to: Optional[ApprovalLevel] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class RuleOut(BaseModel):
    id: str
    company_id: str
    min_credits: int
    max_credits: Optional[int]
    approver_role: ApprovalLevel
    escalation_hours: Optional[int]
    escalate_to: Optional[ApprovalLevel]
    priority: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AssignmentCreate(BaseModel):
    team_id: str
    user_id: str
    approver_level: ApprovalLevel
    approval_ceiling: Optional[int] = Field(None, ge=0)


class DelegationSet(BaseModel):
    delegated_to: str
    delegation_start: date
    delegation_end: date


class AssignmentOut(BaseModel):
    id: str
    company_id: str
    team_id: str
    user_id: str
    approver_level: ApprovalLevel
    approval_ceiling: Optional[int]
    delegated_to: Optional[str]
    delegation_start: Optional[date]
    delegation_end: Optional[date]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ── Sweeps ────────────────────────────────────────────────────────────────────

class SweepResultOut(BaseModel):
    escalated: int
    expired: int

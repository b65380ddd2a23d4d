"""
credcore SQLAlchemy ORM models - all data models in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column for full type-checker support.

Tables:
  CreditAccount, LedgerEntry, CreditHold, CreditAllocation,
  ApprovalRequest, ApprovalEvent, ApprovalRule, ApproverAssignment

Accounting invariant:
  The subscription grant lives ONLY on CreditAccount (base_credits + bonus_credits).
  It is never written as a LedgerEntry; ledger 'allocation' entries are mid-cycle
  top-ups. Writing the grant into the ledger as well would double-count it.

  available = base + bonus + SUM(credit entries) - SUM(debit entries) - SUM(active holds)

Timestamps are naive UTC (see utcnow). Ledger entries and approval events are
append-only; parents use ON DELETE RESTRICT so audit history cannot be removed.
"""

import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, Enum as SAEnum, ForeignKey,
    Index, Integer, JSON, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from credcore.services.shared.database import Base


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Normalise an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Enumerations ──────────────────────────────────────────────────────────────

class EntryDirection(str, enum.Enum):
    credit = "credit"
    debit  = "debit"


class TransactionKind(str, enum.Enum):
    allocation      = "allocation"       # mid-cycle top-up only
    spend           = "spend"            # direct spend, truing debit
    hold_conversion = "hold_conversion"  # approved hold turned into a debit
    refund          = "refund"
    adjustment      = "adjustment"       # manual admin correction
    expiry          = "expiry"
    rollover        = "rollover"


class ReferenceType(str, enum.Enum):
    request      = "request"
    subscription = "subscription"
    admin        = "admin"
    system       = "system"


class HoldStatus(str, enum.Enum):
    active    = "active"
    converted = "converted"
    released  = "released"
    expired   = "expired"


class RequestType(str, enum.Enum):
    report_upgrade  = "report_upgrade"
    analyst_qa      = "analyst_qa"
    analyst_call    = "analyst_call"
    expert_consult  = "expert_consult"
    expert_deepdive = "expert_deepdive"
    bespoke_project = "bespoke_project"


class RequestStatus(str, enum.Enum):
    draft     = "draft"
    pending   = "pending"
    approved  = "approved"
    denied    = "denied"
    cancelled = "cancelled"
    expired   = "expired"
    fulfilled = "fulfilled"


TERMINAL_STATUSES = frozenset({
    RequestStatus.denied,
    RequestStatus.cancelled,
    RequestStatus.expired,
    RequestStatus.fulfilled,
})


class ApprovalLevel(str, enum.Enum):
    auto     = "auto"
    approver = "approver"
    admin    = "admin"


class ApprovalEventType(str, enum.Enum):
    created       = "created"
    submitted     = "submitted"
    auto_approved = "auto_approved"
    assigned      = "assigned"
    approved      = "approved"
    denied        = "denied"
    escalated     = "escalated"
    reassigned    = "reassigned"
    cancelled     = "cancelled"
    expired       = "expired"
    fulfilled     = "fulfilled"
    comment       = "comment"


# ── Credit accounts ───────────────────────────────────────────────────────────

class CreditAccount(Base):
    """
    One credit pool per company. base_credits/bonus_credits are the subscription
    grant and the source of truth for it.
    """
    __tablename__ = "credit_accounts"

    id:                 Mapped[str]      = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id:         Mapped[str]      = mapped_column(String(255), nullable=False, unique=True)
    subscription_tier:  Mapped[str]      = mapped_column(String(50), nullable=False)
    subscription_start: Mapped[date]     = mapped_column(Date, nullable=False)
    subscription_end:   Mapped[date]     = mapped_column(Date, nullable=False)
    base_credits:       Mapped[int]      = mapped_column(Integer, nullable=False)
    bonus_credits:      Mapped[int]      = mapped_column(Integer, nullable=False, default=0)
    created_at:         Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at:         Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("base_credits >= 0", name="ck_account_base_non_negative"),
        CheckConstraint("bonus_credits >= 0", name="ck_account_bonus_non_negative"),
        Index("ix_credit_accounts_company", "company_id"),
    )


class LedgerEntry(Base):
    """
    Immutable, append-only record of every balance change except the initial grant.
    amount is always positive; direction says which way it moves the balance.
    (account_id, idempotency_key) is unique so retries write at most once.
    """
    __tablename__ = "ledger_entries"

    id:              Mapped[str]                     = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id:      Mapped[str]                     = mapped_column(String(36), ForeignKey("credit_accounts.id", ondelete="RESTRICT"), nullable=False)
    direction:       Mapped[EntryDirection]          = mapped_column(SAEnum(EntryDirection), nullable=False)
    amount:          Mapped[int]                     = mapped_column(Integer, nullable=False)
    kind:            Mapped[TransactionKind]         = mapped_column(SAEnum(TransactionKind), nullable=False)
    reference_type:  Mapped[Optional[ReferenceType]] = mapped_column(SAEnum(ReferenceType), nullable=True)
    reference_id:    Mapped[Optional[str]]           = mapped_column(String(255), nullable=True)
    description:     Mapped[str]                     = mapped_column(Text, nullable=False, default="")
    actor_id:        Mapped[Optional[str]]           = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[Optional[str]]           = mapped_column(String(255), nullable=True)
    created_at:      Mapped[datetime]                = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_ledger_idempotency"),
        CheckConstraint("amount > 0", name="ck_ledger_amount_positive"),
        Index("ix_ledger_account_created", "account_id", "created_at"),
        Index("ix_ledger_account_kind", "account_id", "kind"),
        Index(
            "ix_ledger_reference", "reference_type", "reference_id",
            postgresql_where=text("reference_id IS NOT NULL"),
            sqlite_where=text("reference_id IS NOT NULL"),
        ),
    )


class CreditHold(Base):
    """
    Reservation of credits for one pending request.
    active -> converted | released | expired; terminal states never change.
    Only active holds count towards `reserved`.
    """
    __tablename__ = "credit_holds"

    id:              Mapped[str]                = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id:      Mapped[str]                = mapped_column(String(36), ForeignKey("credit_accounts.id", ondelete="RESTRICT"), nullable=False)
    request_id:      Mapped[str]                = mapped_column(String(36), ForeignKey("approval_requests.id", ondelete="RESTRICT"), nullable=False, unique=True)
    amount:          Mapped[int]                = mapped_column(Integer, nullable=False)
    status:          Mapped[HoldStatus]         = mapped_column(SAEnum(HoldStatus), nullable=False, default=HoldStatus.active)
    idempotency_key: Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    created_at:      Mapped[datetime]           = mapped_column(DateTime, default=utcnow, nullable=False)
    released_at:     Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    converted_at:    Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_hold_amount_positive"),
        Index(
            "ix_holds_account_active", "account_id",
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class CreditAllocation(Base):
    """
    Team budget carved out of the company pool for one period.
    Advisory: reported by team_budget(), never enforced on spend.
    """
    __tablename__ = "credit_allocations"

    id:                Mapped[str]      = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id:        Mapped[str]      = mapped_column(String(36), ForeignKey("credit_accounts.id", ondelete="RESTRICT"), nullable=False)
    team_id:           Mapped[str]      = mapped_column(String(255), nullable=False)
    allocated_credits: Mapped[int]      = mapped_column(Integer, nullable=False)
    period_start:      Mapped[date]     = mapped_column(Date, nullable=False)
    period_end:        Mapped[date]     = mapped_column(Date, nullable=False)
    created_at:        Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at:        Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "team_id", "period_start", name="uq_allocations_team_period"),
        CheckConstraint("allocated_credits >= 0", name="ck_allocation_non_negative"),
        CheckConstraint("period_end > period_start", name="ck_allocation_period"),
        Index("ix_allocations_team", "team_id", "period_start"),
    )


# ── Approval workflow ─────────────────────────────────────────────────────────

class ApprovalRequest(Base):
    """
    A requester's ask for a credit-priced action, driven through the state machine
    in approvals/engine.py. rule_id remembers the routing rule matched at submit
    so escalation uses the same SLA configuration.
    """
    __tablename__ = "approval_requests"

    id:                  Mapped[str]                     = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id:          Mapped[str]                     = mapped_column(String(255), nullable=False)
    team_id:             Mapped[str]                     = mapped_column(String(255), nullable=False)
    requester_id:        Mapped[str]                     = mapped_column(String(255), nullable=False)
    request_type:        Mapped[RequestType]             = mapped_column(SAEnum(RequestType), nullable=False)
    status:              Mapped[RequestStatus]           = mapped_column(SAEnum(RequestStatus), nullable=False, default=RequestStatus.draft)
    title:               Mapped[str]                     = mapped_column(String(255), nullable=False)
    description:         Mapped[Optional[str]]           = mapped_column(Text, nullable=True)
    context:             Mapped[dict[str, Any]]          = mapped_column(JSON, default=dict)
    estimated_credits:   Mapped[int]                     = mapped_column(Integer, nullable=False)
    actual_credits:      Mapped[Optional[int]]           = mapped_column(Integer, nullable=True)
    approval_level:      Mapped[Optional[ApprovalLevel]] = mapped_column(SAEnum(ApprovalLevel), nullable=True)
    rule_id:             Mapped[Optional[str]]           = mapped_column(String(36), ForeignKey("approval_rules.id"), nullable=True)
    current_approver_id: Mapped[Optional[str]]           = mapped_column(String(255), nullable=True)
    escalation_count:    Mapped[int]                     = mapped_column(Integer, nullable=False, default=0)
    decision_reason:     Mapped[Optional[str]]           = mapped_column(Text, nullable=True)
    decided_by:          Mapped[Optional[str]]           = mapped_column(String(255), nullable=True)
    created_at:          Mapped[datetime]                = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at:          Mapped[datetime]                = mapped_column(DateTime, default=utcnow, nullable=False)
    submitted_at:        Mapped[Optional[datetime]]      = mapped_column(DateTime, nullable=True)
    decided_at:          Mapped[Optional[datetime]]      = mapped_column(DateTime, nullable=True)
    fulfilled_at:        Mapped[Optional[datetime]]      = mapped_column(DateTime, nullable=True)
    expires_at:          Mapped[Optional[datetime]]      = mapped_column(DateTime, nullable=True)

    events: Mapped[List["ApprovalEvent"]] = relationship(
        "ApprovalEvent", back_populates="request", order_by="ApprovalEvent.sequence",
    )
    rule: Mapped[Optional["ApprovalRule"]] = relationship("ApprovalRule")

    __table_args__ = (
        CheckConstraint("estimated_credits > 0", name="ck_request_estimated_positive"),
        CheckConstraint("actual_credits IS NULL OR actual_credits >= 0", name="ck_request_actual_non_negative"),
        CheckConstraint("status != 'fulfilled' OR actual_credits IS NOT NULL", name="ck_request_actual_on_fulfil"),
        Index("ix_requests_company_status", "company_id", "status"),
        Index("ix_requests_requester", "requester_id", "created_at"),
        Index("ix_requests_team", "team_id", "status"),
        Index(
            "ix_requests_approver_pending", "current_approver_id", "status",
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "ix_requests_expires", "expires_at",
            postgresql_where=text("status = 'pending' AND expires_at IS NOT NULL"),
            sqlite_where=text("status = 'pending' AND expires_at IS NOT NULL"),
        ),
    )


class ApprovalEvent(Base):
    """
    Immutable audit trail of request state changes, reassignments and comments.
    sequence is 1-based per request and assigned under the request row lock,
    so it is the commit order of the request's events.
    """
    __tablename__ = "approval_events"

    id:            Mapped[str]                     = mapped_column(String(36), primary_key=True, default=_uuid)
    request_id:    Mapped[str]                     = mapped_column(String(36), ForeignKey("approval_requests.id", ondelete="RESTRICT"), nullable=False)
    sequence:      Mapped[int]                     = mapped_column(Integer, nullable=False)
    event_type:    Mapped[ApprovalEventType]       = mapped_column(SAEnum(ApprovalEventType), nullable=False)
    actor_id:      Mapped[Optional[str]]           = mapped_column(String(255), nullable=True)
    is_system:     Mapped[bool]                    = mapped_column(Boolean, nullable=False, default=False)
    from_status:   Mapped[Optional[RequestStatus]] = mapped_column(SAEnum(RequestStatus), nullable=True)
    to_status:     Mapped[Optional[RequestStatus]] = mapped_column(SAEnum(RequestStatus), nullable=True)
    reason:        Mapped[Optional[str]]           = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]]          = mapped_column("metadata", JSON, default=dict)
    created_at:    Mapped[datetime]                = mapped_column(DateTime, default=utcnow, nullable=False)

    request: Mapped["ApprovalRequest"] = relationship("ApprovalRequest", back_populates="events")

    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_events_request_sequence"),
        Index("ix_events_request", "request_id", "created_at"),
    )


class ApprovalRule(Base):
    """
    Company routing rule: requests whose estimate falls in [min_credits, max_credits]
    route to approver_role. Lowest priority wins among active matches.
    escalation_hours and escalate_to are both set or both null.
    """
    __tablename__ = "approval_rules"

    id:               Mapped[str]                     = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id:       Mapped[str]                     = mapped_column(String(255), nullable=False)
    min_credits:      Mapped[int]                     = mapped_column(Integer, nullable=False)
    max_credits:      Mapped[Optional[int]]           = mapped_column(Integer, nullable=True)
    approver_role:    Mapped[ApprovalLevel]           = mapped_column(SAEnum(ApprovalLevel), nullable=False)
    escalation_hours: Mapped[Optional[int]]           = mapped_column(Integer, nullable=True)
    escalate_to:      Mapped[Optional[ApprovalLevel]] = mapped_column(SAEnum(ApprovalLevel), nullable=True)
    priority:         Mapped[int]                     = mapped_column(Integer, nullable=False, default=0)
    is_active:        Mapped[bool]                    = mapped_column(Boolean, nullable=False, default=True)
    created_at:       Mapped[datetime]                = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at:       Mapped[datetime]                = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("min_credits >= 0", name="ck_rule_min_non_negative"),
        CheckConstraint("max_credits IS NULL OR max_credits > min_credits", name="ck_rule_threshold_range"),
        CheckConstraint(
            "(escalation_hours IS NULL AND escalate_to IS NULL) OR "
            "(escalation_hours IS NOT NULL AND escalate_to IS NOT NULL)",
            name="ck_rule_escalation_config",
        ),
        Index("ix_rules_company_priority", "company_id", "priority", "is_active"),
    )


class ApproverAssignment(Base):
    """
    Makes a user an approver (or admin) for a team, optionally capped by an
    approval ceiling and optionally delegated to another user for a date window.
    """
    __tablename__ = "approver_assignments"

    id:               Mapped[str]            = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id:       Mapped[str]            = mapped_column(String(255), nullable=False)
    team_id:          Mapped[str]            = mapped_column(String(255), nullable=False)
    user_id:          Mapped[str]            = mapped_column(String(255), nullable=False)
    approver_level:   Mapped[ApprovalLevel]  = mapped_column(SAEnum(ApprovalLevel), nullable=False)
    approval_ceiling: Mapped[Optional[int]]  = mapped_column(Integer, nullable=True)
    delegated_to:     Mapped[Optional[str]]  = mapped_column(String(255), nullable=True)
    delegation_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    delegation_end:   Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active:        Mapped[bool]           = mapped_column(Boolean, nullable=False, default=True)
    created_at:       Mapped[datetime]       = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at:       Mapped[datetime]       = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_approver_team_user"),
        CheckConstraint(
            "(delegated_to IS NULL AND delegation_start IS NULL AND delegation_end IS NULL) OR "
            "(delegated_to IS NOT NULL AND delegation_start IS NOT NULL AND delegation_end IS NOT NULL "
            "AND delegation_end >= delegation_start)",
            name="ck_assignment_delegation",
        ),
        Index("ix_approvers_team", "team_id", "is_active"),
        Index("ix_approvers_user", "user_id", "is_active"),
    )

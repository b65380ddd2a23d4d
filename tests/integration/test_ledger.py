"""
Ledger Store tests: accounts, idempotent appends, funds-checked debits,
balance derivation and history.
"""

from datetime import date, datetime, timedelta

import pytest

from credcore.services.ledger import ledger
from credcore.services.shared.errors import (
    ConflictingKey, InsufficientFunds, InvalidAmount, UnknownAccount,
)
from credcore.services.shared.models import (
    EntryDirection, LedgerEntry, ReferenceType, TransactionKind,
)


class TestOpenAccount:
    def test_grant_is_not_a_ledger_entry(self, db, account):
        assert db.query(LedgerEntry).count() == 0
        balance = ledger.compute_balance(db, account.id)
        assert balance["base"] == 1000
        assert balance["available"] == 1000
        assert balance["ledger_credits"] == 0

    def test_bonus_counts_towards_available(self, db):
        acct = ledger.open_account(db, "globex", "enterprise", date(2026, 1, 1), date(2026, 12, 31), 5000, 250)
        assert ledger.compute_balance(db, acct.id)["available"] == 5250

    def test_second_account_for_company_conflicts(self, db, account):
        with pytest.raises(ConflictingKey):
            ledger.open_account(db, "acme", "starter", date(2026, 1, 1), date(2026, 12, 31), 10)

    def test_negative_grant_rejected(self, db):
        with pytest.raises(InvalidAmount):
            ledger.open_account(db, "initech", "starter", date(2026, 1, 1), date(2026, 12, 31), -1)

    def test_lookup_by_company(self, db, account):
        assert ledger.get_account_for_company(db, "acme").id == account.id
        with pytest.raises(UnknownAccount):
            ledger.get_account_for_company(db, "nobody")


class TestAppendEntry:
    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_non_positive_or_non_integer_amount(self, db, account, amount):
        with pytest.raises(InvalidAmount):
            ledger.append_entry(db, account.id, EntryDirection.credit, amount, TransactionKind.allocation)

    def test_unknown_account(self, db):
        with pytest.raises(UnknownAccount):
            ledger.append_entry(db, "missing", EntryDirection.credit, 10, TransactionKind.allocation)

    def test_replay_returns_same_entry(self, db, account):
        first = ledger.append_entry(
            db, account.id, EntryDirection.credit, 50, TransactionKind.allocation, idempotency_key="topup-1",
        )
        second = ledger.append_entry(
            db, account.id, EntryDirection.credit, 50, TransactionKind.allocation, idempotency_key="topup-1",
        )
        assert second.id == first.id
        assert db.query(LedgerEntry).count() == 1

    def test_same_key_different_amount_conflicts(self, db, account):
        ledger.append_entry(db, account.id, EntryDirection.credit, 50, TransactionKind.allocation, idempotency_key="k")
        with pytest.raises(ConflictingKey) as exc:
            ledger.append_entry(db, account.id, EntryDirection.credit, 60, TransactionKind.allocation, idempotency_key="k")
        assert exc.value.detail["mismatched"] == ["amount"]

    def test_keys_are_scoped_per_account(self, db, account):
        other = ledger.open_account(db, "globex", "starter", date(2026, 1, 1), date(2026, 12, 31), 100)
        a = ledger.append_entry(db, account.id, EntryDirection.credit, 5, TransactionKind.allocation, idempotency_key="k")
        b = ledger.append_entry(db, other.id, EntryDirection.credit, 5, TransactionKind.allocation, idempotency_key="k")
        assert a.id != b.id


class TestDirectSpend:
    def test_debits_when_funds_suffice(self, db, account):
        entry = ledger.direct_spend(
            db, account.id, 400, idempotency_key="spend-1",
            reference_type=ReferenceType.request, reference_id="r-1",
        )
        assert entry.direction == EntryDirection.debit
        assert entry.kind == TransactionKind.spend
        assert ledger.compute_balance(db, account.id)["available"] == 600

    def test_insufficient_funds(self, db, account):
        with pytest.raises(InsufficientFunds) as exc:
            ledger.direct_spend(db, account.id, 1001, idempotency_key="too-much")
        assert exc.value.detail == {"available": 1000, "required": 1001}
        assert db.query(LedgerEntry).count() == 0

    def test_spending_the_last_credit(self, db, account):
        ledger.direct_spend(db, account.id, 1000, idempotency_key="all")
        assert ledger.compute_balance(db, account.id)["available"] == 0
        with pytest.raises(InsufficientFunds):
            ledger.direct_spend(db, account.id, 1, idempotency_key="one-more")

    def test_replay_succeeds_after_balance_drops(self, db, account):
        first = ledger.direct_spend(db, account.id, 600, idempotency_key="big")
        ledger.direct_spend(db, account.id, 400, idempotency_key="rest")

        replay = ledger.direct_spend(db, account.id, 600, idempotency_key="big")

        assert replay.id == first.id
        assert ledger.compute_balance(db, account.id)["available"] == 0


class TestCreditsAndAdjustments:
    def test_allocation_is_a_top_up(self, db, account):
        entry = ledger.allocate(db, account.id, 200, idempotency_key="q3-topup")
        assert entry.kind == TransactionKind.allocation
        assert entry.reference_type == ReferenceType.admin
        assert ledger.compute_balance(db, account.id)["available"] == 1200

    def test_refund_credits_back(self, db, account):
        ledger.direct_spend(db, account.id, 300, idempotency_key="s")
        ledger.refund(db, account.id, 100, idempotency_key="r", reference_type=ReferenceType.request, reference_id="x")
        balance = ledger.compute_balance(db, account.id)
        assert balance["available"] == 800
        assert balance["ledger_credits"] == 100
        assert balance["used"] == 300

    def test_positive_adjustment(self, db, account):
        entry = ledger.adjust(db, account.id, 75, idempotency_key="fix-1", description="goodwill")
        assert entry.direction == EntryDirection.credit
        assert entry.kind == TransactionKind.adjustment

    def test_negative_adjustment_is_funds_checked(self, db, account):
        entry = ledger.adjust(db, account.id, -250, idempotency_key="fix-2", description="correction")
        assert entry.direction == EntryDirection.debit
        assert entry.amount == 250
        with pytest.raises(InsufficientFunds):
            ledger.adjust(db, account.id, -800, idempotency_key="fix-3", description="too much")

    def test_zero_adjustment_rejected(self, db, account):
        with pytest.raises(InvalidAmount):
            ledger.adjust(db, account.id, 0, idempotency_key="noop", description="nothing")


class TestBalanceAndHistory:
    def test_days_remaining(self, db, account):
        assert ledger.compute_balance(db, account.id, today=date(2026, 12, 1))["days_remaining"] == 30
        assert ledger.compute_balance(db, account.id, today=date(2027, 2, 1))["days_remaining"] == 0

    def test_history_newest_first_with_paging(self, db, account):
        for i in range(5):
            ledger.allocate(db, account.id, 10 + i, idempotency_key=f"a-{i}")

        page = ledger.history(db, account.id, limit=2)
        assert page["total"] == 5
        assert page["has_more"] is True
        assert [e.amount for e in page["entries"]] == [14, 13]

        last = ledger.history(db, account.id, limit=2, offset=4)
        assert [e.amount for e in last["entries"]] == [10]
        assert last["has_more"] is False

    def test_history_filters_kind_and_window(self, db, account):
        ledger.allocate(db, account.id, 10, idempotency_key="a")
        ledger.direct_spend(db, account.id, 5, idempotency_key="s")

        spends = ledger.history(db, account.id, kind=TransactionKind.spend)
        assert [e.kind for e in spends["entries"]] == [TransactionKind.spend]

        future = ledger.history(db, account.id, start=datetime.utcnow() + timedelta(days=1))
        assert future["total"] == 0

    def test_history_unknown_account(self, db):
        with pytest.raises(UnknownAccount):
            ledger.history(db, "missing")

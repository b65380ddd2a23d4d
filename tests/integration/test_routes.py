"""
HTTP shell tests for the ledger, approvals and sweeper apps.

The apps run in-process through TestClient against the per-test SQLite
database; get_db (and the sweeper's session factory) are overridden, and the
startup lifespan is not entered.
"""

import pytest
from fastapi.testclient import TestClient

from credcore.services.approvals.main import app as approvals_app
from credcore.services.ledger.main import app as ledger_app
from credcore.services.shared.database import get_db
from credcore.services.sweeper.main import app as sweeper_app, get_session_factory


def headers(user_id, role="member", company="acme"):
    h = {"X-Actor-Id": user_id, "X-Actor-Role": role}
    if company:
        h["X-Company-Id"] = company
    return h


ADMIN     = headers("boss-1", "admin")
APPROVER  = headers("appr-1", "approver")
REQUESTER = headers("req-1")
OUTSIDER  = headers("eve", "admin", company="globex")


@pytest.fixture
def override_get_db(session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()
    return _get_db


@pytest.fixture
def ledger_client(override_get_db):
    ledger_app.dependency_overrides[get_db] = override_get_db
    yield TestClient(ledger_app)
    ledger_app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def approvals_client(override_get_db):
    approvals_app.dependency_overrides[get_db] = override_get_db
    yield TestClient(approvals_app)
    approvals_app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def sweeper_client(session_factory):
    sweeper_app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(sweeper_app)
    sweeper_app.dependency_overrides.pop(get_session_factory, None)


@pytest.fixture
def account_id(ledger_client):
    resp = ledger_client.post("/api/accounts", headers=ADMIN, json={
        "company_id":         "acme",
        "subscription_tier":  "professional",
        "subscription_start": "2026-01-01",
        "subscription_end":   "2026-12-31",
        "base_credits":       1000,
    })
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.fixture
def routed(approvals_client, account_id):
    """Default tiers plus one approver on the procurement team."""
    assert approvals_client.post("/api/rules/defaults", headers=ADMIN).status_code == 201
    resp = approvals_client.post("/api/assignments", headers=ADMIN, json={
        "team_id":        "procurement",
        "user_id":        "appr-1",
        "approver_level": "approver",
    })
    assert resp.status_code == 201
    return resp.json()


def create_request(client, credits=750, hdrs=REQUESTER):
    resp = client.post("/api/requests", headers=hdrs, json={
        "team_id":           "procurement",
        "request_type":      "analyst_qa",
        "title":             "Q3 diligence questions",
        "estimated_credits": credits,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── Health ────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("app,name", [
    (ledger_app, "credcore-ledger"),
    (approvals_app, "credcore-approvals"),
    (sweeper_app, "credcore-sweeper"),
])
def test_health(app, name):
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    assert resp.json()["service"] == name


# ── Ledger service ────────────────────────────────────────────────────────────

class TestLedgerRoutes:
    def test_open_account_requires_admin(self, ledger_client):
        resp = ledger_client.post("/api/accounts", headers=REQUESTER, json={
            "company_id": "acme", "subscription_tier": "starter",
            "subscription_start": "2026-01-01", "subscription_end": "2026-12-31", "base_credits": 10,
        })
        assert resp.status_code == 403
        assert resp.json()["error"]["kind"] == "Unauthorized"

    def test_missing_actor_header(self, ledger_client, account_id):
        resp = ledger_client.get(f"/api/accounts/{account_id}/balance")
        assert resp.status_code == 403

    def test_duplicate_account_conflicts(self, ledger_client, account_id):
        resp = ledger_client.post("/api/accounts", headers=ADMIN, json={
            "company_id": "acme", "subscription_tier": "starter",
            "subscription_start": "2026-01-01", "subscription_end": "2026-12-31", "base_credits": 10,
        })
        assert resp.status_code == 409

    def test_balance_and_spend(self, ledger_client, account_id):
        resp = ledger_client.post(f"/api/accounts/{account_id}/spend", headers=REQUESTER, json={
            "amount": 250, "idempotency_key": "api-spend-1", "description": "export",
        })
        assert resp.status_code == 201
        assert resp.json()["kind"] == "spend"
        assert resp.json()["actor_id"] == "req-1"

        balance = ledger_client.get(f"/api/accounts/{account_id}/balance", headers=REQUESTER).json()
        assert balance["available"] == 750
        assert balance["used"] == 250

    def test_insufficient_funds_is_402(self, ledger_client, account_id):
        resp = ledger_client.post(f"/api/accounts/{account_id}/spend", headers=REQUESTER, json={
            "amount": 5000, "idempotency_key": "too-much",
        })
        assert resp.status_code == 402
        assert resp.json()["error"]["detail"] == {"available": 1000, "required": 5000}

    def test_other_company_is_refused(self, ledger_client, account_id):
        resp = ledger_client.get(f"/api/accounts/{account_id}", headers=OUTSIDER)
        assert resp.status_code == 403

    def test_spend_without_company_header_is_refused(self, ledger_client, account_id):
        resp = ledger_client.post(f"/api/accounts/{account_id}/spend", headers=headers("boss-1", "admin", company=None), json={
            "amount": 50, "idempotency_key": "api-spend-nocompany",
        })
        assert resp.status_code == 403
        balance = ledger_client.get(f"/api/accounts/{account_id}/balance", headers=ADMIN).json()
        assert balance["used"] == 0

    def test_unknown_account_is_404(self, ledger_client):
        resp = ledger_client.get("/api/accounts/nope/balance", headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "account_not_found"

    def test_admin_topup_and_adjustment(self, ledger_client, account_id):
        top = ledger_client.post(f"/api/accounts/{account_id}/allocations", headers=ADMIN, json={
            "amount": 500, "idempotency_key": "topup-1",
        })
        assert top.status_code == 201
        adj = ledger_client.post(f"/api/accounts/{account_id}/adjustments", headers=ADMIN, json={
            "delta": -200, "idempotency_key": "adj-1", "description": "billing correction",
        })
        assert adj.status_code == 201
        assert adj.json()["direction"] == "debit"

        history = ledger_client.get(f"/api/accounts/{account_id}/transactions", headers=ADMIN).json()
        assert history["total"] == 2
        assert [e["kind"] for e in history["entries"]] == ["adjustment", "allocation"]

    def test_member_cannot_top_up(self, ledger_client, account_id):
        resp = ledger_client.post(f"/api/accounts/{account_id}/allocations", headers=REQUESTER, json={
            "amount": 500, "idempotency_key": "topup-1",
        })
        assert resp.status_code == 403

    def test_transactions_filter_by_kind(self, ledger_client, account_id):
        ledger_client.post(f"/api/accounts/{account_id}/allocations", headers=ADMIN, json={
            "amount": 500, "idempotency_key": "topup-1",
        })
        resp = ledger_client.get(
            f"/api/accounts/{account_id}/transactions", headers=ADMIN, params={"kind": "spend"},
        )
        assert resp.json()["total"] == 0

    def test_team_budget(self, ledger_client, account_id):
        resp = ledger_client.put(
            f"/api/accounts/{account_id}/teams/procurement/budget",
            headers=ADMIN,
            json={"allocated_credits": 400, "period_start": "2026-01-01", "period_end": "2026-12-31"},
        )
        assert resp.status_code == 200
        assert resp.json()["allocated"] == 400
        assert resp.json()["remaining"] == 400

        got = ledger_client.get(
            f"/api/accounts/{account_id}/teams/procurement/budget",
            headers=REQUESTER,
            params={"on_date": "2026-06-01"},
        )
        assert got.json()["period_end"] == "2026-12-31"


class TestHoldRoutes:
    def test_place_release_and_convert(self, ledger_client, approvals_client, account_id):
        first = create_request(approvals_client, 300)
        second = create_request(approvals_client, 200)

        placed = ledger_client.post("/api/holds", headers=ADMIN, json={
            "account_id": account_id, "request_id": first["id"], "amount": 300, "idempotency_key": "h-1",
        })
        assert placed.status_code == 201
        assert placed.json()["available"] == 700
        hold_id = placed.json()["hold"]["id"]

        released = ledger_client.post(f"/api/holds/{hold_id}/release", headers=ADMIN)
        assert released.json()["status"] == "released"

        other = ledger_client.post("/api/holds", headers=ADMIN, json={
            "account_id": account_id, "request_id": second["id"], "amount": 200, "idempotency_key": "h-2",
        }).json()["hold"]["id"]
        converted = ledger_client.post(f"/api/holds/{other}/convert", headers=ADMIN, json={"idempotency_key": "c-2"})
        assert converted.status_code == 200
        assert ledger_client.get(f"/api/holds/{other}", headers=ADMIN).json()["status"] == "converted"

        again = ledger_client.post(f"/api/holds/{hold_id}/convert", headers=ADMIN, json={"idempotency_key": "c-1"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "illegal_transition"

    def test_second_hold_for_request_is_409(self, ledger_client, approvals_client, account_id):
        req = create_request(approvals_client, 300)
        body = {"account_id": account_id, "request_id": req["id"], "amount": 300, "idempotency_key": "h-1"}
        ledger_client.post("/api/holds", headers=ADMIN, json=body)
        resp = ledger_client.post("/api/holds", headers=ADMIN, json={**body, "idempotency_key": "h-2"})
        assert resp.status_code == 409
        assert resp.json()["error"]["kind"] == "DuplicateHold"


# ── Approvals service ─────────────────────────────────────────────────────────

class TestApprovalRoutes:
    def test_full_lifecycle(self, approvals_client, ledger_client, routed, account_id):
        req = create_request(approvals_client, 750)
        assert req["status"] == "draft"

        submitted = approvals_client.post(f"/api/requests/{req['id']}/submit", headers=REQUESTER)
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "pending"
        assert submitted.json()["current_approver_id"] == "appr-1"

        queue = approvals_client.get("/api/approvals/queue", headers=APPROVER).json()
        assert queue["total_pending"] == 1
        assert queue["items"][0]["request"]["id"] == req["id"]

        comment = approvals_client.post(
            f"/api/requests/{req['id']}/comments", headers=APPROVER, json={"body": "Which tickers?"},
        )
        assert comment.status_code == 201
        assert comment.json()["event_type"] == "comment"

        approved = approvals_client.post(f"/api/requests/{req['id']}/approve", headers=APPROVER, json={"note": "ok"})
        assert approved.json()["status"] == "approved"

        fulfilled = approvals_client.post(
            f"/api/requests/{req['id']}/fulfil", headers=APPROVER, json={"actual_credits": 700},
        )
        assert fulfilled.json()["status"] == "fulfilled"

        detail = approvals_client.get(f"/api/requests/{req['id']}", headers=REQUESTER).json()
        assert [e["event_type"] for e in detail["events"]] == [
            "created", "submitted", "comment", "approved", "fulfilled",
        ]
        assert [e["sequence"] for e in detail["events"]] == [1, 2, 3, 4, 5]

        balance = ledger_client.get(f"/api/accounts/{account_id}/balance", headers=REQUESTER).json()
        assert balance["available"] == 300

    def test_auto_approval_over_http(self, approvals_client, routed):
        req = create_request(approvals_client, 120)
        resp = approvals_client.post(f"/api/requests/{req['id']}/submit", headers=REQUESTER)
        assert resp.json()["status"] == "approved"
        assert resp.json()["approval_level"] == "auto"

    def test_deny_needs_reason(self, approvals_client, routed):
        req = create_request(approvals_client, 750)
        approvals_client.post(f"/api/requests/{req['id']}/submit", headers=REQUESTER)

        assert approvals_client.post(f"/api/requests/{req['id']}/deny", headers=APPROVER, json={"reason": ""}).status_code == 422

        denied = approvals_client.post(
            f"/api/requests/{req['id']}/deny", headers=APPROVER, json={"reason": "not this quarter"},
        )
        assert denied.json()["status"] == "denied"

    def test_requester_cannot_approve(self, approvals_client, routed):
        req = create_request(approvals_client, 750)
        approvals_client.post(f"/api/requests/{req['id']}/submit", headers=REQUESTER)
        resp = approvals_client.post(f"/api/requests/{req['id']}/approve", headers=REQUESTER)
        assert resp.status_code == 403

    def test_cancel_then_submit_is_illegal(self, approvals_client, routed):
        req = create_request(approvals_client, 750)
        cancelled = approvals_client.post(f"/api/requests/{req['id']}/cancel", headers=REQUESTER)
        assert cancelled.json()["status"] == "cancelled"
        resp = approvals_client.post(f"/api/requests/{req['id']}/submit", headers=REQUESTER)
        assert resp.status_code == 409
        assert resp.json()["error"]["kind"] == "IllegalTransition"

    def test_insufficient_credits_on_submit(self, approvals_client, routed):
        req = create_request(approvals_client, 1500)
        resp = approvals_client.post(f"/api/requests/{req['id']}/submit", headers=REQUESTER)
        assert resp.status_code == 402
        detail = approvals_client.get(f"/api/requests/{req['id']}", headers=REQUESTER).json()
        assert detail["status"] == "draft"

    def test_invalid_estimate(self, approvals_client):
        resp = approvals_client.post("/api/requests", headers=REQUESTER, json={
            "team_id": "procurement", "request_type": "analyst_qa", "title": "x", "estimated_credits": 0,
        })
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_amount"

    def test_malformed_body_is_structured(self, approvals_client):
        resp = approvals_client.post("/api/requests", headers=REQUESTER, json={
            "team_id": "procurement", "request_type": "consulting", "title": "x", "estimated_credits": 10,
        })
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "invalid_amount"
        assert error["detail"]["errors"][0]["loc"] == ["body", "request_type"]

    def test_company_header_required(self, approvals_client):
        resp = approvals_client.post("/api/requests", headers=headers("req-1", company=None), json={
            "team_id": "procurement", "request_type": "analyst_qa", "title": "x", "estimated_credits": 10,
        })
        assert resp.status_code == 403

    def test_decision_without_company_header_is_refused(self, approvals_client, routed):
        req = create_request(approvals_client, 750)
        approvals_client.post(f"/api/requests/{req['id']}/submit", headers=REQUESTER)
        resp = approvals_client.post(
            f"/api/requests/{req['id']}/approve", headers=headers("boss-1", "admin", company=None),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "unauthorized"
        detail = approvals_client.get(f"/api/requests/{req['id']}", headers=REQUESTER).json()
        assert detail["status"] == "pending"

    def test_other_company_sees_404(self, approvals_client, routed):
        req = create_request(approvals_client, 750)
        resp = approvals_client.get(f"/api/requests/{req['id']}", headers=OUTSIDER)
        assert resp.status_code == 404

    def test_list_by_status(self, approvals_client, routed):
        create_request(approvals_client, 750)
        other = create_request(approvals_client, 120)
        approvals_client.post(f"/api/requests/{other['id']}/submit", headers=REQUESTER)

        resp = approvals_client.get("/api/requests", headers=REQUESTER, params={"status": ["approved"]}).json()
        assert resp["total"] == 1
        assert resp["requests"][0]["id"] == other["id"]


class TestRoutingRoutes:
    def test_defaults_and_update(self, approvals_client, routed):
        rules = approvals_client.get("/api/rules", headers=REQUESTER).json()
        assert [(r["min_credits"], r["approver_role"]) for r in rules] == [
            (0, "auto"), (500, "approver"), (2001, "admin"),
        ]

        middle = rules[1]["id"]
        updated = approvals_client.patch(f"/api/rules/{middle}", headers=ADMIN, json={"escalation_hours": 24})
        assert updated.status_code == 200
        assert updated.json()["escalation_hours"] == 24
        assert updated.json()["escalate_to"] == "admin"

        bad = approvals_client.patch(f"/api/rules/{middle}", headers=ADMIN, json={"max_credits": 100})
        assert bad.status_code == 422
        assert bad.json()["error"]["code"] == "rule_misconfigured"

    def test_clearing_escalation(self, approvals_client, routed):
        middle = approvals_client.get("/api/rules", headers=ADMIN).json()[1]["id"]
        resp = approvals_client.patch(
            f"/api/rules/{middle}", headers=ADMIN, json={"escalation_hours": None, "escalate_to": None},
        )
        assert resp.status_code == 200
        assert resp.json()["escalate_to"] is None

    def test_deactivate_rule(self, approvals_client, routed):
        first = approvals_client.get("/api/rules", headers=ADMIN).json()[0]["id"]
        assert approvals_client.delete(f"/api/rules/{first}", headers=ADMIN).json()["is_active"] is False
        assert len(approvals_client.get("/api/rules", headers=ADMIN).json()) == 2
        assert len(approvals_client.get("/api/rules", headers=ADMIN, params={"include_inactive": True}).json()) == 3

    def test_rule_writes_require_admin(self, approvals_client, account_id):
        resp = approvals_client.post("/api/rules", headers=APPROVER, json={"min_credits": 0, "approver_role": "auto"})
        assert resp.status_code == 403

    def test_other_company_rule_is_404(self, approvals_client, routed):
        rule = approvals_client.get("/api/rules", headers=ADMIN).json()[0]["id"]
        resp = approvals_client.delete(f"/api/rules/{rule}", headers=OUTSIDER)
        assert resp.status_code == 404

    def test_delegation_round_trip(self, approvals_client, routed):
        assignment = routed["id"]
        resp = approvals_client.put(f"/api/assignments/{assignment}/delegation", headers=ADMIN, json={
            "delegated_to": "deputy-1", "delegation_start": "2026-07-01", "delegation_end": "2026-07-14",
        })
        assert resp.status_code == 200
        assert resp.json()["delegated_to"] == "deputy-1"

        cleared = approvals_client.delete(f"/api/assignments/{assignment}/delegation", headers=ADMIN)
        assert cleared.json()["delegated_to"] is None

        gone = approvals_client.delete(f"/api/assignments/{assignment}", headers=ADMIN)
        assert gone.json()["is_active"] is False
        assert approvals_client.get("/api/assignments", headers=ADMIN).json() == []

    def test_backwards_delegation_window(self, approvals_client, routed):
        resp = approvals_client.put(f"/api/assignments/{routed['id']}/delegation", headers=ADMIN, json={
            "delegated_to": "deputy-1", "delegation_start": "2026-07-14", "delegation_end": "2026-07-01",
        })
        assert resp.status_code == 422

    def test_unknown_assignment(self, approvals_client, routed):
        resp = approvals_client.delete("/api/assignments/missing", headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "assignment_not_found"


# ── Sweeper service ───────────────────────────────────────────────────────────

class TestSweeperRoutes:
    def test_manual_sweep(self, sweeper_client, account_id):
        resp = sweeper_client.post("/api/sweeps/run", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json() == {"escalated": 0, "expired": 0}

    def test_manual_sweep_requires_admin(self, sweeper_client):
        assert sweeper_client.post("/api/sweeps/run", headers=APPROVER).status_code == 403

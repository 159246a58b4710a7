"""HTTP surface: routing, request models and VaultError → status mapping."""

from decimal import Decimal

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient

from api.server import create_app

from tests.fakes import ALICE, BOB, BORROWER, LENDER, OWNER

SCHEDULE = {
    "name": "Team",
    "frequency": "weekly",
    "start_date": "2024-01-16T09:00:00Z",
    "recipients": [{"wallet": ALICE, "amount": "1"}, {"wallet": BOB, "amount": "2"}],
}


@pytest.fixture
def client(vault, loans, engine, batches, nominees, clock):
    app = create_app(vault, loans, engine, batches, nominees,
                     ledger_status_fn=lambda: {"initialized": True}, clock=clock)
    return TestClient(app)


@pytest.fixture
def wallet(ledger):
    account = Account.create()
    ledger.balances[account.address.lower()] = Decimal(20)
    return account


def _sign(account, message: str) -> str:
    return "0x" + bytes(account.sign_message(encode_defunct(text=message)).signature).hex()


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["ledger"] == {"initialized": True}


class TestVaultRoutes:

    def test_deposit_then_balance(self, client):
        assert client.post(f"/vault/{OWNER}/deposit", json={"amount": "2.5"}).status_code == 200
        assert client.get(f"/vault/{OWNER}").json()["balance"] == "102.5"

    def test_insufficient_balance_is_402(self, client):
        resp = client.post(f"/vault/{ALICE}/withdraw", json={"amount": "8"})
        assert resp.status_code == 402
        body = resp.json()
        assert body["error"] == "insufficient_balance"
        assert body["shortfall"] == "3"

    def test_bad_address_is_400(self, client):
        resp = client.get("/vault/0xnothex")
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"

    def test_pay_and_history(self, client):
        client.post(f"/vault/{OWNER}/pay", json={"to": BOB, "amount": "1", "memo": "lunch"})
        history = client.get(f"/vault/{OWNER}/history").json()["history"]
        assert history[0]["to"] == BOB
        assert history[0]["action"] == "pay"


class TestLoanRoutes:

    def test_offer_to_repayment(self, client):
        offer = client.post("/loans/offers", json={
            "lender": LENDER, "amount": "2", "interest_rate_pct": "10", "duration_days": 30,
        }).json()
        req = client.post("/loans/requests", json={"borrower": BORROWER, "offer_id": offer["id"]}).json()
        assert req["status"] == "pending"

        assert client.post(f"/loans/requests/{LENDER}/{req['id']}/accept").json()["status"] == "accepted"
        loan = client.post(f"/loans/requests/{LENDER}/{req['id']}/fund").json()
        assert loan["totalRepayment"] == "2.2"
        assert loan["overdue"] is False
        assert loan["daysRemaining"] == 30

        repaid = client.post(f"/loans/borrows/{BORROWER}/{loan['id']}/repay", json={"amount": "2.2"}).json()
        assert repaid["status"] == "repaid"

        again = client.post(f"/loans/borrows/{BORROWER}/{loan['id']}/repay", json={"amount": "1"})
        assert again.status_code == 409
        assert again.json()["error"] == "already_repaid"

        stats = client.get(f"/loans/stats/{LENDER}").json()
        assert stats["totalLent"] == "2"
        assert stats["totalInterestEarned"] == "0.2"

    def test_unknown_request_is_404(self, client):
        resp = client.post(f"/loans/requests/{LENDER}/missing/accept")
        assert resp.status_code == 404

    def test_offers_listed_by_status(self, client):
        client.post("/loans/offers", json={"lender": LENDER, "amount": "1", "interest_rate_pct": "1", "duration_days": 5})
        assert len(client.get("/loans/offers").json()["offers"]) == 1
        assert client.get("/loans/offers", params={"status": "repaid"}).json()["offers"] == []


class TestPayrollRoutes:

    def test_signed_schedule_is_approved(self, client, wallet):
        owner = wallet.address
        message = client.post(f"/payroll/{owner}/schedules/approval-message", json=SCHEDULE).json()["message"]
        created = client.post(f"/payroll/{owner}/schedules",
                              json=dict(SCHEDULE, approval_signature=_sign(wallet, message)))
        assert created.status_code == 200
        assert created.json()["isApproved"] is True
        assert created.json()["isPaused"] is False

    def test_missing_or_foreign_signature_pauses(self, client, wallet):
        owner = wallet.address
        unsigned = client.post(f"/payroll/{owner}/schedules", json=SCHEDULE).json()
        assert unsigned["isPaused"] is True

        other = Account.create()
        message = client.post(f"/payroll/{owner}/schedules/approval-message", json=SCHEDULE).json()["message"]
        foreign = client.post(f"/payroll/{owner}/schedules",
                              json=dict(SCHEDULE, approval_signature=_sign(other, message))).json()
        assert foreign["isApproved"] is False
        assert foreign["isPaused"] is True

    def test_manual_execute_and_patch(self, client, wallet, ledger):
        owner = wallet.address
        created = client.post(f"/payroll/{owner}/schedules", json=dict(SCHEDULE, auto_execute=False)).json()
        executed = client.post(f"/payroll/{owner}/schedules/{created['id']}/execute").json()
        assert executed["paymentsCompleted"] == 1
        assert ledger.paid_to(BOB) == [Decimal(2)]

        patched = client.patch(f"/payroll/{owner}/schedules/{created['id']}", json={"name": "Renamed"}).json()
        assert patched["name"] == "Renamed"
        assert patched["paymentsCompleted"] == 1

        paused = client.post(f"/payroll/{owner}/schedules/{created['id']}/pause").json()
        assert paused["isPaused"] is True
        blocked = client.post(f"/payroll/{owner}/schedules/{created['id']}/execute")
        assert blocked.status_code == 409
        assert blocked.json()["error"] == "schedule_paused"

    def test_batch_payment_failure_is_502_with_run_id(self, client, ledger):
        ledger.fail_recipients.add(BOB)
        resp = client.post(f"/payroll/{OWNER}/pay", json={
            "recipients_csv": f"wallet,amount,label\n{ALICE},1,a\n{BOB},2,b\n",
        })
        assert resp.status_code == 502
        details = resp.json()["details"]
        assert details["nextIndex"] == 1

        ledger.fail_recipients.clear()
        resumed = client.post(f"/payroll/{OWNER}/pay", json={"run_id": details["runId"]}).json()
        assert resumed["status"] == "completed"
        assert ledger.paid_to(ALICE) == [Decimal(1)]

    def test_pay_saved_batch(self, client, ledger):
        saved = client.post(f"/payroll/{OWNER}/batches", json={
            "name": "Weekly crew", "recipients": [{"wallet": ALICE, "amount": "0.5"}],
        }).json()
        run = client.post(f"/payroll/{OWNER}/pay", json={"batch_id": saved["id"]}).json()
        assert run["status"] == "completed"
        assert ledger.paid_to(ALICE) == [Decimal("0.5")]


class TestNomineeRoutes:

    def test_configure_and_claim_too_early(self, client):
        put = client.put(f"/nominees/{OWNER}", json={
            "nominees": [{"address": ALICE, "share_pct": "70"}, {"address": BOB, "share_pct": "30"}],
            "encrypted_payload": "opaque",
        })
        assert put.status_code == 200

        status = client.get(f"/nominees/{OWNER}/status").json()
        assert status["inactive"] is False
        assert [n["amount"] for n in status["nominees"]] == ["70", "30"]

        claim = client.post(f"/nominees/{OWNER}/claim", json={"nominee_index": 0, "claimant": ALICE})
        assert claim.status_code == 403
        assert claim.json()["error"] == "claim_rejected"

    def test_shares_must_total_100(self, client):
        resp = client.put(f"/nominees/{OWNER}", json={"nominees": [{"address": ALICE, "share_pct": "90"}]})
        assert resp.status_code == 400

"""
Integration tests for the Loan Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from lms_ledger.api import create_app
from lms_ledger.api.deps import get_loan_system
from lms_ledger.config import LMSConfig
from lms_ledger.storage import InMemoryStorage
from lms_ledger.system import LoanSystem


@pytest.fixture
def system():
    """Loan system backed by in-memory storage"""
    return LoanSystem(storage=InMemoryStorage(), config=LMSConfig(storage_backend="memory"))


@pytest.fixture
def client(system):
    app = create_app()
    app.dependency_overrides[get_loan_system] = lambda: system
    with TestClient(app) as test_client:
        yield test_client


def grant(client, amount="1000.00", term=3, **extra):
    body = {
        "customer": {"first_name": "Usman", "last_name": "Tariq"},
        "total_debt_amount": amount,
        "term_months": term,
        "first_due_date": "2030-02-01",
    }
    body.update(extra)
    r = client.post("/loans", json=body, headers={"X-Employee-Id": "emp-1"})
    assert r.status_code == 201, r.text
    return r.json()


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestLedgerFlow:
    """End-to-end ledger tests"""

    def test_empty_customer_ledger(self, client, system):
        customer = system.loan_book.create_customer("New", "Customer")

        r = client.get("/ledger", params={"customerId": customer.id})

        assert r.status_code == 200
        data = r.json()
        assert data["ledger"] == []
        assert data["balance"] == "0.00"
        assert data["customer"]["first_name"] == "New"

    def test_unknown_customer(self, client):
        r = client.get("/ledger", params={"customerId": "missing"})
        assert r.status_code == 404

    def test_ledger_after_payment_and_fee(self, client):
        loan = grant(client)
        loan_id = loan["loan"]["id"]

        r = client.post(f"/loans/{loan_id}/payments", json={"amount": "250.00", "payment_method": "Card"})
        assert r.status_code == 201
        assert r.json()["current_balance"] == "750.00"

        r = client.post(f"/loans/{loan_id}/fees", json={"amount": "20", "remark": "Late fee"})
        assert r.status_code == 201
        assert r.json()["current_balance"] == "770.00"

        r = client.get("/ledger", params={"customerId": loan["customer_id"]})
        data = r.json()
        assert sorted(e["type"] for e in data["ledger"]) == ["FEE", "PAYMENT", "SERVICE"]
        assert data["balance"] == "770.00"
        assert data["ledger"][-1]["balance"] == "770.00"

    def test_float_amount_rejected(self, client):
        loan = grant(client)
        r = client.post(f"/loans/{loan['loan']['id']}/payments", json={"amount": 10.5})
        assert r.status_code in (400, 422)

    def test_overpayment_rejected(self, client):
        loan = grant(client, amount="100.00", term=1)
        r = client.post(f"/loans/{loan['loan']['id']}/payments", json={"amount": "100.01"})
        assert r.status_code == 400


class TestAccountEndpoints:

    def test_accounts_overview(self, client, system):
        data = grant(client)
        system.loan_book.create_customer("No", "Loans")

        r = client.get("/accounts")

        assert r.status_code == 200
        body = r.json()
        assert [a["id"] for a in body["accounts"]] == [data["customer_id"]]
        assert body["accounts"][0]["balance"] == "1000.00"
        assert body["stats"]["totalOutstanding"] == "1000.00"
        assert body["stats"]["activeAccounts"] == 1
        assert body["allAccounts"] == 2

    def test_settled_filter(self, client):
        data = grant(client, amount="100.00", term=1)
        client.post(f"/loans/{data['loan']['id']}/payments", json={"amount": "100.00"})

        r = client.get("/accounts", params={"filter": "settled"})

        assert [a["id"] for a in r.json()["accounts"]] == [data["customer_id"]]
        assert r.json()["accounts"][0]["activeLoans"] == 0

    def test_unknown_filter(self, client):
        assert client.get("/accounts", params={"filter": "dormant"}).status_code == 400


class TestLoanEndpoints:

    def test_grant_creates_plan(self, client):
        data = grant(client)

        assert data["loan"]["current_balance"] == "1000.00"
        assert [i["amount"] for i in data["installments"]] == ["333.34", "333.33", "333.33"]
        assert data["installments"][0]["due_date"] == "2030-02-01"

    def test_grant_for_existing_customer(self, client, system):
        customer = system.loan_book.create_customer("Existing", "Customer")
        r = client.post("/loans", json={
            "customer_id": customer.id,
            "total_debt_amount": "300",
            "term_months": 3,
            "generate_schedule": False
        })
        assert r.status_code == 201
        assert r.json()["installments"] == []

    def test_grant_requires_customer(self, client):
        r = client.post("/loans", json={"total_debt_amount": "300", "term_months": 3})
        assert r.status_code == 400

    def test_get_loan(self, client):
        data = grant(client, deposit="100.00", payment_method="Cash")
        r = client.get(f"/loans/{data['loan']['id']}")

        assert r.status_code == 200
        body = r.json()
        assert body["loan"]["current_balance"] == "900.00"
        assert {t["transaction_type"] for t in body["transactions"]} == {"service", "payment"}

    def test_get_missing_loan(self, client):
        assert client.get("/loans/missing").status_code == 404


class TestInstallmentFlow:
    """End-to-end installment plan tests"""

    def test_list_installments(self, client):
        data = grant(client)
        r = client.get("/installments", params={"transactionId": data["service_transaction_id"]})

        assert r.status_code == 200
        body = r.json()
        assert len(body["installments"]) == 3
        assert body["locked"] is False

    def test_list_unknown_transaction_is_empty(self, client):
        r = client.get("/installments", params={"transactionId": "nothing"})
        assert r.status_code == 200
        assert r.json()["installments"] == []

    def test_generate_conflict(self, client):
        data = grant(client)
        r = client.post("/installments/generate", json={
            "transactionId": data["service_transaction_id"],
            "totalAmount": "1000.00",
            "termMonths": 3,
            "firstDueDate": "2030-02-01"
        })
        assert r.status_code == 409

    def test_generate_after_wipe(self, client):
        data = grant(client)
        txn = data["service_transaction_id"]

        r = client.delete("/installments", params={"transactionId": txn})
        assert r.json()["deleted"] == 3

        r = client.post("/installments/generate", json={
            "transactionId": txn, "totalAmount": "1000.00", "termMonths": 4, "firstDueDate": "2030-03-31"
        })
        assert r.status_code == 201
        due_dates = [i["due_date"] for i in r.json()["installments"]]
        assert due_dates == ["2030-03-31", "2030-04-30", "2030-05-31", "2030-06-30"]

    def test_update_installments(self, client):
        data = grant(client)
        ids = [i["id"] for i in data["installments"]]

        r = client.post("/installments/update", json={"installments": [
            {"id": ids[0], "due_date": "2030-02-15", "amount": "500.00"},
            {"id": ids[1], "due_date": "2030-03-15", "amount": "250.00"},
        ]})

        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["updated"] == ids[:2]
        assert body["failed"] == []

    def test_update_locked_plan(self, client):
        data = grant(client)
        ids = [i["id"] for i in data["installments"]]
        client.post(f"/installments/{ids[0]}/pay", json={"amountPaid": "333.34", "paymentMethod": "Cash"})

        r = client.post("/installments/update", json={"installments": [
            {"id": ids[2], "amount": "100.00"}
        ]})
        assert r.status_code == 409

        listing = client.get("/installments", params={"transactionId": data["service_transaction_id"]})
        assert listing.json()["locked"] is True

    def test_update_bad_date(self, client):
        data = grant(client)
        r = client.post("/installments/update", json={"installments": [
            {"id": data["installments"][0]["id"], "due_date": "not-a-date"}
        ]})
        assert r.status_code == 400

    def test_update_empty(self, client):
        r = client.post("/installments/update", json={"installments": []})
        assert r.status_code == 400

    def test_pay_and_skip(self, client):
        data = grant(client)
        ids = [i["id"] for i in data["installments"]]

        r = client.post(f"/installments/{ids[0]}/pay", json={"amountPaid": "100.00"})
        assert r.status_code == 200
        assert r.json()["installment"]["status"] == "partial"

        r = client.post(f"/installments/{ids[1]}/skip")
        assert r.status_code == 200
        body = r.json()
        assert body["remainingBalance"] == "900.00"
        assert [i["amount"] for i in body["redistributed"]] == ["900.00"]

        r = client.post(f"/installments/{ids[1]}/skip")
        assert r.status_code == 409

    def test_pay_twice_conflicts(self, client):
        data = grant(client)
        first = data["installments"][0]["id"]

        assert client.post(f"/installments/{first}/pay", json={"amountPaid": "333.34"}).status_code == 200
        assert client.post(f"/installments/{first}/pay", json={"amountPaid": "1.00"}).status_code == 409

    def test_pay_missing_installment(self, client):
        r = client.post("/installments/missing/pay", json={"amountPaid": "1.00"})
        assert r.status_code == 404

    def test_reconcile(self, client):
        data = grant(client)
        ids = [i["id"] for i in data["installments"]]
        client.post(f"/installments/{ids[2]}/skip")

        r = client.post("/installments/reconcile")

        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["total"] == 3
        assert body["updatedSkipped"] == 1
        assert body["updatedPaid"] == 0
        assert body["skipped"] == 2
        assert body["failed"] == 0

        again = client.post("/installments/reconcile").json()
        assert again["updatedSkipped"] == 0

    def test_create_missing(self, client):
        grant(client, generate_schedule=False)
        r = client.post("/installments/create-missing", json={"defaultTermMonths": 3})

        assert r.status_code == 200
        assert r.json()["created"] == 3


class TestAuditEndpoints:

    def test_audit_logs_for_loan(self, client, system):
        system.storage.save("employees", "emp-1", {"id": "emp-1", "full_name": "Zara Shah", "email": "zara@example.com"})
        data = grant(client)
        loan_id = data["loan"]["id"]

        r = client.get("/audit-logs", params={"accountId": loan_id})

        assert r.status_code == 200
        body = r.json()
        assert body["total"] == 1
        assert body["logs"][0]["action"] == "LOAN_GRANTED"
        assert body["logs"][0]["employee"]["name"] == "Zara Shah"

    def test_create_audit_log(self, client):
        r = client.post("/audit-logs", json={
            "userId": "emp-9", "action": "viewed_statement", "entityType": "loan", "entityId": "loan-1"
        })
        assert r.status_code == 201
        assert r.json()["log"]["action"] == "VIEWED_STATEMENT"

        r = client.get("/audit-logs", params={"accountId": "loan-1", "limit": 10})
        assert r.json()["total"] == 1

    def test_audit_logs_require_account(self, client):
        assert client.get("/audit-logs").status_code == 422

    def test_verify(self, client):
        grant(client)
        r = client.get("/audit-logs/verify")
        assert r.status_code == 200
        assert r.json()["valid"] is True

"""
Bilateral Invoice Ledger (BIL) - HTTP API Tests

Exercises the FastAPI surface against a fresh ledger per test.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi.testclient import TestClient

from bil_main_api import app, get_ledger
from bil_e2e_integration_v1 import InvoiceLedger
from bil_invoice_service_v1 import FixedClock
from bil_settlement_service_v1 import InMemoryTransferRail

NOW = datetime(2026, 3, 1, 12, 0, 0)
TOMORROW = NOW + timedelta(days=1)

ISSUER = "ACME"
RECIPIENT = "GLOBEX"
OUTSIDER = "INITECH"
ADMIN = "ADMIN-001"

@pytest.fixture
def ledger():
    rail = InMemoryTransferRail(balances={RECIPIENT: Decimal(1000)})
    return InvoiceLedger(admin=ADMIN, rail=rail, clock=FixedClock(NOW))

@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()

def as_caller(identity):
    return {"X-Caller-Id": identity}

def create_invoice(client, caller=ISSUER, recipient=RECIPIENT, amount="100.00", due_date=TOMORROW):
    return client.post(
        "/api/v1/invoices",
        json={
            "issuer_name": "Acme Corp",
            "client_name": "Globex",
            "recipient": recipient,
            "amount": amount,
            "due_date": due_date.isoformat(),
            "message": "Consulting"
        },
        headers=as_caller(caller)
    )

class TestHealthEndpoints:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_health(self, client):
        create_invoice(client)
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["total_invoices"] == 1
        assert body["ledger_integrity"] == True

    def test_metrics_exposed(self, client):
        create_invoice(client)
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "bil_invoices_created_total" in response.text

class TestInvoiceEndpoints:

    def test_create_returns_invoice(self, client):
        response = create_invoice(client)

        assert response.status_code == 201
        body = response.json()
        assert body["id"] == 1
        assert body["issuer"] == ISSUER
        assert body["amount"] == "100.00"
        assert body["issuer_status"] == "Approved"
        assert body["recipient_status"] == "Pending"
        assert body["creation_date"] == NOW.isoformat()

    @pytest.mark.parametrize("recipient,due_date,reason", [
        (ISSUER, TOMORROW, "SelfAssignment"),
        ("0x0000000000000000000000000000000000000000", TOMORROW, "InvalidRecipient"),
        (RECIPIENT, NOW, "DueDateInPast"),
    ])
    def test_create_rejected(self, client, ledger, recipient, due_date, reason):
        response = create_invoice(client, recipient=recipient, due_date=due_date)

        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == reason
        assert ledger.storage.count() == 0

    def test_create_with_utc_suffix(self, client):
        """Zulu and offset timestamps are accepted and reported as naive UTC."""
        due = NOW + timedelta(days=30)

        zulu = client.post(
            "/api/v1/invoices",
            json={
                "issuer_name": "Acme Corp",
                "client_name": "Globex",
                "recipient": RECIPIENT,
                "amount": "100.00",
                "due_date": due.isoformat() + "Z",
                "message": ""
            },
            headers=as_caller(ISSUER)
        )
        offset = create_invoice(client, due_date=due.replace(tzinfo=timezone(timedelta(hours=-5))))

        assert zulu.status_code == 201
        assert zulu.json()["due_date"] == due.isoformat()
        assert offset.status_code == 201
        assert offset.json()["due_date"] == (due + timedelta(hours=5)).isoformat()

    def test_caller_header_required(self, client):
        response = client.get("/api/v1/invoices")
        assert response.status_code == 422

    def test_get_unknown_invoice(self, client):
        assert client.get("/api/v1/invoices/42").status_code == 404

    def test_list_invoices(self, client):
        create_invoice(client)
        create_invoice(client, caller=RECIPIENT, recipient=OUTSIDER)

        assert client.get("/api/v1/invoices", headers=as_caller(RECIPIENT)).json() == [1, 2]
        assert client.get(f"/api/v1/parties/{OUTSIDER}/invoices").json() == [2]
        assert client.get("/api/v1/parties/NOBODY/invoices").json() == []

class TestWorkflowEndpoints:

    def test_full_settlement(self, client, ledger):
        create_invoice(client)

        approved = client.post("/api/v1/invoices/1/approve", headers=as_caller(RECIPIENT))
        assert approved.status_code == 200
        assert approved.json()["recipient_status"] == "Approved"

        paid = client.post(
            "/api/v1/invoices/1/pay",
            json={"tendered_amount": "100.00"},
            headers=as_caller(RECIPIENT)
        )
        assert paid.status_code == 200
        assert paid.json()["issuer_status"] == "PaymentReceived"
        assert paid.json()["recipient_status"] == "Paid"
        assert ledger.rail.get_balance(ISSUER) == Decimal(100)

    def test_outsider_forbidden(self, client):
        create_invoice(client)

        response = client.post("/api/v1/invoices/1/approve", headers=as_caller(OUTSIDER))

        assert response.status_code == 403
        assert response.json()["detail"]["reason"] == "Unauthorized"

    def test_issuer_approve_is_invalid_transition(self, client):
        create_invoice(client)

        response = client.post("/api/v1/invoices/1/approve", headers=as_caller(ISSUER))

        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "InvalidTransition"

    def test_reject_then_pay(self, client):
        create_invoice(client)
        rejected = client.post("/api/v1/invoices/1/reject", headers=as_caller(RECIPIENT))
        assert rejected.json()["issuer_status"] == "Rejected"

        response = client.post(
            "/api/v1/invoices/1/pay",
            json={"tendered_amount": "100.00"},
            headers=as_caller(RECIPIENT)
        )
        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "NotApproved"

    def test_modify(self, client):
        create_invoice(client)

        response = client.post(
            "/api/v1/invoices/1/modify",
            json={
                "client_name": "Globex Ltd",
                "amount": "80.00",
                "due_date": (NOW + timedelta(days=14)).isoformat(),
                "message": "partial"
            },
            headers=as_caller(RECIPIENT)
        )

        body = response.json()
        assert response.status_code == 200
        assert body["amount"] == "80.00"
        assert body["issuer_status"] == "Pending"
        assert body["recipient_status"] == "Approved"

    def test_amount_mismatch(self, client):
        create_invoice(client)
        client.post("/api/v1/invoices/1/approve", headers=as_caller(RECIPIENT))

        response = client.post(
            "/api/v1/invoices/1/pay",
            json={"tendered_amount": "99.99"},
            headers=as_caller(RECIPIENT)
        )

        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "AmountMismatch"

class TestSweepEndpoint:

    def test_admin_sweeps(self, client, ledger):
        create_invoice(client)
        ledger.clock.advance(timedelta(days=2))

        response = client.post("/api/v1/sweeps/overdue", headers=as_caller(ADMIN))

        assert response.status_code == 200
        assert response.json() == {"swept": [1]}
        assert client.get("/api/v1/invoices/1").json()["recipient_status"] == "Overdue"

    def test_non_admin_forbidden(self, client):
        response = client.post("/api/v1/sweeps/overdue", headers=as_caller(ISSUER))
        assert response.status_code == 403

    def test_events_feed(self, client):
        create_invoice(client)
        client.post("/api/v1/invoices/1/approve", headers=as_caller(RECIPIENT))

        events = client.get("/api/v1/events").json()

        assert [event["event"] for event in events] == ["InvoiceCreated", "InvoiceUpdated"]
        assert events[1]["recipient_status"] == "Approved"

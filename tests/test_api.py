"""End-to-end tests for the HTTP API."""

import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from billcycle.db import get_db
from billcycle.main import app


@pytest.fixture()
def client(db_session):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def active_subscription(client):
    product = client.post("/api/v1/catalog/products", json={"name": "Fiber 100"}).json()
    plan = client.post(
        "/api/v1/catalog/plans",
        json={
            "code": f"FIB-{uuid.uuid4().hex[:6]}",
            "name": "Fiber monthly",
            "currency": "USD",
            "billing_period": "monthly",
            "lines": [{"product_id": product["id"], "unit_price": "100.00"}],
        },
    ).json()
    created = client.post(
        "/api/v1/subscriptions",
        json={
            "customer_id": str(uuid.uuid4()),
            "plan_id": plan["id"],
            "start_date": "2024-01-01",
        },
    )
    assert created.status_code == 201
    activated = client.post(f"/api/v1/subscriptions/{created.json()['id']}/activate")
    assert activated.status_code == 200
    return activated.json()


def _billed_invoice(client, subscription):
    resp = client.post(
        f"/api/v1/subscriptions/{subscription['id']}/billing-cycle",
        params={"as_of": "2024-02-01"},
    )
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "generated"
    return client.get(f"/api/v1/invoices/{resp.json()['invoice_id']}").json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_metrics_exposed(client):
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text


def test_request_id_echoed(client):
    resp = client.get("/health", headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"


def test_subscription_activation(active_subscription):
    assert active_subscription["status"] == "active"
    assert active_subscription["next_billing_date"] == "2024-01-01"


def test_billing_cycle_and_payment_flow(client, active_subscription):
    invoice = _billed_invoice(client, active_subscription)
    assert invoice["status"] == "confirmed"
    assert Decimal(invoice["total"]) == Decimal("100.00")
    assert len(invoice["lines"]) == 1

    listed = client.get(
        "/api/v1/invoices", params={"subscription_id": active_subscription["id"]}
    ).json()
    assert listed["count"] == 1

    resp = client.post(
        "/api/v1/payments/manual",
        json={"invoice_id": invoice["id"], "amount": "100.00", "method": "bank_transfer"},
    )
    assert resp.status_code == 201
    assert resp.json()["status"] == "completed"

    paid = client.get(f"/api/v1/invoices/{invoice['id']}").json()
    assert paid["status"] == "paid"
    assert Decimal(paid["balance_due"]) == Decimal("0.00")


def test_overpayment_error_envelope(client, active_subscription):
    invoice = _billed_invoice(client, active_subscription)
    resp = client.post(
        "/api/v1/payments/manual",
        json={"invoice_id": invoice["id"], "amount": "150.00"},
        headers={"x-request-id": "req-overpay"},
    )
    assert resp.status_code == 409
    body = resp.json()
    assert body["code"] == "overpayment"
    assert body["request_id"] == "req-overpay"
    assert body["details"]["invoice_id"] == invoice["id"]

    unchanged = client.get(f"/api/v1/invoices/{invoice['id']}").json()
    assert Decimal(unchanged["paid_amount"]) == Decimal("0.00")


def test_cancel_paid_invoice_rejected(client, active_subscription):
    invoice = _billed_invoice(client, active_subscription)
    client.post("/api/v1/payments/manual", json={"invoice_id": invoice["id"], "amount": "10.00"})
    resp = client.post(f"/api/v1/invoices/{invoice['id']}/cancel")
    assert resp.status_code == 409
    assert resp.json()["code"] == "invoice_has_payments"


def test_billing_run(client, active_subscription):
    resp = client.post("/api/v1/billing-runs", json={"as_of": "2024-04-01"})
    assert resp.status_code == 201
    run = resp.json()
    assert run["status"] == "success"
    assert run["invoices_created"] == 3

    runs = client.get("/api/v1/billing-runs").json()
    assert [item["id"] for item in runs["items"]] == [run["id"]]

    latest = client.get("/api/v1/billing-runs/latest", params={"run_on": "2024-04-01"})
    assert latest.json()["id"] == run["id"]
    failing = client.get("/api/v1/billing-runs", params={"with_failures": "true"}).json()
    assert failing["items"] == []


def test_latest_billing_run_missing(client):
    resp = client.get("/api/v1/billing-runs/latest")
    assert resp.status_code == 404
    assert resp.json()["message"] == "No billing runs recorded"


def test_cancelled_subscription_cycle_conflict(client, active_subscription):
    client.post(
        f"/api/v1/subscriptions/{active_subscription['id']}/cancel",
        json={"reason": "moving"},
    )
    resp = client.post(
        f"/api/v1/subscriptions/{active_subscription['id']}/billing-cycle",
        params={"as_of": "2024-02-01"},
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "subscription_not_active"

    history = client.get(f"/api/v1/subscriptions/{active_subscription['id']}/history").json()
    assert sorted(event["action"] for event in history) == ["activated", "cancelled", "created"]


def test_manual_invoice_flow(client):
    draft = client.post(
        "/api/v1/invoices", json={"customer_id": str(uuid.uuid4()), "currency": "USD"}
    ).json()
    with_line = client.post(
        f"/api/v1/invoices/{draft['id']}/lines",
        json={
            "description": "Install",
            "unit_price": "100.00",
            "discount_amount": "10.00",
            "tax_rate": "5",
        },
    )
    assert with_line.status_code == 201
    confirmed = client.post(f"/api/v1/invoices/{draft['id']}/confirm").json()
    assert Decimal(confirmed["total"]) == Decimal("94.50")

    locked = client.post(
        f"/api/v1/invoices/{draft['id']}/lines",
        json={"description": "Late", "unit_price": "1.00"},
    )
    assert locked.status_code == 409
    assert locked.json()["code"] == "invoice_locked"


def test_fractional_yen_amounts_are_rejected(client):
    draft = client.post(
        "/api/v1/invoices", json={"customer_id": str(uuid.uuid4()), "currency": "JPY"}
    ).json()
    bad_line = client.post(
        f"/api/v1/invoices/{draft['id']}/lines",
        json={"description": "Router", "unit_price": "9.99"},
    )
    assert bad_line.status_code == 422
    assert bad_line.json()["code"] == "invalid_amount"

    client.post(
        f"/api/v1/invoices/{draft['id']}/lines",
        json={"description": "Router", "unit_price": "1000"},
    )
    client.post(f"/api/v1/invoices/{draft['id']}/confirm")
    resp = client.post(
        "/api/v1/payments/manual", json={"invoice_id": draft["id"], "amount": "10.50"}
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "invalid_amount"
    assert resp.json()["details"] == {"amount": "10.50", "currency": "JPY"}


def test_empty_invoice_cannot_be_confirmed(client):
    draft = client.post("/api/v1/invoices", json={"customer_id": str(uuid.uuid4())}).json()
    resp = client.post(f"/api/v1/invoices/{draft['id']}/confirm")
    assert resp.status_code == 422
    assert resp.json()["code"] == "empty_invoice"


def test_not_found_envelope(client):
    resp = client.get(f"/api/v1/invoices/{uuid.uuid4()}")
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == "http_404"
    assert body["message"] == "Invoice not found"


def test_validation_error_envelope(client):
    resp = client.post(
        "/api/v1/subscriptions",
        json={"customer_id": "not-a-uuid", "plan_id": str(uuid.uuid4()), "start_date": "2024-01-01"},
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


def test_invalid_order_by(client):
    resp = client.get("/api/v1/subscriptions", params={"order_by": "nope"})
    assert resp.status_code == 400

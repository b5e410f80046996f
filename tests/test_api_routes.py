"""Route tests for the webhook and admin endpoints."""

import json
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.db import get_db
from app.main import app
from app.models.billing import InvoiceStatus
from app.models.catalog import ServiceStatus
from app.services.isolation import IsolationEngine
from app.services.payment_webhooks import PaymentWebhookProcessor
from app.services.provisioning import ProvisioningEngine
from tests.mocks import FakeDispatcher, FakeRouterClient, StubGateway

TODAY = date(2026, 3, 10)


def _processor(dispatcher=None):
    return PaymentWebhookProcessor(
        {"stub": StubGateway()}, dispatcher or FakeDispatcher(), today=lambda: TODAY
    )


@pytest.fixture()
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def router_client(monkeypatch):
    fake = FakeRouterClient()
    isolation = IsolationEngine(fake, grace_period_days=3)
    provisioning = ProvisioningEngine(fake, isolation, today=lambda: TODAY)
    monkeypatch.setattr("app.api.services.get_provisioning_engine", lambda: provisioning)
    monkeypatch.setattr("app.api.services.get_isolation_engine", lambda: isolation)
    return fake


class TestPaymentWebhookRoute:
    def test_processes_payment(self, client, db_session, make_service, make_invoice, monkeypatch):
        invoice = make_invoice(make_service(expiry_date=TODAY), due_date=TODAY)
        monkeypatch.setattr("app.api.webhooks.get_webhook_processor", lambda: _processor(FakeDispatcher()))

        response = client.post(
            "/webhooks/payment/stub",
            content=json.dumps(
                {"transaction_id": "tx-1", "status": "success", "external_id": str(invoice.id)}
            ),
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Payment processed successfully"}
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.paid

    def test_unknown_gateway(self, client, monkeypatch):
        monkeypatch.setattr("app.api.webhooks.get_webhook_processor", lambda: _processor())

        response = client.post("/webhooks/payment/paypal", content=b"{}")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_bad_signature(self, client, monkeypatch):
        monkeypatch.setattr("app.api.webhooks.get_webhook_processor", lambda: _processor())

        response = client.post(
            "/webhooks/payment/stub",
            content=json.dumps({"valid": False, "transaction_id": "tx", "status": "success"}),
        )

        assert response.status_code == 403
        assert response.json() == {"success": False, "message": "Invalid signature"}


class TestAdminRoutes:
    def test_approve_installation(self, client, router_client, customer, package, router):
        response = client.post(
            f"/admin/customers/{customer.id}/approve",
            json={"package_id": str(package.id), "router_id": str(router.id)},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["level"] == "success"
        assert body["username"].startswith("pppoe_20260310_")

    def test_approve_with_router_down_is_warning(self, client, router_client, customer, package, router):
        router_client.fail_create = True

        response = client.post(
            f"/admin/customers/{customer.id}/approve",
            json={"package_id": str(package.id), "router_id": str(router.id)},
        )

        assert response.json()["level"] == "warning"

    def test_isolate_and_restore(self, client, router_client, db_session, make_service):
        service = make_service()

        assert client.post(f"/admin/services/{service.id}/isolate").json()["level"] == "success"
        db_session.refresh(service)
        assert service.status == ServiceStatus.isolated

        assert client.post(f"/admin/services/{service.id}/restore").json()["level"] == "success"
        db_session.refresh(service)
        assert service.status == ServiceStatus.active

    def test_isolate_without_router_user_is_error(self, client, router_client, make_service):
        service = make_service(mikrotik_user_id=None)

        assert client.post(f"/admin/services/{service.id}/isolate").json()["level"] == "error"

    def test_terminate(self, client, router_client, make_service):
        service = make_service()

        response = client.post(f"/admin/services/{service.id}/terminate")

        assert response.json()["level"] == "success"
        assert router_client.deleted == ["*1A"]

    def test_missing_service_is_404(self, client, router_client):
        response = client.post("/admin/services/not-a-uuid/isolate")

        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Service not found"}

    def test_isolation_history(self, client, router_client, make_service, make_invoice):
        service = make_service()
        make_invoice(service, due_date=TODAY - timedelta(days=5))

        response = client.get(f"/admin/services/{service.id}/isolation-history")

        assert response.status_code == 200
        assert len(response.json()["unpaid_invoices"]) == 1

    def test_payment_link(self, client, db_session, make_service, make_invoice, monkeypatch):
        invoice = make_invoice(make_service(), due_date=TODAY)
        gateway = MagicMock()
        gateway.create_payment_link.return_value = "https://pay.example/inv"
        monkeypatch.setattr("app.api.services.get_gateway_registry", lambda: {"midtrans": gateway})

        response = client.post(f"/admin/invoices/{invoice.id}/payment-link", json={"gateway": "midtrans"})

        assert response.status_code == 200
        assert response.json()["payment_link"] == "https://pay.example/inv"

    def test_payment_link_for_paid_invoice_conflicts(self, client, make_service, make_invoice, monkeypatch):
        invoice = make_invoice(make_service(), due_date=TODAY, status=InvoiceStatus.paid)
        monkeypatch.setattr("app.api.services.get_gateway_registry", lambda: {"midtrans": MagicMock()})

        response = client.post(f"/admin/invoices/{invoice.id}/payment-link", json={"gateway": "midtrans"})

        assert response.status_code == 409
        assert response.json()["success"] is False


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}

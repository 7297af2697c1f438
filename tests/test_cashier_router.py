"""HTTP surface tests: auth, editing, settlement and error mapping."""

import pytest
from fastapi.testclient import TestClient

from clinic_cashier.api.deps.cashier import get_clinic_api
from clinic_cashier.core.security import TokenManager
from clinic_cashier.main import create_app
from clinic_cashier.services.invoice_api import InvoiceApiClient


@pytest.fixture
def client(http):
    app = create_app()

    def fake_clinic_api():
        return InvoiceApiClient(http, token="test-token")

    app.dependency_overrides[get_clinic_api] = fake_clinic_api
    with TestClient(app) as test_client:
        yield test_client


def _auth(role="cashier", user="cashier-1"):
    token = TokenManager().create_access_token(user, role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers():
    return _auth()


class TestAuth:
    def test_missing_token(self, client):
        response = client.get("/api/cashier/invoices/pending")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/api/cashier/invoices/pending", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_wrong_role(self, client):
        response = client.get("/api/cashier/invoices/pending", headers=_auth(role="doctor"))
        assert response.status_code == 403

    def test_health_is_open(self, client):
        assert client.get("/health").json()["status"] == "healthy"


class TestInvoiceFlow:
    def test_lists(self, client, headers, clinic, seeded):
        clinic.add_invoice("done-1", status="paid")

        pending = client.get("/api/cashier/invoices/pending", headers=headers).json()
        completed = client.get("/api/cashier/invoices/completed", headers=headers).json()

        assert [inv["id"] for inv in pending["invoices"]] == ["inv-1"]
        assert completed["count"] == 1

    def test_nothing_open(self, client, headers):
        response = client.get("/api/cashier/invoice", headers=headers)
        assert response.status_code == 400

    def test_open_missing_invoice(self, client, headers):
        response = client.post("/api/cashier/invoices/nope/open", headers=headers)
        assert response.status_code == 404

    def test_open_edit_and_settle(self, client, headers, clinic, seeded):
        view = client.post("/api/cashier/invoices/inv-1/open", headers=headers).json()
        assert view["invoice"]["version"] == 2
        assert [s["name"] for s in view["services"]] == ["Consultation"]

        response = client.post(
            "/api/cashier/invoice/services",
            json={"service_name": "X-ray", "price": "80.00"},
            headers=headers,
        )
        assert response.status_code == 201
        assert response.json()["view"]["invoice"]["version"] == 3

        response = client.put(
            f"/api/cashier/invoice/medicines/{seeded['amoxicillin']['id']}",
            json={"action": "dispense"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["totals"]["total"] == 230.0

        dialog = client.post("/api/cashier/invoice/payment-dialog", headers=headers).json()
        assert dialog["current_due"] == 230.0
        assert dialog["partial_allowed"]

        response = client.post("/api/cashier/invoice/settle", json={"payment_method": "cash"}, headers=headers)
        body = response.json()
        assert response.status_code == 200, body
        assert body["outcome"]["state"] == "completed"
        assert body["view"] is None
        assert clinic.invoices["inv-1"]["status"] == "paid"
        assert [p["amount"] for p in clinic.payments] == [230.0]

        history = client.get("/api/cashier/invoices/inv-1/payments", headers=headers).json()
        assert history["total_paid"] == 230.0

        receipt = client.get(f"/api/cashier/payments/{clinic.payments[0]['id']}/receipt", headers=headers)
        assert receipt.status_code == 200
        assert receipt.headers["content-type"] == "application/pdf"
        assert receipt.content.startswith(b"%PDF")

    def test_sessions_are_per_user(self, client, headers, seeded):
        client.post("/api/cashier/invoices/inv-1/open", headers=headers)

        other = client.get("/api/cashier/invoice", headers=_auth(user="cashier-2"))
        assert other.status_code == 400
        assert client.get("/api/cashier/invoice", headers=headers).status_code == 200

    def test_discount_without_save_stays_local(self, client, headers, clinic, seeded):
        client.post("/api/cashier/invoices/inv-1/open", headers=headers)

        response = client.put("/api/cashier/invoice/discount", json={"discount_percentage": "10"}, headers=headers)

        assert response.status_code == 200
        assert clinic.invoices["inv-1"]["version"] == 2
        assert response.json()["view"]["discount"]["percentage"] == 10.0

    def test_discount_fields_are_exclusive(self, client, headers, seeded):
        client.post("/api/cashier/invoices/inv-1/open", headers=headers)
        response = client.put(
            "/api/cashier/invoice/discount",
            json={"discount_percentage": "10", "discount_amount": "5"},
            headers=headers,
        )
        assert response.status_code == 422

    def test_conflicting_edit_is_409_with_fresh_view(self, client, headers, clinic, seeded):
        client.post("/api/cashier/invoices/inv-1/open", headers=headers)
        clinic.bump("inv-1")

        response = client.delete(
            f"/api/cashier/invoice/services/{seeded['consultation']['id']}",
            headers=headers,
        )

        body = response.json()
        assert response.status_code == 409
        assert body["applied"] is False
        assert body["reason"] == "version_conflict"
        assert body["notice"]["severity"] == "warning"
        assert body["view"]["invoice"]["version"] == 3

    def test_partial_at_limit_is_400(self, client, headers, seeded, older_invoices):
        client.post("/api/cashier/invoices/inv-1/open", headers=headers)

        response = client.post(
            "/api/cashier/invoice/settle",
            json={"is_partial": True, "partial_amount": "20", "hold_reason": "Insurance pending"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["outcome"]["reason"] == "limit_reached"

    def test_cancel_dialog(self, client, headers, seeded):
        client.post("/api/cashier/invoices/inv-1/open", headers=headers)
        client.post("/api/cashier/invoice/payment-dialog", headers=headers)

        response = client.delete("/api/cashier/invoice/payment-dialog", headers=headers)

        assert response.status_code == 204

    def test_backend_failure_is_502(self, client, headers, clinic):
        clinic.fail_once("GET", "/invoices/pending", 500, {"message": "database is down"})

        response = client.get("/api/cashier/invoices/pending", headers=headers)

        assert response.status_code == 502
        assert response.json()["detail"] == "database is down"


class TestRecoveryEndpoint:
    def test_nothing_to_recover(self, client, headers):
        response = client.get("/api/cashier/recovery", headers=headers)
        assert response.json()["outcome"]["action"] == "none"

    def test_interrupted_payment_is_reported(self, client, headers, clinic, seeded):
        registry = client.app.state.sessions
        session = registry.session_for("cashier-1", InvoiceApiClient(None))
        client.portal.call(session.monitor.mark, "inv-1", 150, "cash")

        body = client.get("/api/cashier/recovery", headers=headers).json()

        assert body["outcome"]["action"] == "verify_manually"
        assert body["outcome"]["marker"]["invoice_id"] == "inv-1"

"""Tests for the clinic API client and its error mapping."""

import json
from decimal import Decimal

import httpx
import pytest

from clinic_cashier.core.errors import (
    AlreadyFullyPaidError,
    BackendError,
    BackendUnavailableError,
    BackendValidationError,
    InvoiceNotFoundError,
    VersionConflictError,
)
from clinic_cashier.schemas.invoice import DiscountUpdate, FullPaymentCreate, ServiceItemCreate
from clinic_cashier.services.invoice_api import InvoiceApiClient, raise_for_clinic_error


def _response(status_code, body):
    return httpx.Response(status_code, json=body, request=httpx.Request("GET", "http://clinic.test/x"))


class TestErrorMapping:
    def test_version_mismatch(self):
        response = _response(409, {"code": "VERSION_MISMATCH", "message": "stale", "currentVersion": 5, "expectedVersion": 4})
        with pytest.raises(VersionConflictError) as exc_info:
            raise_for_clinic_error(response, invoice_id="inv-1")

        assert exc_info.value.expected_version == 4
        assert exc_info.value.actual_version == 5
        assert exc_info.value.invoice_id == "inv-1"

    def test_already_paid_code(self):
        with pytest.raises(AlreadyFullyPaidError):
            raise_for_clinic_error(_response(400, {"code": "INVOICE_ALREADY_PAID", "message": "nope"}))

    def test_already_paid_message(self):
        with pytest.raises(AlreadyFullyPaidError):
            raise_for_clinic_error(_response(400, {"error": "Invoice is already fully paid"}))

    def test_not_found(self):
        with pytest.raises(InvoiceNotFoundError):
            raise_for_clinic_error(_response(404, {"message": "Invoice not found"}))

    @pytest.mark.parametrize("status_code", [400, 422])
    def test_validation(self, status_code):
        with pytest.raises(BackendValidationError) as exc_info:
            raise_for_clinic_error(_response(status_code, {"message": "amount required"}))
        assert exc_info.value.status_code == status_code
        assert exc_info.value.message == "amount required"

    def test_other_status(self):
        with pytest.raises(BackendError) as exc_info:
            raise_for_clinic_error(_response(500, {"message": "boom"}))
        assert not isinstance(exc_info.value, BackendValidationError)
        assert exc_info.value.status_code == 500

    def test_non_json_body(self):
        response = httpx.Response(502, text="Bad gateway", request=httpx.Request("GET", "http://clinic.test/x"))
        with pytest.raises(BackendError) as exc_info:
            raise_for_clinic_error(response)
        assert exc_info.value.message == "Bad gateway"

    def test_success_passes(self):
        raise_for_clinic_error(_response(200, {"ok": True}))


@pytest.mark.asyncio
class TestInvoiceApiClient:
    async def test_get_invoice_unwraps_envelope(self, api, seeded):
        invoice = await api.get_invoice("inv-1")
        assert invoice.version == 2
        assert invoice.invoice_number == "INV-001"
        assert len(invoice.items) == 2

    async def test_bearer_token_forwarded(self, api, clinic, seeded):
        await api.get_invoice("inv-1")
        assert clinic.requests[-1].headers["Authorization"] == "Bearer test-token"

    async def test_mutations_carry_expected_version(self, api, clinic, seeded):
        invoice = await api.update_discount("inv-1", DiscountUpdate(discount_amount=Decimal("5")), expected_version=2)

        sent = json.loads(clinic.requests[-1].content)
        assert sent["expected_version"] == 2
        assert sent["discount_amount"] == 5.0
        assert invoice.version == 3

    async def test_remove_item_sends_version_as_query(self, api, clinic, seeded):
        item_id = seeded["consultation"]["id"]
        invoice = await api.remove_invoice_item("inv-1", item_id, expected_version=2)

        assert clinic.requests[-1].url.params["expected_version"] == "2"
        assert invoice.find_item(item_id) is None

    async def test_stale_version_raises_conflict(self, api, clinic, seeded):
        clinic.bump("inv-1")
        item = ServiceItemCreate(service_name="X-ray", unit_price=Decimal("80"))
        with pytest.raises(VersionConflictError) as exc_info:
            await api.add_service_item("inv-1", item, expected_version=2)
        assert exc_info.value.actual_version == 3

    async def test_outstanding_balance_and_limit(self, api, seeded, older_invoices):
        balance = await api.get_outstanding_balance("pat-1")
        assert balance.total_balance == Decimal("230.00")  # 150 current + 50 + 30
        assert {inv.id for inv in balance.invoices} == {"inv-1", "old-1", "old-2"}

        check = await api.can_create_invoice("pat-1")
        assert check.can_create is False
        assert check.count == 3

    async def test_receipt_pdf(self, api, seeded):
        response = await api.record_full_payment(
            "inv-1", FullPaymentCreate(payment_method="cash", amount_paid=Decimal("150")), expected_version=2
        )
        assert response.invoice.status == "paid"
        assert await api.get_receipt_pdf(response.payment.id) == b"%PDF-1.4 receipt"

    async def test_transport_error_is_backend_unavailable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://clinic.test/api")
        client = InvoiceApiClient(http)
        with pytest.raises(BackendUnavailableError):
            await client.get_invoice("inv-1")
        await http.aclose()

    async def test_success_with_unexpected_body_is_backend_error(self, api, clinic, seeded):
        clinic.fail_once("GET", "/invoices/inv-1", 200, {"invoice": {"id": "inv-1"}})

        with pytest.raises(BackendError) as exc_info:
            await api.get_invoice("inv-1")
        assert exc_info.value.invoice_id == "inv-1"
        assert exc_info.value.status_code == 200

    async def test_success_with_non_json_body_is_backend_error(self):
        def html(request):
            return httpx.Response(200, content=b"<html>maintenance</html>", headers={"Content-Type": "text/html"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(html), base_url="http://clinic.test/api")
        client = InvoiceApiClient(http)
        with pytest.raises(BackendError, match="Unexpected response"):
            await client.list_pending()
        await http.aclose()

# clinic_cashier/services/invoice_api.py
"""
Clinic API Client
Versioned invoice, item and payment calls against the clinic REST backend.
Every mutating call carries the expected invoice version; the backend answers
409 VERSION_MISMATCH when it has moved on.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx
from pydantic import ValidationError

from clinic_cashier.core.errors import (
    AlreadyFullyPaidError,
    BackendError,
    BackendUnavailableError,
    BackendValidationError,
    InvoiceNotFoundError,
    VersionConflictError,
)
from clinic_cashier.schemas.invoice import (
    DiscountUpdate,
    FullPaymentCreate,
    Invoice,
    InvoiceItemUpdate,
    InvoiceLimitCheck,
    InvoiceSummary,
    MedicineItemCreate,
    OutstandingBalanceResponse,
    PartialPaymentCreate,
    PaymentResponse,
    PaymentTransaction,
    ServiceItemCreate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

VERSION_MISMATCH = "VERSION_MISMATCH"
INVOICE_ALREADY_PAID = "INVOICE_ALREADY_PAID"
_ALREADY_PAID_PHRASES = ("already fully paid", "already paid")


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    if isinstance(body, dict):
        return body
    return {"message": str(body)}


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def raise_for_clinic_error(response: httpx.Response, invoice_id: Optional[str] = None) -> None:
    """Translate a non-2xx clinic API response into the cashier error taxonomy"""
    if response.is_success:
        return

    body = _error_body(response)
    code = body.get("code") or body.get("error")
    message = body.get("message") or body.get("detail") or body.get("error") or response.reason_phrase
    status_code = response.status_code

    if code == VERSION_MISMATCH or (status_code == 409 and "currentVersion" in body):
        raise VersionConflictError(
            expected_version=_as_int(body.get("expectedVersion")),
            actual_version=_as_int(body.get("currentVersion")),
            invoice_id=invoice_id,
        )

    lowered = str(message).lower()
    if code == INVOICE_ALREADY_PAID or any(phrase in lowered for phrase in _ALREADY_PAID_PHRASES):
        raise AlreadyFullyPaidError(str(message), invoice_id=invoice_id)

    if status_code == 404:
        raise InvoiceNotFoundError(str(message or "Invoice not found"), invoice_id=invoice_id)

    if status_code in (400, 422):
        raise BackendValidationError(str(message), status_code=status_code, code=code, invoice_id=invoice_id)

    raise BackendError(str(message), status_code=status_code, code=code, invoice_id=invoice_id)


def _invoice_from(body: Any) -> Invoice:
    if isinstance(body, dict) and isinstance(body.get("invoice"), dict):
        return Invoice.model_validate(body["invoice"])
    return Invoice.model_validate(body)


def _payment_response_from(body: Any) -> PaymentResponse:
    if isinstance(body, dict) and "invoice" not in body and "payment" not in body and "version" in body:
        return PaymentResponse(invoice=Invoice.model_validate(body))
    return PaymentResponse.model_validate(body)


def _unwrap_list(body: Any, *keys: str) -> List[Any]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in keys:
            if isinstance(body.get(key), list):
                return body[key]
    return []


def _summaries_from(body: Any) -> List[InvoiceSummary]:
    return [InvoiceSummary.model_validate(row) for row in _unwrap_list(body, "invoices", "data")]


def _payments_from(body: Any) -> List[PaymentTransaction]:
    return [PaymentTransaction.model_validate(row) for row in _unwrap_list(body, "payments", "data")]


def _parse(response: httpx.Response, parser: Callable[[Any], T], invoice_id: Optional[str] = None) -> T:
    """Decode a 2xx body; anything unreadable is a backend fault"""
    try:
        return parser(response.json())
    except (ValidationError, ValueError) as e:
        logger.error(f"Unreadable clinic API response for {response.request.method} {response.request.url.path}: {e}")
        raise BackendError(
            f"Unexpected response from the clinic API ({response.status_code})",
            status_code=response.status_code,
            invoice_id=invoice_id,
        ) from e


class InvoiceApiClient:
    """Thin async wrapper over the clinic invoice/payment endpoints"""

    def __init__(self, http: httpx.AsyncClient, token: Optional[str] = None):
        self.http = http
        self.token = token

    def with_token(self, token: Optional[str]) -> "InvoiceApiClient":
        """Same connection pool, different caller"""
        return InvoiceApiClient(self.http, token)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        invoice_id: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        logger.debug(f"Clinic API {method} {path}")
        try:
            response = await self.http.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Clinic API timeout on {method} {path}")
            raise BackendUnavailableError(f"Clinic API timed out: {e}", invoice_id=invoice_id) from e
        except httpx.TransportError as e:
            logger.error(f"Clinic API unreachable on {method} {path}: {e}")
            raise BackendUnavailableError(f"Clinic API unreachable: {e}", invoice_id=invoice_id) from e

        raise_for_clinic_error(response, invoice_id=invoice_id)
        return response

    @staticmethod
    def _versioned(payload: Dict[str, Any], expected_version: int) -> Dict[str, Any]:
        body = dict(payload)
        body["expected_version"] = expected_version
        return body

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_invoice(self, invoice_id: str) -> Invoice:
        response = await self._request("GET", f"/invoices/{invoice_id}", invoice_id=invoice_id)
        return _parse(response, _invoice_from, invoice_id)

    async def list_pending(self) -> List[InvoiceSummary]:
        response = await self._request("GET", "/invoices/pending")
        return _parse(response, _summaries_from)

    async def list_completed(self, limit: int = 50, offset: int = 0) -> List[InvoiceSummary]:
        response = await self._request("GET", "/invoices/completed", params={"limit": limit, "offset": offset})
        return _parse(response, _summaries_from)

    async def get_outstanding_balance(self, patient_id: str) -> OutstandingBalanceResponse:
        response = await self._request("GET", f"/invoices/patient/{patient_id}/outstanding-balance")
        return _parse(response, OutstandingBalanceResponse.model_validate)

    async def can_create_invoice(self, patient_id: str) -> InvoiceLimitCheck:
        response = await self._request("GET", f"/invoices/patient/{patient_id}/can-create")
        return _parse(response, InvoiceLimitCheck.model_validate)

    async def get_payment_history(self, invoice_id: str) -> List[PaymentTransaction]:
        response = await self._request("GET", f"/invoices/{invoice_id}/payment-history", invoice_id=invoice_id)
        return _parse(response, _payments_from, invoice_id)

    async def get_receipt_pdf(self, payment_id: str) -> bytes:
        response = await self._request("GET", f"/payments/{payment_id}/receipt")
        return response.content

    # ------------------------------------------------------------------
    # Versioned invoice mutations
    # ------------------------------------------------------------------

    async def update_discount(self, invoice_id: str, discount: DiscountUpdate, expected_version: int) -> Invoice:
        response = await self._request(
            "PUT",
            f"/invoices/{invoice_id}/discount",
            json=self._versioned(discount.model_dump(mode="json"), expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

    async def update_outstanding_balance_flag(self, invoice_id: str, flag: bool, expected_version: int) -> Invoice:
        response = await self._request(
            "PUT",
            f"/invoices/{invoice_id}/outstanding-balance",
            json=self._versioned({"include_outstanding_balance": flag}, expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

    async def add_service_item(self, invoice_id: str, item: ServiceItemCreate, expected_version: int) -> Invoice:
        response = await self._request(
            "POST",
            f"/invoices/{invoice_id}/items/service",
            json=self._versioned(item.model_dump(mode="json"), expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

    async def add_medicine_item(self, invoice_id: str, item: MedicineItemCreate, expected_version: int) -> Invoice:
        response = await self._request(
            "POST",
            f"/invoices/{invoice_id}/items/medicine",
            json=self._versioned(item.model_dump(mode="json"), expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

    async def update_invoice_item(
        self, invoice_id: str, item_id: str, updates: InvoiceItemUpdate, expected_version: int
    ) -> Invoice:
        response = await self._request(
            "PUT",
            f"/invoices/{invoice_id}/items/{item_id}",
            json=self._versioned(updates.model_dump(mode="json", exclude_none=True), expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

    async def remove_invoice_item(self, invoice_id: str, item_id: str, expected_version: int) -> Invoice:
        response = await self._request(
            "DELETE",
            f"/invoices/{invoice_id}/items/{item_id}",
            params={"expected_version": expected_version},
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

    async def add_prescriptions(self, invoice_id: str, visit_id: str, expected_version: int) -> Invoice:
        response = await self._request(
            "POST",
            f"/invoices/{invoice_id}/prescriptions",
            json=self._versioned({"visit_id": visit_id}, expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def record_partial_payment(
        self, invoice_id: str, payment: PartialPaymentCreate, expected_version: int
    ) -> PaymentResponse:
        response = await self._request(
            "POST",
            f"/invoices/{invoice_id}/partial-payment",
            json=self._versioned(payment.model_dump(mode="json"), expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _payment_response_from, invoice_id)

    async def record_full_payment(
        self, invoice_id: str, payment: FullPaymentCreate, expected_version: int
    ) -> PaymentResponse:
        response = await self._request(
            "POST",
            f"/invoices/{invoice_id}/payments",
            json=self._versioned(payment.model_dump(mode="json"), expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _payment_response_from, invoice_id)

    async def complete_invoice(self, invoice_id: str, completed_by: Optional[str], expected_version: int) -> Invoice:
        response = await self._request(
            "PUT",
            f"/invoices/{invoice_id}/complete",
            json=self._versioned({"completed_by": completed_by}, expected_version),
            invoice_id=invoice_id,
        )
        return _parse(response, _invoice_from, invoice_id)

"""Shared fixtures: an in-memory clinic backend behind httpx.MockTransport."""

import json
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from clinic_cashier.services.cashier_session import CashierSession
from clinic_cashier.services.invoice_api import InvoiceApiClient
from clinic_cashier.services.recovery import MemoryKeyValueStore, RecoveryMonitor

BASE_URL = "http://clinic.test/api"


def _d(value) -> Decimal:
    return Decimal(str(value or 0))


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


class FakeClinic:
    """
    Minimal versioned invoice backend.

    Every accepted mutation bumps the invoice version. Mutations carrying a
    stale expected_version get 409 VERSION_MISMATCH like the real service.
    """

    def __init__(self):
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.payments: List[Dict[str, Any]] = []
        self.prescriptions: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.requests: List[httpx.Request] = []
        self._failures: Dict[Tuple[str, str], List[Tuple[int, Dict[str, Any]]]] = {}
        self._seq = 0

    # -- seeding -------------------------------------------------------

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def add_invoice(self, invoice_id: str, **fields) -> Dict[str, Any]:
        invoice = {
            "id": invoice_id,
            "invoice_number": fields.pop("invoice_number", invoice_id.upper()),
            "version": fields.pop("version", 1),
            "status": fields.pop("status", "pending"),
            "patient_id": fields.pop("patient_id", "pat-1"),
            "visit_id": fields.pop("visit_id", "visit-1"),
            "total_amount": 0.0,
            "paid_amount": 0.0,
            "balance_due": 0.0,
            "discount_percentage": 0.0,
            "discount_amount": 0.0,
            "include_outstanding_balance": fields.pop("include_outstanding_balance", False),
            "created_at": fields.pop("created_at", datetime(2024, 6, 1, 9, 0).isoformat()),
            "items": [],
        }
        balance = fields.pop("balance_due", None)
        invoice.update(fields)
        self.invoices[invoice_id] = invoice
        if balance is not None:
            invoice["total_amount"] = balance
            invoice["balance_due"] = balance
        return invoice

    def add_item(self, invoice_id: str, item_type: str, name: str, quantity: int, unit_price) -> Dict[str, Any]:
        item = {
            "id": self._next_id("item"),
            "item_type": item_type,
            "item_name": name,
            "quantity": quantity,
            "unit_price": _money(_d(unit_price)),
            "total_price": _money(_d(unit_price) * quantity),
            "notes": None,
        }
        self.invoices[invoice_id]["items"].append(item)
        self._recalculate(self.invoices[invoice_id])
        return item

    def bump(self, invoice_id: str) -> int:
        """Simulate an edit by another cashier"""
        self.invoices[invoice_id]["version"] += 1
        return self.invoices[invoice_id]["version"]

    def fail_once(self, method: str, path: str, status_code: int, body: Dict[str, Any]) -> None:
        self._failures.setdefault((method, path), []).append((status_code, body))

    def calls_to(self, method: str, fragment: str) -> List[str]:
        return [path for m, path in self.calls if m == method and fragment in path]

    # -- helpers -------------------------------------------------------

    @staticmethod
    def _recalculate(invoice: Dict[str, Any]) -> None:
        subtotal = sum((_d(item["total_price"]) for item in invoice["items"]), Decimal("0"))
        if _d(invoice["discount_percentage"]) > 0:
            discount = subtotal * _d(invoice["discount_percentage"]) / 100
        else:
            discount = _d(invoice["discount_amount"])
        total = max(Decimal("0"), subtotal - discount)
        invoice["total_amount"] = _money(total)
        invoice["balance_due"] = _money(max(Decimal("0"), total - _d(invoice["paid_amount"])))

    @staticmethod
    def _json(status_code: int, body: Any) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    def _not_found(self) -> httpx.Response:
        return self._json(404, {"message": "Invoice not found"})

    def _check_version(self, invoice: Dict[str, Any], expected) -> Optional[httpx.Response]:
        if expected is None or int(expected) != invoice["version"]:
            return self._json(409, {
                "code": "VERSION_MISMATCH",
                "message": "Invoice has been modified by another user",
                "currentVersion": invoice["version"],
                "expectedVersion": int(expected) if expected is not None else None,
            })
        return None

    def _accept(self, invoice: Dict[str, Any], recalculate: bool = True) -> httpx.Response:
        if recalculate:
            self._recalculate(invoice)
        invoice["version"] += 1
        return self._json(200, invoice)

    def _outstanding_row(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        return {key: invoice[key] for key in ("id", "invoice_number", "version", "status", "balance_due", "created_at")}

    def _record_payment(self, invoice: Dict[str, Any], amount: Decimal, body: Dict[str, Any]) -> Dict[str, Any]:
        payment = {
            "id": self._next_id("pay"),
            "invoice_id": invoice["id"],
            "amount": _money(amount),
            "payment_method": body.get("payment_method"),
            "payment_notes": body.get("notes"),
            "hold_reason": body.get("hold_reason"),
            "payment_due_date": body.get("payment_due_date"),
            "received_at": datetime(2024, 6, 1, 10, 0).isoformat(),
        }
        self.payments.append(payment)
        invoice["paid_amount"] = _money(_d(invoice["paid_amount"]) + amount)
        invoice["balance_due"] = _money(max(Decimal("0"), _d(invoice["balance_due"]) - amount))
        invoice["status"] = "paid" if _d(invoice["balance_due"]) <= 0 else "partial_paid"
        invoice["version"] += 1
        return payment

    # -- transport -----------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        self.calls.append((method, path))
        self.requests.append(request)

        queued = self._failures.get((method, path))
        if queued:
            status_code, body = queued.pop(0)
            return self._json(status_code, body)

        body = json.loads(request.content) if request.content else {}

        if method == "GET" and path == "/invoices/pending":
            rows = [inv for inv in self.invoices.values() if inv["status"] != "paid"]
            return self._json(200, {"invoices": rows})

        if method == "GET" and path == "/invoices/completed":
            limit = int(request.url.params.get("limit", 50))
            offset = int(request.url.params.get("offset", 0))
            rows = [inv for inv in self.invoices.values() if inv["status"] == "paid"]
            return self._json(200, rows[offset:offset + limit])

        m = re.fullmatch(r"/invoices/patient/([^/]+)/outstanding-balance", path)
        if m and method == "GET":
            rows = [
                self._outstanding_row(inv)
                for inv in self.invoices.values()
                if inv["patient_id"] == m.group(1) and inv["status"] != "paid" and _d(inv["balance_due"]) > 0
            ]
            total = sum((_d(row["balance_due"]) for row in rows), Decimal("0"))
            return self._json(200, {"invoices": rows, "totalBalance": _money(total)})

        m = re.fullmatch(r"/invoices/patient/([^/]+)/can-create", path)
        if m and method == "GET":
            count = sum(
                1 for inv in self.invoices.values()
                if inv["patient_id"] == m.group(1) and inv["status"] != "paid"
            )
            return self._json(200, {
                "canCreate": count < 2,
                "outstandingCount": count,
                "message": "Patient has reached maximum outstanding invoices (2)" if count >= 2 else "OK",
            })

        m = re.fullmatch(r"/payments/([^/]+)/receipt", path)
        if m and method == "GET":
            if not any(p["id"] == m.group(1) for p in self.payments):
                return self._json(404, {"message": "Payment not found"})
            return httpx.Response(200, content=b"%PDF-1.4 receipt", headers={"Content-Type": "application/pdf"})

        m = re.fullmatch(r"/invoices/([^/]+)(/.*)?", path)
        if not m:
            return self._json(404, {"message": "Not found"})
        invoice = self.invoices.get(m.group(1))
        action = m.group(2) or ""
        if invoice is None:
            return self._not_found()

        if method == "GET" and action == "":
            return self._json(200, {"invoice": invoice})

        if method == "GET" and action == "/payment-history":
            return self._json(200, [p for p in self.payments if p["invoice_id"] == invoice["id"]])

        if method == "DELETE" and action.startswith("/items/"):
            conflict = self._check_version(invoice, request.url.params.get("expected_version"))
            if conflict:
                return conflict
            item_id = action[len("/items/"):]
            before = len(invoice["items"])
            invoice["items"] = [item for item in invoice["items"] if item["id"] != item_id]
            if len(invoice["items"]) == before:
                return self._json(404, {"message": "Item not found"})
            return self._accept(invoice)

        if action in ("/partial-payment", "/payments") and invoice["status"] == "paid":
            return self._json(400, {"code": "INVOICE_ALREADY_PAID", "message": "Invoice is already fully paid"})

        conflict = self._check_version(invoice, body.get("expected_version"))
        if conflict:
            return conflict

        if method == "PUT" and action == "/discount":
            invoice["discount_percentage"] = body.get("discount_percentage", 0)
            invoice["discount_amount"] = body.get("discount_amount", 0)
            return self._accept(invoice)

        if method == "PUT" and action == "/outstanding-balance":
            invoice["include_outstanding_balance"] = bool(body["include_outstanding_balance"])
            return self._accept(invoice, recalculate=False)

        if method == "POST" and action in ("/items/service", "/items/medicine"):
            item_type = action.rsplit("/", 1)[1]
            name = body.get("service_name") or body.get("medicine_name")
            item = {
                "id": self._next_id("item"),
                "item_type": item_type,
                "item_name": name,
                "quantity": body.get("quantity", 1),
                "unit_price": body["unit_price"],
                "total_price": _money(_d(body["unit_price"]) * body.get("quantity", 1)),
                "notes": body.get("notes"),
            }
            invoice["items"].append(item)
            return self._accept(invoice)

        if method == "PUT" and action.startswith("/items/"):
            item_id = action[len("/items/"):]
            item = next((i for i in invoice["items"] if i["id"] == item_id), None)
            if item is None:
                return self._json(404, {"message": "Item not found"})
            for key in ("item_name", "quantity", "unit_price", "total_price", "notes"):
                if key in body:
                    item[key] = body[key]
            return self._accept(invoice)

        if method == "POST" and action == "/prescriptions":
            for rx in self.prescriptions.get(body.get("visit_id"), []):
                invoice["items"].append({
                    "id": self._next_id("item"),
                    "item_type": "medicine",
                    "item_name": rx["name"],
                    "quantity": rx["quantity"],
                    "unit_price": rx["unit_price"],
                    "total_price": _money(_d(rx["unit_price"]) * rx["quantity"]),
                    "notes": None,
                })
            return self._accept(invoice)

        if method == "POST" and action == "/partial-payment":
            payment = self._record_payment(invoice, _d(body["amount"]), body)
            return self._json(201, {"invoice": invoice, "payment": payment})

        if method == "POST" and action == "/payments":
            payment = self._record_payment(invoice, _d(body["amount_paid"]), body)
            return self._json(201, {"invoice": invoice, "payment": payment})

        if method == "PUT" and action == "/complete":
            invoice["status"] = "paid"
            invoice["completed_by"] = body.get("completed_by")
            return self._accept(invoice, recalculate=False)

        return self._json(404, {"message": f"No route for {method} {path}"})


@pytest.fixture
def clinic():
    return FakeClinic()


@pytest.fixture
def http(clinic):
    return httpx.AsyncClient(transport=httpx.MockTransport(clinic.handle), base_url=BASE_URL)


@pytest.fixture
def api(http):
    return InvoiceApiClient(http, token="test-token")


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def monitor(store):
    return RecoveryMonitor(store, key="pendingPayment:cashier-1")


@pytest.fixture
def session(api, monitor):
    return CashierSession(api, monitor, user_id="cashier-1")


@pytest.fixture
def seeded(clinic):
    """
    Current invoice INV-001 (version 2): consultation 50.00 and
    Amoxicillin x10 at 10.00 each.
    """
    clinic.add_invoice("inv-1", invoice_number="INV-001", version=2)
    consultation = clinic.add_item("inv-1", "service", "Consultation", 1, "50.00")
    amoxicillin = clinic.add_item("inv-1", "medicine", "Amoxicillin", 10, "10.00")
    return {"invoice": clinic.invoices["inv-1"], "consultation": consultation, "amoxicillin": amoxicillin}


@pytest.fixture
def older_invoices(clinic):
    """Two unpaid invoices for the same patient: 50.00 (oldest) and 30.00"""
    base = datetime(2024, 1, 1, 9, 0)
    clinic.add_invoice("old-2", invoice_number="INV-OLD-2", balance_due=30.0,
                       created_at=(base + timedelta(days=31)).isoformat(), status="partial_paid")
    clinic.add_invoice("old-1", invoice_number="INV-OLD-1", balance_due=50.0,
                       created_at=base.isoformat())
    return clinic.invoices["old-1"], clinic.invoices["old-2"]

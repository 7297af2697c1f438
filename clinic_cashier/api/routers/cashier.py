# clinic_cashier/api/routers/cashier.py
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse

from clinic_cashier.api.deps.cashier import get_cashier_session
from clinic_cashier.core.config import settings
from clinic_cashier.schemas.cashier_api import (
    DiscountEdit,
    EditResponse,
    InvoiceListResponse,
    MedicineEdit,
    OutstandingToggle,
    PaymentHistoryResponse,
    RecoveryResponse,
    ServiceEdit,
    SettleResponse,
)
from clinic_cashier.schemas.invoice import quantize_money
from clinic_cashier.schemas.settlement import (
    CashierView,
    MutationApplied,
    MutationRejected,
    PaymentDialogView,
    SettlementRequest,
)
from clinic_cashier.services.cashier_session import CashierSession

router = APIRouter()

REJECTION_STATUS = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "limit_reached": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "backend_error": status.HTTP_502_BAD_GATEWAY,
}


def status_for_reason(reason: Optional[str]) -> int:
    """Conflicts of every kind (version, outstanding, already paid) are 409"""
    return REJECTION_STATUS.get(reason, status.HTTP_409_CONFLICT)


def _view_or_none(session: CashierSession) -> Optional[CashierView]:
    return session.view() if session.is_open else None


def _edit_response(session: CashierSession, result) -> JSONResponse:
    if isinstance(result, MutationApplied):
        body = EditResponse(applied=True, view=_view_or_none(session))
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))

    rejected: MutationRejected = result
    body = EditResponse(
        applied=False,
        reason=rejected.reason,
        notice=rejected.notice,
        close_view=rejected.close_view,
        view=_view_or_none(session),
    )
    return JSONResponse(status_code=status_for_reason(rejected.reason), content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Mount, lists
# ---------------------------------------------------------------------------

@router.get("/recovery", response_model=RecoveryResponse)
async def check_recovery(session: CashierSession = Depends(get_cashier_session)):
    """Reconcile a payment interrupted by a crash or closed tab"""
    return RecoveryResponse(outcome=await session.check_recovery())


@router.get("/invoices/pending", response_model=InvoiceListResponse)
async def list_pending_invoices(session: CashierSession = Depends(get_cashier_session)):
    session.pending = await session.api.list_pending()
    return InvoiceListResponse(invoices=session.pending, count=len(session.pending))


@router.get("/invoices/completed", response_model=InvoiceListResponse)
async def list_completed_invoices(
    limit: int = Query(default=settings.COMPLETED_PAGE_SIZE, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: CashierSession = Depends(get_cashier_session),
):
    session.completed = await session.api.list_completed(limit=limit, offset=offset)
    return InvoiceListResponse(invoices=session.completed, count=len(session.completed))


# ---------------------------------------------------------------------------
# Detail view
# ---------------------------------------------------------------------------

@router.post("/invoices/{invoice_id}/open", response_model=CashierView)
async def open_invoice(invoice_id: str, session: CashierSession = Depends(get_cashier_session)):
    """Load a fresh snapshot; list rows are never used for edits"""
    async with session.lock:
        return await session.open_invoice(invoice_id)


@router.post("/invoice/close", status_code=status.HTTP_204_NO_CONTENT)
async def close_invoice(session: CashierSession = Depends(get_cashier_session)):
    async with session.lock:
        session.close_invoice()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/invoice", response_model=CashierView)
async def current_invoice(session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    return session.view()


@router.put("/invoice/discount")
async def edit_discount(data: DiscountEdit, session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    if data.discount_percentage is not None:
        session.set_discount_percentage(data.discount_percentage)
    elif data.discount_amount is not None:
        session.set_discount_amount(data.discount_amount)

    if not data.save:
        return _edit_response(session, MutationApplied(invoice=session.cache.current))
    return _edit_response(session, await session.save_discount())


@router.put("/invoice/outstanding-balance")
async def toggle_outstanding_balance(data: OutstandingToggle, session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    return _edit_response(session, await session.toggle_outstanding(data.include_outstanding_balance))


# ---------------------------------------------------------------------------
# Services and medicines
# ---------------------------------------------------------------------------

@router.post("/invoice/services")
async def add_service(data: ServiceEdit, session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    result = await session.add_service(data.service_name, data.price, data.description)
    response = _edit_response(session, result)
    if result.applied:
        response.status_code = status.HTTP_201_CREATED
    return response


@router.put("/invoice/services/{item_id}")
async def update_service(item_id: str, data: ServiceEdit, session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    return _edit_response(session, await session.update_service(item_id, data.service_name, data.price, data.description))


@router.delete("/invoice/services/{item_id}")
async def remove_service(item_id: str, session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    return _edit_response(session, await session.remove_service(item_id))


@router.put("/invoice/medicines/{item_id}", response_model=CashierView)
async def edit_medicine(item_id: str, data: MedicineEdit, session: CashierSession = Depends(get_cashier_session)):
    """Local dispense decision; written to the invoice only on settlement"""
    session.require_open()
    if data.action is not None:
        session.set_medicine_action(item_id, data.action)
    if data.dispensed_quantity is not None:
        session.set_dispensed_quantity(item_id, data.dispensed_quantity)
    if data.price is not None:
        session.set_medicine_price(item_id, data.price)
    return session.view()


@router.post("/invoice/prescriptions")
async def load_prescriptions(session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    return _edit_response(session, await session.load_prescriptions())


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

@router.post("/invoice/payment-dialog", response_model=PaymentDialogView)
async def open_payment_dialog(session: CashierSession = Depends(get_cashier_session)):
    return session.open_payment_dialog()


@router.delete("/invoice/payment-dialog", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_payment_dialog(session: CashierSession = Depends(get_cashier_session)):
    session.cancel_payment_dialog()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/invoice/settle")
async def settle_invoice(data: SettlementRequest, session: CashierSession = Depends(get_cashier_session)):
    session.require_open()
    outcome = await session.confirm_payment(data)
    body = SettleResponse(outcome=outcome, view=_view_or_none(session))
    status_code = status.HTTP_200_OK if outcome.succeeded else status_for_reason(outcome.reason)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.get("/invoices/{invoice_id}/payments", response_model=PaymentHistoryResponse)
async def payment_history(invoice_id: str, session: CashierSession = Depends(get_cashier_session)):
    payments = await session.payment_history(invoice_id)
    total_paid = quantize_money(sum((p.amount for p in payments), Decimal("0.00")))
    return PaymentHistoryResponse(invoice_id=invoice_id, payments=payments, total_paid=total_paid)


@router.get("/payments/{payment_id}/receipt")
async def payment_receipt(payment_id: str, session: CashierSession = Depends(get_cashier_session)):
    content = await session.receipt_pdf(payment_id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="receipt-{payment_id}.pdf"'},
    )

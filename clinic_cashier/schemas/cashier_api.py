# clinic_cashier/schemas/cashier_api.py - Request/response bodies of the cashier surface
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from clinic_cashier.schemas.invoice import InvoiceSummary, Money, PaymentTransaction
from clinic_cashier.schemas.settlement import (
    CashierView,
    MedicineAction,
    Notice,
    RecoveryOutcome,
    SettlementOutcome,
)


class DiscountEdit(BaseModel):
    """Set one of the two discount fields; `save` persists it"""
    discount_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    save: bool = False

    @model_validator(mode="after")
    def one_field(self):
        if self.discount_percentage is not None and self.discount_amount is not None:
            raise ValueError("Provide either discount_percentage or discount_amount, not both")
        return self


class OutstandingToggle(BaseModel):
    include_outstanding_balance: bool


class ServiceEdit(BaseModel):
    service_name: str
    price: Decimal
    description: Optional[str] = None


class MedicineEdit(BaseModel):
    action: Optional[MedicineAction] = None
    dispensed_quantity: Optional[int] = None
    price: Optional[Decimal] = None


class EditResponse(BaseModel):
    applied: bool
    reason: Optional[str] = None
    notice: Optional[Notice] = None
    close_view: bool = False
    view: Optional[CashierView] = None


class SettleResponse(BaseModel):
    outcome: SettlementOutcome
    view: Optional[CashierView] = None


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceSummary]
    count: int


class PaymentHistoryResponse(BaseModel):
    invoice_id: str
    payments: List[PaymentTransaction]
    total_paid: Money


class RecoveryResponse(BaseModel):
    outcome: RecoveryOutcome

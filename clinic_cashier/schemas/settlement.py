# clinic_cashier/schemas/settlement.py - Cashier-side state and results
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinic_cashier.schemas.invoice import (
    Invoice,
    Money,
    OutstandingInvoice,
    PaymentMethod,
    PaymentTransaction,
    quantize_money,
)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Notice(BaseModel):
    """Toast-style message for the cashier"""
    severity: Severity
    message: str
    code: Optional[str] = None

    @classmethod
    def info(cls, message: str, code: Optional[str] = None) -> "Notice":
        return cls(severity=Severity.INFO, message=message, code=code)

    @classmethod
    def warning(cls, message: str, code: Optional[str] = None) -> "Notice":
        return cls(severity=Severity.WARNING, message=message, code=code)

    @classmethod
    def error(cls, message: str, code: Optional[str] = None) -> "Notice":
        return cls(severity=Severity.ERROR, message=message, code=code)


# ---------------------------------------------------------------------------
# Local form state
# ---------------------------------------------------------------------------

class MedicineAction(str, Enum):
    PENDING = "pending"
    DISPENSE = "dispense"
    WRITE_OUT = "write-out"


class MedicineSelection(BaseModel):
    """Dispense decision for one prescribed medicine line"""
    model_config = ConfigDict(frozen=True)

    item_id: str
    name: str
    quantity: int = Field(..., ge=0)
    price: Money = Decimal("0.00")  # total for the ordered quantity
    dispensed_quantity: int = Field(default=0, ge=0)
    action: MedicineAction = MedicineAction.PENDING

    @property
    def unit_price(self) -> Decimal:
        if self.quantity <= 0:
            return Decimal("0.00")
        return quantize_money(self.price / self.quantity)

    @property
    def dispensed_total(self) -> Decimal:
        return quantize_money(self.unit_price * self.dispensed_quantity)

    @property
    def remainder(self) -> int:
        return max(0, self.quantity - self.dispensed_quantity)

    @property
    def is_dispensing(self) -> bool:
        return self.action == MedicineAction.DISPENSE and self.dispensed_quantity > 0


class ServiceDraft(BaseModel):
    """Unsaved edits to a service line"""
    model_config = ConfigDict(frozen=True)

    item_id: str
    name: str
    price: Money = Decimal("0.00")
    description: Optional[str] = None


class DiscountState(BaseModel):
    """Percentage and flat discount are mutually exclusive"""
    model_config = ConfigDict(frozen=True)

    percentage: Money = Field(default=Decimal("0.00"), ge=0, le=100)
    amount: Money = Field(default=Decimal("0.00"), ge=0)

    def with_percentage(self, percentage) -> "DiscountState":
        return DiscountState(percentage=quantize_money(percentage), amount=Decimal("0.00"))

    def with_amount(self, amount) -> "DiscountState":
        return DiscountState(percentage=Decimal("0.00"), amount=quantize_money(amount))


class Totals(BaseModel):
    model_config = ConfigDict(frozen=True)

    services_total: Money
    medicines_total: Money
    outstanding_balance: Money
    subtotal: Money
    discount: Money
    total: Money

    @property
    def current_due(self) -> Decimal:
        """Share of the total applied to the open invoice once consolidated balances are settled"""
        return max(Decimal("0.00"), quantize_money(self.total - self.outstanding_balance))


class OutstandingBalanceSet(BaseModel):
    """A patient's other unpaid invoices, oldest first"""
    model_config = ConfigDict(frozen=True)

    patient_id: str
    current_invoice_id: str
    invoices: List[OutstandingInvoice] = Field(default_factory=list)
    total_balance: Money = Decimal("0.00")
    limit: int = 2

    @property
    def invoice_count(self) -> int:
        return len(self.invoices)

    @property
    def limit_reached(self) -> bool:
        return self.invoice_count >= self.limit

    def get(self, invoice_id: str) -> Optional[OutstandingInvoice]:
        return next((inv for inv in self.invoices if inv.id == invoice_id), None)


# ---------------------------------------------------------------------------
# Mutation results
# ---------------------------------------------------------------------------

class MutationApplied(BaseModel):
    applied: Literal[True] = True
    invoice: Invoice


class MutationRejected(BaseModel):
    applied: Literal[False] = False
    reason: str
    notice: Notice
    prior_invoice: Optional[Invoice] = None
    current_invoice: Optional[Invoice] = None  # server state after a refresh, if one happened
    close_view: bool = False


MutationResult = Annotated[Union[MutationApplied, MutationRejected], Field(discriminator="applied")]


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

class SettlementState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    COMMITTING_ITEMS = "committing_items"
    VALIDATING_VERSION = "validating_version"
    PAYING_OUTSTANDING = "paying_outstanding"
    PAYING_CURRENT = "paying_current"
    COMPLETED = "completed"
    ABORTED = "aborted"


class SettlementKind(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    ZERO_CHARGE = "zero_charge"


class SettlementRequest(BaseModel):
    payment_method: PaymentMethod = "cash"
    notes: Optional[str] = None
    is_partial: bool = False
    partial_amount: Optional[Money] = None
    hold_reason: Optional[str] = None
    payment_due_date: Optional[date] = None

    @field_validator("notes", "hold_reason")
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None


class AppliedPayment(BaseModel):
    invoice_id: str
    invoice_number: Optional[str] = None
    amount: Money
    payment_id: Optional[str] = None


class SettlementOutcome(BaseModel):
    """Terminal result of one settlement attempt"""
    state: SettlementState
    kind: Optional[SettlementKind] = None
    notice: Notice
    reason: Optional[str] = None
    invoice: Optional[Invoice] = None
    payment: Optional[PaymentTransaction] = None
    outstanding_payments: List[AppliedPayment] = Field(default_factory=list)
    skipped_outstanding: List[str] = Field(default_factory=list)
    reconciliation_required: bool = False
    close_view: bool = False
    expected_version: Optional[int] = None
    actual_version: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.state == SettlementState.COMPLETED


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

class RecoveryMarker(BaseModel):
    invoice_id: str
    amount: Money
    payment_method: str
    timestamp: datetime


class RecoveryAction(str, Enum):
    NONE = "none"
    DISCARDED_STALE = "discarded_stale"
    CONFIRMED_PAID = "confirmed_paid"
    RESOLVED_ELSEWHERE = "resolved_elsewhere"
    VERIFY_MANUALLY = "verify_manually"


class RecoveryOutcome(BaseModel):
    action: RecoveryAction
    marker: Optional[RecoveryMarker] = None
    notice: Optional[Notice] = None


# ---------------------------------------------------------------------------
# Session views
# ---------------------------------------------------------------------------

class PaymentDialogView(BaseModel):
    """Amounts shown when the payment dialog opens"""
    invoice_id: str
    total: Money
    current_due: Money
    outstanding_balance: Money
    include_outstanding: bool
    outstanding_count: int = 0
    limit_reached: bool = False
    partial_allowed: bool = True


class CashierView(BaseModel):
    """Everything the detail view renders for the open invoice"""
    invoice: Invoice
    discount: DiscountState
    include_outstanding: bool
    services: List[ServiceDraft]
    medicines: List[MedicineSelection]
    totals: Totals
    current_due: Money
    outstanding: Optional[OutstandingBalanceSet] = None
    payment_dialog: Optional[PaymentDialogView] = None

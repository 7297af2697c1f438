# clinic_cashier/schemas/invoice.py - Clinic API invoice payloads
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer

CENT = Decimal("0.01")


def quantize_money(value) -> Decimal:
    """Round a money value half-up to cents"""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# Decimal in Python, plain JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

PaymentMethod = Literal["cash", "card", "insurance", "mobile_payment"]


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PARTIAL_PAID = "partial_paid"
    PAID = "paid"


class ItemType(str, Enum):
    SERVICE = "service"
    MEDICINE = "medicine"


class InvoiceItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    item_type: ItemType
    item_name: str
    quantity: int = 1
    unit_price: Money = Decimal("0.00")
    total_price: Money = Decimal("0.00")
    notes: Optional[str] = None


class Invoice(BaseModel):
    """Server snapshot of an invoice; `version` is the optimistic lock token"""
    model_config = ConfigDict(frozen=True)

    id: str
    invoice_number: Optional[str] = None
    version: int = Field(..., ge=0)
    status: str = InvoiceStatus.PENDING.value
    patient_id: Optional[str] = None
    visit_id: Optional[str] = None
    total_amount: Money = Decimal("0.00")
    paid_amount: Money = Decimal("0.00")
    balance_due: Money = Decimal("0.00")
    discount_percentage: Money = Decimal("0.00")
    discount_amount: Money = Decimal("0.00")
    include_outstanding_balance: bool = False
    created_at: Optional[datetime] = None
    items: List[InvoiceItem] = Field(default_factory=list)

    @property
    def services(self) -> List[InvoiceItem]:
        return [item for item in self.items if item.item_type == ItemType.SERVICE]

    @property
    def medicines(self) -> List[InvoiceItem]:
        return [item for item in self.items if item.item_type == ItemType.MEDICINE]

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID.value

    @property
    def display_number(self) -> str:
        return self.invoice_number or self.id

    def find_item(self, item_id: str) -> Optional[InvoiceItem]:
        return next((item for item in self.items if item.id == item_id), None)


class PaymentTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    invoice_id: Optional[str] = None
    amount: Money
    payment_method: Optional[str] = None
    payment_notes: Optional[str] = None
    hold_reason: Optional[str] = None
    payment_due_date: Optional[date] = None
    received_at: Optional[datetime] = None
    received_by: Optional[str] = None


class InvoiceSummary(BaseModel):
    """List row; never used as a basis for edits"""
    model_config = ConfigDict(frozen=True, extra="allow")

    id: str
    invoice_number: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    status: Optional[str] = None
    total_amount: Money = Decimal("0.00")
    balance_due: Money = Decimal("0.00")
    created_at: Optional[datetime] = None


class PaymentResponse(BaseModel):
    """Envelope returned by payment endpoints"""
    invoice: Optional[Invoice] = None
    payment: Optional[PaymentTransaction] = None


class OutstandingInvoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    invoice_number: Optional[str] = None
    version: int = Field(..., ge=0)
    status: str = InvoiceStatus.PENDING.value
    balance_due: Money = Decimal("0.00")
    created_at: Optional[datetime] = None

    @property
    def display_number(self) -> str:
        return self.invoice_number or self.id


class OutstandingBalanceResponse(BaseModel):
    """GET /invoices/patient/{id}/outstanding-balance"""
    model_config = ConfigDict(populate_by_name=True)

    invoices: List[OutstandingInvoice] = Field(default_factory=list)
    total_balance: Money = Field(default=Decimal("0.00"), alias="totalBalance")


class InvoiceLimitCheck(BaseModel):
    """GET /invoices/patient/{id}/can-create"""
    model_config = ConfigDict(populate_by_name=True)

    can_create: bool = Field(..., alias="canCreate")
    count: int = Field(default=0, validation_alias=AliasChoices("outstandingCount", "count"))
    message: str = ""


# Request payloads sent to the clinic API. expected_version is added by the client.

class ServiceItemCreate(BaseModel):
    service_name: str = Field(..., min_length=1, max_length=255)
    unit_price: Money = Field(..., gt=0)
    quantity: int = Field(default=1, ge=1)
    notes: Optional[str] = None


class MedicineItemCreate(BaseModel):
    medicine_name: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(..., ge=1)
    unit_price: Money = Field(..., ge=0)
    notes: Optional[str] = None


class InvoiceItemUpdate(BaseModel):
    item_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    quantity: Optional[int] = Field(default=None, ge=0)
    unit_price: Optional[Money] = Field(default=None, ge=0)
    total_price: Optional[Money] = Field(default=None, ge=0)
    notes: Optional[str] = None


class DiscountUpdate(BaseModel):
    discount_percentage: Money = Field(default=Decimal("0.00"), ge=0, le=100)
    discount_amount: Money = Field(default=Decimal("0.00"), ge=0)


class PartialPaymentCreate(BaseModel):
    amount: Money = Field(..., gt=0)
    payment_method: PaymentMethod
    notes: Optional[str] = None
    hold_reason: Optional[str] = None
    payment_due_date: Optional[date] = None


class FullPaymentCreate(BaseModel):
    payment_method: PaymentMethod
    amount_paid: Money = Field(..., ge=0)
    notes: Optional[str] = None

# clinic_cashier/schemas/__init__.py
from clinic_cashier.schemas.invoice import (
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    ItemType,
    OutstandingInvoice,
    PaymentTransaction,
)
from clinic_cashier.schemas.settlement import (
    DiscountState,
    MedicineAction,
    MedicineSelection,
    MutationApplied,
    MutationRejected,
    Notice,
    OutstandingBalanceSet,
    SettlementOutcome,
    SettlementRequest,
    SettlementState,
    Severity,
    Totals,
)

__all__ = [
    "Invoice",
    "InvoiceItem",
    "InvoiceStatus",
    "ItemType",
    "OutstandingInvoice",
    "PaymentTransaction",
    "DiscountState",
    "MedicineAction",
    "MedicineSelection",
    "MutationApplied",
    "MutationRejected",
    "Notice",
    "OutstandingBalanceSet",
    "SettlementOutcome",
    "SettlementRequest",
    "SettlementState",
    "Severity",
    "Totals",
]

# clinic_cashier/services/totals.py
"""Invoice totals as shown to the cashier. Pure functions, nothing is persisted."""

from decimal import Decimal
from typing import Iterable, Optional

from clinic_cashier.schemas.invoice import Invoice, quantize_money
from clinic_cashier.schemas.settlement import (
    DiscountState,
    MedicineSelection,
    ServiceDraft,
    Totals,
)

ZERO = Decimal("0.00")


def services_total(services: Iterable[ServiceDraft]) -> Decimal:
    return quantize_money(sum((service.price for service in services), ZERO))


def medicines_total(medicines: Iterable[MedicineSelection]) -> Decimal:
    """Only dispensed quantities are charged"""
    return quantize_money(
        sum((med.dispensed_total for med in medicines if med.is_dispensing), ZERO)
    )


def discount_value(subtotal: Decimal, discount: DiscountState) -> Decimal:
    if discount.percentage > 0:
        return quantize_money(subtotal * discount.percentage / Decimal(100))
    return quantize_money(discount.amount)


def compute_totals(
    services: Iterable[ServiceDraft],
    medicines: Iterable[MedicineSelection],
    discount: DiscountState,
    outstanding_balance: Optional[Decimal] = None,
    include_outstanding: bool = False,
) -> Totals:
    """
    subtotal = services + dispensed medicines + outstanding balance (when consolidated)
    discount = subtotal * pct / 100 when a percentage is set, else the flat amount
    total    = max(0, subtotal - discount)
    """
    service_sum = services_total(services)
    medicine_sum = medicines_total(medicines)
    outstanding = quantize_money(outstanding_balance) if include_outstanding and outstanding_balance else ZERO

    subtotal = quantize_money(service_sum + medicine_sum + outstanding)
    discount_sum = discount_value(subtotal, discount)
    total = max(ZERO, quantize_money(subtotal - discount_sum))

    return Totals(
        services_total=service_sum,
        medicines_total=medicine_sum,
        outstanding_balance=outstanding,
        subtotal=subtotal,
        discount=discount_sum,
        total=total,
    )


def service_drafts_from(invoice: Invoice) -> list:
    return [
        ServiceDraft(
            item_id=item.id,
            name=item.item_name,
            price=item.total_price,
            description=item.notes,
        )
        for item in invoice.services
    ]


def medicine_selections_from(invoice: Invoice) -> list:
    """Fresh dispense selections; every line starts pending with the full quantity"""
    return [
        MedicineSelection(
            item_id=item.id,
            name=item.item_name,
            quantity=item.quantity,
            price=item.total_price,
            dispensed_quantity=item.quantity,
        )
        for item in invoice.medicines
    ]


def discount_from(invoice: Invoice) -> DiscountState:
    if invoice.discount_percentage > 0:
        return DiscountState(percentage=invoice.discount_percentage)
    return DiscountState(amount=invoice.discount_amount)

# clinic_cashier/services/outstanding_balance.py
"""
Outstanding-Balance Resolver

A patient's other unpaid invoices, the unpaid-invoice limit policy, and the
re-validation run right before a consolidated settlement commits.
"""

import logging
from decimal import Decimal
from typing import Dict

from clinic_cashier.core.errors import (
    InvoiceLimitReachedError,
    OutstandingInvoiceBalanceChangedError,
    OutstandingInvoicePaidError,
    OutstandingInvoiceVersionMismatchError,
)
from clinic_cashier.schemas.invoice import InvoiceLimitCheck, InvoiceStatus, OutstandingInvoice, quantize_money
from clinic_cashier.schemas.settlement import OutstandingBalanceSet
from clinic_cashier.services.invoice_api import InvoiceApiClient

logger = logging.getLogger(__name__)


def _sort_key(invoice: OutstandingInvoice):
    # Undated rows sort last; ties keep the backend order
    return (invoice.created_at is None, invoice.created_at.timestamp() if invoice.created_at else 0.0)


class OutstandingBalanceResolver:
    def __init__(self, api: InvoiceApiClient, limit: int = 2):
        self.api = api
        self.limit = limit

    async def resolve(self, patient_id: str, current_invoice_id: str) -> OutstandingBalanceSet:
        """Unpaid invoices of the patient other than the current one, oldest first"""
        response = await self.api.get_outstanding_balance(patient_id)

        invoices = [
            inv
            for inv in response.invoices
            if inv.id != current_invoice_id and inv.status != InvoiceStatus.PAID.value
        ]
        invoices.sort(key=_sort_key)
        total = quantize_money(sum((inv.balance_due for inv in invoices), Decimal("0.00")))

        logger.debug(
            f"Patient {patient_id}: {len(invoices)} outstanding invoice(s), total {total} "
            f"(excluding {current_invoice_id})"
        )
        return OutstandingBalanceSet(
            patient_id=patient_id,
            current_invoice_id=current_invoice_id,
            invoices=invoices,
            total_balance=total,
            limit=self.limit,
        )

    @staticmethod
    def check_partial_allowed(outstanding: OutstandingBalanceSet, consolidate: bool) -> None:
        """
        With the limit reached a partial payment would leave one more unpaid
        invoice, so it is only allowed when the older balances are paid off too.
        """
        if outstanding.limit_reached and not consolidate:
            raise InvoiceLimitReachedError(
                f"Patient already has {outstanding.invoice_count} unpaid invoice(s). "
                "Partial payment is only possible when the outstanding balance is included.",
                field="is_partial",
                invoice_id=outstanding.current_invoice_id,
            )

    async def check_invoice_limit(self, patient_id: str, invoice_id: str = None) -> InvoiceLimitCheck:
        """Ask the backend whether another unpaid invoice may exist for this patient"""
        check = await self.api.can_create_invoice(patient_id)
        if not check.can_create:
            logger.info(f"Invoice limit reached for patient {patient_id}: {check.count} unpaid")
            raise InvoiceLimitReachedError(
                check.message or f"Patient already has {check.count} unpaid invoices",
                field="is_partial",
                invoice_id=invoice_id,
            )
        return check

    async def revalidate(
        self, snapshot: OutstandingBalanceSet, patient_id: str, current_invoice_id: str
    ) -> OutstandingBalanceSet:
        """
        Compare the snapshot taken when the invoice was opened against a fresh
        read. Raises on the first divergence; returns the fresh set otherwise.
        """
        fresh = await self.resolve(patient_id, current_invoice_id)
        fresh_by_id: Dict[str, OutstandingInvoice] = {inv.id: inv for inv in fresh.invoices}

        for known in snapshot.invoices:
            now = fresh_by_id.get(known.id)
            if now is None or now.status == InvoiceStatus.PAID.value:
                raise OutstandingInvoicePaidError(
                    f"Outstanding invoice #{known.display_number} has already been paid",
                    invoice_id=known.id,
                )
            if quantize_money(now.balance_due) != quantize_money(known.balance_due):
                raise OutstandingInvoiceBalanceChangedError(
                    f"Balance of outstanding invoice #{known.display_number} changed "
                    f"from {known.balance_due} to {now.balance_due}",
                    invoice_id=known.id,
                )
            if now.version != known.version:
                raise OutstandingInvoiceVersionMismatchError(
                    f"Outstanding invoice #{known.display_number} was modified by another user",
                    invoice_id=known.id,
                )

        known_ids = {inv.id for inv in snapshot.invoices}
        for inv in fresh.invoices:
            if inv.id not in known_ids:
                raise OutstandingInvoiceBalanceChangedError(
                    f"A new unpaid invoice #{inv.display_number} appeared for this patient",
                    invoice_id=inv.id,
                )

        return fresh

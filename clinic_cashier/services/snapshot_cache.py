# clinic_cashier/services/snapshot_cache.py
"""
Invoice Snapshot Cache - last server representation of the invoice under edit.

Only `load` and `replace` write to it; the cached version advances only when
a server payload is handed to `replace`.
"""

import logging
from typing import Optional

from clinic_cashier.core.errors import CashierError, NoInvoiceOpenError
from clinic_cashier.schemas.invoice import Invoice
from clinic_cashier.services.invoice_api import InvoiceApiClient

logger = logging.getLogger(__name__)


class InvoiceSnapshotCache:
    """Holds the invoice currently open in the cashier detail view"""

    def __init__(self, api: InvoiceApiClient):
        self.api = api
        self._invoice: Optional[Invoice] = None

    async def load(self, invoice_id: str) -> Invoice:
        """Always fetch fresh; list rows are never trusted as a snapshot"""
        invoice = await self.api.get_invoice(invoice_id)
        self._invoice = invoice
        logger.info(f"Loaded invoice {invoice.id} at version {invoice.version}")
        return invoice

    async def refresh(self) -> Invoice:
        return await self.load(self.current.id)

    def replace(self, invoice: Invoice) -> Invoice:
        """Overwrite the cache with a server payload"""
        if self._invoice is not None and invoice.id != self._invoice.id:
            raise CashierError(
                f"Refusing to replace cached invoice {self._invoice.id} with {invoice.id}",
                invoice_id=self._invoice.id,
            )
        previous = self._invoice.version if self._invoice is not None else None
        self._invoice = invoice
        if previous != invoice.version:
            logger.debug(f"Invoice {invoice.id} version {previous} -> {invoice.version}")
        return invoice

    def clear(self) -> None:
        self._invoice = None

    @property
    def is_loaded(self) -> bool:
        return self._invoice is not None

    @property
    def current(self) -> Invoice:
        if self._invoice is None:
            raise NoInvoiceOpenError("No invoice is open")
        return self._invoice

    @property
    def version(self) -> int:
        return self.current.version

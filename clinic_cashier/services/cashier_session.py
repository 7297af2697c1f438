# clinic_cashier/services/cashier_session.py
"""
Cashier Session - one operator's orchestrator plus local form state.

Wires the snapshot cache, line-item editor, outstanding-balance resolver,
settlement executor and recovery monitor together. Local form fields
(discount, consolidation checkbox, dispense selections, service drafts) are
derived from the cached invoice and overwritten from it on every conflict.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from clinic_cashier.core.errors import CashierError, DomainValidationError, NoInvoiceOpenError
from clinic_cashier.schemas.invoice import Invoice, InvoiceSummary, PaymentTransaction, quantize_money
from clinic_cashier.schemas.settlement import (
    CashierView,
    DiscountState,
    MedicineAction,
    MedicineSelection,
    MutationApplied,
    MutationRejected,
    OutstandingBalanceSet,
    PaymentDialogView,
    RecoveryOutcome,
    ServiceDraft,
    SettlementOutcome,
    SettlementRequest,
    Totals,
)
from clinic_cashier.services.invoice_api import InvoiceApiClient
from clinic_cashier.services.line_item_editor import LineItemEditor
from clinic_cashier.services.outstanding_balance import OutstandingBalanceResolver
from clinic_cashier.services.recovery import RecoveryMonitor
from clinic_cashier.services.settlement import SettlementExecutor
from clinic_cashier.services.snapshot_cache import InvoiceSnapshotCache
from clinic_cashier.services.totals import (
    compute_totals,
    discount_from,
    medicine_selections_from,
    service_drafts_from,
)

logger = logging.getLogger(__name__)

EditResult = Union[MutationApplied, MutationRejected]

# Rejections after which the outstanding view is re-read as well
_OUTSTANDING_REASONS = {
    "outstanding_paid",
    "outstanding_version_mismatch",
    "outstanding_balance_changed",
    "outstanding_changed",
    "outstanding_unavailable",
}


class CashierSession:
    def __init__(
        self,
        api: InvoiceApiClient,
        monitor: RecoveryMonitor,
        user_id: Optional[str] = None,
        outstanding_limit: int = 2,
        completed_page_size: int = 50,
    ):
        self.api = api
        self.monitor = monitor
        self.user_id = user_id
        self.completed_page_size = completed_page_size

        self.cache = InvoiceSnapshotCache(api)
        self.editor = LineItemEditor(api, self.cache, on_resync=self.resync_from_cache)
        self.resolver = OutstandingBalanceResolver(api, limit=outstanding_limit)

        self.discount = DiscountState()
        self.include_outstanding = False
        self.medicines: Dict[str, MedicineSelection] = {}
        self.services: Dict[str, ServiceDraft] = {}
        self.outstanding: Optional[OutstandingBalanceSet] = None
        self.executor: Optional[SettlementExecutor] = None

        self.pending: List[InvoiceSummary] = []
        self.completed: List[InvoiceSummary] = []

        self.lock = asyncio.Lock()

    def bind_api(self, api: InvoiceApiClient) -> None:
        """Point every component at a client carrying a fresh token"""
        self.api = api
        self.cache.api = api
        self.editor.api = api
        self.resolver.api = api
        if self.executor is not None:
            self.executor.api = api

    # ------------------------------------------------------------------
    # Detail view
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.cache.is_loaded

    async def open_invoice(self, invoice_id: str) -> CashierView:
        self.executor = None
        invoice = await self.cache.load(invoice_id)
        self.resync_from_cache(invoice)
        await self._load_outstanding()
        logger.info(f"Cashier {self.user_id} opened invoice {invoice.id}")
        return self.view()

    def close_invoice(self) -> None:
        if self.cache.is_loaded:
            logger.info(f"Cashier {self.user_id} closed invoice {self.cache.current.id}")
        self.cache.clear()
        self.discount = DiscountState()
        self.include_outstanding = False
        self.medicines = {}
        self.services = {}
        self.outstanding = None
        self.executor = None

    async def _load_outstanding(self) -> None:
        invoice = self.cache.current
        if not invoice.patient_id:
            self.outstanding = None
            return
        try:
            self.outstanding = await self.resolver.resolve(invoice.patient_id, invoice.id)
        except CashierError as e:
            logger.warning(f"Outstanding balance for patient {invoice.patient_id} unavailable: {e.message}")
            self.outstanding = None

    def resync_from_cache(self, invoice: Optional[Invoice] = None) -> None:
        """Overwrite every local form field from the server snapshot"""
        invoice = invoice or self.cache.current
        self.discount = discount_from(invoice)
        self.include_outstanding = invoice.include_outstanding_balance
        self.medicines = {m.item_id: m for m in medicine_selections_from(invoice)}
        self.services = {s.item_id: s for s in service_drafts_from(invoice)}

    def _absorb(self, invoice: Invoice) -> None:
        """After an accepted edit: refresh server-owned fields, keep dispense choices"""
        self.discount = discount_from(invoice)
        self.include_outstanding = invoice.include_outstanding_balance
        self.services = {s.item_id: s for s in service_drafts_from(invoice)}
        fresh = {m.item_id: m for m in medicine_selections_from(invoice)}
        for item_id, selection in self.medicines.items():
            if item_id in fresh and fresh[item_id].quantity == selection.quantity:
                fresh[item_id] = selection
        self.medicines = fresh

    async def _after_edit(self, result: EditResult) -> EditResult:
        if result.applied:
            self._absorb(result.invoice)
        elif result.close_view:
            self.close_invoice()
            await self.refresh_invoice_lists()
        return result

    def totals(self) -> Totals:
        outstanding = self.outstanding.total_balance if self.outstanding else None
        return compute_totals(
            self.services.values(),
            self.medicines.values(),
            self.discount,
            outstanding_balance=outstanding,
            include_outstanding=self.include_outstanding,
        )

    def view(self) -> CashierView:
        totals = self.totals()
        return CashierView(
            invoice=self.cache.current,
            discount=self.discount,
            include_outstanding=self.include_outstanding,
            services=list(self.services.values()),
            medicines=list(self.medicines.values()),
            totals=totals,
            current_due=totals.current_due,
            outstanding=self.outstanding,
            payment_dialog=self._dialog_view(totals) if self.executor is not None else None,
        )

    # ------------------------------------------------------------------
    # Discount and consolidation
    # ------------------------------------------------------------------

    def set_discount_percentage(self, percentage) -> DiscountState:
        try:
            self.discount = self.discount.with_percentage(percentage)
        except ValidationError as e:
            raise DomainValidationError("Discount percentage must be between 0 and 100", field="discount_percentage") from e
        return self.discount

    def set_discount_amount(self, amount) -> DiscountState:
        try:
            self.discount = self.discount.with_amount(amount)
        except ValidationError as e:
            raise DomainValidationError("Discount amount cannot be negative", field="discount_amount") from e
        return self.discount

    async def save_discount(self) -> EditResult:
        async with self.lock:
            result = await self.editor.update_discount(self.discount.percentage, self.discount.amount)
            return await self._after_edit(result)

    async def toggle_outstanding(self, flag: bool) -> EditResult:
        async with self.lock:
            result = await self.editor.update_outstanding_balance_flag(flag)
            return await self._after_edit(result)

    # ------------------------------------------------------------------
    # Medicines
    # ------------------------------------------------------------------

    def _selection(self, item_id: str) -> MedicineSelection:
        self.require_open()
        selection = self.medicines.get(item_id)
        if selection is None:
            raise DomainValidationError(f"Medicine {item_id} is not on this invoice", field="item_id")
        return selection

    def set_medicine_action(self, item_id: str, action: MedicineAction) -> MedicineSelection:
        selection = self._selection(item_id)
        updates = {"action": MedicineAction(action)}
        if updates["action"] == MedicineAction.DISPENSE and selection.dispensed_quantity == 0:
            updates["dispensed_quantity"] = selection.quantity
        self.medicines[item_id] = selection.model_copy(update=updates)
        return self.medicines[item_id]

    def set_dispensed_quantity(self, item_id: str, quantity: int) -> MedicineSelection:
        selection = self._selection(item_id)
        clamped = max(0, min(int(quantity), selection.quantity))
        self.medicines[item_id] = selection.model_copy(update={"dispensed_quantity": clamped})
        return self.medicines[item_id]

    def set_medicine_price(self, item_id: str, price) -> MedicineSelection:
        selection = self._selection(item_id)
        price = quantize_money(price)
        if price < 0:
            raise DomainValidationError("Price cannot be negative", field="price")
        self.medicines[item_id] = selection.model_copy(update={"price": price})
        return self.medicines[item_id]

    async def load_prescriptions(self) -> EditResult:
        async with self.lock:
            result = await self.editor.load_prescriptions()
            return await self._after_edit(result)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def add_service(self, name: str, price, description: Optional[str] = None) -> EditResult:
        async with self.lock:
            result = await self.editor.add_service(name, price, notes=description)
            return await self._after_edit(result)

    async def update_service(self, item_id: str, name: str, price, description: Optional[str] = None) -> EditResult:
        async with self.lock:
            self.require_open()
            if item_id in self.services:
                self.services[item_id] = ServiceDraft(
                    item_id=item_id, name=name, price=quantize_money(price), description=description
                )
            result = await self.editor.update_service(item_id, name, price, notes=description)
            return await self._after_edit(result)

    async def remove_service(self, item_id: str) -> EditResult:
        async with self.lock:
            result = await self.editor.remove_service(item_id)
            return await self._after_edit(result)

    # ------------------------------------------------------------------
    # Payment dialog and settlement
    # ------------------------------------------------------------------

    def _dialog_view(self, totals: Totals) -> PaymentDialogView:
        outstanding = self.outstanding
        limit_reached = bool(outstanding and outstanding.limit_reached)
        return PaymentDialogView(
            invoice_id=self.cache.current.id,
            total=totals.total,
            current_due=totals.current_due,
            outstanding_balance=totals.outstanding_balance,
            include_outstanding=self.include_outstanding,
            outstanding_count=outstanding.invoice_count if outstanding else 0,
            limit_reached=limit_reached,
            partial_allowed=not limit_reached or self.include_outstanding,
        )

    def open_payment_dialog(self) -> PaymentDialogView:
        invoice = self.cache.current
        if invoice.is_paid:
            raise DomainValidationError(f"Invoice #{invoice.display_number} is already paid", invoice_id=invoice.id)
        self.executor = SettlementExecutor(
            self.api, self.cache, self.resolver, self.monitor, completed_by=self.user_id
        )
        return self._dialog_view(self.totals())

    def cancel_payment_dialog(self) -> None:
        if self.executor is not None:
            self.executor.cancel()
        self.executor = None

    async def confirm_payment(self, request: SettlementRequest) -> SettlementOutcome:
        async with self.lock:
            if self.executor is None:
                self.open_payment_dialog()
            executor = self.executor
            try:
                outcome = await executor.run(
                    request,
                    self.totals(),
                    medicines=list(self.medicines.values()),
                    include_outstanding=self.include_outstanding,
                    outstanding_snapshot=self.outstanding,
                )
            finally:
                # A dialog is good for one attempt whatever the result
                self.executor = None
            await self._after_settlement(outcome)
            return outcome

    async def _after_settlement(self, outcome: SettlementOutcome) -> None:
        if outcome.close_view:
            self.close_invoice()
            await self.refresh_invoice_lists()
            return
        if outcome.reason in ("validation", "limit_reached"):
            return
        if self.cache.is_loaded:
            self.resync_from_cache()
            if outcome.reason in _OUTSTANDING_REASONS or outcome.reconciliation_required:
                await self._load_outstanding()

    # ------------------------------------------------------------------
    # Lists, history, recovery
    # ------------------------------------------------------------------

    async def refresh_invoice_lists(self) -> None:
        try:
            self.pending = await self.api.list_pending()
            self.completed = await self.api.list_completed(limit=self.completed_page_size)
        except CashierError as e:
            logger.error(f"Failed to refresh invoice lists: {e.message}")

    async def check_recovery(self) -> RecoveryOutcome:
        return await self.monitor.reconcile(self.api)

    async def payment_history(self, invoice_id: str) -> List[PaymentTransaction]:
        return await self.api.get_payment_history(invoice_id)

    async def receipt_pdf(self, payment_id: str) -> bytes:
        return await self.api.get_receipt_pdf(payment_id)

    def require_open(self) -> Invoice:
        if not self.cache.is_loaded:
            raise NoInvoiceOpenError("Open an invoice first")
        return self.cache.current


class SessionRegistry:
    """
    In-process store of cashier sessions, one per authenticated user.
    Sessions live until the process restarts or `discard` is called.
    """

    def __init__(
        self,
        store,
        marker_key: str = "pendingPayment",
        staleness_seconds: int = 300,
        outstanding_limit: int = 2,
        completed_page_size: int = 50,
    ):
        self.store = store
        self.marker_key = marker_key
        self.staleness_seconds = staleness_seconds
        self.outstanding_limit = outstanding_limit
        self.completed_page_size = completed_page_size
        # user_id -> CashierSession
        self._sessions: Dict[str, CashierSession] = {}

    def session_for(self, user_id: str, api: InvoiceApiClient) -> CashierSession:
        """Return the user's session, bound to a client carrying their current token"""
        session = self._sessions.get(user_id)
        if session is None:
            monitor = RecoveryMonitor(
                self.store,
                key=f"{self.marker_key}:{user_id}",
                staleness_seconds=self.staleness_seconds,
            )
            session = CashierSession(
                api,
                monitor,
                user_id=user_id,
                outstanding_limit=self.outstanding_limit,
                completed_page_size=self.completed_page_size,
            )
            self._sessions[user_id] = session
            logger.info(f"Created cashier session for user {user_id}")
        else:
            session.bind_api(api)
        return session

    def discard(self, user_id: str) -> None:
        if self._sessions.pop(user_id, None) is not None:
            logger.info(f"Discarded cashier session for user {user_id}")

    def __len__(self) -> int:
        return len(self._sessions)

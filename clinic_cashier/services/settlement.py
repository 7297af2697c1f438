# clinic_cashier/services/settlement.py
"""
Settlement Executor

Turns an approved invoice into payments as an explicit state machine:

    IDLE -> PREPARING -> COMMITTING_ITEMS -> VALIDATING_VERSION
         -> [PAYING_OUTSTANDING] -> PAYING_CURRENT -> COMPLETED

ABORTED is reachable from every non-idle, non-terminal state. Every write is
gated by the version returned from the previous one; nothing is retried.
Payments on other invoices are not rolled back when a later step fails, the
outcome lists them for manual reconciliation instead.
"""

import logging
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Sequence

from clinic_cashier.core.errors import (
    AlreadyFullyPaidError,
    CashierError,
    ConflictError,
    DomainValidationError,
    IllegalTransitionError,
    InvoiceLimitReachedError,
    InvoiceNotFoundError,
    OutstandingBalanceUnavailableError,
    OutstandingConflictError,
    OutstandingFlagChangedError,
    VersionConflictError,
)
from clinic_cashier.schemas.invoice import (
    FullPaymentCreate,
    Invoice,
    InvoiceItemUpdate,
    InvoiceStatus,
    MedicineItemCreate,
    PartialPaymentCreate,
    PaymentTransaction,
    quantize_money,
)
from clinic_cashier.schemas.settlement import (
    AppliedPayment,
    MedicineAction,
    MedicineSelection,
    Notice,
    OutstandingBalanceSet,
    SettlementKind,
    SettlementOutcome,
    SettlementRequest,
    SettlementState,
    Totals,
)
from clinic_cashier.services.invoice_api import InvoiceApiClient
from clinic_cashier.services.outstanding_balance import OutstandingBalanceResolver
from clinic_cashier.services.recovery import RecoveryMonitor
from clinic_cashier.services.snapshot_cache import InvoiceSnapshotCache

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

WRITE_OUT_SUFFIX = " (Write-out)"
WRITE_OUT_REMAINDER_NOTE = "Written prescription - {units} units not dispensed"
WRITE_OUT_NOTE = "Written out - not dispensed"
OUTSTANDING_PAYMENT_NOTE = "Paid with current visit invoice #{number}"
DEFAULT_PARTIAL_NOTE = "Partial payment processed"
DEFAULT_FULL_NOTE = "Payment processed"

S = SettlementState

TRANSITIONS: Dict[SettlementState, FrozenSet[SettlementState]] = {
    S.IDLE: frozenset({S.PREPARING}),
    S.PREPARING: frozenset({S.COMMITTING_ITEMS, S.ABORTED, S.IDLE}),
    S.COMMITTING_ITEMS: frozenset({S.VALIDATING_VERSION, S.ABORTED}),
    S.VALIDATING_VERSION: frozenset({S.PAYING_OUTSTANDING, S.PAYING_CURRENT, S.ABORTED}),
    S.PAYING_OUTSTANDING: frozenset({S.PAYING_CURRENT, S.ABORTED}),
    S.PAYING_CURRENT: frozenset({S.COMPLETED, S.ABORTED}),
    S.COMPLETED: frozenset(),
    S.ABORTED: frozenset(),
}


class SettlementExecutor:
    """One settlement attempt for the invoice held by the snapshot cache"""

    def __init__(
        self,
        api: InvoiceApiClient,
        cache: InvoiceSnapshotCache,
        resolver: OutstandingBalanceResolver,
        monitor: RecoveryMonitor,
        completed_by: Optional[str] = None,
    ):
        self.api = api
        self.cache = cache
        self.resolver = resolver
        self.monitor = monitor
        self.completed_by = completed_by

        self.state = S.IDLE
        self.history: List[SettlementState] = [S.IDLE]

        self.request: Optional[SettlementRequest] = None
        self.totals: Optional[Totals] = None
        self.medicines: List[MedicineSelection] = []
        self.include_outstanding = False
        self.outstanding_snapshot: Optional[OutstandingBalanceSet] = None
        self.kind: Optional[SettlementKind] = None

        # Baseline is the version the cashier saw when the payment dialog opened
        self.invoice_id: Optional[str] = cache.current.id if cache.is_loaded else None
        self.original_version: Optional[int] = cache.version if cache.is_loaded else None
        self.current_version: Optional[int] = self.original_version

        self.applied_outstanding: List[AppliedPayment] = []
        self.skipped_outstanding: List[str] = []

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: SettlementState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise IllegalTransitionError(self.state, target)
        logger.info(f"Settlement of invoice {self.invoice_id}: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    @property
    def is_terminal(self) -> bool:
        return self.state in (S.COMPLETED, S.ABORTED)

    @property
    def consolidating(self) -> bool:
        return self.include_outstanding and self.outstanding_snapshot is not None

    @property
    def consolidated_amount(self) -> Decimal:
        if not self.consolidating or self.totals is None:
            return ZERO
        return quantize_money(self.totals.outstanding_balance)

    @property
    def received_amount(self) -> Decimal:
        """What the cashier takes from the patient in this settlement"""
        if self.kind == SettlementKind.PARTIAL:
            return quantize_money(self.request.partial_amount)
        return quantize_money(self.totals.total)

    def cancel(self) -> None:
        """Payment dialog dismissed before anything was written"""
        if self.state == S.IDLE:
            return
        self._transition(S.IDLE)
        self.request = None
        self.kind = None
        logger.info(f"Settlement of invoice {self.invoice_id} cancelled before any write")

    # ------------------------------------------------------------------
    # Preparing
    # ------------------------------------------------------------------

    async def prepare(
        self,
        request: SettlementRequest,
        totals: Totals,
        medicines: Sequence[MedicineSelection] = (),
        include_outstanding: bool = False,
        outstanding_snapshot: Optional[OutstandingBalanceSet] = None,
    ) -> SettlementKind:
        invoice = self.cache.current
        if self.original_version is None or self.invoice_id != invoice.id:
            self.original_version = invoice.version
        self.invoice_id = invoice.id
        self._transition(S.PREPARING)

        self.request = request
        self.totals = totals
        self.medicines = list(medicines)
        self.include_outstanding = include_outstanding
        self.outstanding_snapshot = outstanding_snapshot if include_outstanding else None
        self.current_version = invoice.version

        if invoice.is_paid:
            raise AlreadyFullyPaidError(
                f"Invoice #{invoice.display_number} is already paid", invoice_id=invoice.id
            )

        if invoice.version != self.original_version:
            logger.warning(
                f"Invoice {invoice.id} changed from version {self.original_version} to {invoice.version} "
                f"while the payment dialog was open"
            )
            raise VersionConflictError(
                expected_version=self.original_version,
                actual_version=invoice.version,
                original_version=self.original_version,
                invoice_id=invoice.id,
            )

        if include_outstanding and outstanding_snapshot is None:
            raise OutstandingBalanceUnavailableError(
                "Outstanding balances could not be loaded for this patient", invoice_id=invoice.id
            )

        for med in self.medicines:
            if invoice.find_item(med.item_id) is None:
                raise DomainValidationError(
                    f"Medicine {med.name} is no longer on this invoice", field="medicines", invoice_id=invoice.id
                )

        total = quantize_money(totals.total)
        outstanding = self.consolidated_amount
        partial = request.is_partial and request.partial_amount is not None and request.partial_amount < total

        if request.is_partial:
            if request.partial_amount is None or request.partial_amount <= 0:
                raise DomainValidationError(
                    "Enter the amount received for a partial payment", field="partial_amount", invoice_id=invoice.id
                )
            if partial and not request.hold_reason:
                raise DomainValidationError(
                    "A hold reason is required for partial payments", field="hold_reason", invoice_id=invoice.id
                )
            if partial and outstanding > 0 and request.partial_amount <= outstanding:
                raise DomainValidationError(
                    f"Amount received must exceed the included outstanding balance of {outstanding}",
                    field="partial_amount",
                    invoice_id=invoice.id,
                )

        if partial:
            if outstanding_snapshot is not None:
                self.resolver.check_partial_allowed(outstanding_snapshot, self.consolidating)
            if not self.consolidating and invoice.patient_id:
                await self.resolver.check_invoice_limit(invoice.patient_id, invoice.id)
            self.kind = SettlementKind.PARTIAL
        elif totals.current_due <= 0:
            self.kind = SettlementKind.ZERO_CHARGE
        else:
            self.kind = SettlementKind.FULL

        logger.info(
            f"Prepared {self.kind.value} settlement of invoice {invoice.id} at version {self.original_version}: "
            f"total {total}, outstanding {outstanding}, received {self.received_amount}"
        )
        return self.kind

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        request: SettlementRequest,
        totals: Totals,
        medicines: Sequence[MedicineSelection] = (),
        include_outstanding: bool = False,
        outstanding_snapshot: Optional[OutstandingBalanceSet] = None,
    ) -> SettlementOutcome:
        """prepare + execute, every failure folded into the outcome"""
        try:
            await self.prepare(request, totals, medicines, include_outstanding, outstanding_snapshot)
        except IllegalTransitionError:
            raise
        except CashierError as e:
            return await self._abort(e)
        return await self.execute()

    async def execute(self) -> SettlementOutcome:
        if self.state != S.PREPARING:
            raise IllegalTransitionError(self.state, S.COMMITTING_ITEMS)

        try:
            self._transition(S.COMMITTING_ITEMS)
            await self._commit_items()

            self._transition(S.VALIDATING_VERSION)
            fresh_outstanding = await self._validate_version()
            await self.monitor.mark(self.invoice_id, self.received_amount, self.request.payment_method)

            if fresh_outstanding is not None and fresh_outstanding.total_balance > 0:
                self._transition(S.PAYING_OUTSTANDING)
                await self._pay_outstanding(fresh_outstanding)

            self._transition(S.PAYING_CURRENT)
            invoice, payment = await self._pay_current()

            self._transition(S.COMPLETED)
        except IllegalTransitionError:
            raise
        except CashierError as e:
            return await self._abort(e)

        await self.monitor.clear()
        return self._completed_outcome(invoice, payment)

    def _advance(self, invoice: Invoice) -> Invoice:
        self.cache.replace(invoice)
        self.current_version = invoice.version
        return invoice

    async def _commit_items(self) -> None:
        for med in self.medicines:
            if med.action == MedicineAction.DISPENSE:
                if med.dispensed_quantity <= 0:
                    continue
                dispensed = min(med.dispensed_quantity, med.quantity)
                unit_price = med.unit_price
                update = InvoiceItemUpdate(
                    quantity=dispensed,
                    unit_price=unit_price,
                    total_price=quantize_money(unit_price * dispensed),
                )
                self._advance(
                    await self.api.update_invoice_item(self.invoice_id, med.item_id, update, self.current_version)
                )

                remainder = med.quantity - dispensed
                if remainder > 0:
                    write_out = MedicineItemCreate(
                        medicine_name=f"{med.name}{WRITE_OUT_SUFFIX}",
                        quantity=remainder,
                        unit_price=ZERO,
                        notes=WRITE_OUT_REMAINDER_NOTE.format(units=remainder),
                    )
                    self._advance(await self.api.add_medicine_item(self.invoice_id, write_out, self.current_version))
                    logger.info(f"Wrote out {remainder} unit(s) of {med.name} on invoice {self.invoice_id}")

            elif med.action == MedicineAction.WRITE_OUT:
                update = InvoiceItemUpdate(
                    quantity=med.quantity,
                    unit_price=ZERO,
                    total_price=ZERO,
                    notes=WRITE_OUT_NOTE,
                )
                self._advance(
                    await self.api.update_invoice_item(self.invoice_id, med.item_id, update, self.current_version)
                )

    async def _validate_version(self) -> Optional[OutstandingBalanceSet]:
        fresh = await self.api.get_invoice(self.invoice_id)
        self._check_version(fresh)
        self.cache.replace(fresh)

        if fresh.include_outstanding_balance != self.include_outstanding:
            raise OutstandingFlagChangedError(
                local_flag=self.include_outstanding,
                server_flag=fresh.include_outstanding_balance,
                invoice_id=self.invoice_id,
            )

        if not self.consolidating:
            return None
        snapshot = self.outstanding_snapshot
        return await self.resolver.revalidate(snapshot, snapshot.patient_id, self.invoice_id)

    def _check_version(self, fresh: Invoice) -> None:
        """Only an exact match with the end of our own write chain proceeds"""
        if fresh.version != self.current_version:
            logger.warning(
                f"Invoice {self.invoice_id} moved to version {fresh.version}; expected {self.current_version} "
                f"(opened at {self.original_version})"
            )
            raise VersionConflictError(
                expected_version=self.current_version,
                actual_version=fresh.version,
                original_version=self.original_version,
                invoice_id=self.invoice_id,
            )

    async def _pay_outstanding(self, outstanding: OutstandingBalanceSet) -> None:
        number = self.cache.current.display_number
        for inv in outstanding.invoices:
            amount = quantize_money(inv.balance_due)
            if amount <= 0:
                continue
            payment = PartialPaymentCreate(
                amount=amount,
                payment_method=self.request.payment_method,
                notes=OUTSTANDING_PAYMENT_NOTE.format(number=number),
            )
            try:
                response = await self.api.record_partial_payment(inv.id, payment, inv.version)
            except AlreadyFullyPaidError:
                logger.warning(f"Outstanding invoice {inv.id} was already paid, continuing")
                self.skipped_outstanding.append(inv.display_number)
                continue

            self.applied_outstanding.append(
                AppliedPayment(
                    invoice_id=inv.id,
                    invoice_number=inv.invoice_number,
                    amount=amount,
                    payment_id=response.payment.id if response.payment else None,
                )
            )
            logger.info(f"Paid outstanding invoice {inv.id}: {amount}")

    async def _pay_current(self):
        request = self.request
        invoice_id = self.invoice_id

        if self.kind == SettlementKind.ZERO_CHARGE:
            invoice = await self.api.complete_invoice(invoice_id, self.completed_by, self.current_version)
            return self._advance(invoice), None

        if self.kind == SettlementKind.PARTIAL:
            amount = quantize_money(request.partial_amount - self.consolidated_amount)
            payment = PartialPaymentCreate(
                amount=amount,
                payment_method=request.payment_method,
                notes=request.notes or DEFAULT_PARTIAL_NOTE,
                hold_reason=request.hold_reason,
                payment_due_date=request.payment_due_date,
            )
            response = await self.api.record_partial_payment(invoice_id, payment, self.current_version)
            invoice = response.invoice or await self.api.get_invoice(invoice_id)
            if invoice.status != InvoiceStatus.PARTIAL_PAID.value:
                logger.warning(f"Partial payment on invoice {invoice_id} left status {invoice.status}")
            return self._advance(invoice), response.payment

        # Second check right before money is recorded against the current invoice
        fresh = await self.api.get_invoice(invoice_id)
        self._check_version(fresh)

        payment = FullPaymentCreate(
            payment_method=request.payment_method,
            amount_paid=self.totals.current_due,
            notes=request.notes or DEFAULT_FULL_NOTE,
        )
        response = await self.api.record_full_payment(invoice_id, payment, self.current_version)
        invoice = response.invoice or await self.api.get_invoice(invoice_id)
        self._advance(invoice)
        if not invoice.is_paid:
            logger.info(f"Invoice {invoice_id} is {invoice.status} after payment, completing it")
            invoice = self._advance(
                await self.api.complete_invoice(invoice_id, self.completed_by, self.current_version)
            )
        return invoice, response.payment

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _completed_outcome(self, invoice: Invoice, payment: Optional[PaymentTransaction]) -> SettlementOutcome:
        number = invoice.display_number
        if self.kind == SettlementKind.ZERO_CHARGE:
            message = f"Invoice #{number} completed with nothing to charge"
        elif self.kind == SettlementKind.PARTIAL:
            message = (
                f"Partial payment of {self.received_amount} recorded for invoice #{number}. "
                f"Remaining balance: {invoice.balance_due}"
            )
        else:
            message = f"Payment of {self.received_amount} recorded for invoice #{number}"

        if self.applied_outstanding:
            message += f", including {len(self.applied_outstanding)} outstanding invoice(s)"
        if self.skipped_outstanding:
            message += f". Already paid elsewhere: #{', #'.join(self.skipped_outstanding)}"

        logger.info(f"Settlement of invoice {invoice.id} completed ({self.kind.value}) at version {invoice.version}")
        return SettlementOutcome(
            state=self.state,
            kind=self.kind,
            notice=Notice.info(message, code=f"settled_{self.kind.value}"),
            invoice=invoice,
            payment=payment,
            outstanding_payments=self.applied_outstanding,
            skipped_outstanding=self.skipped_outstanding,
            close_view=True,
        )

    async def _refresh_after_conflict(self) -> None:
        try:
            await self.cache.load(self.invoice_id)
        except CashierError as e:
            logger.error(f"Could not reload invoice {self.invoice_id} after conflict: {e.message}")

    async def _abort(self, error: CashierError) -> SettlementOutcome:
        if not self.is_terminal and self.state != S.IDLE:
            self._transition(S.ABORTED)

        expected = actual = None
        close_view = False

        if isinstance(error, AlreadyFullyPaidError):
            reason = "already_paid"
            notice = Notice.info(f"{error.message}. The invoice was settled by another user.", code=reason)
            close_view = True
            await self.monitor.clear()
        elif isinstance(error, VersionConflictError):
            reason = "version_conflict"
            expected, actual = error.expected_version, error.actual_version
            notice = Notice.warning(
                f"{error.message}. The latest invoice has been loaded, please review it and try again.",
                code=reason,
            )
            await self.monitor.clear()
            await self._refresh_after_conflict()
        elif isinstance(error, OutstandingConflictError):
            reason = error.reason
            notice = Notice.warning(
                f"{error.message}. Outstanding balances have been refreshed, please review and try again.",
                code=reason,
            )
            await self.monitor.clear()
            await self._refresh_after_conflict()
        elif isinstance(error, ConflictError):
            reason = "outstanding_flag_changed" if isinstance(error, OutstandingFlagChangedError) else "conflict"
            notice = Notice.warning(f"{error.message}. Please review and try again.", code=reason)
            await self.monitor.clear()
            await self._refresh_after_conflict()
        elif isinstance(error, InvoiceNotFoundError):
            reason = "not_found"
            notice = Notice.error(f"Invoice not found: {error.message}", code=reason)
            close_view = True
            await self.monitor.clear()
        elif isinstance(error, DomainValidationError):
            reason = "limit_reached" if isinstance(error, InvoiceLimitReachedError) else "validation"
            notice = Notice.error(error.message, code=reason)
        else:
            reason = "backend_error"
            notice = Notice.error(f"Payment failed: {error.message}", code=reason)

        reconciliation = bool(self.applied_outstanding)
        if reconciliation:
            paid = ", ".join(
                f"#{p.invoice_number or p.invoice_id} ({p.amount})" for p in self.applied_outstanding
            )
            notice = Notice(
                severity=notice.severity,
                code=notice.code,
                message=f"{notice.message} Outstanding payments already recorded and needing reconciliation: {paid}",
            )

        log = logger.error if reason == "backend_error" or reconciliation else logger.warning
        log(f"Settlement of invoice {self.invoice_id} aborted ({reason}): {error.message}")

        return SettlementOutcome(
            state=self.state,
            kind=self.kind,
            notice=notice,
            reason=reason,
            invoice=self.cache.current if self.cache.is_loaded else None,
            outstanding_payments=self.applied_outstanding,
            skipped_outstanding=self.skipped_outstanding,
            reconciliation_required=reconciliation,
            close_view=close_view,
            expected_version=expected,
            actual_version=actual,
        )

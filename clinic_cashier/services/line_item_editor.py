# clinic_cashier/services/line_item_editor.py
"""
Line-Item Editor - versioned edits of the open invoice.

Every call is gated by the cached version. Accepted edits replace the cache;
a version conflict re-fetches the invoice and hands it to the re-sync callback
so local form fields are overwritten from the server. Nothing is retried.
"""

import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from clinic_cashier.core.errors import (
    AlreadyFullyPaidError,
    BackendError,
    DomainValidationError,
    InvoiceNotFoundError,
    VersionConflictError,
)
from clinic_cashier.schemas.invoice import (
    DiscountUpdate,
    Invoice,
    InvoiceItemUpdate,
    ItemType,
    MedicineItemCreate,
    ServiceItemCreate,
)
from clinic_cashier.schemas.settlement import MutationApplied, MutationRejected, Notice
from clinic_cashier.services.invoice_api import InvoiceApiClient
from clinic_cashier.services.snapshot_cache import InvoiceSnapshotCache

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)
EditResult = Union[MutationApplied, MutationRejected]

CONFLICT_MESSAGE = (
    "This invoice was changed by another user. The latest version has been loaded, "
    "please review it and try again."
)


def build_payload(model: Type[PayloadT], **data) -> PayloadT:
    """Validate a request payload locally, before any network call"""
    try:
        return model(**data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", str(e))
        raise DomainValidationError(message, field=field) from e


class LineItemEditor:
    """Applies service, medicine, discount and flag edits against the snapshot cache"""

    def __init__(
        self,
        api: InvoiceApiClient,
        cache: InvoiceSnapshotCache,
        on_resync: Optional[Callable[[Invoice], None]] = None,
    ):
        self.api = api
        self.cache = cache
        self.on_resync = on_resync

    # ------------------------------------------------------------------
    # Core mutation path
    # ------------------------------------------------------------------

    async def _mutate(self, operation: str, call: Callable[[str, int], Awaitable[Invoice]]) -> EditResult:
        prior = self.cache.current
        try:
            invoice = await call(prior.id, prior.version)
        except VersionConflictError as e:
            logger.warning(
                f"{operation} on invoice {prior.id} rejected: expected version "
                f"{e.expected_version or prior.version}, server at {e.actual_version}"
            )
            return await self._resync_after_conflict(operation, prior)
        except InvoiceNotFoundError as e:
            logger.warning(f"{operation}: invoice {prior.id} no longer exists")
            return MutationRejected(
                reason="not_found",
                notice=Notice.error(f"Invoice not found: {e.message}", code="not_found"),
                prior_invoice=prior,
                close_view=True,
            )
        except AlreadyFullyPaidError as e:
            logger.info(f"{operation}: invoice {prior.id} already settled elsewhere")
            return MutationRejected(
                reason="already_paid",
                notice=Notice.info(f"Invoice #{prior.display_number} was already paid. {e.message}", code="already_paid"),
                prior_invoice=prior,
                close_view=True,
            )
        except BackendError as e:
            logger.error(f"{operation} on invoice {prior.id} failed: {e.message}")
            return MutationRejected(
                reason="backend_error",
                notice=Notice.error(f"Failed to {operation.replace('_', ' ')}: {e.message}", code="backend_error"),
                prior_invoice=prior,
            )

        self.cache.replace(invoice)
        logger.info(f"{operation} applied to invoice {invoice.id}, now version {invoice.version}")
        return MutationApplied(invoice=invoice)

    async def _resync_after_conflict(self, operation: str, prior: Invoice) -> EditResult:
        try:
            current = await self.cache.load(prior.id)
        except InvoiceNotFoundError:
            return MutationRejected(
                reason="not_found",
                notice=Notice.error("Invoice no longer exists", code="not_found"),
                prior_invoice=prior,
                close_view=True,
            )
        except BackendError as e:
            logger.error(f"Refresh after conflict on invoice {prior.id} failed: {e.message}")
            return MutationRejected(
                reason="version_conflict",
                notice=Notice.error(f"Invoice changed and could not be reloaded: {e.message}", code="version_conflict"),
                prior_invoice=prior,
            )

        if self.on_resync is not None:
            self.on_resync(current)
        return MutationRejected(
            reason="version_conflict",
            notice=Notice.warning(CONFLICT_MESSAGE, code="version_conflict"),
            prior_invoice=prior,
            current_invoice=current,
        )

    @staticmethod
    def _rejected_locally(error: DomainValidationError, prior: Optional[Invoice]) -> MutationRejected:
        return MutationRejected(
            reason="validation",
            notice=Notice.error(error.message, code="validation"),
            prior_invoice=prior,
        )

    def _require_item(self, item_id: str, item_type: Optional[ItemType] = None):
        item = self.cache.current.find_item(item_id)
        if item is None:
            raise DomainValidationError(f"Item {item_id} is not on this invoice", field="item_id")
        if item_type is not None and item.item_type != item_type:
            raise DomainValidationError(f"Item {item_id} is not a {item_type.value}", field="item_id")
        return item

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def add_service(self, name: str, unit_price, quantity: int = 1, notes: Optional[str] = None) -> EditResult:
        try:
            payload = build_payload(
                ServiceItemCreate,
                service_name=(name or "").strip(),
                unit_price=unit_price,
                quantity=quantity,
                notes=notes,
            )
        except DomainValidationError as e:
            return self._rejected_locally(e, self.cache.current)

        return await self._mutate(
            "add_service",
            lambda invoice_id, version: self.api.add_service_item(invoice_id, payload, version),
        )

    async def update_service(self, item_id: str, name: str, unit_price, notes: Optional[str] = None) -> EditResult:
        try:
            self._require_item(item_id, ItemType.SERVICE)
            payload = build_payload(
                InvoiceItemUpdate,
                item_name=(name or "").strip(),
                unit_price=unit_price,
                quantity=1,
                total_price=unit_price,
                notes=notes,
            )
        except DomainValidationError as e:
            return self._rejected_locally(e, self.cache.current)

        return await self._mutate(
            "update_service",
            lambda invoice_id, version: self.api.update_invoice_item(invoice_id, item_id, payload, version),
        )

    async def remove_service(self, item_id: str) -> EditResult:
        try:
            self._require_item(item_id, ItemType.SERVICE)
        except DomainValidationError as e:
            return self._rejected_locally(e, self.cache.current)

        return await self._mutate(
            "remove_service",
            lambda invoice_id, version: self.api.remove_invoice_item(invoice_id, item_id, version),
        )

    # ------------------------------------------------------------------
    # Medicines and generic items
    # ------------------------------------------------------------------

    async def add_medicine_item(self, name: str, quantity: int, unit_price, notes: Optional[str] = None) -> EditResult:
        try:
            payload = build_payload(
                MedicineItemCreate,
                medicine_name=(name or "").strip(),
                quantity=quantity,
                unit_price=unit_price,
                notes=notes,
            )
        except DomainValidationError as e:
            return self._rejected_locally(e, self.cache.current)

        return await self._mutate(
            "add_medicine_item",
            lambda invoice_id, version: self.api.add_medicine_item(invoice_id, payload, version),
        )

    async def update_invoice_item(self, item_id: str, **fields) -> EditResult:
        try:
            self._require_item(item_id)
            payload = build_payload(InvoiceItemUpdate, **fields)
        except DomainValidationError as e:
            return self._rejected_locally(e, self.cache.current)

        return await self._mutate(
            "update_invoice_item",
            lambda invoice_id, version: self.api.update_invoice_item(invoice_id, item_id, payload, version),
        )

    async def load_prescriptions(self, visit_id: Optional[str] = None) -> EditResult:
        visit_id = visit_id or self.cache.current.visit_id
        if not visit_id:
            return self._rejected_locally(
                DomainValidationError("Invoice has no visit to load prescriptions from", field="visit_id"),
                self.cache.current,
            )
        return await self._mutate(
            "load_prescriptions",
            lambda invoice_id, version: self.api.add_prescriptions(invoice_id, visit_id, version),
        )

    # ------------------------------------------------------------------
    # Invoice-level fields
    # ------------------------------------------------------------------

    async def update_discount(self, percentage=Decimal("0"), amount=Decimal("0")) -> EditResult:
        try:
            payload = build_payload(DiscountUpdate, discount_percentage=percentage, discount_amount=amount)
            if payload.discount_percentage > 0 and payload.discount_amount > 0:
                raise DomainValidationError(
                    "Use either a percentage or a flat discount, not both", field="discount"
                )
        except DomainValidationError as e:
            return self._rejected_locally(e, self.cache.current)

        return await self._mutate(
            "update_discount",
            lambda invoice_id, version: self.api.update_discount(invoice_id, payload, version),
        )

    async def update_outstanding_balance_flag(self, flag: bool) -> EditResult:
        return await self._mutate(
            "update_outstanding_balance_flag",
            lambda invoice_id, version: self.api.update_outstanding_balance_flag(invoice_id, bool(flag), version),
        )

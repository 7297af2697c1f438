"""Exceptions for the cashier settlement flow."""

from typing import Optional


class CashierError(Exception):
    """Base exception for the cashier module."""

    def __init__(self, message: str = "", *, invoice_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.invoice_id = invoice_id


class DomainValidationError(CashierError):
    """Input rejected locally before any network call."""

    def __init__(self, message: str, *, field: Optional[str] = None, invoice_id: Optional[str] = None):
        super().__init__(message, invoice_id=invoice_id)
        self.field = field


class InvoiceLimitReachedError(DomainValidationError):
    """Patient already has the maximum number of unpaid invoices."""

    pass


class NoInvoiceOpenError(CashierError):
    """Session operation needs an open invoice."""

    pass


class IllegalTransitionError(CashierError):
    """Settlement state machine asked to make a transition it does not allow."""

    def __init__(self, current, target):
        super().__init__(f"Illegal settlement transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class ConflictError(CashierError):
    """Base for every conflict with server state caused by another operator."""

    pass


class VersionConflictError(ConflictError):
    """Expected invoice version does not match the server."""

    def __init__(
        self,
        message: str = "",
        *,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        original_version: Optional[int] = None,
        invoice_id: Optional[str] = None,
    ):
        if not message:
            message = (
                f"Invoice was modified by another user "
                f"(expected version {expected_version}, found {actual_version})"
            )
        super().__init__(message, invoice_id=invoice_id)
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.original_version = original_version


class OutstandingFlagChangedError(ConflictError):
    """Another operator toggled the outstanding-balance flag."""

    def __init__(self, *, local_flag: bool, server_flag: bool, invoice_id: Optional[str] = None):
        super().__init__(
            "The outstanding balance option was changed by another user",
            invoice_id=invoice_id,
        )
        self.local_flag = local_flag
        self.server_flag = server_flag


class OutstandingConflictError(ConflictError):
    """An outstanding invoice changed after the detail view was opened."""

    reason = "outstanding_changed"


class OutstandingInvoicePaidError(OutstandingConflictError):
    """An outstanding invoice was paid by someone else."""

    reason = "outstanding_paid"


class OutstandingInvoiceVersionMismatchError(OutstandingConflictError):
    """An outstanding invoice was modified by someone else."""

    reason = "outstanding_version_mismatch"


class OutstandingInvoiceBalanceChangedError(OutstandingConflictError):
    """An outstanding invoice's balance changed."""

    reason = "outstanding_balance_changed"


class OutstandingBalanceUnavailableError(OutstandingConflictError):
    """Consolidation is on but the outstanding invoices could not be read."""

    reason = "outstanding_unavailable"


class AlreadyFullyPaidError(ConflictError):
    """The invoice was already settled by another operator."""

    pass


class InvoiceNotFoundError(CashierError):
    """Invoice deleted or no longer reachable."""

    pass


class BackendError(CashierError):
    """Clinic API returned an unexpected error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ):
        super().__init__(message, invoice_id=invoice_id)
        self.status_code = status_code
        self.code = code


class BackendValidationError(BackendError):
    """Clinic API rejected the request payload."""

    pass


class BackendUnavailableError(BackendError):
    """Clinic API could not be reached or timed out."""

    pass

# clinic_cashier/api/deps/cashier.py - Per-request clinic client and cashier session
from typing import Any, Dict

from fastapi import Depends, Request

from clinic_cashier.api.deps.auth import require_cashier
from clinic_cashier.services.cashier_session import CashierSession, SessionRegistry
from clinic_cashier.services.invoice_api import InvoiceApiClient


def get_clinic_api(request: Request, ctx: Dict[str, Any] = Depends(require_cashier)) -> InvoiceApiClient:
    """Shared connection pool, caller's bearer token forwarded"""
    return InvoiceApiClient(request.app.state.http, token=ctx["token"])


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_cashier_session(
    ctx: Dict[str, Any] = Depends(require_cashier),
    api: InvoiceApiClient = Depends(get_clinic_api),
    registry: SessionRegistry = Depends(get_session_registry),
) -> CashierSession:
    return registry.session_for(ctx["user_id"], api)

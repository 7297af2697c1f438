# clinic_cashier/main.py - Cashier settlement API
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import time
import traceback

import httpx

from clinic_cashier.core.config import settings
from clinic_cashier.core.errors import (
    BackendError,
    BackendValidationError,
    CashierError,
    ConflictError,
    DomainValidationError,
    IllegalTransitionError,
    InvoiceNotFoundError,
    NoInvoiceOpenError,
)
from clinic_cashier.core.logging_config import configure_logging
from clinic_cashier.api.routers import cashier
from clinic_cashier.schemas.settlement import Notice
from clinic_cashier.services.cashier_session import SessionRegistry
from clinic_cashier.services.recovery import create_recovery_store

logger = logging.getLogger(__name__)


def status_for_error(exc: CashierError) -> int:
    if isinstance(exc, (DomainValidationError, NoInvoiceOpenError)):
        return 400
    if isinstance(exc, (ConflictError, IllegalTransitionError)):
        return 409
    if isinstance(exc, InvoiceNotFoundError):
        return 404
    if isinstance(exc, BackendValidationError):
        return 422
    if isinstance(exc, BackendError):
        return 502
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    configure_logging()
    logger.info("Starting Clinic Cashier API...")
    logger.info(f"Environment: {settings.ENV}")
    logger.info(f"Clinic API: {settings.CLINIC_API_URL}")

    app.state.http = httpx.AsyncClient(
        base_url=settings.CLINIC_API_URL,
        timeout=settings.CLINIC_API_TIMEOUT_SECONDS,
    )
    app.state.recovery_store = create_recovery_store(settings)
    app.state.sessions = SessionRegistry(
        app.state.recovery_store,
        marker_key=settings.RECOVERY_MARKER_KEY,
        staleness_seconds=settings.RECOVERY_STALENESS_SECONDS,
        outstanding_limit=settings.MAX_OUTSTANDING_INVOICES,
        completed_page_size=settings.COMPLETED_PAGE_SIZE,
    )

    yield

    await app.state.http.aclose()
    await app.state.recovery_store.close()
    logger.info("Shutting down Clinic Cashier API...")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.API_TITLE,
        description="Cashier invoice settlement against the clinic backend",
        version=settings.API_VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every request with its status and duration"""
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Error processing {request.method} {request.url.path}: {str(e)}")
            raise
        process_time = time.time() - start_time
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
        max_age=3600,
    )

    @app.exception_handler(CashierError)
    async def cashier_exception_handler(request: Request, exc: CashierError):
        status_code = status_for_error(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(f"{request.method} {request.url.path} failed ({exc.__class__.__name__}): {exc.message}")
        notice = Notice.warning(exc.message) if status_code == 409 else Notice.error(exc.message)
        content = {"detail": exc.message, "notice": notice.model_dump(mode="json")}
        if exc.invoice_id:
            content["invoice_id"] = exc.invoice_id
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions"""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {str(exc)}")
        logger.error(traceback.format_exc())
        if settings.is_development:
            return JSONResponse(status_code=500, content={"detail": str(exc)})
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "environment": settings.ENV,
            "version": settings.API_VERSION,
        }

    app.include_router(cashier.router, prefix="/api/cashier", tags=["Cashier"])
    return app


app = create_app()

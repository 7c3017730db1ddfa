"""
FastAPI application entry point.

Configures the application with routes, middleware, and settings.
"""
import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from gigledger import __version__
from gigledger.api.routes import ledger, receipts, reconciliation, snapshots, statements
from gigledger.config import get_settings
from gigledger.database import init_db
from gigledger.exceptions import GigLedgerError, NotFoundError, ValidationError
from gigledger.middleware.logging import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    configure_logging,
    redact_sensitive_data,
)

settings = get_settings()

configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)


def _filter_sensitive_data(event: dict, hint: dict) -> dict:
    """Filter sensitive data from Sentry events before sending."""
    if "request" in event and isinstance(event["request"].get("data"), dict):
        event["request"]["data"] = redact_sensitive_data(event["request"]["data"])
    if "extra" in event:
        event["extra"] = redact_sensitive_data(event["extra"])
    return event


# Initialize Sentry for error tracking (must be done early)
if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=__version__,
        traces_sample_rate=0.1,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=None, event_level="ERROR"),
        ],
        send_default_pii=False,
        before_send=_filter_sensitive_data,
    )

app = FastAPI(
    title="GigLedger API",
    description="""
## Gig-driver bookkeeping pipeline

Ingests gig-platform earnings statements and expense receipts, posts them
exactly once into an append-only ledger, reconciles monthly statements against
the yearly summary and serves period snapshots with an authority score.

Every request must carry an `X-Tenant-ID` header.
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Statements", "description": "Statement upload, submission and browsing"},
        {"name": "Receipts", "description": "Expense receipt upload"},
        {"name": "Ledger", "description": "Manual entries and corrections"},
        {"name": "Reconciliation", "description": "Monthly vs yearly reconciliation"},
        {"name": "Snapshots", "description": "Period totals and authority score"},
        {"name": "Health", "description": "Health checks"},
    ],
)

# Add logging middleware (order matters: correlation ID first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.include_router(statements.router, prefix="/api/v1", tags=["Statements"])
app.include_router(receipts.router, prefix="/api/v1", tags=["Receipts"])
app.include_router(ledger.router, prefix="/api/v1", tags=["Ledger"])
app.include_router(reconciliation.router, prefix="/api/v1", tags=["Reconciliation"])
app.include_router(snapshots.router, prefix="/api/v1", tags=["Snapshots"])


@app.exception_handler(GigLedgerError)
async def gigledger_exception_handler(request: Request, exc: GigLedgerError):
    """
    Rejected input keeps its own status; anything else is reported as a
    retryable 503.
    """
    if isinstance(exc, (ValidationError, NotFoundError)):
        logger.warning(
            "request_rejected",
            error_code=exc.error_code,
            message=exc.message,
            details=exc.details,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    sentry_sdk.capture_exception(exc)
    logger.error(
        "gigledger_error",
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details,
        path=str(request.url.path),
    )
    body = exc.to_dict()
    body["retryable"] = True
    return JSONResponse(status_code=503, content=body)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with consistent format."""
    sentry_sdk.capture_exception(exc)
    logger.error(
        "unhandled_error",
        error_type=type(exc).__name__,
        message=str(exc),
        path=str(request.url.path),
        exc_info=True,
    )
    return JSONResponse(
        status_code=503,
        content={
            "error": True,
            "error_code": "GL-999",
            "message": "An unexpected error occurred. Please try again.",
            "details": {"error_type": type(exc).__name__} if settings.debug else {},
            "retryable": True,
        },
    )


@app.on_event("startup")
async def startup_event() -> None:
    """Initialize application on startup."""
    logger.info("api_starting", debug=settings.debug, sentry_enabled=bool(settings.sentry_dsn))
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    init_db()
    logger.info("api_started")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("api_stopping")


@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}

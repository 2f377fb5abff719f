"""
FastAPI application entry point.

Configures the application with routes, middleware, and settings.
"""
import logging
import traceback

import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from forecast_engine.api.routes import forecasts, imports, methodologies, variance
from forecast_engine.config import get_settings
from forecast_engine.database import init_db
from forecast_engine.exceptions import ForecastEngineError
from forecast_engine.middleware.logging import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    add_correlation_id_processor,
    redact_sensitive_data,
    redact_sensitive_processor,
)

APP_VERSION = "1.0.0"

settings = get_settings()


def _filter_sensitive_data(event: dict, hint: dict) -> dict:
    """Filter sensitive data from Sentry events before sending."""
    if "request" in event and "data" in event["request"]:
        event["request"]["data"] = redact_sensitive_data(event["request"]["data"])
    if "extra" in event:
        event["extra"] = redact_sensitive_data(event["extra"])
    return event


# Initialize Sentry for error tracking (must be done early)
if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=APP_VERSION,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=None, event_level="ERROR"),
        ],
        send_default_pii=False,
        before_send=_filter_sensitive_data,
    )

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        add_correlation_id_processor,  # Add correlation ID to all logs
        redact_sensitive_processor,     # Redact credentials and payloads
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Forecast Engine API",
    description="""
## Financial Forecasting and Variance API

Imports monthly financial statement history, projects each line item with a
configurable methodology, and compares stored forecasts with reported actuals.

### Key Features

- **Imports**: Historical and actuals workbooks (.xlsx, .xlsm, .csv) with restatement tracking
- **Methodologies**: Nine forecasting methods with validated parameters per line item
- **Forecast runs**: Driver-aware runs stored as immutable, versioned projections
- **Variance**: Monthly, year-to-date and prior-year variance from a rebuildable cache
    """,
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Imports", "description": "Workbook imports, templates and conversion"},
        {"name": "Methodologies", "description": "Methodology catalog, line items and configuration"},
        {"name": "Forecasts", "description": "Forecast runs and stored versions"},
        {"name": "Variance", "description": "Forecast vs. actual variance"},
        {"name": "Health", "description": "Health checks"},
    ],
)

# Add logging middleware (order matters: correlation ID first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)

# Add GZip compression for responses > 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Include API routes
app.include_router(imports.router, prefix="/api/v1", tags=["Imports"])
app.include_router(methodologies.router, prefix="/api/v1", tags=["Methodologies"])
app.include_router(forecasts.router, prefix="/api/v1", tags=["Forecasts"])
app.include_router(variance.router, prefix="/api/v1", tags=["Variance"])


@app.exception_handler(ForecastEngineError)
async def forecast_engine_exception_handler(request: Request, exc: ForecastEngineError):
    """Handle all forecast engine exceptions."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "forecast_engine_error",
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details,
        path=str(request.url.path),
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with consistent format."""
    sentry_sdk.capture_exception(exc)

    logger.error(
        "unhandled_error",
        error_type=type(exc).__name__,
        message=str(exc),
        path=str(request.url.path),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": True,
            "error_code": "FVE-999",
            "message": "An unexpected error occurred. Please try again.",
            "details": {"error_type": type(exc).__name__} if settings.debug else {},
        },
    )


@app.on_event("startup")
async def startup_event() -> None:
    """Initialize application on startup."""
    logger.info("Starting Forecast Engine API", debug=settings.debug)

    if settings.sentry_dsn:
        logger.info("Sentry error tracking enabled", environment=settings.environment)
    else:
        logger.warning("Sentry error tracking not configured (SENTRY_DSN not set)")

    init_db()

    logger.info("Forecast Engine API started successfully")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Cleanup on application shutdown."""
    logger.info("Shutting down Forecast Engine API")


@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy", "version": APP_VERSION}

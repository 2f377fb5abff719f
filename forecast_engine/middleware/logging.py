"""
Logging middleware and utilities.

Provides correlation ID tracking, request logging, operation timing and
the structlog processors installed by the application.
"""
import asyncio
import functools
import time
import uuid
from contextvars import ContextVar
from typing import Any, Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

logger = structlog.get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
SLOW_REQUEST_MS = 2000

# Never written to logs: credentials and raw upload payloads
SENSITIVE_FIELDS = {
    "authorization", "cookie", "api_key", "token", "secret", "password",
    "content", "file_bytes",
}


def get_correlation_id() -> str:
    """Get the current request's correlation ID."""
    return correlation_id.get()


def redact_sensitive_data(data: dict, depth: int = 0) -> dict:
    """
    Replace sensitive values in a (nested) dict with "[REDACTED]".

    Args:
        data: Event dictionary or any nested mapping.
        depth: Current recursion depth; nesting beyond 5 levels is left as-is.
    """
    if depth > 5 or not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        if isinstance(key, str) and any(field in key.lower() for field in SENSITIVE_FIELDS):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_sensitive_data(value, depth + 1)
        elif isinstance(value, list):
            redacted[key] = [redact_sensitive_data(item, depth + 1) for item in value]
        else:
            redacted[key] = value
    return redacted


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attaches a correlation ID to the request context and the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        token = correlation_id.set(request_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id.reset(token)
        response.headers[CORRELATION_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each API request with its status and duration."""

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        request_info = {
            "method": request.method,
            "path": request.url.path,
            "query": str(request.query_params) if request.query_params else None,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                **request_info,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=_elapsed_ms(start_time),
            )
            raise

        duration_ms = _elapsed_ms(start_time)
        logger.info("request_completed", **request_info, status_code=response.status_code, duration_ms=duration_ms)
        if duration_ms > SLOW_REQUEST_MS:
            logger.warning("slow_request", **request_info, duration_ms=duration_ms)
        return response


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


def log_performance(operation_name: str):
    """
    Decorator that logs the duration and outcome of a call.

    Usage:
        @log_performance("forecast_run")
        def run_forecast(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                start_time = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _log_failure(operation_name, start_time, e)
                    raise
                logger.info("operation_completed", operation=operation_name, duration_ms=_elapsed_ms(start_time))
                return result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log_failure(operation_name, start_time, e)
                raise
            logger.info("operation_completed", operation=operation_name, duration_ms=_elapsed_ms(start_time))
            return result
        return sync_wrapper

    return decorator


def _log_failure(operation_name: str, start_time: float, error: Exception) -> None:
    logger.error(
        "operation_failed",
        operation=operation_name,
        error=str(error),
        error_type=type(error).__name__,
        duration_ms=_elapsed_ms(start_time),
    )


def add_correlation_id_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that adds the correlation ID to every entry."""
    request_id = get_correlation_id()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def redact_sensitive_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that redacts sensitive fields."""
    return redact_sensitive_data(event_dict)

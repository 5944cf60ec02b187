"""
Observability Middleware and logging setup.

Every request gets a correlation id (taken from X-Correlation-ID when the
caller sends one). It is stored in a context variable so log lines written
by the orchestrator, ledgers and courier adapters during that request carry
it too, which is how a courier timeout is tied back to the API call that
caused it.
"""

import time
import uuid
import logging
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.config import settings

logger = logging.getLogger("spareflow.http")

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [%(correlation_id)s] %(message)s"

# Polled by load balancers; logged at DEBUG only
QUIET_PATHS = {"/health"}


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        return True


def configure_logging():
    """Configure root logging once at startup."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)

        try:
            return await self._handle(request, call_next, correlation_id)
        finally:
            correlation_id_var.reset(token)

    async def _handle(self, request: Request, call_next, correlation_id: str) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time"] = str(duration_ms)

        log_data = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "idempotency_key": request.headers.get("Idempotency-Key"),
            "ip": request.client.host if request.client else "unknown",
        }
        message = f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms}ms)"

        if request.url.path in QUIET_PATHS:
            logger.debug(message, extra=log_data)
        elif response.status_code >= 500:
            logger.error(message, extra=log_data)
        elif response.status_code >= 400:
            logger.warning(message, extra=log_data)
        else:
            logger.info(message, extra=log_data)

        return response

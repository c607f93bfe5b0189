"""Shared middleware for correlation IDs, admin identity, and metrics."""

import re
import time
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from shared.config import data_path
from shared.correlation import set_correlation_id, generate_correlation_id, get_correlation_id
from shared.file_store import FileStore

logger = logging.getLogger("gatehouse")


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        cid = request.headers.get("X-Correlation-Id", generate_correlation_id())
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = cid
        return response


class AdminAuthMiddleware(BaseHTTPMiddleware):
    """Mutations require an acting admin; guest waiting-room calls do not."""

    EXEMPT_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}
    GUEST_PATH = re.compile(r"^/api/events/[^/]+/(queue|metrics|admission|funnel)(/|$)")

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)
        if self.GUEST_PATH.match(request.url.path):
            return await call_next(request)
        if request.method == "GET":
            return await call_next(request)
        admin_id = request.headers.get("X-Admin-Id")
        if not admin_id and request.method in ("POST", "PUT", "PATCH", "DELETE"):
            return JSONResponse(
                status_code=401,
                content={"error": "X-Admin-Id header required", "code": "unauthorized"},
            )
        return await call_next(request)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - start) * 1000, 2)
        try:
            FileStore.append_jsonl(data_path("metrics", "service_metrics.jsonl"), {
                "timestamp": time.time(),
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "correlation_id": get_correlation_id(),
            })
        except OSError as e:
            # A full or read-only disk must not fail the request itself.
            logger.warning(f"Could not record request metrics: {e}")
        return response

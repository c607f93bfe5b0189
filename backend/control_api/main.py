"""Gatehouse Control API - Main application entry point."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config import API_HOST, API_PORT, LOG_FORMAT, LOG_LEVEL, ensure_data_dirs
from shared.errors import DomainError
from shared.middleware import AdminAuthMiddleware, CorrelationMiddleware, MetricsMiddleware
from control_api.routers import actions, audit, event_codes, health, refunds, surge

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("gatehouse")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Gatehouse Control API",
        version="1.0.0",
        description="Refund approvals, surge admission and admin governance for event ticketing",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Custom middleware (outermost first in execution order)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(AdminAuthMiddleware)
    app.add_middleware(CorrelationMiddleware)

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": str(exc.detail), "code": "http_error"}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(p) for p in first.get("loc", ()))
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
        return JSONResponse({"error": message, "code": "validation_error"}, status_code=422)

    @app.on_event("startup")
    async def startup():
        ensure_data_dirs()
        logger.info("Control API started, data dirs initialized")

    app.include_router(refunds.router, prefix="/api/admin/refunds", tags=["Refunds"])
    app.include_router(surge.router, prefix="/api/events", tags=["Surge"])
    app.include_router(event_codes.router, prefix="/api/event-codes", tags=["Event Codes"])
    app.include_router(actions.router, prefix="/api", tags=["Governance"])
    app.include_router(audit.router, prefix="/api/audit", tags=["Audit"])
    app.include_router(health.router, tags=["Health"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)

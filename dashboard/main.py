import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.exceptions import ManagedWealthException, ReserveCoverageError
from dashboard.routers import managed_liquidation, managed_settlement, managed_subscriptions
from managed_wealth.container import ManagedWealthContainer, create_container

logger = logging.getLogger(__name__)


def error_body(exc: ManagedWealthException) -> dict:
    """{error, code, details} plus the coverage struct for reserve rejections."""
    body = {"error": exc.message, "code": exc.error_code, "details": exc.context}
    if isinstance(exc, ReserveCoverageError):
        body["reserveCoverage"] = exc.coverage.to_dict()
        body["requiredCoverageRatio"] = str(exc.required_ratio)
    return body


def create_app(container: Optional[ManagedWealthContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Managed Wealth Control Plane API",
        description="Reserve-guaranteed subscriptions, liquidation queue and settlement health.",
        version="1.0.0",
    )
    app.state.container = container or create_container()
    if app.state.container.config.admin_token is None:
        logger.warning("Admin token not configured, admin endpoints are unauthenticated")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ManagedWealthException)
    async def managed_wealth_error(request: Request, exc: ManagedWealthException):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.to_log_format()}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {exc.http_status}: {exc.to_log_format()}")
        return JSONResponse(status_code=exc.http_status, content=error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "code": "VALIDATION_ERROR", "details": details},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail, "code": "HTTP_ERROR"})

    app.include_router(managed_subscriptions.router)
    app.include_router(managed_liquidation.router)
    app.include_router(managed_settlement.router)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "Managed Wealth API is running"}

    return app

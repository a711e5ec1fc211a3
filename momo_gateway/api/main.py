"""
FastAPI application factory for the disbursement and collection gateway.

``create_app`` wires routers, the request-context middleware and the error
handlers. Every error leaves the API in the same envelope::

    {"error": {"code": ..., "message": ..., "type": ...}}
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from momo_gateway import __version__
from momo_gateway.config import Settings, get_settings
from momo_gateway.core.errors import MomoGatewayError
from momo_gateway.database.connection import close_db, init_db
from momo_gateway.monitoring.logging import setup_logging
from momo_gateway.services import Services, build_services

from .routes import (
    balance_router,
    collection_router,
    disbursement_router,
    monitoring_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def error_response(status_code: int, code: str, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "type": error_type}},
    )


def build_lifespan(settings: Settings) -> Callable[[FastAPI], Any]:
    """
    Lifespan that owns the database and services only when the caller did
    not inject prebuilt services.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        owns_services = getattr(app.state, "services", None) is None
        logger.info(
            "gateway_starting",
            app_name=settings.app_name,
            env=settings.app_env,
            owns_services=owns_services,
        )
        if owns_services:
            try:
                await init_db()
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise
            app.state.services = build_services(settings)

        yield

        if owns_services:
            await app.state.services.close()
            await close_db()
        logger.info("gateway_stopped")

    return lifespan


async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind request_id (incoming or generated) to the log context and echo it back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    started = time.perf_counter()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.perf_counter() - started,
        )
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.perf_counter() - started,
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


async def handle_gateway_error(request: Request, exc: MomoGatewayError) -> JSONResponse:
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "request_error",
        error_code=exc.error_code,
        error=exc.message,
        status_code=exc.http_status,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report the first invalid field as ``field: reason``."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "validation_error",
        f"{field}: {first.get('msg', 'invalid request')}",
        "ValidationError",
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "An unexpected error occurred. Please try again later.",
        "InternalError",
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings
        services: Prebuilt services. When omitted they are built, and the
            database initialized, at startup.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="MoMo Gateway",
        description=(
            "Multi-tenant mobile money disbursements and collections over MTN and Airtel, "
            "with idempotent requests and signed provider callbacks."
        ),
        version=__version__,
        lifespan=build_lifespan(settings),
    )
    app.state.services = services

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(MomoGatewayError, handle_gateway_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    for router in (
        disbursement_router,
        collection_router,
        balance_router,
        webhook_router,
        monitoring_router,
    ):
        app.include_router(router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "metrics": "/metrics",
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "momo_gateway.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )


if __name__ == "__main__":
    run()

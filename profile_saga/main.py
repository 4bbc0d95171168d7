"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from profile_saga.api.v1.router import api_router
from profile_saga.core.config import settings
from profile_saga.core.errors import (
    ConflictError,
    InvalidTokenError,
    ProfileNotFoundError,
    ProfileSagaError,
    SagaDispatchError,
    TransientStoreError,
)
from profile_saga.core.logging_config import (
    correlation_id_var,
    generate_request_id,
    setup_logging,
)
from profile_saga.core.rate_limit import limiter
from profile_saga.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)

# Domain errors that reach the HTTP layer, most specific first
ERROR_STATUS: dict[type[ProfileSagaError], int] = {
    ProfileNotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidTokenError: status.HTTP_400_BAD_REQUEST,
    TransientStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
    SagaDispatchError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging(debug=settings.debug)
    logger.info(
        "Starting %s v%s (%s)", settings.project_name, settings.version, settings.environment
    )
    yield
    logger.info("Shutting down")


def _init_sentry() -> None:
    if not settings.sentry_dsn:
        return
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1,
    )


async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = next(
        code for error_cls, code in ERROR_STATUS.items() if isinstance(exc, error_cls)
    )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code, content=ErrorResponse(detail=str(exc)).model_dump()
    )


async def unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    # Answer in JSON so CORS headers are still attached
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(detail="Internal server error").model_dump(),
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    _init_sentry()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next: Any) -> Response:
        rid = request.headers.get("X-Request-ID") or generate_request_id()
        correlation_id_var.set(rid)
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    for error_cls in ERROR_STATUS:
        app.add_exception_handler(error_cls, domain_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, Any]:
        return {
            "name": settings.project_name,
            "version": settings.version,
            "docs": f"{settings.api_v1_prefix}/docs",
            "health": f"{settings.api_v1_prefix}/health",
        }

    return app


app = create_app()

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from receptionist.config import settings
from receptionist.db import Database
from receptionist.errors import ReauthorizationRequired, error_response
from receptionist.rate_limit import limiter, rate_limit_exceeded_handler
from receptionist.routers import auth, dashboard, vapi, webhooks
from receptionist.shopify_api import ShopifyApiClient, ShopifyApiError, ShopifyRateLimitError
from receptionist.vapi_api import VapiApiClient, VapiApiError, VapiRateLimitError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(app: FastAPI) -> AsyncIterator[None]:
    database: Database = app.state.database
    database.init_db()
    try:
        yield
    finally:
        database.dispose()


def create_app(
    *,
    database: Database | None = None,
    shopify_api: ShopifyApiClient | None = None,
    vapi_api: VapiApiClient | None = None,
) -> FastAPI:
    logging.getLogger("receptionist").setLevel(settings.LOG_LEVEL.upper())

    app = FastAPI(
        title="Shopify AI Receptionist",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )
    app.state.database = database or Database(
        settings.DATABASE_URL,
        connect_retry_attempts=settings.DB_CONNECT_RETRY_ATTEMPTS,
        connect_retry_backoff_seconds=settings.DB_CONNECT_RETRY_BACKOFF_SECONDS,
    )
    app.state.shopify_api = shopify_api or ShopifyApiClient()
    app.state.vapi_api = vapi_api or VapiApiClient()
    app.state.limiter = limiter

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> ORJSONResponse:
        return error_response(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> ORJSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg") or "Invalid request"
        return error_response(f"{location}: {message}" if location else message, status_code=400)

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(ShopifyApiError)
    async def shopify_api_error_handler(_request: Request, exc: ShopifyApiError) -> ORJSONResponse:
        logger.warning("Shopify API error", extra={"status_code": exc.status_code})
        retry_after = exc.retry_after if isinstance(exc, ShopifyRateLimitError) else None
        return error_response(str(exc), status_code=exc.status_code, retry_after=retry_after)

    @app.exception_handler(VapiApiError)
    async def vapi_api_error_handler(_request: Request, exc: VapiApiError) -> ORJSONResponse:
        logger.warning("Vendor API error", extra={"status_code": exc.status_code})
        retry_after = exc.retry_after if isinstance(exc, VapiRateLimitError) else None
        return error_response(str(exc), status_code=exc.status_code, retry_after=retry_after)

    @app.exception_handler(ReauthorizationRequired)
    async def reauthorization_handler(_request: Request, exc: ReauthorizationRequired) -> RedirectResponse:
        logger.info("Redirecting shop to reinstall", extra={"shop_domain": exc.shop_domain})
        return RedirectResponse(url=f"/auth/install?{urlencode({'shop': exc.shop_domain})}", status_code=302)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return error_response("Internal server error", status_code=500)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/db")
    def health_db() -> dict[str, str]:
        try:
            app.state.database.ping()
            return {"db": "ok"}
        except Exception as exc:
            logger.warning("Database health check failed", exc_info=exc)
            return {"db": f"error: {exc}"}

    app.include_router(auth.router)
    app.include_router(webhooks.router)
    app.include_router(vapi.router)
    app.include_router(dashboard.router)
    return app


app = create_app()

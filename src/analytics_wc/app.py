"""
FastAPI application factory.

Every error reaches the caller as a JSON `{"error": message}` envelope.
Unexpected exceptions are logged with their traceback and answered with a
generic 500 so internals never leak.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import AuthVerifier, SupabaseAuthVerifier
from .config import AnalyticsConfig, load_service_credentials
from .cors import (
    ADMIN_HEADERS,
    METRICS_METHODS,
    RESET_METHODS,
    TRACK_HEADERS,
    TRACK_METHODS,
    allowed_origin,
    cors_headers,
)
from .errors import AnalyticsError, InternalError
from .geo import GeoLookup, HttpGeoLookup, NullGeoLookup
from .ingest import EventIngestor
from .rate_limit import RateLimiter
from .routes import create_admin_router, create_tracking_router
from .routes.admin import METRICS_PATH, RESET_PATH
from .routes.track import TRACK_PATH
from .sources import GoogleAnalyticsSource, NullAnalyticsSource
from .store import AnalyticsStore, InMemoryStore, StoreProvider

logger = logging.getLogger(__name__)

HTTP_ERROR_MESSAGES = {
    404: "Not found",
    405: "Method not allowed",
}

# Methods and headers advertised per endpoint on framework-level errors
ENDPOINT_CORS = {
    TRACK_PATH: (TRACK_METHODS, TRACK_HEADERS),
    METRICS_PATH: (METRICS_METHODS, ADMIN_HEADERS),
    RESET_PATH: (RESET_METHODS, ADMIN_HEADERS),
}


def _error_response(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


def _endpoint_cors(request: Request, allowed_origins) -> dict[str, str]:
    endpoint = ENDPOINT_CORS.get(request.url.path)
    if endpoint is not None:
        return cors_headers(request.headers, allowed_origins, *endpoint)
    origin = allowed_origin(request.headers, allowed_origins)
    return {"Access-Control-Allow-Origin": origin, "Vary": "Origin"} if origin else {}


def _default_source(config: AnalyticsConfig):
    if config.analytics_source == "ga4":
        return GoogleAnalyticsSource(
            config.ga4_property_id, load_service_credentials(config.ga4_credentials)
        )
    return NullAnalyticsSource()


def create_app(
    config: AnalyticsConfig,
    store: Optional[AnalyticsStore] = None,
    auth: Optional[AuthVerifier] = None,
    geo: Optional[GeoLookup] = None,
    source=None,
) -> FastAPI:
    """Build the analytics service.

    Args:
        config: Analytics configuration
        store: Fixed store for every caller; defaults to the configured backend
        auth: Bearer verifier; defaults to Supabase Auth
        geo: Country lookup; defaults to HTTP lookup when geolocation is enabled
        source: External analytics source; defaults to the configured one
    """
    if store is None and config.store_backend == "memory":
        store = InMemoryStore()
    stores = StoreProvider(
        supabase_url=config.supabase_url,
        anon_key=config.supabase_anon_key,
        service_role_key=config.supabase_service_role_key,
        store=store,
    )

    if auth is None:
        auth = SupabaseAuthVerifier(config.supabase_url, config.supabase_anon_key)
    if geo is None:
        geo = HttpGeoLookup() if config.geolocation_enabled else NullGeoLookup()
    if source is None:
        source = _default_source(config)

    ingest_store = stores.for_ingest()
    ingestor = EventIngestor(
        ingest_store,
        rate_limiter=RateLimiter(
            ingest_store,
            max_requests=config.rate_limit_requests,
            window_sec=config.rate_limit_window_seconds,
            retention_sec=config.rate_limit_retention_seconds,
        ),
        geo=geo,
    )

    app = FastAPI(title="Watchman's Cry Analytics", docs_url=None, redoc_url=None)
    app.state.config = config
    app.state.stores = stores

    @app.exception_handler(AnalyticsError)
    async def analytics_error_handler(request: Request, exc: AnalyticsError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return _error_response(exc.status_code, exc.message, exc.headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        message = HTTP_ERROR_MESSAGES.get(exc.status_code, str(exc.detail))
        headers = _endpoint_cors(request, config.allowed_origins)
        headers.update(getattr(exc, "headers", None) or {})
        return _error_response(exc.status_code, message, headers)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error_response(InternalError.status_code, InternalError.message)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(create_tracking_router(config, ingestor))
    app.include_router(create_admin_router(config, auth, stores, source=source))

    return app


def create_app_from_env() -> FastAPI:
    """Entry point for ASGI servers: `uvicorn analytics_wc.app:create_app_from_env --factory`."""
    return create_app(AnalyticsConfig.from_env())

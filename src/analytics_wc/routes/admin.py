"""
Admin routes: authenticated metric queries and the data reset.

Both endpoints verify the bearer token with the identity provider before
touching the store.
"""

import asyncio
import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from ..auth import AuthVerifier, bearer_token
from ..config import AnalyticsConfig
from ..core.aggregator import MetricsAggregator
from ..core.queries import parse_metric_query
from ..cors import ADMIN_HEADERS, METRICS_METHODS, RESET_METHODS, cors_headers, cors_on_error
from ..store import StoreProvider

logger = logging.getLogger(__name__)

METRICS_PATH = "/api/analytics-data"
RESET_PATH = "/api/reset-analytics"

# Reset order; the first two are required, rate_limits is best-effort
RESET_TABLES = ("page_views", "visitor_sessions", "rate_limits")


def create_admin_router(
    config: AnalyticsConfig,
    auth: AuthVerifier,
    stores: StoreProvider,
    source=None,
) -> APIRouter:
    """Create the admin router.

    Args:
        config: Analytics configuration
        auth: Verifies bearer tokens
        stores: Supplies a store opened with the right credential
        source: Optional external analytics source consulted before the store
    """
    router = APIRouter(tags=["analytics-admin"])

    async def _authenticate(request: Request) -> str:
        token = bearer_token(request.headers.get("authorization"))
        await auth.verify(token)
        return token

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    @router.options(METRICS_PATH)
    async def metrics_preflight(request: Request):
        return Response(
            status_code=200,
            headers=cors_headers(request.headers, config.allowed_origins, METRICS_METHODS, ADMIN_HEADERS),
        )

    @router.get(METRICS_PATH)
    async def analytics_data(request: Request):
        """Compute one metric for the dashboard."""
        cors = cors_headers(request.headers, config.allowed_origins, METRICS_METHODS, ADMIN_HEADERS)
        with cors_on_error(cors):
            token = await _authenticate(request)
            query = parse_metric_query(dict(request.query_params))

            aggregator = MetricsAggregator(
                stores.for_query(token),
                excluded_identities=config.excluded_identities,
                tz_name=config.timezone,
                site_domains=config.site_domains,
                source=source,
                visits_limit=config.visits_limit,
            )
            result = await aggregator.compute(query)

        return JSONResponse(result.to_json(), headers=cors)

    # -------------------------------------------------------------------------
    # Reset
    # -------------------------------------------------------------------------

    @router.options(RESET_PATH)
    async def reset_preflight(request: Request):
        return Response(
            status_code=200,
            headers=cors_headers(request.headers, config.allowed_origins, RESET_METHODS, ADMIN_HEADERS),
        )

    @router.post(RESET_PATH)
    async def reset_analytics(request: Request):
        """Delete every page view, session and rate-limit window. Irreversible."""
        cors = cors_headers(request.headers, config.allowed_origins, RESET_METHODS, ADMIN_HEADERS)
        with cors_on_error(cors):
            await _authenticate(request)
            store = stores.for_reset()

            results = await asyncio.gather(
                store.delete_page_views(),
                store.delete_sessions(),
                store.delete_rate_limits(),
                return_exceptions=True,
            )

        deleted = {}
        for table, result in zip(RESET_TABLES, results):
            if isinstance(result, Exception):
                logger.error(f"Reset of '{table}' failed: {result}")
                if table != "rate_limits":
                    return JSONResponse(
                        {"error": f"Failed to delete {table} data"},
                        status_code=500,
                        headers=cors,
                    )
                deleted[table] = "failed"
            else:
                deleted[table] = result if result is not None else "all"

        logger.info(f"Analytics data reset: {deleted}")
        return JSONResponse(
            {
                "success": True,
                "message": "All analytics data has been reset",
                "deleted": deleted,
            },
            headers=cors,
        )

    return router

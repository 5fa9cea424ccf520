"""
Tracking routes: the beacon script and the event ingestion endpoint.
"""

import json
import logging

from fastapi import APIRouter, Request, Response
from pydantic import ValidationError as PydanticValidationError

from ..beacon import tracking_script
from ..config import AnalyticsConfig
from ..cors import TRACK_HEADERS, TRACK_METHODS, cors_headers, cors_on_error
from ..errors import ValidationError
from ..ingest import EventIngestor, resolve_client_address
from ..models import TrackRequest

logger = logging.getLogger(__name__)

TRACK_PATH = "/api/track"
SCRIPT_PATH = "/analytics.js"
SCRIPT_MAX_AGE = 60 * 60  # 1 hour


async def _read_payload(request: Request) -> TrackRequest:
    """Parse the beacon body.

    sendBeacon posts a Blob, so the body is parsed from raw bytes whatever
    the declared content type.
    """
    raw = await request.body()
    if not raw or not raw.strip():
        raise ValidationError("Missing request body")

    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid request body") from None
    if not isinstance(data, dict):
        raise ValidationError("Invalid request body")

    try:
        return TrackRequest.model_validate(data)
    except PydanticValidationError:
        raise ValidationError("Invalid request body") from None


def create_tracking_router(config: AnalyticsConfig, ingestor: EventIngestor) -> APIRouter:
    """Create the public tracking router.

    Args:
        config: Analytics configuration
        ingestor: Pipeline that records each beacon event
    """
    router = APIRouter(tags=["tracking"])
    script = tracking_script(TRACK_PATH)

    def _cors(request: Request) -> dict[str, str]:
        return cors_headers(request.headers, config.allowed_origins, TRACK_METHODS, TRACK_HEADERS)

    @router.get(SCRIPT_PATH)
    async def beacon_script():
        """Serve the tracking beacon."""
        return Response(
            content=script,
            media_type="application/javascript",
            headers={"Cache-Control": f"public, max-age={SCRIPT_MAX_AGE}"},
        )

    @router.options(TRACK_PATH)
    async def track_preflight(request: Request):
        return Response(status_code=200, headers=_cors(request))

    @router.post(TRACK_PATH, status_code=204)
    async def track(request: Request):
        """Record one page view, time update or section view."""
        cors = _cors(request)
        with cors_on_error(cors):
            payload = await _read_payload(request)
            peer = request.client.host if request.client else None
            await ingestor.ingest(payload, resolve_client_address(request.headers, peer))
        return Response(status_code=204, headers=cors)

    return router

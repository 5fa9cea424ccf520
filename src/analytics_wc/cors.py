"""
CORS helpers for the tracking and admin endpoints.

Allow-Origin is only sent when the caller's Origin (or, failing that, its
Referer) starts with one of the configured origins. Allowed methods and
headers are always advertised.
"""
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Optional
from urllib.parse import urlparse

from .errors import AnalyticsError

TRACK_METHODS = "POST, OPTIONS"
TRACK_HEADERS = "Content-Type"
METRICS_METHODS = "GET"
RESET_METHODS = "POST"
ADMIN_HEADERS = "Authorization, Content-Type"


def _origin_of(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return url


def allowed_origin(request_headers: Mapping[str, str], allowed_origins: Iterable[str]) -> Optional[str]:
    """Return the origin to echo back, or None if the caller is not allowed."""
    candidate = request_headers.get("origin") or request_headers.get("referer")
    if not candidate:
        return None
    if any(candidate.startswith(allowed) for allowed in allowed_origins):
        return _origin_of(candidate)
    return None


def cors_headers(
    request_headers: Mapping[str, str],
    allowed_origins: Iterable[str],
    methods: str,
    headers: str,
) -> dict[str, str]:
    result = {
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": headers,
    }
    origin = allowed_origin(request_headers, allowed_origins)
    if origin:
        result["Access-Control-Allow-Origin"] = origin
        result["Vary"] = "Origin"
    return result


@contextmanager
def cors_on_error(headers: dict[str, str]) -> Iterator[None]:
    """Carry CORS headers onto any AnalyticsError raised inside the block."""
    try:
        yield
    except AnalyticsError as exc:
        for name, value in headers.items():
            exc.headers.setdefault(name, value)
        raise

"""
Configuration for Watchman's Cry analytics.
"""
import base64
import binascii
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_ORIGINS = (
    "https://www.watchmanscry.site",
    "https://watchmanscry.site",
    "http://localhost:8000",
    "http://localhost:3000",
)
DEFAULT_SITE_DOMAINS = ("watchmanscry.site", "www.watchmanscry.site")
DEFAULT_TIMEZONE = "America/Chicago"

STORE_BACKENDS = ("supabase", "memory")
ANALYTICS_SOURCES = ("store", "ga4")

MAX_VISITS_LIMIT = 500


class ConfigError(ValueError):
    """Raised when the analytics configuration is unusable."""
    pass


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_service_credentials(blob: str | None) -> dict | None:
    """Decode a service-account credential blob.

    Accepts the raw JSON document or its base64 encoding (the form most
    hosting dashboards store multi-line secrets in). Returns None when the
    blob is empty or cannot be decoded.
    """
    if not blob or not blob.strip():
        return None

    text = blob.strip()
    if not text.startswith("{"):
        try:
            text = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning("GA4 credentials are neither JSON nor base64-encoded JSON")
            return None

    try:
        info = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("GA4 credentials are not valid JSON")
        return None
    return info if isinstance(info, dict) else None


@dataclass
class AnalyticsConfig:
    """Configuration for one analytics deployment."""

    # Store coordinates
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str | None = None  # elevated, used only after auth

    # Request policy
    allowed_origins: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    site_domains: list[str] = field(default_factory=lambda: list(DEFAULT_SITE_DOMAINS))
    excluded_identities: frozenset[str] = frozenset()

    # Aggregation
    timezone: str = DEFAULT_TIMEZONE
    visits_limit: int = 50

    # Rate limiting
    rate_limit_requests: int = 10
    rate_limit_window_seconds: int = 60
    rate_limit_retention_seconds: int = 3600

    # Backends
    store_backend: str = "supabase"
    analytics_source: str = "store"
    geolocation_enabled: bool = True

    # GA4 variant
    ga4_property_id: str | None = None
    ga4_credentials: str | None = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.supabase_url = self.supabase_url.rstrip("/")
        self.excluded_identities = frozenset(self.excluded_identities)

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Unknown timezone: {self.timezone!r}") from None

        if self.store_backend not in STORE_BACKENDS:
            raise ConfigError(
                f"store_backend must be one of {STORE_BACKENDS}, got {self.store_backend!r}"
            )
        if self.analytics_source not in ANALYTICS_SOURCES:
            raise ConfigError(
                f"analytics_source must be one of {ANALYTICS_SOURCES}, got {self.analytics_source!r}"
            )
        if self.store_backend == "supabase" and not (self.supabase_url and self.supabase_anon_key):
            raise ConfigError("SUPABASE_URL and SUPABASE_ANON_KEY are required for the supabase store")

        if self.rate_limit_requests < 1 or self.rate_limit_window_seconds < 1:
            raise ConfigError("Rate limit cap and window must be positive")

        self.visits_limit = max(1, min(self.visits_limit, MAX_VISITS_LIMIT))

        if self.analytics_source == "ga4" and not self.has_ga4:
            # Surfaces as UpstreamUnavailable on the first query
            logger.warning("GA4 source selected but GA4_PROPERTY_ID/GA4_CREDENTIALS are missing")
        if not self.supabase_service_role_key:
            logger.debug("No service role key configured; admin queries run under the caller's token")

    @property
    def has_ga4(self) -> bool:
        return bool(self.ga4_property_id and self.ga4_credentials)

    @property
    def has_service_role(self) -> bool:
        return bool(self.supabase_service_role_key)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AnalyticsConfig":
        """Build a configuration from environment variables."""
        env = os.environ if environ is None else environ

        kwargs: dict = {
            "supabase_url": env.get("SUPABASE_URL", ""),
            "supabase_anon_key": env.get("SUPABASE_ANON_KEY", ""),
            "supabase_service_role_key": env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
            "excluded_identities": frozenset(_split_csv(env.get("ANALYTICS_EXCLUDED_IPS"))),
            "timezone": env.get("ANALYTICS_TIMEZONE") or DEFAULT_TIMEZONE,
            "store_backend": env.get("ANALYTICS_STORE") or "supabase",
            "analytics_source": env.get("ANALYTICS_SOURCE") or "store",
            "geolocation_enabled": _parse_bool(env.get("ANALYTICS_GEOLOCATION"), True),
            "ga4_property_id": env.get("GA4_PROPERTY_ID") or None,
            "ga4_credentials": env.get("GA4_CREDENTIALS") or None,
        }

        origins = _split_csv(env.get("ANALYTICS_ALLOWED_ORIGINS"))
        if origins:
            kwargs["allowed_origins"] = origins
        domains = _split_csv(env.get("ANALYTICS_SITE_DOMAINS"))
        if domains:
            kwargs["site_domains"] = domains

        return cls(**kwargs)

"""
Privacy-first analytics for The Watchman's Cry.

Usage:
    from analytics_wc import setup_analytics

    analytics = setup_analytics()  # reads SUPABASE_URL, SUPABASE_ANON_KEY, ...

    # Serve it
    uvicorn.run(analytics.app)

    # In templates: {{ analytics.tracking_script() }}
"""

from typing import Optional

from .app import create_app
from .beacon import tracking_snippet
from .config import AnalyticsConfig
from .core.aggregator import MetricsAggregator
from .core.queries import parse_metric_query
from .errors import AnalyticsError
from .ingest import EventIngestor
from .store import AnalyticsStore, InMemoryStore, SupabaseStore

__version__ = "0.3.0"
__all__ = [
    "setup_analytics",
    "Analytics",
    "AnalyticsConfig",
    "AnalyticsError",
    "AnalyticsStore",
    "EventIngestor",
    "InMemoryStore",
    "MetricsAggregator",
    "SupabaseStore",
    "create_app",
    "parse_metric_query",
]


class Analytics:
    """Main analytics interface for a site."""

    def __init__(self, config: AnalyticsConfig, store: Optional[AnalyticsStore] = None):
        self.config = config
        self.app = create_app(config, store=store)

    def tracking_script(self, script_url: str = "/analytics.js") -> str:
        """Script tag that loads the beacon.

        The beacon honours Do Not Track and the localStorage opt-out, sends
        a page view on load, time updates every 30s, a final time on exit
        and one event per <section id> scrolled into view.
        """
        return tracking_snippet(script_url)


def setup_analytics(
    config: Optional[AnalyticsConfig] = None,
    store: Optional[AnalyticsStore] = None,
) -> Analytics:
    """
    Set up analytics for the site.

    Args:
        config: Explicit configuration. Read from the environment if omitted.
        store: Fixed store for every caller (e.g. InMemoryStore for local runs).

    Returns:
        Analytics instance with app and tracking_script()
    """
    return Analytics(config or AnalyticsConfig.from_env(), store=store)

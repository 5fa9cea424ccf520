"""
Core analytics module.

Contains the metric queries, result models and the aggregator that
computes them.
"""

from .aggregator import MetricsAggregator
from .models import (
    ContentResult,
    DevicesResult,
    EngagementResult,
    GeographyResult,
    GrowthResult,
    HourlyResult,
    JourneyResult,
    MetricResult,
    MetricTrend,
    PageviewsResult,
    SourcesResult,
    TimelineResult,
    TimeOnPageResult,
    VisitorsResult,
    VisitsResult,
)
from .queries import METRIC_NAMES, MetricQuery, Period, parse_metric_query

__all__ = [
    "MetricsAggregator",
    "MetricQuery", "Period", "METRIC_NAMES", "parse_metric_query",
    "MetricResult", "MetricTrend",
    "PageviewsResult", "VisitorsResult", "DevicesResult", "GeographyResult",
    "TimeOnPageResult", "VisitsResult", "HourlyResult", "TimelineResult",
    "GrowthResult", "EngagementResult", "SourcesResult", "ContentResult", "JourneyResult",
]

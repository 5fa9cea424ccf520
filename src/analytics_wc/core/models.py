"""
Pydantic models for metric results.
"""
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel


class MetricResult(BaseModel):
    """Base for every metric answer."""

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# =============================================================================
# Shared Rows
# =============================================================================

class PageCount(BaseModel):
    path: str
    count: int


class DailyCount(BaseModel):
    date: str  # YYYY-MM-DD, civil zone
    count: int


class HourCount(BaseModel):
    hour: int  # 0-23, civil zone
    count: int


class Bucket(BaseModel):
    """A labelled bucket in a fixed distribution."""
    label: str
    count: int


# =============================================================================
# Traffic
# =============================================================================

class PageviewsResult(MetricResult):
    total: int = 0
    top_pages: list[PageCount] = []
    daily_trend: list[DailyCount] = []


class VisitorsResult(MetricResult):
    unique_visitors: int = 0
    new_visitors: int = 0
    total_sessions: int = 0


class DeviceCount(BaseModel):
    type: str  # desktop, mobile, tablet
    count: int


class DevicesResult(MetricResult):
    devices: list[DeviceCount] = []


class CountryCount(BaseModel):
    country: str  # ISO 3166-1 alpha-2 or "Unknown"
    count: int


class GeographyResult(MetricResult):
    countries: list[CountryCount] = []


class PageAverage(BaseModel):
    path: str
    average: int  # seconds
    samples: int


class TimeOnPageResult(MetricResult):
    overall_average: int = 0  # seconds
    by_page: list[PageAverage] = []


class VisitRecord(BaseModel):
    time: datetime
    path: str
    country: Optional[str] = None
    is_returning: bool = False


class VisitsResult(MetricResult):
    visits: list[VisitRecord] = []


class HourlyResult(MetricResult):
    hours: list[HourCount] = []
    total: int = 0
    page_path: Optional[str] = None


# =============================================================================
# Timeline
# =============================================================================

class MonthCount(BaseModel):
    month: str  # YYYY-MM
    count: int


class WeekdayCount(BaseModel):
    day: int  # 0 = Sunday
    name: str
    count: int


class TimelineResult(MetricResult):
    """Month list always; the rest depends on how far the query drills in.

    Fields that were not filled for this query are left out of the JSON.
    """
    months: list[MonthCount] = []
    days: Optional[list[DailyCount]] = None
    hours: Optional[list[HourCount]] = None
    day_of_week: Optional[list[WeekdayCount]] = None
    peak_hour: Optional[HourCount] = None
    peak_day: Optional[WeekdayCount] = None

    def to_json(self) -> dict[str, Any]:
        drill_down = {"days", "hours", "day_of_week", "peak_hour", "peak_day"}
        return self.model_dump(mode="json", exclude=drill_down - self.model_fields_set)


# =============================================================================
# Growth & Engagement
# =============================================================================

class MetricTrend(BaseModel):
    """A metric compared to the preceding window."""
    current: int | float
    previous: int | float
    percent_change: int
    trend: str  # up, down, stable


class DateWindow(BaseModel):
    start: datetime
    end: datetime


class GrowthResult(MetricResult):
    current_window: DateWindow
    previous_window: DateWindow
    pageviews: MetricTrend
    visitors: MetricTrend
    avg_time_on_page: MetricTrend


class EngagementResult(MetricResult):
    total_sessions: int = 0
    bounce_rate: int = 0  # percentage
    avg_pages_per_session: float = 0.0  # 1 decimal
    avg_session_duration: int = 0  # seconds
    return_rate: int = 0  # percentage
    time_distribution: list[Bucket] = []
    pages_distribution: list[Bucket] = []


# =============================================================================
# Sources, Content & Journey
# =============================================================================

class SourceCategoryStats(BaseModel):
    category: str  # Direct, Search, Social, Other
    count: int
    percentage: int
    bounce_rate: int
    avg_time: int  # seconds


class ReferrerStats(BaseModel):
    domain: str
    category: str
    count: int


class SearchEngineStats(BaseModel):
    engine: str
    count: int


class SourcesResult(MetricResult):
    total: int = 0
    categories: list[SourceCategoryStats] = []
    top_referrers: list[ReferrerStats] = []
    search_engines: list[SearchEngineStats] = []


class ContentStats(BaseModel):
    path: str
    views: int
    avg_time: int  # seconds
    bounce_rate: int  # percentage
    engagement_score: float  # 1 decimal


class EditionStats(BaseModel):
    """An issue page, keyed by the date found in its path."""
    edition: date
    paths: list[str]
    views: int
    avg_time: int
    bounce_rate: int
    engagement_score: float


class ContentResult(MetricResult):
    pages: list[ContentStats] = []
    editions: list[EditionStats] = []


class JourneyPage(BaseModel):
    path: str
    count: int
    percentage: int  # of all sessions


class ExitPage(JourneyPage):
    exit_rate: int  # exits / views of the page


class JourneyResult(MetricResult):
    total_sessions: int = 0
    entry_pages: list[JourneyPage] = []
    exit_pages: list[ExitPage] = []

"""
Metric queries.

Each metric is its own query model carrying only the filters that metric
understands. The union is discriminated on `metric`, so parsing a request
picks the variant and validates its filters in one step.
"""
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import MissingMetricError, UnknownMetricError, ValidationError


class Period(str, Enum):
    """Query window anchored at now."""
    WEEK = "7d"
    MONTH = "30d"
    ALL = "all"

    @property
    def days(self) -> Optional[int]:
        return {"7d": 7, "30d": 30}.get(self.value)

    def since(self, now: datetime) -> Optional[datetime]:
        """Inclusive lower bound of the window; None means unbounded."""
        days = self.days
        return now - timedelta(days=days) if days else None


class _MetricQuery(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    period: Period = Period.WEEK

    @field_validator("period", mode="before")
    @classmethod
    def _default_unknown_period(cls, value):
        # Unrecognized periods fall back to the default window
        if value in (None, ""):
            return Period.WEEK
        try:
            return Period(value)
        except ValueError:
            return Period.WEEK


class _PathFiltered(_MetricQuery):
    page_path: Optional[str] = None


class PageviewsQuery(_PathFiltered):
    metric: Literal["pageviews"] = "pageviews"


class VisitorsQuery(_MetricQuery):
    metric: Literal["visitors"] = "visitors"


class DevicesQuery(_MetricQuery):
    metric: Literal["devices"] = "devices"


class GeographyQuery(_MetricQuery):
    metric: Literal["geography"] = "geography"


class TimeOnPageQuery(_MetricQuery):
    metric: Literal["timeonpage"] = "timeonpage"


class VisitsQuery(_MetricQuery):
    metric: Literal["visits"] = "visits"
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class HourlyQuery(_PathFiltered):
    metric: Literal["hourly"] = "hourly"


class TimelineQuery(_MetricQuery):
    metric: Literal["timeline"] = "timeline"
    month: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    day: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")

    @field_validator("month")
    @classmethod
    def _real_month(cls, value):
        if value is not None and not 1 <= int(value[5:7]) <= 12:
            raise ValueError("month must be YYYY-MM")
        return value

    @field_validator("day")
    @classmethod
    def _real_day(cls, value):
        if value is not None:
            date.fromisoformat(value)
        return value


class GrowthQuery(_MetricQuery):
    metric: Literal["growth"] = "growth"


class EngagementQuery(_MetricQuery):
    metric: Literal["engagement"] = "engagement"


class SourcesQuery(_MetricQuery):
    metric: Literal["sources"] = "sources"


class ContentQuery(_MetricQuery):
    metric: Literal["content"] = "content"


class JourneyQuery(_MetricQuery):
    metric: Literal["journey"] = "journey"


MetricQuery = Annotated[
    Union[
        PageviewsQuery,
        VisitorsQuery,
        DevicesQuery,
        GeographyQuery,
        TimeOnPageQuery,
        VisitsQuery,
        HourlyQuery,
        TimelineQuery,
        GrowthQuery,
        EngagementQuery,
        SourcesQuery,
        ContentQuery,
        JourneyQuery,
    ],
    Field(discriminator="metric"),
]

METRIC_NAMES = (
    "pageviews", "visitors", "devices", "geography", "timeonpage", "visits",
    "hourly", "timeline", "growth", "engagement", "sources", "content", "journey",
)

_query_adapter = TypeAdapter(MetricQuery)


def parse_metric_query(params: Mapping[str, str]) -> MetricQuery:
    """Build a typed metric query from request parameters.

    Raises:
        MissingMetricError: no metric parameter
        UnknownMetricError: metric is not one of METRIC_NAMES
        ValidationError: a filter is malformed
    """
    metric = params.get("metric")
    if not metric:
        raise MissingMetricError()
    if metric not in METRIC_NAMES:
        raise UnknownMetricError()

    data = {key: value for key, value in params.items() if value not in (None, "")}
    try:
        return _query_adapter.validate_python(data)
    except PydanticValidationError as exc:
        fields = ", ".join(
            str(error["loc"][-1]) for error in exc.errors() if error.get("loc")
        )
        raise ValidationError(f"Invalid parameter: {fields}" if fields else None) from None

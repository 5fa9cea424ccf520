"""
Metrics aggregator.

Every metric is computed on demand from the store (or from an external
analytics source when one answers). Nothing is cached; two calls with the
same query see whatever the store holds at the time.
"""
import asyncio
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional

from ..civil_time import CIVIL_TIMEZONE, WEEKDAY_NAMES, to_local_civil_time
from ..errors import UnknownMetricError
from ..models import PageView, VisitorSession
from ..paths import edition_date_from_path, normalize_path
from ..referrer import SourceCategory, classify_source
from ..store import AnalyticsStore
from .models import (
    Bucket,
    ContentResult,
    ContentStats,
    CountryCount,
    DailyCount,
    DateWindow,
    DeviceCount,
    DevicesResult,
    EditionStats,
    EngagementResult,
    ExitPage,
    GeographyResult,
    GrowthResult,
    HourCount,
    HourlyResult,
    JourneyPage,
    JourneyResult,
    MetricResult,
    MetricTrend,
    MonthCount,
    PageAverage,
    PageCount,
    PageviewsResult,
    ReferrerStats,
    SearchEngineStats,
    SourceCategoryStats,
    SourcesResult,
    TimelineResult,
    TimeOnPageResult,
    VisitorsResult,
    VisitRecord,
    VisitsResult,
    WeekdayCount,
)
from .stats import count_by, mean, percent_change, percentage, round_half_up, top_items, trend

logger = logging.getLogger(__name__)

TOP_PAGES_LIMIT = 10
TOP_COUNTRIES_LIMIT = 20
TOP_REFERRERS_LIMIT = 10
TOP_CONTENT_LIMIT = 20
DEFAULT_VISITS_LIMIT = 50

# "all" has no natural predecessor, so growth compares the last 30 days
GROWTH_FALLBACK_DAYS = 30

# (label, lower bound inclusive, upper bound exclusive or None)
TIME_BUCKETS = (
    ("0-30s", 0, 30),
    ("30-60s", 30, 60),
    ("60-120s", 60, 120),
    ("120-300s", 120, 300),
    ("300s+", 300, None),
)
PAGE_BUCKETS = (
    ("1", 1, 2),
    ("2-3", 2, 4),
    ("4-5", 4, 6),
    ("6+", 6, None),
)

SOURCE_ORDER = (
    SourceCategory.DIRECT,
    SourceCategory.SEARCH,
    SourceCategory.SOCIAL,
    SourceCategory.OTHER,
)


def _bucketize(values: Iterable[float], buckets) -> list[Bucket]:
    counts = [0] * len(buckets)
    for value in values:
        for index, (_, low, high) in enumerate(buckets):
            if value >= low and (high is None or value < high):
                counts[index] += 1
                break
    return [Bucket(label=label, count=count) for (label, _, _), count in zip(buckets, counts)]


def engagement_score(views: int, bounce_rate: float, avg_time: float) -> float:
    """Composite content score, one decimal.

    Views weigh 30%, non-bounce 40%, and time (capped at 100s) 30%.
    """
    score = 0.3 * views + 0.4 * (100 - bounce_rate) + 0.3 * min(avg_time / 10, 10)
    return round_half_up(score, 1)


def _trend(current: int | float, previous: int | float) -> MetricTrend:
    change = percent_change(current, previous)
    return MetricTrend(
        current=current,
        previous=previous,
        percent_change=change,
        trend=trend(change),
    )


class _PathStats:
    """Running view/time/bounce totals for one grouping key."""

    __slots__ = ("views", "times", "bounces")

    def __init__(self):
        self.views = 0
        self.times: list[int] = []
        self.bounces = 0

    def add(self, view: PageView) -> None:
        self.views += 1
        if view.time_on_page is not None:
            self.times.append(view.time_on_page)
        if view.is_bounce:
            self.bounces += 1

    @property
    def avg_time(self) -> float:
        return mean(self.times) or 0

    @property
    def bounce_rate(self) -> int:
        return percentage(self.bounces, self.views)

    @property
    def score(self) -> float:
        return engagement_score(self.views, self.bounce_rate, self.avg_time)


class MetricsAggregator:
    """Answers metric queries over page views and visitor sessions."""

    def __init__(
        self,
        store: AnalyticsStore,
        excluded_identities: Iterable[str] = (),
        tz_name: str = CIVIL_TIMEZONE,
        site_domains: Iterable[str] = (),
        source=None,
        visits_limit: int = DEFAULT_VISITS_LIMIT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.excluded = frozenset(excluded_identities)
        self.tz_name = tz_name
        self.site_domains = tuple(site_domains)
        self.source = source
        self.visits_limit = visits_limit
        self.clock = clock

        self._handlers: dict[str, Callable[..., Awaitable[MetricResult]]] = {
            "pageviews": self._pageviews,
            "visitors": self._visitors,
            "devices": self._devices,
            "geography": self._geography,
            "timeonpage": self._time_on_page,
            "visits": self._visits,
            "hourly": self._hourly,
            "timeline": self._timeline,
            "growth": self._growth,
            "engagement": self._engagement,
            "sources": self._sources,
            "content": self._content,
            "journey": self._journey,
        }

    async def compute(self, query, now: Optional[datetime] = None) -> MetricResult:
        """Compute one metric.

        Raises:
            UnknownMetricError: no handler for query.metric
            StorageError: the store could not be read
            UpstreamUnavailable: the external source is misconfigured
        """
        handler = self._handlers.get(query.metric)
        if handler is None:
            raise UnknownMetricError()

        now = now or self.clock()
        logger.debug(f"Computing {query.metric} over {query.period.value}")
        if self.source is not None:
            external = await self.source.compute(query, now)
            if external is not None:
                return external
        return await handler(query, now)

    # -------------------------------------------------------------------------
    # Input loading
    # -------------------------------------------------------------------------

    async def _views(self, since: Optional[datetime], until: Optional[datetime] = None) -> list[PageView]:
        views = await self.store.list_page_views(since, until)
        return [view for view in views if view.hashed_ip not in self.excluded]

    async def _sessions(self, since: Optional[datetime]) -> list[VisitorSession]:
        sessions = await self.store.list_sessions(since)
        return [session for session in sessions if session.hashed_ip not in self.excluded]

    def _civil(self, view: PageView):
        return to_local_civil_time(view.created_at, self.tz_name)

    def _hour_histogram(self, views: Iterable[PageView]) -> list[HourCount]:
        counts = [0] * 24
        for view in views:
            counts[self._civil(view).hour] += 1
        return [HourCount(hour=hour, count=count) for hour, count in enumerate(counts)]

    # -------------------------------------------------------------------------
    # Traffic
    # -------------------------------------------------------------------------

    async def _pageviews(self, query, now: datetime) -> PageviewsResult:
        views = await self._views(query.period.since(now))
        if query.page_path:
            wanted = normalize_path(query.page_path)
            views = [view for view in views if normalize_path(view.page_path) == wanted]

        pages = count_by(normalize_path(view.page_path) for view in views)
        daily = count_by(self._civil(view).day_key for view in views)

        return PageviewsResult(
            total=len(views),
            top_pages=[
                PageCount(path=path, count=count)
                for path, count in top_items(pages, TOP_PAGES_LIMIT)
            ],
            daily_trend=[DailyCount(date=day, count=daily[day]) for day in sorted(daily)],
        )

    async def _visitors(self, query, now: datetime) -> VisitorsResult:
        sessions = await self._sessions(query.period.since(now))
        return VisitorsResult(
            unique_visitors=len({session.hashed_ip for session in sessions}),
            new_visitors=sum(1 for session in sessions if session.is_new_visitor),
            total_sessions=len(sessions),
        )

    async def _devices(self, query, now: datetime) -> DevicesResult:
        views = await self._views(query.period.since(now))
        devices = count_by(view.device_type or "desktop" for view in views)
        return DevicesResult(
            devices=[DeviceCount(type=kind, count=count) for kind, count in top_items(devices)]
        )

    async def _geography(self, query, now: datetime) -> GeographyResult:
        views = await self._views(query.period.since(now))
        countries = count_by(view.country or "Unknown" for view in views)
        return GeographyResult(
            countries=[
                CountryCount(country=country, count=count)
                for country, count in top_items(countries, TOP_COUNTRIES_LIMIT)
            ]
        )

    async def _time_on_page(self, query, now: datetime) -> TimeOnPageResult:
        views = await self._views(query.period.since(now))
        timed = [view for view in views if view.time_on_page is not None]

        by_path: dict[str, list[int]] = {}
        for view in timed:
            by_path.setdefault(normalize_path(view.page_path), []).append(view.time_on_page)

        averages = {path: mean(times) for path, times in by_path.items()}
        return TimeOnPageResult(
            overall_average=round_half_up(mean(view.time_on_page for view in timed) or 0),
            by_page=[
                PageAverage(path=path, average=round_half_up(average), samples=len(by_path[path]))
                for path, average in top_items(averages, TOP_PAGES_LIMIT)
            ],
        )

    async def _visits(self, query, now: datetime) -> VisitsResult:
        limit = query.limit or self.visits_limit
        views = await self._views(query.period.since(now))

        seen: set[tuple[str, str]] = set()
        recent: list[PageView] = []
        for view in reversed(views):
            key = (view.session_id, normalize_path(view.page_path))
            if key in seen:
                continue
            seen.add(key)
            recent.append(view)
            if len(recent) >= limit:
                break

        session_ids = list(dict.fromkeys(view.session_id for view in recent))
        sessions = {
            session.session_id: session
            for session in (await self.store.get_sessions(session_ids) if session_ids else [])
        }

        visits = []
        for view in recent:
            session = sessions.get(view.session_id)
            visits.append(
                VisitRecord(
                    time=view.created_at,
                    path=normalize_path(view.page_path),
                    country=view.country,
                    is_returning=session is not None and not session.is_new_visitor,
                )
            )
        return VisitsResult(visits=visits)

    async def _hourly(self, query, now: datetime) -> HourlyResult:
        views = await self._views(query.period.since(now))
        page_path = None
        if query.page_path:
            page_path = normalize_path(query.page_path)
            views = [view for view in views if normalize_path(view.page_path) == page_path]
        return HourlyResult(hours=self._hour_histogram(views), total=len(views), page_path=page_path)

    # -------------------------------------------------------------------------
    # Timeline
    # -------------------------------------------------------------------------

    async def _timeline(self, query, now: datetime) -> TimelineResult:
        views = await self._views(query.period.since(now))
        civil = [(view, self._civil(view)) for view in views]

        months = count_by(local.month_key for _, local in civil)
        fields: dict = {
            "months": [MonthCount(month=month, count=months[month]) for month in sorted(months)],
        }

        scoped = civil
        if query.month:
            scoped = [(view, local) for view, local in civil if local.month_key == query.month]
            year, month = int(query.month[:4]), int(query.month[5:7])
            per_day = count_by(local.day_key for _, local in scoped)
            fields["days"] = [
                DailyCount(date=key, count=per_day.get(key, 0))
                for key in (
                    f"{year:04d}-{month:02d}-{day:02d}"
                    for day in range(1, calendar.monthrange(year, month)[1] + 1)
                )
            ]

        if query.day:
            day_views = [view for view, local in civil if local.day_key == query.day]
            fields["hours"] = self._hour_histogram(day_views)
            return TimelineResult(**fields)

        weekdays = [0] * 7
        hours_seen: dict[int, int] = {}
        days_seen: dict[int, int] = {}
        for _, local in scoped:
            weekdays[local.weekday] += 1
            hours_seen[local.hour] = hours_seen.get(local.hour, 0) + 1
            days_seen[local.weekday] = days_seen.get(local.weekday, 0) + 1

        fields["day_of_week"] = [
            WeekdayCount(day=day, name=WEEKDAY_NAMES[day], count=count)
            for day, count in enumerate(weekdays)
        ]
        # max() keeps the first maximum, which is the first-seen bucket
        peak_hour = max(hours_seen.items(), key=lambda item: item[1], default=None)
        peak_day = max(days_seen.items(), key=lambda item: item[1], default=None)
        fields["peak_hour"] = HourCount(hour=peak_hour[0], count=peak_hour[1]) if peak_hour else None
        fields["peak_day"] = (
            WeekdayCount(day=peak_day[0], name=WEEKDAY_NAMES[peak_day[0]], count=peak_day[1])
            if peak_day else None
        )
        return TimelineResult(**fields)

    # -------------------------------------------------------------------------
    # Growth & Engagement
    # -------------------------------------------------------------------------

    async def _growth(self, query, now: datetime) -> GrowthResult:
        days = query.period.days or GROWTH_FALLBACK_DAYS
        current_start = now - timedelta(days=days)
        previous_start = current_start - timedelta(days=days)

        views = await self._views(previous_start)
        current = [view for view in views if view.created_at >= current_start]
        previous = [view for view in views if view.created_at < current_start]

        def avg_time(rows: list[PageView]) -> int:
            return round_half_up(
                mean(view.time_on_page for view in rows if view.time_on_page is not None) or 0
            )

        return GrowthResult(
            current_window=DateWindow(start=current_start, end=now),
            previous_window=DateWindow(start=previous_start, end=current_start),
            pageviews=_trend(len(current), len(previous)),
            visitors=_trend(
                len({view.hashed_ip for view in current}),
                len({view.hashed_ip for view in previous}),
            ),
            avg_time_on_page=_trend(avg_time(current), avg_time(previous)),
        )

    async def _engagement(self, query, now: datetime) -> EngagementResult:
        since = query.period.since(now)
        sessions, views = await asyncio.gather(self._sessions(since), self._views(since))

        total = len(sessions)
        durations = [
            seconds
            for seconds in (
                (session.last_visit_at - session.first_visit_at).total_seconds()
                for session in sessions
            )
            if seconds > 0
        ]

        return EngagementResult(
            total_sessions=total,
            bounce_rate=percentage(sum(1 for s in sessions if s.page_count == 1), total),
            avg_pages_per_session=round_half_up(
                mean(session.page_count for session in sessions) or 0, 1
            ),
            avg_session_duration=round_half_up(mean(durations) or 0),
            return_rate=percentage(sum(1 for s in sessions if not s.is_new_visitor), total),
            time_distribution=_bucketize(
                (view.time_on_page for view in views if view.time_on_page is not None),
                TIME_BUCKETS,
            ),
            pages_distribution=_bucketize(
                (session.page_count for session in sessions), PAGE_BUCKETS
            ),
        )

    # -------------------------------------------------------------------------
    # Sources, Content & Journey
    # -------------------------------------------------------------------------

    async def _sources(self, query, now: datetime) -> SourcesResult:
        views = await self._views(query.period.since(now))
        total = len(views)

        per_category = {category: _PathStats() for category in SOURCE_ORDER}
        referrers: dict[tuple[str, str], int] = {}
        engines: dict[str, int] = {}

        for view in views:
            info = classify_source(view.referrer_domain, self.site_domains)
            per_category[info.category].add(view)
            if info.category is not SourceCategory.DIRECT and info.domain:
                key = (info.domain, info.category.value)
                referrers[key] = referrers.get(key, 0) + 1
            if info.search_engine:
                engines[info.search_engine] = engines.get(info.search_engine, 0) + 1

        return SourcesResult(
            total=total,
            categories=[
                SourceCategoryStats(
                    category=category.value,
                    count=stats.views,
                    percentage=percentage(stats.views, total),
                    bounce_rate=stats.bounce_rate,
                    avg_time=round_half_up(stats.avg_time),
                )
                for category, stats in per_category.items()
            ],
            top_referrers=[
                ReferrerStats(domain=domain, category=category, count=count)
                for (domain, category), count in top_items(referrers, TOP_REFERRERS_LIMIT)
            ],
            search_engines=[
                SearchEngineStats(engine=engine, count=count)
                for engine, count in top_items(engines)
            ],
        )

    async def _content(self, query, now: datetime) -> ContentResult:
        views = await self._views(query.period.since(now))

        pages: dict[str, _PathStats] = {}
        editions: dict = {}
        edition_paths: dict = {}
        for view in views:
            path = normalize_path(view.page_path)
            pages.setdefault(path, _PathStats()).add(view)
            edition = edition_date_from_path(path)
            if edition is not None:
                editions.setdefault(edition, _PathStats()).add(view)
                paths = edition_paths.setdefault(edition, [])
                if path not in paths:
                    paths.append(path)

        ranked_pages = sorted(pages.items(), key=lambda item: item[1].score, reverse=True)
        ranked_editions = sorted(editions.items(), key=lambda item: item[1].score, reverse=True)

        return ContentResult(
            pages=[
                ContentStats(
                    path=path,
                    views=stats.views,
                    avg_time=round_half_up(stats.avg_time),
                    bounce_rate=stats.bounce_rate,
                    engagement_score=stats.score,
                )
                for path, stats in ranked_pages[:TOP_CONTENT_LIMIT]
            ],
            editions=[
                EditionStats(
                    edition=edition,
                    paths=edition_paths[edition],
                    views=stats.views,
                    avg_time=round_half_up(stats.avg_time),
                    bounce_rate=stats.bounce_rate,
                    engagement_score=stats.score,
                )
                for edition, stats in ranked_editions
            ],
        )

    async def _journey(self, query, now: datetime) -> JourneyResult:
        views = await self._views(query.period.since(now))

        # Views arrive oldest first, so the first path seen is the entry
        entries: dict[str, str] = {}
        exits: dict[str, str] = {}
        for view in views:
            path = normalize_path(view.page_path)
            entries.setdefault(view.session_id, path)
            exits[view.session_id] = path

        total = len(entries)
        page_views = count_by(normalize_path(view.page_path) for view in views)
        entry_counts = count_by(entries.values())
        exit_counts = count_by(exits.values())

        return JourneyResult(
            total_sessions=total,
            entry_pages=[
                JourneyPage(path=path, count=count, percentage=percentage(count, total))
                for path, count in top_items(entry_counts, TOP_PAGES_LIMIT)
            ],
            exit_pages=[
                ExitPage(
                    path=path,
                    count=count,
                    percentage=percentage(count, total),
                    exit_rate=percentage(count, page_views[path]),
                )
                for path, count in top_items(exit_counts, TOP_PAGES_LIMIT)
            ],
        )


"""Tests for metric queries, helpers and the aggregator."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from analytics_wc.core.aggregator import MetricsAggregator, engagement_score
from analytics_wc.core.models import PageviewsResult
from analytics_wc.core.queries import Period, parse_metric_query
from analytics_wc.core.stats import percent_change, percentage, round_half_up, trend
from analytics_wc.errors import MissingMetricError, StorageError, UnknownMetricError, ValidationError
from analytics_wc.models import PageView, VisitorSession
from analytics_wc.store import InMemoryStore

UTC = timezone.utc
NOW = datetime(2025, 6, 15, 17, 0, tzinfo=UTC)  # 12:00 in Chicago


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _view(path="/", session="s1", ago=timedelta(hours=1), ip="h1", **kwargs) -> PageView:
    return PageView(
        page_path=path,
        session_id=session,
        hashed_ip=ip,
        created_at=NOW - ago,
        **kwargs,
    )


def _session(session_id, page_count=1, is_new=True, ip="h1", ago=timedelta(hours=1), duration=0):
    first = NOW - ago
    return VisitorSession(
        session_id=session_id,
        hashed_ip=ip,
        is_new_visitor=is_new,
        first_visit_at=first,
        last_visit_at=first + timedelta(seconds=duration),
        page_count=page_count,
    )


def _aggregator(views=(), sessions=(), **kwargs) -> MetricsAggregator:
    store = InMemoryStore()
    store.page_views = list(views)
    store.sessions = {s.session_id: s for s in sessions}
    return MetricsAggregator(store, **kwargs)


def _compute(aggregator, **params):
    return run_async(aggregator.compute(parse_metric_query(params), now=NOW))


class TestStats:
    """Test rounding and change helpers."""

    @pytest.mark.parametrize("value,expected", [(2.5, 3), (3.5, 4), (66.666, 67), (0.4, 0), (-2.5, -3)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_round_half_up_one_decimal(self):
        assert round_half_up(2.25, 1) == 2.3
        assert round_half_up(1.0, 1) == 1.0

    def test_percentage_of_nothing_is_zero(self):
        assert percentage(5, 0) == 0

    def test_percent_change_from_zero(self):
        assert percent_change(5, 0) == 100
        assert trend(percent_change(5, 0)) == "up"

    def test_percent_change_flat(self):
        assert percent_change(10, 10) == 0
        assert trend(0) == "stable"

    def test_percent_change_drop(self):
        assert percent_change(5, 10) == -50
        assert trend(-50) == "down"

    def test_percent_change_both_zero(self):
        assert percent_change(0, 0) == 0

    def test_engagement_score(self):
        # 0.3*10 + 0.4*(100-20) + 0.3*min(50/10, 10) = 3 + 32 + 1.5
        assert engagement_score(10, 20, 50) == 36.5

    def test_engagement_score_caps_time(self):
        assert engagement_score(0, 100, 5000) == 3.0


class TestQueryParsing:
    """Test the metric query union."""

    def test_missing_metric(self):
        with pytest.raises(MissingMetricError):
            parse_metric_query({"period": "7d"})

    def test_unknown_metric(self):
        with pytest.raises(UnknownMetricError) as exc:
            parse_metric_query({"metric": "bogus"})
        assert exc.value.message == "Invalid metric"

    def test_default_period(self):
        query = parse_metric_query({"metric": "pageviews"})
        assert query.period == Period.WEEK

    def test_unrecognized_period_falls_back(self):
        query = parse_metric_query({"metric": "pageviews", "period": "90d"})
        assert query.period == Period.WEEK

    def test_variant_carries_its_filters(self):
        query = parse_metric_query({"metric": "timeline", "month": "2025-06", "day": "2025-06-03"})
        assert query.metric == "timeline"
        assert query.month == "2025-06"
        assert query.day == "2025-06-03"

    def test_filters_of_other_metrics_ignored(self):
        query = parse_metric_query({"metric": "visitors", "month": "2025-06"})
        assert not hasattr(query, "month")

    @pytest.mark.parametrize("params", [
        {"metric": "timeline", "month": "2025-13"},
        {"metric": "timeline", "month": "June"},
        {"metric": "timeline", "day": "2025-02-30"},
        {"metric": "visits", "limit": "0"},
        {"metric": "visits", "limit": "501"},
        {"metric": "visits", "limit": "many"},
    ])
    def test_malformed_filters(self, params):
        with pytest.raises(ValidationError):
            parse_metric_query(params)

    def test_period_bounds(self):
        assert Period.WEEK.since(NOW) == NOW - timedelta(days=7)
        assert Period.MONTH.since(NOW) == NOW - timedelta(days=30)
        assert Period.ALL.since(NOW) is None


class TestTrafficMetrics:
    """Test pageviews, visitors, devices, geography and time on page."""

    def test_pageviews_counts_and_orders(self):
        aggregator = _aggregator([
            _view("/about", ago=timedelta(hours=5)),
            _view("/index.html", ago=timedelta(hours=4)),
            _view("/", ago=timedelta(hours=3)),
            _view("/about", ago=timedelta(hours=2)),
            _view("/contact", ago=timedelta(hours=1)),
        ])
        result = _compute(aggregator, metric="pageviews", period="7d")

        assert result.total == 5
        assert [(p.path, p.count) for p in result.top_pages] == [
            ("/about", 2), ("/", 2), ("/contact", 1),
        ]
        assert [(d.date, d.count) for d in result.daily_trend] == [("2025-06-15", 5)]

    def test_pageviews_respects_period(self):
        aggregator = _aggregator([
            _view(ago=timedelta(days=10)),
            _view(ago=timedelta(days=1)),
        ])
        assert _compute(aggregator, metric="pageviews", period="7d").total == 1
        assert _compute(aggregator, metric="pageviews", period="30d").total == 2
        assert _compute(aggregator, metric="pageviews", period="all").total == 2

    def test_pageviews_page_filter(self):
        aggregator = _aggregator([_view("/"), _view("/index.html"), _view("/about")])
        result = _compute(aggregator, metric="pageviews", page_path="/index.html")
        assert result.total == 2

    def test_pageviews_top_ten_only(self):
        aggregator = _aggregator([_view(f"/p{i}") for i in range(15)])
        assert len(_compute(aggregator, metric="pageviews").top_pages) == 10

    def test_daily_trend_uses_civil_date(self):
        # 03:00 UTC on the 15th is still the 14th in Chicago
        aggregator = _aggregator([
            PageView(page_path="/", session_id="s", hashed_ip="h",
                     created_at=datetime(2025, 6, 15, 3, 0, tzinfo=UTC)),
        ])
        result = _compute(aggregator, metric="pageviews")
        assert result.daily_trend[0].date == "2025-06-14"

    def test_excluded_identities_removed(self):
        aggregator = _aggregator(
            [_view(ip="owner"), _view(ip="h1")],
            [_session("a", ip="owner"), _session("b", ip="h1")],
            excluded_identities={"owner"},
        )
        assert _compute(aggregator, metric="pageviews").total == 1
        assert _compute(aggregator, metric="visitors").total_sessions == 1

    def test_visitors(self):
        aggregator = _aggregator(sessions=[
            _session("a", ip="h1", is_new=True),
            _session("b", ip="h1", is_new=False),
            _session("c", ip="h2", is_new=True),
        ])
        result = _compute(aggregator, metric="visitors")
        assert result.unique_visitors == 2
        assert result.new_visitors == 2
        assert result.total_sessions == 3

    def test_devices_descending(self):
        aggregator = _aggregator([
            _view(device_type="mobile"),
            _view(device_type="desktop"),
            _view(device_type="mobile"),
            _view(device_type=None),
        ])
        result = _compute(aggregator, metric="devices")
        assert [(d.type, d.count) for d in result.devices] == [("mobile", 2), ("desktop", 2)]

    def test_geography_top_twenty_with_unknown(self):
        views = [_view(country=f"C{i}") for i in range(25)]
        views += [_view(country=None), _view(country=None)]
        result = _compute(_aggregator(views), metric="geography")
        assert len(result.countries) == 20
        assert result.countries[0].country == "Unknown"
        assert result.countries[0].count == 2

    def test_time_on_page(self):
        aggregator = _aggregator([
            _view("/", time_on_page=10),
            _view("/index.html", time_on_page=21),
            _view("/about", time_on_page=60),
            _view("/about", time_on_page=None),
        ])
        result = _compute(aggregator, metric="timeonpage")
        assert result.overall_average == 30  # 91 / 3 = 30.33
        assert [(p.path, p.average) for p in result.by_page] == [("/about", 60), ("/", 16)]

    def test_time_on_page_rounds_half_up(self):
        aggregator = _aggregator([_view(time_on_page=10), _view(time_on_page=11)])
        result = _compute(aggregator, metric="timeonpage")
        assert result.overall_average == 11


class TestVisits:
    """Test the recent visits feed."""

    def test_newest_first_deduplicated(self):
        aggregator = _aggregator(
            [
                _view("/index.html", session="s1", ago=timedelta(minutes=30), country="US"),
                _view("/", session="s1", ago=timedelta(minutes=20), country="US"),
                _view("/about", session="s1", ago=timedelta(minutes=10), country="US"),
                _view("/", session="s2", ago=timedelta(minutes=5), ip="h2"),
            ],
            [_session("s1", is_new=True), _session("s2", ip="h2", is_new=False)],
        )
        result = _compute(aggregator, metric="visits")

        assert [(v.path, v.is_returning) for v in result.visits] == [
            ("/", True), ("/about", False), ("/", False),
        ]
        assert result.visits[2].time == NOW - timedelta(minutes=20)
        assert result.visits[1].country == "US"

    def test_limit(self):
        aggregator = _aggregator([_view(f"/p{i}") for i in range(10)])
        result = _compute(aggregator, metric="visits", limit="3")
        assert [v.path for v in result.visits] == ["/p9", "/p8", "/p7"]

    def test_missing_session_is_not_returning(self):
        aggregator = _aggregator([_view(session="orphan")])
        result = _compute(aggregator, metric="visits")
        assert result.visits[0].is_returning is False


class TestTimeBuckets:
    """Test hourly and timeline metrics."""

    def test_hourly_histogram(self):
        aggregator = _aggregator([
            _view(ago=timedelta(hours=1)),   # 11:00 Chicago
            _view(ago=timedelta(hours=1, minutes=30)),  # 10:30
            _view(ago=timedelta(hours=25)),  # 11:00 the day before
        ])
        result = _compute(aggregator, metric="hourly")
        counts = {h.hour: h.count for h in result.hours}
        assert len(result.hours) == 24
        assert counts[11] == 2
        assert counts[10] == 1
        assert result.total == 3

    def test_hourly_page_filter(self):
        aggregator = _aggregator([_view("/about"), _view("/")])
        result = _compute(aggregator, metric="hourly", page_path="/about")
        assert result.total == 1
        assert result.page_path == "/about"

    def test_timeline_months_only_by_default(self):
        aggregator = _aggregator([
            _view(ago=timedelta(days=40)),
            _view(ago=timedelta(days=1)),
            _view(ago=timedelta(days=2)),
        ])
        result = _compute(aggregator, metric="timeline", period="all")
        payload = result.to_json()

        assert payload["months"] == [
            {"month": "2025-05", "count": 1},
            {"month": "2025-06", "count": 2},
        ]
        assert "days" not in payload
        assert "hours" not in payload
        assert len(payload["day_of_week"]) == 7
        assert payload["peak_hour"]["count"] >= 1

    def test_timeline_month_lists_every_day(self):
        aggregator = _aggregator([_view(ago=timedelta(days=1)), _view(ago=timedelta(days=1))])
        result = _compute(aggregator, metric="timeline", period="all", month="2025-06")

        assert len(result.days) == 30
        counts = {d.date: d.count for d in result.days}
        assert counts["2025-06-14"] == 2
        assert counts["2025-06-01"] == 0
        assert result.hours is None

    def test_timeline_peak_first_seen_tie_break(self):
        aggregator = _aggregator([
            _view(ago=timedelta(hours=3)),  # 09:00 Chicago, seen first
            _view(ago=timedelta(hours=1)),  # 11:00 Chicago
        ])
        result = _compute(aggregator, metric="timeline")
        assert result.peak_hour.hour == 9
        assert result.peak_day.name == "Sunday"  # 2025-06-15

    def test_timeline_empty(self):
        payload = _compute(_aggregator(), metric="timeline").to_json()
        assert payload["months"] == []
        assert payload["peak_hour"] is None
        assert payload["peak_day"] is None
        assert sum(d["count"] for d in payload["day_of_week"]) == 0


class TestGrowthAndEngagement:
    """Test period comparison and engagement metrics."""

    def test_growth_from_nothing(self):
        aggregator = _aggregator([_view(ago=timedelta(days=1)) for _ in range(5)])
        result = _compute(aggregator, metric="growth", period="7d")
        assert result.pageviews.current == 5
        assert result.pageviews.previous == 0
        assert result.pageviews.percent_change == 100
        assert result.pageviews.trend == "up"

    def test_growth_flat_and_down(self):
        views = [_view(ago=timedelta(days=1), ip=f"a{i}", time_on_page=30) for i in range(5)]
        views += [_view(ago=timedelta(days=8), ip=f"b{i}", time_on_page=30) for i in range(10)]
        result = _compute(_aggregator(views), metric="growth", period="7d")

        assert result.pageviews.percent_change == -50
        assert result.pageviews.trend == "down"
        assert result.visitors.current == 5
        assert result.visitors.previous == 10
        assert result.avg_time_on_page.percent_change == 0
        assert result.avg_time_on_page.trend == "stable"

    def test_growth_all_compares_thirty_days(self):
        aggregator = _aggregator([
            _view(ago=timedelta(days=10)),
            _view(ago=timedelta(days=45)),
            _view(ago=timedelta(days=90)),
        ])
        result = _compute(aggregator, metric="growth", period="all")
        assert result.pageviews.current == 1
        assert result.pageviews.previous == 1
        assert result.current_window.start == NOW - timedelta(days=30)
        assert result.previous_window.start == NOW - timedelta(days=60)

    def test_growth_counts_serialize_as_whole_numbers(self):
        aggregator = _aggregator([_view(ago=timedelta(days=1), time_on_page=40) for _ in range(3)])
        payload = _compute(aggregator, metric="growth", period="7d").to_json()

        assert payload["pageviews"]["current"] == 3
        assert isinstance(payload["pageviews"]["current"], int)
        assert isinstance(payload["visitors"]["previous"], int)
        assert isinstance(payload["avg_time_on_page"]["current"], int)

    def test_engagement_bounce_rate(self):
        aggregator = _aggregator(sessions=[
            _session("a", page_count=1),
            _session("b", page_count=1),
            _session("c", page_count=3),
        ])
        result = _compute(aggregator, metric="engagement")
        assert result.bounce_rate == 67
        assert result.avg_pages_per_session == 1.7
        assert result.total_sessions == 3

    def test_engagement_duration_ignores_zero(self):
        aggregator = _aggregator(sessions=[
            _session("a", duration=0),
            _session("b", duration=100, is_new=False),
            _session("c", duration=50),
        ])
        result = _compute(aggregator, metric="engagement")
        assert result.avg_session_duration == 75
        assert result.return_rate == 33

    def test_engagement_distributions(self):
        aggregator = _aggregator(
            [_view(time_on_page=t) for t in (0, 29, 30, 90, 299, 300, 1000)],
            [_session("a", page_count=n) for n in (1,)]
            + [_session(f"s{n}", page_count=n) for n in (2, 3, 4, 6, 9)],
        )
        result = _compute(aggregator, metric="engagement")
        assert [(b.label, b.count) for b in result.time_distribution] == [
            ("0-30s", 2), ("30-60s", 1), ("60-120s", 1), ("120-300s", 1), ("300s+", 2),
        ]
        assert [(b.label, b.count) for b in result.pages_distribution] == [
            ("1", 1), ("2-3", 2), ("4-5", 1), ("6+", 2),
        ]

    def test_engagement_empty(self):
        result = _compute(_aggregator(), metric="engagement")
        assert result.bounce_rate == 0
        assert result.avg_pages_per_session == 0.0
        assert result.avg_session_duration == 0
        assert all(b.count == 0 for b in result.time_distribution)


class TestSourcesContentJourney:
    """Test sources, content and journey metrics."""

    def test_sources_categories(self):
        aggregator = _aggregator(
            [
                _view(referrer_domain=None, is_bounce=True, time_on_page=10),
                _view(referrer_domain="www.watchmanscry.site"),
                _view(referrer_domain="www.google.com", is_bounce=True),
                _view(referrer_domain="duckduckgo.com"),
                _view(referrer_domain="m.facebook.com", time_on_page=40),
                _view(referrer_domain="example.org"),
            ],
            site_domains=("watchmanscry.site",),
        )
        result = _compute(aggregator, metric="sources")
        categories = {c.category: c for c in result.categories}

        assert result.total == 6
        assert [c.category for c in result.categories] == ["Direct", "Search", "Social", "Other"]
        assert categories["Direct"].count == 2
        assert categories["Direct"].percentage == 33
        assert categories["Direct"].bounce_rate == 50
        assert categories["Search"].count == 2
        assert categories["Search"].bounce_rate == 50
        assert categories["Social"].avg_time == 40
        assert categories["Other"].count == 1
        assert {(e.engine, e.count) for e in result.search_engines} == {("Google", 1), ("DuckDuckGo", 1)}
        assert "watchmanscry.site" not in {r.domain for r in result.top_referrers}
        assert ("google.com", "Search") in {(r.domain, r.category) for r in result.top_referrers}

    def test_sources_empty(self):
        result = _compute(_aggregator(), metric="sources")
        assert result.total == 0
        assert all(c.count == 0 and c.percentage == 0 for c in result.categories)

    def test_content_scores(self):
        aggregator = _aggregator([
            _view("/editions/2025-06-01", is_bounce=False, time_on_page=120),
            _view("/editions/2025-06-01", is_bounce=True, time_on_page=60),
            _view("/about", is_bounce=True),
        ])
        result = _compute(aggregator, metric="content")

        top = result.pages[0]
        assert top.path == "/editions/2025-06-01"
        assert top.views == 2
        assert top.avg_time == 90
        assert top.bounce_rate == 50
        # 0.3*2 + 0.4*50 + 0.3*9 = 0.6 + 20 + 2.7
        assert top.engagement_score == 23.3

        [edition] = result.editions
        assert edition.edition == date(2025, 6, 1)
        assert edition.paths == ["/editions/2025-06-01"]
        assert edition.engagement_score == 23.3

    def test_journey(self):
        aggregator = _aggregator([
            _view("/index.html", session="s1", ago=timedelta(minutes=30)),
            _view("/about", session="s1", ago=timedelta(minutes=20)),
            _view("/", session="s2", ago=timedelta(minutes=15)),
            _view("/about", session="s3", ago=timedelta(minutes=10)),
        ])
        result = _compute(aggregator, metric="journey")

        assert result.total_sessions == 3
        entries = {p.path: (p.count, p.percentage) for p in result.entry_pages}
        assert entries == {"/": (2, 67), "/about": (1, 33)}

        exits = {p.path: (p.count, p.percentage, p.exit_rate) for p in result.exit_pages}
        assert exits["/about"] == (2, 67, 100)
        assert exits["/"] == (1, 33, 50)


class TestAggregatorBehavior:
    """Test dispatch, empty input and failure propagation."""

    @pytest.mark.parametrize("metric", [
        "pageviews", "visitors", "devices", "geography", "timeonpage", "visits",
        "hourly", "timeline", "growth", "engagement", "sources", "content", "journey",
    ])
    def test_empty_store_never_raises(self, metric):
        result = _compute(_aggregator(), metric=metric, period="all")
        assert result.to_json() is not None

    def test_store_failure_propagates(self):
        store = InMemoryStore()
        store.list_page_views = AsyncMock(side_effect=StorageError())
        aggregator = MetricsAggregator(store)
        with pytest.raises(StorageError):
            run_async(aggregator.compute(parse_metric_query({"metric": "pageviews"}), now=NOW))

    def test_external_source_answers_first(self):
        answer = PageviewsResult(total=42)

        class Source:
            async def compute(self, query, now):
                return answer if query.metric == "pageviews" else None

        aggregator = _aggregator([_view()], source=Source())
        assert _compute(aggregator, metric="pageviews") is answer
        assert _compute(aggregator, metric="devices").devices[0].count == 1

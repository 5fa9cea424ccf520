"""Tests for rate limiting, the session ledger and event ingestion."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from analytics_wc.core.aggregator import MetricsAggregator
from analytics_wc.core.queries import parse_metric_query
from analytics_wc.errors import IdentityError, RateLimitError, StorageError, ValidationError
from analytics_wc.ingest import EventIngestor, hash_address, resolve_client_address
from analytics_wc.models import RateLimitWindow, TrackRequest
from analytics_wc.rate_limit import RateLimiter
from analytics_wc.store import InMemoryStore

UTC = timezone.utc
START = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class SteppingClock:
    """Clock that advances a fixed step on every read."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


class StubGeo:
    def __init__(self, country=None, error=None):
        self.country = country
        self.error = error

    async def country_for(self, address):
        if self.error:
            raise self.error
        return self.country


def _ingestor(store=None, clock=None, geo=None, max_requests=10):
    store = store or InMemoryStore()
    return EventIngestor(
        store,
        rate_limiter=RateLimiter(store, max_requests=max_requests),
        geo=geo,
        clock=clock or SteppingClock(),
    )


def _payload(path="/", session_id="s1", **kwargs) -> TrackRequest:
    return TrackRequest(page_path=path, session_id=session_id, **kwargs)


class TestRateLimiter:
    """Test the fixed-window limiter."""

    def test_ten_admitted_eleventh_denied(self):
        limiter = RateLimiter(InMemoryStore())
        results = [
            run_async(limiter.admit("ip", START + timedelta(seconds=i)))
            for i in range(11)
        ]
        assert results[:10] == [True] * 10
        assert results[10] is False

    def test_resets_after_window(self):
        store = InMemoryStore()
        limiter = RateLimiter(store)
        for i in range(11):
            run_async(limiter.admit("ip", START + timedelta(seconds=i)))

        later = START + timedelta(seconds=60)
        assert run_async(limiter.admit("ip", later)) is True
        assert store.rate_limits["ip"].request_count == 1
        assert store.rate_limits["ip"].window_start == later

        admitted = [
            run_async(limiter.admit("ip", later + timedelta(seconds=i + 1)))
            for i in range(10)
        ]
        assert admitted == [True] * 9 + [False]

    def test_identities_are_independent(self):
        limiter = RateLimiter(InMemoryStore(), max_requests=1)
        assert run_async(limiter.admit("a", START)) is True
        assert run_async(limiter.admit("a", START)) is False
        assert run_async(limiter.admit("b", START)) is True

    def test_new_identity_prunes_stale_windows(self):
        store = InMemoryStore()
        store.rate_limits["old"] = RateLimitWindow(
            hashed_ip="old", request_count=3, window_start=START - timedelta(hours=2)
        )
        limiter = RateLimiter(store)

        run_async(limiter.admit("new", START))

        assert "old" not in store.rate_limits
        assert "new" in store.rate_limits

    def test_prune_failure_does_not_block(self):
        store = InMemoryStore()
        store.delete_rate_limits_before = AsyncMock(side_effect=StorageError())
        limiter = RateLimiter(store)

        assert run_async(limiter.admit("ip", START)) is True

    def test_store_failure_propagates(self):
        store = InMemoryStore()
        store.get_rate_limit = AsyncMock(side_effect=StorageError())
        limiter = RateLimiter(store)

        with pytest.raises(StorageError):
            run_async(limiter.admit("ip", START))


class TestClientAddress:
    """Test caller address resolution."""

    def test_first_forwarded_hop(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}
        assert resolve_client_address(headers) == "203.0.113.7"

    def test_header_precedence(self):
        headers = {"x-real-ip": "198.51.100.2", "cf-connecting-ip": "198.51.100.3"}
        assert resolve_client_address(headers) == "198.51.100.2"

    def test_falls_back_to_peer(self):
        assert resolve_client_address({}, "192.0.2.1") == "192.0.2.1"

    def test_unknown_is_not_an_address(self):
        assert resolve_client_address({"x-forwarded-for": "unknown"}, None) is None

    def test_hash_is_stable_hex(self):
        hashed = hash_address("203.0.113.7")
        assert hashed == hash_address("203.0.113.7")
        assert len(hashed) == 64
        assert hashed != "203.0.113.7"


class TestIngestion:
    """Test the ingestion pipeline."""

    def test_stores_enriched_page_view(self):
        store = InMemoryStore()
        ingestor = _ingestor(store, geo=StubGeo("US"))

        run_async(ingestor.ingest(
            _payload(
                "/index.html",
                page_title="Front Page",
                referrer="https://www.google.com/search?q=watchman",
                user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile Safari/604.1",
            ),
            "203.0.113.7",
        ))

        [view] = store.page_views
        assert view.page_path == "/"
        assert view.referrer_domain == "www.google.com"
        assert view.device_type == "mobile"
        assert view.browser == "Safari"
        assert view.os == "iOS"
        assert view.country == "US"
        assert view.hashed_ip == hash_address("203.0.113.7")
        assert view.created_at == START

    def test_raw_address_never_stored(self):
        store = InMemoryStore()
        run_async(_ingestor(store).ingest(_payload(), "203.0.113.7"))
        assert "203.0.113.7" not in store.page_views[0].model_dump_json()

    def test_missing_path_rejected(self):
        ingestor = _ingestor()
        with pytest.raises(ValidationError) as exc:
            run_async(ingestor.ingest(TrackRequest(session_id="s1"), "203.0.113.7"))
        assert exc.value.message == "Missing required fields"

    def test_missing_session_rejected(self):
        ingestor = _ingestor()
        with pytest.raises(ValidationError):
            run_async(ingestor.ingest(TrackRequest(page_path="/"), "203.0.113.7"))

    def test_missing_address_rejected(self):
        store = InMemoryStore()
        with pytest.raises(IdentityError):
            run_async(_ingestor(store).ingest(_payload(), None))
        assert store.page_views == []

    def test_rate_limited_event_not_stored(self):
        store = InMemoryStore()
        ingestor = _ingestor(store, max_requests=2)
        run_async(ingestor.ingest(_payload(), "203.0.113.7"))
        run_async(ingestor.ingest(_payload(), "203.0.113.7"))

        with pytest.raises(RateLimitError) as exc:
            run_async(ingestor.ingest(_payload(), "203.0.113.7"))

        assert exc.value.headers["Retry-After"] == "60"
        assert len(store.page_views) == 2

    def test_long_fields_truncated(self):
        store = InMemoryStore()
        run_async(_ingestor(store).ingest(
            _payload("/" + "a" * 800, page_title="t" * 800, user_agent="u" * 800),
            "203.0.113.7",
        ))
        view = store.page_views[0]
        assert len(view.page_path) == 500
        assert len(view.page_title) == 500
        assert len(view.user_agent) == 500

    def test_geolocation_failure_degrades_to_null(self):
        store = InMemoryStore()
        ingestor = _ingestor(store, geo=StubGeo(error=RuntimeError("boom")))
        run_async(ingestor.ingest(_payload(), "203.0.113.7"))
        assert store.page_views[0].country is None

    def test_storage_failure_propagates(self):
        store = InMemoryStore()
        store.insert_page_view = AsyncMock(side_effect=StorageError())
        with pytest.raises(StorageError):
            run_async(_ingestor(store).ingest(_payload(), "203.0.113.7"))

    def test_negative_time_on_page_dropped(self):
        payload = TrackRequest(page_path="/", session_id="s1", time_on_page=-5)
        assert payload.time_on_page is None

    def test_fractional_time_on_page_floored(self):
        payload = TrackRequest(page_path="/", session_id="s1", time_on_page=12.9)
        assert payload.time_on_page == 12


class TestSessionLedger:
    """Test session upsert and bounce bookkeeping through ingestion."""

    def test_single_page_load_is_bounce(self):
        store = InMemoryStore()
        run_async(_ingestor(store).ingest(_payload("/"), "203.0.113.7"))

        assert store.sessions["s1"].page_count == 1
        assert [v.is_bounce for v in store.page_views] == [True]

    def test_second_page_load_flips_every_row(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload("/"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/about"), "203.0.113.7"))

        assert store.sessions["s1"].page_count == 2
        assert [v.is_bounce for v in store.page_views] == [False, False]

    def test_time_update_does_not_count_as_page(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload("/"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/", time_on_page=30, is_update=True), "203.0.113.7"))
        run_async(ingestor.ingest(
            _payload("/", time_on_page=45, is_update=True, is_final=True), "203.0.113.7"
        ))

        session = store.sessions["s1"]
        assert session.page_count == 1
        assert session.last_visit_at == START
        assert len(store.page_views) == 3
        assert store.page_views[0].is_bounce is True

    def test_time_updates_share_single_page_bounce(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload("/about"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/about", time_on_page=30, is_update=True), "203.0.113.7"))
        run_async(ingestor.ingest(
            _payload("/about", time_on_page=41, is_update=True, is_final=True), "203.0.113.7"
        ))

        assert [v.is_bounce for v in store.page_views] == [True, True, True]

        aggregator = MetricsAggregator(store, clock=SteppingClock(START + timedelta(minutes=5)))
        content = run_async(aggregator.compute(parse_metric_query({"metric": "content"})))
        engagement = run_async(aggregator.compute(parse_metric_query({"metric": "engagement"})))
        assert content.pages[0].bounce_rate == 100
        assert engagement.bounce_rate == 100

    def test_second_page_load_flips_time_update_rows(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload("/"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/", time_on_page=30, is_update=True), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/#letters", is_section=True), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/about"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/about", time_on_page=12, is_update=True), "203.0.113.7"))

        assert [v.is_bounce for v in store.page_views] == [False] * 5

    def test_section_view_before_second_page_is_bounce(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload("/"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/#letters", is_section=True), "203.0.113.7"))

        assert [v.is_bounce for v in store.page_views] == [True, True]

    def test_time_update_for_unknown_session_creates_it(self):
        store = InMemoryStore()
        run_async(_ingestor(store).ingest(
            _payload("/", session_id="late", time_on_page=30, is_update=True), "203.0.113.7"
        ))
        assert store.sessions["late"].page_count == 1

    def test_section_view_keeps_fragment_and_page_count(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload("/index.html"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload("/index.html#letters", is_section=True), "203.0.113.7"))

        assert store.page_views[1].page_path == "/index.html#letters"
        assert store.sessions["s1"].page_count == 1

    def test_new_visitor_set_once_per_identity(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload(session_id="first"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload(session_id="second"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload(session_id="first"), "203.0.113.7"))

        assert store.sessions["first"].is_new_visitor is True
        assert store.sessions["second"].is_new_visitor is False

    def test_other_identity_is_new(self):
        store = InMemoryStore()
        ingestor = _ingestor(store)
        run_async(ingestor.ingest(_payload(session_id="a"), "203.0.113.7"))
        run_async(ingestor.ingest(_payload(session_id="b"), "198.51.100.2"))
        assert store.sessions["b"].is_new_visitor is True


class TestEndToEnd:
    """Ingest a short visit and read it back through the aggregator."""

    def test_root_variants_merge_in_pageviews(self):
        store = InMemoryStore()
        clock = SteppingClock()
        ingestor = _ingestor(store, clock=clock)
        for path in ("/index.html", "/", "/about"):
            run_async(ingestor.ingest(_payload(path, session_id="s1"), "203.0.113.7"))

        session = store.sessions["s1"]
        assert session.page_count == 3
        assert session.is_new_visitor is True
        assert [v.is_bounce for v in store.page_views] == [False, False, False]

        aggregator = MetricsAggregator(store, clock=clock)
        result = run_async(aggregator.compute(parse_metric_query({"metric": "pageviews", "period": "all"})))

        top_pages = [page.model_dump() for page in result.top_pages]
        assert {"path": "/", "count": 2} in top_pages
        assert {"path": "/about", "count": 1} in top_pages
        assert result.total == 3

"""
External analytics sources.

An AnalyticsSource may answer a metric query instead of the store. It
returns None for queries it does not handle, and the aggregator then
falls back to the store.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from .core.models import (
    CountryCount,
    DailyCount,
    DeviceCount,
    DevicesResult,
    GeographyResult,
    MetricResult,
    PageCount,
    PageviewsResult,
    VisitorsResult,
)
from .core.stats import top_items
from .errors import UpstreamUnavailable
from .paths import normalize_path

logger = logging.getLogger(__name__)

GA4_SCOPES = ["https://www.googleapis.com/auth/analytics.readonly"]
GA4_DATA_API = "https://analyticsdata.googleapis.com/v1beta"

# GA4 has no data before its launch, so "all" starts there
GA4_EPOCH = "2015-08-14"

PERIOD_START_DATES = {
    "7d": "7daysAgo",
    "30d": "30daysAgo",
    "all": GA4_EPOCH,
}


class AnalyticsSource(Protocol):
    """Answers metric queries from somewhere other than the store."""

    async def compute(self, query, now: datetime) -> Optional[MetricResult]: ...


class NullAnalyticsSource:
    """Answers nothing; every query goes to the store."""

    async def compute(self, query, now: datetime) -> Optional[MetricResult]:
        return None


def _report_rows(data: dict) -> list[dict[str, str]]:
    """Flatten a runReport response into {header: value} rows."""
    names = [header["name"] for header in data.get("dimensionHeaders", [])]
    names += [header["name"] for header in data.get("metricHeaders", [])]

    rows = []
    for row in data.get("rows", []):
        values = [cell.get("value") for cell in row.get("dimensionValues", [])]
        values += [cell.get("value") for cell in row.get("metricValues", [])]
        rows.append(dict(zip(names, values)))
    return rows


def _int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


class GoogleAnalyticsSource:
    """
    Google Analytics 4 Data API source.

    Answers pageviews, visitors, devices and geography. Other metrics need
    per-event rows that GA4 does not expose, so they fall back to the store.

    Identity exclusion does not apply here; GA4 never sees hashed addresses.
    """

    SUPPORTED_METRICS = frozenset({"pageviews", "visitors", "devices", "geography"})

    def __init__(self, property_id: Optional[str], credentials_info: Optional[dict]):
        self.property_id = property_id
        self.credentials_info = credentials_info
        self._credentials = None

    def _load_credentials(self):
        if not self.property_id or not self.credentials_info:
            raise UpstreamUnavailable("Analytics source not configured")
        try:
            return service_account.Credentials.from_service_account_info(
                self.credentials_info, scopes=GA4_SCOPES
            )
        except (ValueError, KeyError) as exc:
            logger.error(f"Invalid GA4 service account credentials: {exc}")
            raise UpstreamUnavailable("Analytics source credentials invalid") from exc

    async def _access_token(self) -> str:
        if self._credentials is None:
            self._credentials = self._load_credentials()

        credentials = self._credentials
        if not credentials.valid:
            try:
                # google-auth refreshes synchronously over requests
                await asyncio.to_thread(credentials.refresh, GoogleAuthRequest())
            except GoogleAuthError as exc:
                logger.error(f"GA4 token refresh failed: {exc}")
                raise UpstreamUnavailable("Analytics source authentication failed") from exc
        return credentials.token

    async def _run_report(self, body: dict) -> list[dict[str, str]]:
        """Run one report; transport and HTTP failures surface as UpstreamUnavailable."""
        token = await self._access_token()
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{GA4_DATA_API}/properties/{self.property_id}:runReport",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                    json=body,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.error(f"GA4 report failed: {exc}")
            raise UpstreamUnavailable("Analytics source unavailable") from exc
        return _report_rows(data)

    async def _sub_report(self, name: str, body: dict) -> list[dict[str, str]]:
        """Run a secondary report; failures degrade to no rows."""
        try:
            return await self._run_report(body)
        except UpstreamUnavailable as exc:
            logger.warning(f"GA4 sub-report '{name}' failed: {exc.message}")
            return []

    @staticmethod
    def _date_ranges(query) -> list[dict[str, str]]:
        return [{"startDate": PERIOD_START_DATES[query.period.value], "endDate": "today"}]

    async def compute(self, query, now: datetime) -> Optional[MetricResult]:
        if query.metric not in self.SUPPORTED_METRICS:
            return None

        handler = getattr(self, f"_{query.metric}")
        return await handler(query)

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    async def _pageviews(self, query) -> PageviewsResult:
        base: dict[str, Any] = {"dateRanges": self._date_ranges(query)}
        if query.page_path:
            base["dimensionFilter"] = {
                "filter": {
                    "fieldName": "pagePath",
                    "stringFilter": {"matchType": "EXACT", "value": normalize_path(query.page_path)},
                }
            }

        totals, pages, daily = await asyncio.gather(
            self._run_report({**base, "metrics": [{"name": "screenPageViews"}]}),
            self._sub_report("top_pages", {
                **base,
                "dimensions": [{"name": "pagePath"}],
                "metrics": [{"name": "screenPageViews"}],
                "orderBys": [{"metric": {"metricName": "screenPageViews"}, "desc": True}],
                "limit": 50,
            }),
            self._sub_report("daily_trend", {
                **base,
                "dimensions": [{"name": "date"}],
                "metrics": [{"name": "screenPageViews"}],
                "orderBys": [{"dimension": {"dimensionName": "date"}}],
            }),
        )

        # Several GA4 paths can normalize to one
        merged: dict[str, int] = {}
        for row in pages:
            path = normalize_path(row.get("pagePath"))
            merged[path] = merged.get(path, 0) + _int(row.get("screenPageViews"))

        trend = []
        for row in daily:
            raw = row.get("date") or ""
            if len(raw) == 8:
                trend.append(
                    DailyCount(date=f"{raw[:4]}-{raw[4:6]}-{raw[6:]}", count=_int(row.get("screenPageViews")))
                )

        return PageviewsResult(
            total=_int(totals[0].get("screenPageViews")) if totals else 0,
            top_pages=[PageCount(path=path, count=count) for path, count in top_items(merged, 10)],
            daily_trend=sorted(trend, key=lambda point: point.date),
        )

    async def _visitors(self, query) -> VisitorsResult:
        rows = await self._run_report({
            "dateRanges": self._date_ranges(query),
            "metrics": [{"name": "totalUsers"}, {"name": "newUsers"}, {"name": "sessions"}],
        })
        row = rows[0] if rows else {}
        return VisitorsResult(
            unique_visitors=_int(row.get("totalUsers")),
            new_visitors=_int(row.get("newUsers")),
            total_sessions=_int(row.get("sessions")),
        )

    async def _devices(self, query) -> DevicesResult:
        rows = await self._run_report({
            "dateRanges": self._date_ranges(query),
            "dimensions": [{"name": "deviceCategory"}],
            "metrics": [{"name": "screenPageViews"}],
        })
        devices: dict[str, int] = {}
        for row in rows:
            kind = (row.get("deviceCategory") or "desktop").lower()
            devices[kind] = devices.get(kind, 0) + _int(row.get("screenPageViews"))
        return DevicesResult(
            devices=[DeviceCount(type=kind, count=count) for kind, count in top_items(devices)]
        )

    async def _geography(self, query) -> GeographyResult:
        rows = await self._run_report({
            "dateRanges": self._date_ranges(query),
            "dimensions": [{"name": "countryId"}],
            "metrics": [{"name": "screenPageViews"}],
            "orderBys": [{"metric": {"metricName": "screenPageViews"}, "desc": True}],
            "limit": 20,
        })
        countries: dict[str, int] = {}
        for row in rows:
            code = row.get("countryId")
            country = code.upper() if code and code != "(not set)" else "Unknown"
            countries[country] = countries.get(country, 0) + _int(row.get("screenPageViews"))
        return GeographyResult(
            countries=[
                CountryCount(country=country, count=count)
                for country, count in top_items(countries, 20)
            ]
        )

"""
Storage backends for page views, visitor sessions and rate-limit windows.

SupabaseStore talks to the PostgREST API in front of the site's Postgres
database. InMemoryStore keeps everything in process and backs local
development and the test suite.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import httpx

from .errors import StorageError, UpstreamUnavailable
from .models import PageView, RateLimitWindow, VisitorSession

logger = logging.getLogger(__name__)

PAGE_VIEWS = "page_views"
SESSIONS = "visitor_sessions"
RATE_LIMITS = "rate_limits"

# PostgREST caps responses (Supabase default max-rows is 1000)
PAGE_SIZE = 1000
# Keep `in.(...)` filters well under URL length limits
ID_CHUNK_SIZE = 100


class AnalyticsStore(ABC):
    """Async row-level operations the pipeline needs from its store."""

    # Page views
    @abstractmethod
    async def insert_page_view(self, view: PageView) -> None: ...

    @abstractmethod
    async def list_page_views(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> list[PageView]:
        """Page views with since <= created_at < until, oldest first."""

    @abstractmethod
    async def set_session_bounce(self, session_id: str, is_bounce: bool) -> None: ...

    # Sessions
    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[VisitorSession]: ...

    @abstractmethod
    async def get_sessions(self, session_ids: list[str]) -> list[VisitorSession]: ...

    @abstractmethod
    async def has_session_for(self, hashed_ip: str) -> bool: ...

    @abstractmethod
    async def insert_session(self, session: VisitorSession) -> None: ...

    @abstractmethod
    async def update_session(
        self, session_id: str, last_visit_at: datetime, page_count: int
    ) -> None: ...

    @abstractmethod
    async def list_sessions(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> list[VisitorSession]:
        """Sessions with since <= first_visit_at < until, oldest first."""

    # Rate limits
    @abstractmethod
    async def get_rate_limit(self, hashed_ip: str) -> Optional[RateLimitWindow]: ...

    @abstractmethod
    async def save_rate_limit(self, window: RateLimitWindow) -> None: ...

    @abstractmethod
    async def delete_rate_limits_before(self, cutoff: datetime) -> Optional[int]: ...

    # Administrative reset
    @abstractmethod
    async def delete_page_views(self) -> Optional[int]: ...

    @abstractmethod
    async def delete_sessions(self) -> Optional[int]: ...

    @abstractmethod
    async def delete_rate_limits(self) -> Optional[int]: ...


def _iso(value: datetime) -> str:
    return value.isoformat()


def _content_range_total(response: httpx.Response) -> Optional[int]:
    """Parse the row count from a `Content-Range: 0-9/42` (or `*/42`) header."""
    content_range = response.headers.get("content-range", "")
    _, _, total = content_range.partition("/")
    if total.isdigit():
        return int(total)
    return None


class SupabaseStore(AnalyticsStore):
    """Store backed by Supabase's PostgREST API."""

    def __init__(self, supabase_url: str, api_key: str, access_token: Optional[str] = None):
        self.base_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self.api_key = api_key
        # A user token makes row-level security apply to that user
        self.access_token = access_token or api_key

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[list[tuple[str, str]]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
        extra_headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Execute one PostgREST request."""
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        if extra_headers:
            headers.update(extra_headers)

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}/{table}",
                    params=params,
                    json=json,
                    headers=headers,
                )
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            logger.error(
                f"Supabase {method} {table} failed: {exc.response.status_code} {exc.response.text[:200]}"
            )
            raise StorageError() from exc
        except httpx.HTTPError as exc:
            logger.error(f"Supabase {method} {table} unreachable: {exc!r}")
            raise StorageError() from exc

    async def _select(self, table: str, params: list[tuple[str, str]]) -> list[dict]:
        response = await self._request("GET", table, params=params)
        return response.json()

    async def _select_all(self, table: str, params: list[tuple[str, str]]) -> list[dict]:
        """Read every matching row, one page at a time."""
        rows: list[dict] = []
        offset = 0
        while True:
            page = await self._select(
                table,
                params + [("limit", str(PAGE_SIZE)), ("offset", str(offset))],
            )
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            offset += PAGE_SIZE

    @staticmethod
    def _range_params(column: str, since: Optional[datetime], until: Optional[datetime]) -> list[tuple[str, str]]:
        params = []
        if since is not None:
            params.append((column, f"gte.{_iso(since)}"))
        if until is not None:
            params.append((column, f"lt.{_iso(until)}"))
        return params

    # -------------------------------------------------------------------------
    # Page views
    # -------------------------------------------------------------------------

    async def insert_page_view(self, view: PageView) -> None:
        row = view.model_dump(mode="json", exclude={"id"})
        await self._request("POST", PAGE_VIEWS, json=row, prefer="return=minimal")

    async def list_page_views(self, since=None, until=None) -> list[PageView]:
        params = [("select", "*")] + self._range_params("created_at", since, until)
        params.append(("order", "created_at.asc"))
        rows = await self._select_all(PAGE_VIEWS, params)
        return [PageView.model_validate(_stringify_id(row)) for row in rows]

    async def set_session_bounce(self, session_id: str, is_bounce: bool) -> None:
        await self._request(
            "PATCH",
            PAGE_VIEWS,
            params=[("session_id", f"eq.{session_id}")],
            json={"is_bounce": is_bounce},
            prefer="return=minimal",
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[VisitorSession]:
        rows = await self._select(
            SESSIONS, [("select", "*"), ("session_id", f"eq.{session_id}"), ("limit", "1")]
        )
        return VisitorSession.model_validate(rows[0]) if rows else None

    async def get_sessions(self, session_ids: list[str]) -> list[VisitorSession]:
        sessions = []
        unique_ids = list(dict.fromkeys(session_ids))
        for start in range(0, len(unique_ids), ID_CHUNK_SIZE):
            chunk = unique_ids[start:start + ID_CHUNK_SIZE]
            quoted = ",".join('"' + sid.replace('"', '\\"') + '"' for sid in chunk)
            rows = await self._select(SESSIONS, [("select", "*"), ("session_id", f"in.({quoted})")])
            sessions.extend(VisitorSession.model_validate(row) for row in rows)
        return sessions

    async def has_session_for(self, hashed_ip: str) -> bool:
        rows = await self._select(
            SESSIONS, [("select", "session_id"), ("hashed_ip", f"eq.{hashed_ip}"), ("limit", "1")]
        )
        return len(rows) > 0

    async def insert_session(self, session: VisitorSession) -> None:
        await self._request(
            "POST", SESSIONS, json=session.model_dump(mode="json"), prefer="return=minimal"
        )

    async def update_session(self, session_id: str, last_visit_at: datetime, page_count: int) -> None:
        await self._request(
            "PATCH",
            SESSIONS,
            params=[("session_id", f"eq.{session_id}")],
            json={
                "last_visit_at": _iso(last_visit_at),
                "page_count": page_count,
                "updated_at": _iso(last_visit_at),
            },
            prefer="return=minimal",
        )

    async def list_sessions(self, since=None, until=None) -> list[VisitorSession]:
        params = [("select", "*")] + self._range_params("first_visit_at", since, until)
        params.append(("order", "first_visit_at.asc"))
        rows = await self._select_all(SESSIONS, params)
        return [VisitorSession.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Rate limits
    # -------------------------------------------------------------------------

    async def get_rate_limit(self, hashed_ip: str) -> Optional[RateLimitWindow]:
        rows = await self._select(
            RATE_LIMITS, [("select", "*"), ("hashed_ip", f"eq.{hashed_ip}"), ("limit", "1")]
        )
        return RateLimitWindow.model_validate(rows[0]) if rows else None

    async def save_rate_limit(self, window: RateLimitWindow) -> None:
        await self._request(
            "POST",
            RATE_LIMITS,
            params=[("on_conflict", "hashed_ip")],
            json=window.model_dump(mode="json"),
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def delete_rate_limits_before(self, cutoff: datetime) -> Optional[int]:
        response = await self._request(
            "DELETE",
            RATE_LIMITS,
            params=[("window_start", f"lt.{_iso(cutoff)}")],
            prefer="count=exact,return=minimal",
        )
        return _content_range_total(response)

    # -------------------------------------------------------------------------
    # Administrative reset
    # -------------------------------------------------------------------------
    # PostgREST refuses unfiltered deletes, so each uses an always-true filter.

    async def _delete_all(self, table: str, always_true: tuple[str, str]) -> Optional[int]:
        response = await self._request(
            "DELETE", table, params=[always_true], prefer="count=exact,return=minimal"
        )
        return _content_range_total(response)

    async def delete_page_views(self) -> Optional[int]:
        return await self._delete_all(PAGE_VIEWS, ("id", "not.is.null"))

    async def delete_sessions(self) -> Optional[int]:
        return await self._delete_all(SESSIONS, ("session_id", "neq."))

    async def delete_rate_limits(self) -> Optional[int]:
        return await self._delete_all(RATE_LIMITS, ("hashed_ip", "neq."))


def _stringify_id(row: dict) -> dict:
    if row.get("id") is not None:
        row["id"] = str(row["id"])
    return row


class InMemoryStore(AnalyticsStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self.page_views: list[PageView] = []
        self.sessions: dict[str, VisitorSession] = {}
        self.rate_limits: dict[str, RateLimitWindow] = {}
        self._next_id = 1

    async def insert_page_view(self, view: PageView) -> None:
        self.page_views.append(view.model_copy(update={"id": str(self._next_id)}))
        self._next_id += 1

    async def list_page_views(self, since=None, until=None) -> list[PageView]:
        views = [
            v for v in self.page_views
            if (since is None or v.created_at >= since) and (until is None or v.created_at < until)
        ]
        return sorted(views, key=lambda v: v.created_at)

    async def set_session_bounce(self, session_id: str, is_bounce: bool) -> None:
        self.page_views = [
            v.model_copy(update={"is_bounce": is_bounce}) if v.session_id == session_id else v
            for v in self.page_views
        ]

    async def get_session(self, session_id: str) -> Optional[VisitorSession]:
        return self.sessions.get(session_id)

    async def get_sessions(self, session_ids: list[str]) -> list[VisitorSession]:
        return [self.sessions[sid] for sid in dict.fromkeys(session_ids) if sid in self.sessions]

    async def has_session_for(self, hashed_ip: str) -> bool:
        return any(s.hashed_ip == hashed_ip for s in self.sessions.values())

    async def insert_session(self, session: VisitorSession) -> None:
        self.sessions[session.session_id] = session

    async def update_session(self, session_id: str, last_visit_at: datetime, page_count: int) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            self.sessions[session_id] = session.model_copy(
                update={"last_visit_at": last_visit_at, "page_count": page_count}
            )

    async def list_sessions(self, since=None, until=None) -> list[VisitorSession]:
        sessions = [
            s for s in self.sessions.values()
            if (since is None or s.first_visit_at >= since) and (until is None or s.first_visit_at < until)
        ]
        return sorted(sessions, key=lambda s: s.first_visit_at)

    async def get_rate_limit(self, hashed_ip: str) -> Optional[RateLimitWindow]:
        return self.rate_limits.get(hashed_ip)

    async def save_rate_limit(self, window: RateLimitWindow) -> None:
        self.rate_limits[window.hashed_ip] = window

    async def delete_rate_limits_before(self, cutoff: datetime) -> Optional[int]:
        stale = [key for key, w in self.rate_limits.items() if w.window_start < cutoff]
        for key in stale:
            del self.rate_limits[key]
        return len(stale)

    async def delete_page_views(self) -> Optional[int]:
        count = len(self.page_views)
        self.page_views = []
        return count

    async def delete_sessions(self) -> Optional[int]:
        count = len(self.sessions)
        self.sessions = {}
        return count

    async def delete_rate_limits(self) -> Optional[int]:
        count = len(self.rate_limits)
        self.rate_limits = {}
        return count


class StoreProvider:
    """
    Hands out a store opened with the right credential for each caller.

    Ingestion writes with the anon key. Admin queries use the service role
    key when configured and otherwise run as the caller, so row-level
    security applies. Reset always needs the service role key.

    A fixed store (in-memory backend, tests) is returned for every caller.
    """

    def __init__(
        self,
        supabase_url: str = "",
        anon_key: str = "",
        service_role_key: Optional[str] = None,
        store: Optional[AnalyticsStore] = None,
    ):
        self.supabase_url = supabase_url
        self.anon_key = anon_key
        self.service_role_key = service_role_key
        self._fixed = store

    def for_ingest(self) -> AnalyticsStore:
        if self._fixed is not None:
            return self._fixed
        return SupabaseStore(self.supabase_url, self.anon_key)

    def for_query(self, access_token: str) -> AnalyticsStore:
        if self._fixed is not None:
            return self._fixed
        if self.service_role_key:
            return SupabaseStore(self.supabase_url, self.service_role_key)
        return SupabaseStore(self.supabase_url, self.anon_key, access_token=access_token)

    def for_reset(self) -> AnalyticsStore:
        if self._fixed is not None:
            return self._fixed
        if not self.service_role_key:
            raise UpstreamUnavailable("Service role key not configured")
        return SupabaseStore(self.supabase_url, self.service_role_key)

"""
Page view ingestion pipeline.

Each step either completes or aborts the whole request. There is no
rollback: if the session upsert fails after the page view was stored, the
row stays.
"""

import hashlib
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import IdentityError, RateLimitError, ValidationError
from .geo import GeoLookup, NullGeoLookup
from .models import (
    MAX_PATH_LENGTH,
    MAX_REFERRER_DOMAIN_LENGTH,
    MAX_REFERRER_LENGTH,
    MAX_SESSION_ID_LENGTH,
    MAX_TITLE_LENGTH,
    MAX_USER_AGENT_LENGTH,
    PageView,
    TrackRequest,
    truncate,
)
from .paths import normalize_path
from .rate_limit import RateLimiter
from .referrer import extract_referrer_domain
from .sessions import SessionLedger
from .store import AnalyticsStore
from .user_agent import parse_user_agent

logger = logging.getLogger(__name__)

# Checked in order; the first present header wins
ADDRESS_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-vercel-forwarded-for",
)


def hash_address(address: str) -> str:
    """One-way hash of a network address. The raw address is never stored."""
    return hashlib.sha256(address.encode()).hexdigest()


def resolve_client_address(headers: Mapping[str, str], peer: Optional[str] = None) -> Optional[str]:
    """Find the caller's address behind proxies and CDNs."""
    for name in ADDRESS_HEADERS:
        value = headers.get(name)
        if value:
            first_hop = value.split(",")[0].strip()
            if first_hop and first_hop.lower() != "unknown":
                return first_hop
    if peer and peer.lower() != "unknown":
        return peer
    return None


class EventIngestor:
    """Validates, enriches and persists beacon events."""

    def __init__(
        self,
        store: AnalyticsStore,
        rate_limiter: Optional[RateLimiter] = None,
        geo: Optional[GeoLookup] = None,
        ledger: Optional[SessionLedger] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.rate_limiter = rate_limiter or RateLimiter(store)
        self.geo = geo or NullGeoLookup()
        self.ledger = ledger or SessionLedger(store)
        self.clock = clock

    async def _lookup_country(self, address: str) -> Optional[str]:
        try:
            return await self.geo.country_for(address)
        except Exception as exc:
            logger.debug(f"Geolocation error: {exc!r}")
            return None

    async def ingest(self, payload: TrackRequest, client_address: Optional[str]) -> PageView:
        """Record one beacon event.

        Raises:
            ValidationError: page_path or session_id missing
            IdentityError: caller address unknown
            RateLimitError: identity over its per-window cap
            StorageError: the store rejected a read or write
        """
        if not payload.page_path or not payload.session_id:
            raise ValidationError("Missing required fields")

        if not client_address:
            raise IdentityError()
        hashed_ip = hash_address(client_address)

        now = self.clock()
        if not await self.rate_limiter.admit(hashed_ip, now):
            raise RateLimitError(retry_after=int(self.rate_limiter.window.total_seconds()))

        agent = parse_user_agent(payload.user_agent)
        referrer_domain = extract_referrer_domain(payload.referrer)
        country = await self._lookup_country(client_address)

        # Section paths are kept exactly as sent
        path = payload.page_path if payload.is_section else normalize_path(payload.page_path)

        view = PageView(
            page_path=truncate(path, MAX_PATH_LENGTH) or "/",
            page_title=truncate(payload.page_title, MAX_TITLE_LENGTH),
            referrer=truncate(payload.referrer, MAX_REFERRER_LENGTH),
            referrer_domain=truncate(referrer_domain, MAX_REFERRER_DOMAIN_LENGTH),
            user_agent=truncate(payload.user_agent, MAX_USER_AGENT_LENGTH),
            **agent.to_dict(),
            hashed_ip=hashed_ip,
            country=country,
            session_id=truncate(payload.session_id, MAX_SESSION_ID_LENGTH),
            time_on_page=payload.time_on_page,
            created_at=now,
        )
        if not payload.counts_as_page_load:
            # Not a page load: inherit the session's current bounce flag
            view.is_bounce = await self.ledger.current_bounce(view.session_id)
        await self.store.insert_page_view(view)

        session = await self.ledger.record(view, counts_as_page_load=payload.counts_as_page_load)
        if payload.counts_as_page_load:
            await self.ledger.recompute_bounce(session)

        return view

"""
Session ledger: visitor session upsert and bounce bookkeeping.

A session is new-visitor or returning exactly once, when it is created:
new if no earlier session exists for the same hashed identity. Two first
sessions from one identity created at the same moment can both be marked
new; nothing here serializes them.
"""

import logging

from .models import PageView, VisitorSession
from .store import AnalyticsStore

logger = logging.getLogger(__name__)


class SessionLedger:
    """Keeps visitor_sessions and page_views.is_bounce in step with ingestion."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def record(self, view: PageView, counts_as_page_load: bool = True) -> VisitorSession:
        """Create or advance the session that owns a page view.

        Time updates and section views leave an existing session untouched.
        """
        existing = await self.store.get_session(view.session_id)

        if existing is not None:
            if not counts_as_page_load:
                return existing
            page_count = existing.page_count + 1
            await self.store.update_session(view.session_id, view.created_at, page_count)
            return existing.model_copy(
                update={"last_visit_at": view.created_at, "page_count": page_count}
            )

        is_new_visitor = not await self.store.has_session_for(view.hashed_ip)
        session = VisitorSession(
            session_id=view.session_id,
            hashed_ip=view.hashed_ip,
            country=view.country,
            device_type=view.device_type,
            is_new_visitor=is_new_visitor,
            first_visit_at=view.created_at,
            last_visit_at=view.created_at,
            page_count=1,
        )
        await self.store.insert_session(session)
        logger.debug(
            f"Session {session.session_id[:12]} created (new visitor: {is_new_visitor})"
        )
        return session

    async def current_bounce(self, session_id: str) -> bool:
        """Bounce flag for a row that is not a page load.

        A session not created yet will be created with one page.
        """
        session = await self.store.get_session(session_id)
        return session is None or session.page_count == 1

    async def recompute_bounce(self, session: VisitorSession) -> bool:
        """Rewrite the bounce flag on every page view of the session.

        One page load: every row is a bounce. More than one: none are.
        """
        is_bounce = session.page_count == 1
        await self.store.set_session_bounce(session.session_id, is_bounce)
        return is_bounce

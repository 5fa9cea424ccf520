"""Pydantic models for stored analytics rows and the tracking payload."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Column length limits applied before persistence
MAX_PATH_LENGTH = 500
MAX_TITLE_LENGTH = 500
MAX_REFERRER_LENGTH = 1000
MAX_REFERRER_DOMAIN_LENGTH = 255
MAX_USER_AGENT_LENGTH = 500
MAX_SESSION_ID_LENGTH = 100


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    """Cut a column value to its storage limit; empty strings become None."""
    if not value:
        return None
    return value[:limit]


class PageView(BaseModel):
    """A single page view or time-on-page update (one row of page_views)."""

    id: Optional[str] = None
    page_path: str
    page_title: Optional[str] = None

    # Referrer tracking
    referrer: Optional[str] = None
    referrer_domain: Optional[str] = None

    # Device & browser
    user_agent: Optional[str] = None
    device_type: Optional[str] = None  # mobile, tablet, desktop
    browser: Optional[str] = None
    os: Optional[str] = None

    # Privacy-preserving identifier (SHA-256 of the network address)
    hashed_ip: str

    # Geographic data
    country: Optional[str] = None

    session_id: str
    time_on_page: Optional[int] = None  # seconds
    is_bounce: Optional[bool] = None  # None until the session is evaluated
    created_at: datetime


class VisitorSession(BaseModel):
    """A visitor session (one row of visitor_sessions)."""

    session_id: str
    hashed_ip: str
    country: Optional[str] = None
    device_type: Optional[str] = None
    is_new_visitor: bool = True  # decided once, at creation
    first_visit_at: datetime
    last_visit_at: datetime
    page_count: int = Field(default=1, ge=1)


class RateLimitWindow(BaseModel):
    """Fixed-window request counter for one hashed identity."""

    hashed_ip: str
    request_count: int = 1
    window_start: datetime


class TrackRequest(BaseModel):
    """Incoming beacon payload."""

    model_config = ConfigDict(extra="ignore")

    page_path: Optional[str] = None
    page_title: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    time_on_page: Optional[int] = None
    is_update: bool = False
    is_final: bool = False
    is_section: bool = False

    @field_validator("time_on_page", mode="before")
    @classmethod
    def _whole_seconds(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            return None
        try:
            seconds = int(float(value))
        except (TypeError, ValueError):
            return None
        return seconds if seconds >= 0 else None

    @property
    def is_time_update(self) -> bool:
        """Periodic or final keepalive carrying elapsed visible time."""
        return self.is_update or self.is_final

    @property
    def counts_as_page_load(self) -> bool:
        return not (self.is_time_update or self.is_section)

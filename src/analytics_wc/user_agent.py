"""
User-Agent parsing for device, browser and OS breakdowns.

Detection runs simple substring signatures over the lowercased User-Agent.
User-Agents are messy (Edge claims to be Chrome, Chrome claims to be
Safari), so each table is ordered and the first match wins.

Key Design Decisions:
- Device type: mobile signatures beat tablet signatures; anything else is
  desktop (including a missing User-Agent)
- Browser and OS detection are independent of device type
- Return None rather than guessing when nothing matches

Privacy Note:
Only the browser family and OS family are kept, never versions or device
identifiers.
"""

import re
from dataclasses import dataclass
from enum import Enum


class DeviceType(str, Enum):
    """Device category."""
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


@dataclass(frozen=True)
class UserAgentInfo:
    """
    Parsed user-agent information.

    Attributes:
        device_type: Device category (desktop, mobile, tablet)
        browser: Browser family (Chrome, Firefox, Safari, ...) or None
        os: Operating system family (Windows, macOS, iOS, ...) or None
    """
    device_type: DeviceType = DeviceType.DESKTOP
    browser: str | None = None
    os: str | None = None

    def to_dict(self) -> dict:
        """Convert to the column values stored with a page view."""
        return {
            "device_type": self.device_type.value,
            "browser": self.browser,
            "os": self.os,
        }


# =============================================================================
# DEVICE TYPE DETECTION
# =============================================================================

MOBILE_PATTERN = re.compile(r"mobile|android|iphone|ipod|blackberry|iemobile|opera mini")
TABLET_PATTERN = re.compile(r"tablet|ipad|playbook|silk")

# =============================================================================
# BROWSER DETECTION
# =============================================================================
# Order matters! Chromium derivatives before Chrome, Chrome before Safari.

BROWSER_SIGNATURES = [
    (re.compile(r"edg(e|a|ios)?/"), "Edge"),
    (re.compile(r"opr/|opera"), "Opera"),
    (re.compile(r"samsungbrowser"), "Samsung Internet"),
    (re.compile(r"firefox|fxios"), "Firefox"),
    (re.compile(r"chrome|crios|chromium"), "Chrome"),
    (re.compile(r"safari"), "Safari"),
    (re.compile(r"msie|trident"), "Internet Explorer"),
]

# =============================================================================
# OS DETECTION
# =============================================================================
# Apple mobile before macOS (iOS UAs say "like Mac OS X"), Android before Linux.

OS_SIGNATURES = [
    (re.compile(r"iphone|ipad|ipod"), "iOS"),
    (re.compile(r"android"), "Android"),
    (re.compile(r"windows"), "Windows"),
    (re.compile(r"mac os|macos|macintosh"), "macOS"),
    (re.compile(r"\bcros\b"), "Chrome OS"),
    (re.compile(r"linux"), "Linux"),
]


def _detect_device_type(ua: str) -> DeviceType:
    if MOBILE_PATTERN.search(ua):
        return DeviceType.MOBILE
    if TABLET_PATTERN.search(ua):
        return DeviceType.TABLET
    return DeviceType.DESKTOP


def _first_match(ua: str, signatures: list[tuple[re.Pattern, str]]) -> str | None:
    for pattern, name in signatures:
        if pattern.search(ua):
            return name
    return None


def parse_user_agent(user_agent: str | None) -> UserAgentInfo:
    """
    Parse a user-agent string into device, browser and OS.

    Examples:
        >>> parse_user_agent("Mozilla/5.0 (Windows NT 10.0; Win64; x64) ... Chrome/120.0 Safari/537.36")
        UserAgentInfo(device_type=<DeviceType.DESKTOP: 'desktop'>, browser='Chrome', os='Windows')

        >>> parse_user_agent(None)
        UserAgentInfo(device_type=<DeviceType.DESKTOP: 'desktop'>, browser=None, os=None)
    """
    if not user_agent or not user_agent.strip():
        return UserAgentInfo()

    ua = user_agent.lower()
    return UserAgentInfo(
        device_type=_detect_device_type(ua),
        browser=_first_match(ua, BROWSER_SIGNATURES),
        os=_first_match(ua, OS_SIGNATURES),
    )

"""
Referrer parsing and traffic source classification.

This module classifies each page view's referrer into one of four sources:
- Direct: No referrer, or navigation from the site itself
- Search: Search engine results (Google, Bing, DuckDuckGo, etc.)
- Social: Social media platforms (Facebook, X, Reddit, etc.)
- Other: Any other website linking in

Search is checked before Social, so a domain matching both lists is Search.
"""

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse


class SourceCategory(str, Enum):
    """Traffic source classification."""

    DIRECT = "Direct"
    SEARCH = "Search"
    SOCIAL = "Social"
    OTHER = "Other"


@dataclass(frozen=True)
class SourceInfo:
    """
    Classified referrer.

    Attributes:
        category: The traffic source category
        domain: Normalized referrer domain (lowercase, without www), or None
        search_engine: Display name when category is Search
    """
    category: SourceCategory
    domain: str | None = None
    search_engine: str | None = None


# =============================================================================
# REFERRER DOMAIN DATABASE
# =============================================================================

# Search engines - domain fragments mapped to display names
SEARCH_ENGINES = {
    "google.": "Google",
    "bing.": "Bing",
    "yahoo.": "Yahoo",
    "duckduckgo.": "DuckDuckGo",
    "baidu.": "Baidu",
    "yandex.": "Yandex",
    "ecosia.": "Ecosia",
    "search.brave.": "Brave Search",
    "startpage.": "Startpage",
    "qwant.": "Qwant",
    "kagi.": "Kagi",
    "ask.com": "Ask.com",
    "search.aol.": "AOL",
    "naver.": "Naver",
    "seznam.": "Seznam",
    "perplexity.": "Perplexity",
}

# Social platforms - matched as the domain itself or one of its subdomains
SOCIAL_DOMAINS = frozenset({
    "facebook.com", "fb.com", "fb.me", "instagram.com", "threads.net", "messenger.com",
    "twitter.com", "x.com", "t.co",
    "linkedin.com", "lnkd.in",
    "youtube.com", "youtu.be",
    "tiktok.com",
    "reddit.com",
    "pinterest.com", "pin.it",
    "snapchat.com",
    "discord.com", "discord.gg",
    "t.me", "telegram.org",
    "whatsapp.com", "wa.me",
    "mastodon.social", "bsky.app", "tumblr.com", "medium.com", "quora.com",
    "truthsocial.com", "gab.com", "parler.com", "rumble.com", "substack.com",
})


def _normalize_domain(domain: str) -> str:
    """Remove www. prefix and lowercase."""
    domain = domain.lower().strip().rstrip(".")
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def extract_referrer_domain(referrer: str | None) -> str | None:
    """
    Extract the host name from a referrer URL.

    Returns None if the referrer is empty or not an absolute URL. A malformed
    referrer never fails ingestion.
    """
    if not referrer or not referrer.strip():
        return None

    try:
        parsed = urlparse(referrer.strip())
        host = parsed.hostname
    except ValueError:
        return None

    if not parsed.scheme or not host:
        return None
    return host


def _is_self_domain(domain: str, site_domains: list[str] | tuple[str, ...]) -> bool:
    for site in site_domains:
        site = _normalize_domain(site)
        if domain == site or domain.endswith("." + site):
            return True
    return False


def _is_social(domain: str) -> bool:
    if domain in SOCIAL_DOMAINS:
        return True
    return any(domain.endswith("." + social) for social in SOCIAL_DOMAINS)


def search_engine_name(domain: str) -> str | None:
    """Return the search engine display name for a domain, if it is one."""
    for fragment, name in SEARCH_ENGINES.items():
        if fragment in domain:
            return name
    return None


def classify_source(
    referrer_domain: str | None,
    site_domains: list[str] | tuple[str, ...] = (),
) -> SourceInfo:
    """
    Classify a referrer domain into Direct / Search / Social / Other.

    Precedence: Direct (empty or self domain), then Search, then Social.

    Examples:
        >>> classify_source("www.google.com")
        SourceInfo(category=<SourceCategory.SEARCH: 'Search'>, domain='google.com', search_engine='Google')

        >>> classify_source(None)
        SourceInfo(category=<SourceCategory.DIRECT: 'Direct'>, domain=None, search_engine=None)
    """
    if not referrer_domain or not referrer_domain.strip():
        return SourceInfo(category=SourceCategory.DIRECT)

    domain = _normalize_domain(referrer_domain)
    if not domain or _is_self_domain(domain, site_domains):
        return SourceInfo(category=SourceCategory.DIRECT, domain=domain or None)

    engine = search_engine_name(domain)
    if engine:
        return SourceInfo(category=SourceCategory.SEARCH, domain=domain, search_engine=engine)

    if _is_social(domain):
        return SourceInfo(category=SourceCategory.SOCIAL, domain=domain)

    return SourceInfo(category=SourceCategory.OTHER, domain=domain)

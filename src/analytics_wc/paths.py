"""
Page path normalization and edition detection.

The site serves its front page as both "/" and "/index.html". Both forms
must aggregate as one page; in-page section paths ("/#letters") are kept
exactly as sent.
"""

import re
from datetime import date

ROOT_PATH = "/"

# Every spelling of the front page that should collapse to "/"
ROOT_ALIASES = frozenset({"", "/", "/index", "/index.html", "/index.htm"})

MONTH_NAMES = {
    "january": 1, "february": 2, "march": 3, "april": 4,
    "may": 5, "june": 6, "july": 7, "august": 8,
    "september": 9, "october": 10, "november": 11, "december": 12,
}

# Date patterns that identify an edition page, in match order
_ISO_DATE = re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})")
_SLASH_DATE = re.compile(r"(\d{4})/(\d{1,2})/(\d{1,2})")
_NAMED_DATE = re.compile(
    r"(" + "|".join(MONTH_NAMES) + r")[-_ ](\d{1,2})[-_, ]+(\d{4})",
    re.IGNORECASE,
)


def is_section_path(path: str) -> bool:
    """A section sub-path points into a page with a fragment."""
    return "#" in path


def normalize_path(path: str | None) -> str:
    """Collapse equivalent root-page spellings to "/".

    Section sub-paths are returned unchanged. Idempotent.
    """
    if path is None:
        return ROOT_PATH
    if is_section_path(path):
        return path

    stripped = path.strip()
    if stripped.lower() in ROOT_ALIASES:
        return ROOT_PATH
    return stripped


def edition_date_from_path(path: str) -> date | None:
    """Extract the edition date embedded in a page path, if any."""
    match = _ISO_DATE.search(path)
    if match:
        year, month, day = (int(g) for g in match.groups())
    else:
        match = _SLASH_DATE.search(path)
        if match:
            year, month, day = (int(g) for g in match.groups())
        else:
            match = _NAMED_DATE.search(path)
            if not match:
                return None
            month = MONTH_NAMES[match.group(1).lower()]
            day, year = int(match.group(2)), int(match.group(3))

    try:
        return date(year, month, day)
    except ValueError:
        return None

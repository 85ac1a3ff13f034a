# =============================================================================
# Search Criteria
# =============================================================================
# What to put after "UID SEARCH". Exactly one of:
#
#   ALL                       every message in the folder
#   SINCE 01-Feb-2025         received on or after a date
#   <query>                   server-side filter, e.g. OR FROM "a" SUBJECT "b"
#   UID 1235:*                delta fetch above a cached watermark
#
# The choice is made once, before the command is issued, by
# SearchCriteria.for_folder(): watermark > filter query > date bound > ALL.
# =============================================================================

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imapmenu.core.folder import FilterRule, FolderConfig

# IMAP dates use English month abbreviations regardless of locale
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Filter field -> IMAP SEARCH key
_SEARCH_KEYS = {
    "from": "FROM",
    "to": "TO",
    "subject": "SUBJECT",
    "text": "TEXT",
}


def imap_date(value: date) -> str:
    """Format a date as IMAP's dd-Mon-yyyy."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def quote_string(value: str) -> str:
    """
    Quote a string for use in an IMAP command.

    IMAP quoted strings escape backslashes and double quotes with a backslash.
    """
    value = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{value}"'


def build_filter_query(rules: list["FilterRule"], match_all: bool = True) -> str:
    """
    Translate filter rules to an IMAP SEARCH expression.

    Only "contains" and "not_contains" have SEARCH equivalents. With AND
    semantics the other rules are simply left to the client-side filter;
    with OR semantics a single untranslatable rule means the server can't
    narrow the result at all, so no query is produced.

    Args:
        rules: Filter rules from a FolderConfig.
        match_all: AND (True) or OR (False) combination.

    Returns:
        A SEARCH expression, or "" when the server can't help.

    Example:
        >>> build_filter_query([FilterRule("from", "contains", "a"),
        ...                     FilterRule("subject", "contains", "b")], match_all=False)
        'OR FROM "a" SUBJECT "b"'
    """
    if not rules:
        return ""
    if not match_all and not all(rule.server_side for rule in rules):
        return ""

    terms = []
    for rule in rules:
        if not rule.server_side:
            continue
        term = f"{_SEARCH_KEYS[rule.field]} {quote_string(rule.value)}"
        if rule.operator == "not_contains":
            term = f"NOT {term}"
        terms.append(term)

    if not terms:
        return ""
    if match_all:
        return " ".join(terms)

    # OR is binary in IMAP: OR a OR b c
    query = terms[-1]
    for term in reversed(terms[:-1]):
        query = f"OR {term} {query}"
    return query


class SearchKind(Enum):
    """Which form of search criteria is in use."""
    ALL = auto()
    SINCE = auto()
    QUERY = auto()
    UID_RANGE = auto()


@dataclass(frozen=True)
class SearchCriteria:
    """
    The argument to UID SEARCH.

    Build with the constructors rather than directly:

        >>> str(SearchCriteria.all())
        'ALL'
        >>> str(SearchCriteria.after_uid(1234))
        'UID 1235:*'

    Attributes:
        kind: Which form this is.
        since_date: Date bound for SINCE.
        text: Raw query for QUERY.
        watermark: Highest already-known UID for UID_RANGE.
    """
    kind: SearchKind = SearchKind.ALL
    since_date: date | None = None
    text: str = ""
    watermark: int = 0

    @classmethod
    def all(cls) -> "SearchCriteria":
        return cls(SearchKind.ALL)

    @classmethod
    def since(cls, value: date | datetime) -> "SearchCriteria":
        if isinstance(value, datetime):
            value = value.date()
        return cls(SearchKind.SINCE, since_date=value)

    @classmethod
    def since_days(cls, days: int, today: date | None = None) -> "SearchCriteria":
        """Messages received in the last `days` days."""
        today = today or date.today()
        return cls.since(today - timedelta(days=days))

    @classmethod
    def query(cls, text: str) -> "SearchCriteria":
        if not text.strip():
            raise ValueError("Search query must not be empty")
        return cls(SearchKind.QUERY, text=text.strip())

    @classmethod
    def after_uid(cls, watermark: int) -> "SearchCriteria":
        """Delta search for UIDs above the cached watermark."""
        if watermark < 0:
            raise ValueError("Watermark must not be negative")
        return cls(SearchKind.UID_RANGE, watermark=watermark)

    @classmethod
    def for_folder(
        cls,
        folder: "FolderConfig",
        watermark: int | None = None,
        today: date | None = None,
    ) -> "SearchCriteria":
        """
        Pick the criteria for fetching a watched folder.

        Precedence: delta watermark, then the folder's filter query, then
        its days_to_fetch bound, then ALL.
        """
        if watermark:
            return cls.after_uid(watermark)
        query = build_filter_query(folder.filters, folder.match_all)
        if query:
            return cls.query(query)
        if folder.days_to_fetch > 0:
            return cls.since_days(folder.days_to_fetch, today=today)
        return cls.all()

    @property
    def is_delta(self) -> bool:
        return self.kind is SearchKind.UID_RANGE

    def __str__(self) -> str:
        if self.kind is SearchKind.SINCE:
            return f"SINCE {imap_date(self.since_date)}"
        if self.kind is SearchKind.QUERY:
            return self.text
        if self.kind is SearchKind.UID_RANGE:
            return f"UID {self.watermark + 1}:*"
        return "ALL"

# =============================================================================
# Folder Models
# =============================================================================
# Two related but distinct things live here:
#
#   - Folder: a mailbox as reported by the server's LIST response
#   - FolderConfig: a folder the user chose to watch, with its fetch limits
#     and optional filter rules (e.g. "from contains @github.com")
#   - VirtualFolder: several watched folders shown as one list
#
# Filter rules are evaluated twice: translated to an IMAP SEARCH query where
# the server can do the work, and matched client-side on fetched headers
# for the operators IMAP can't express.
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imapmenu.core.account import Account
    from imapmenu.core.message import Message


class FolderType(Enum):
    """
    Standard folder types that have special meaning in mail clients.

    These map to IMAP SPECIAL-USE attributes (RFC 6154) when available,
    or are inferred from common naming conventions.
    """
    INBOX = auto()
    SENT = auto()
    DRAFTS = auto()
    TRASH = auto()
    JUNK = auto()
    ARCHIVE = auto()
    OTHER = auto()


@dataclass
class Folder:
    """
    A mailbox as listed by the server.

    Attributes:
        name: Full decoded path (e.g., "INBOX", "Work/Projects").
        folder_type: Semantic type (inbox, sent, ...).
        delimiter: Hierarchy delimiter reported by LIST (usually "/" or ".").
        flags: Raw LIST attributes such as "\\HasNoChildren" or "\\Sent".
    """
    name: str
    folder_type: FolderType = FolderType.OTHER
    delimiter: str = "/"
    flags: list[str] = field(default_factory=list)

    @property
    def is_selectable(self) -> bool:
        return "\\NOSELECT" not in (f.upper() for f in self.flags)

    @property
    def display_name(self) -> str:
        """
        Returns just the folder name without parent path.

        Example:
            >>> Folder(name="Work/Projects/Alpha").display_name
            'Alpha'
        """
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[1]
        return self.name

    @classmethod
    def detect_type(cls, folder_name: str, flags: list[str] | None = None) -> FolderType:
        """
        Detect the folder type from SPECIAL-USE flags, then from its name.

        Args:
            folder_name: Decoded folder path.
            flags: LIST attributes, if known.

        Returns:
            The detected FolderType, or OTHER if unrecognized.
        """
        flags_upper = {f.upper() for f in flags or []}
        if folder_name.upper() == "INBOX":
            return FolderType.INBOX
        if "\\SENT" in flags_upper:
            return FolderType.SENT
        if "\\DRAFTS" in flags_upper:
            return FolderType.DRAFTS
        if "\\TRASH" in flags_upper:
            return FolderType.TRASH
        if "\\JUNK" in flags_upper:
            return FolderType.JUNK
        if "\\ARCHIVE" in flags_upper or "\\ALL" in flags_upper:
            return FolderType.ARCHIVE

        # Different providers use different conventions...
        name_lower = folder_name.lower()
        if name_lower in ("sent", "sent mail", "sent items", "sent messages", "[gmail]/sent mail"):
            return FolderType.SENT
        elif name_lower in ("drafts", "draft", "[gmail]/drafts"):
            return FolderType.DRAFTS
        elif name_lower in ("trash", "deleted", "deleted items", "deleted messages", "[gmail]/trash"):
            return FolderType.TRASH
        elif name_lower in ("junk", "spam", "junk mail", "[gmail]/spam"):
            return FolderType.JUNK
        elif name_lower in ("archive", "all mail", "[gmail]/all mail"):
            return FolderType.ARCHIVE

        return FolderType.OTHER

    def __str__(self) -> str:
        return self.name


# =============================================================================
# Watched Folder Configuration
# =============================================================================

# Fields a filter rule can look at
FILTER_FIELDS = ("from", "to", "subject", "text")

# Supported comparison operators
FILTER_OPERATORS = ("contains", "not_contains", "equals")


@dataclass
class FilterRule:
    """
    A single filter condition on a message header.

    Attributes:
        field: "from", "to", "subject" or "text" (any of the three).
        operator: "contains", "not_contains" or "equals". Comparisons are
                  case-insensitive.
        value: The text to compare against.

    Example:
        >>> FilterRule("from", "contains", "@github.com")
    """
    field: str
    operator: str = "contains"
    value: str = ""

    def __post_init__(self) -> None:
        self.field = self.field.lower()
        self.operator = self.operator.lower()
        if self.field not in FILTER_FIELDS:
            raise ValueError(f"Unknown filter field: {self.field!r}")
        if self.operator not in FILTER_OPERATORS:
            raise ValueError(f"Unknown filter operator: {self.operator!r}")

    @property
    def server_side(self) -> bool:
        """Whether IMAP SEARCH can evaluate this rule."""
        return self.operator in ("contains", "not_contains")

    def matches(self, message: "Message") -> bool:
        """Evaluate the rule against a fetched message's headers."""
        if self.field == "from":
            haystacks = [message.from_]
        elif self.field == "to":
            haystacks = [message.to]
        elif self.field == "subject":
            haystacks = [message.subject]
        else:
            haystacks = [message.from_, message.to, message.subject, message.preview]

        needle = self.value.lower()
        values = [h.lower() for h in haystacks if h]

        if self.operator == "contains":
            return any(needle in v for v in values)
        if self.operator == "not_contains":
            return all(needle not in v for v in values)
        return any(v.strip() == needle for v in values)


@dataclass
class FolderConfig:
    """
    A folder the user watches, with fetch limits and filters.

    Attributes:
        name: Label shown in the menu (defaults to the path).
        path: Server-side folder path, decoded (e.g., "INBOX", "Archiv/2024").
        enabled: Disabled folders are not fetched.
        max_emails: Keep at most this many of the newest messages
                    (0 = engine default).
        days_to_fetch: Only search messages received in the last N days
                       (0 = no date bound).
        filters: Filter rules. Empty means "everything".
        match_all: True combines filters with AND, False with OR.
    """
    path: str
    name: str = ""
    enabled: bool = True
    max_emails: int = 0
    days_to_fetch: int = 0
    filters: list[FilterRule] = field(default_factory=list)
    match_all: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.path

    def folder_key(self, account: "Account") -> str:
        """Cache key for this folder: "<account name>:<path>"."""
        return f"{account.name}:{self.path}"

    def matches(self, message: "Message") -> bool:
        """
        Client-side filter predicate.

        Applied after fetching because "equals" has no IMAP SEARCH
        equivalent and servers differ in how they tokenize "contains".
        """
        return match_filters(self.filters, self.match_all, message)


def match_filters(filters: list[FilterRule], match_all: bool, message: "Message") -> bool:
    """Combine rules with AND (match_all) or OR; no rules matches everything."""
    if not filters:
        return True
    results = (rule.matches(message) for rule in filters)
    return all(results) if match_all else any(results)


# =============================================================================
# Virtual Folders
# =============================================================================

@dataclass
class VirtualFolderSource:
    """One watched folder feeding a virtual folder."""
    account: str
    path: str

    @property
    def folder_key(self) -> str:
        return f"{self.account}:{self.path}"


@dataclass
class VirtualFolder:
    """
    A merged view over watched folders, possibly on different accounts.

    Nothing is fetched for a virtual folder itself: its messages are the
    cached messages of its sources, filtered again with its own rules.

    Attributes:
        name: Label shown in the menu.
        sources: Watched folders to merge.
        enabled: Disabled virtual folders aren't shown or refreshed.
        max_emails: Show at most this many of the newest messages
                    (0 = no limit).
        filters: Filter rules applied on top of each source's own.
        match_all: True combines filters with AND, False with OR.

    Example:
        >>> VirtualFolder("Alerts", sources=[VirtualFolderSource("work", "INBOX"),
        ...                                  VirtualFolderSource("home", "INBOX")])
    """
    name: str
    sources: list[VirtualFolderSource] = field(default_factory=list)
    enabled: bool = True
    max_emails: int = 100
    filters: list[FilterRule] = field(default_factory=list)
    match_all: bool = True

    def source_for(self, folder_key: str) -> VirtualFolderSource | None:
        """The source a cached message (by its folder_key) came from."""
        return next((s for s in self.sources if s.folder_key == folder_key), None)

    def matches(self, message: "Message") -> bool:
        return match_filters(self.filters, self.match_all, message)

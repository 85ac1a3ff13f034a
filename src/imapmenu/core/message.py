# =============================================================================
# Message Model
# =============================================================================
# Represents a message as the engine sees it after a header fetch:
#   - Identity: (folder_key, uid). UIDs are only unique within one folder.
#   - Envelope: subject, from, to (decoded)
#   - Ordering: INTERNALDATE, the server's receive time. The Date: header is
#     written by the sender's clock and is not trusted for sorting.
#   - Body: empty after a header fetch, filled in by a full fetch
#
# uid == 0 is the "couldn't parse" sentinel; such messages never leave the
# IMAP client.
# =============================================================================

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import IntFlag

from imapmenu.mime.decoder import MimeDecoder
from imapmenu.mime.headers import split_address


class MessageFlags(IntFlag):
    """
    IMAP system flags as a bitmask.

    Usage:
        msg.flags = MessageFlags.SEEN | MessageFlags.FLAGGED
        if msg.flags & MessageFlags.SEEN:
            ...
    """
    NONE = 0
    SEEN = 1 << 0       # \Seen
    ANSWERED = 1 << 1   # \Answered
    FLAGGED = 1 << 2    # \Flagged
    DELETED = 1 << 3    # \Deleted
    DRAFT = 1 << 4      # \Draft

    @classmethod
    def parse(cls, flags: str | list[str]) -> "MessageFlags":
        """
        Parse IMAP flag atoms into a MessageFlags value.

        Example:
            >>> MessageFlags.parse("\\Seen \\Flagged")
            <MessageFlags.FLAGGED|SEEN: 5>
        """
        if isinstance(flags, str):
            flags = flags.split()
        result = cls.NONE
        for flag in flags:
            result |= _FLAG_NAMES.get(flag.strip("()").lower(), cls.NONE)
        return result


_FLAG_NAMES = {
    "\\seen": MessageFlags.SEEN,
    "\\answered": MessageFlags.ANSWERED,
    "\\flagged": MessageFlags.FLAGGED,
    "\\deleted": MessageFlags.DELETED,
    "\\draft": MessageFlags.DRAFT,
}

# Placeholder date for messages without a parseable INTERNALDATE, so they
# sort last rather than breaking the ordering
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Message:
    """
    A message in a watched folder.

    Attributes:
        uid: IMAP UID, unique within the folder. Always > 0.
        folder_key: Cache key of the folder ("<account>:<path>").

        subject: Decoded subject ("No Subject" when absent).
        from_: Decoded From header ("Unknown Sender" when absent).
        to: Decoded To header.
        from_name: Display name part of From.
        from_email: Address part of From.

        date: Receive time from INTERNALDATE (timezone-aware).
        preview: Short plain-text preview, may be empty until the body is known.
        body: Raw body (everything after the headers); empty until fetched.
        content_type: Top-level Content-Type header.
        boundary: Multipart boundary, if any.
        message_id: RFC 5322 Message-ID (for reply threading).
        flags: IMAP flags.

    Example:
        >>> msg = Message(uid=42, folder_key="work:INBOX", subject="Hi",
        ...               from_="Jane <jane@example.com>")
        >>> msg.from_name, msg.from_email
        ('Jane', 'jane@example.com')
    """

    uid: int
    folder_key: str = ""

    # Envelope
    subject: str = "No Subject"
    from_: str = "Unknown Sender"
    to: str = ""
    from_name: str = ""
    from_email: str = ""

    # Ordering and content
    date: datetime = EPOCH
    preview: str = ""
    body: str = ""
    content_type: str = ""
    boundary: str = ""
    transfer_encoding: str = ""
    message_id: str = ""
    references: list[str] = field(default_factory=list)

    flags: MessageFlags = MessageFlags.NONE

    def __post_init__(self) -> None:
        if self.uid <= 0:
            raise ValueError(f"Message UID must be positive, got {self.uid}")
        if not self.from_name and not self.from_email and self.from_:
            self.from_name, self.from_email = split_address(self.from_)

    # -------------------------------------------------------------------------
    # Identity and flags
    # -------------------------------------------------------------------------

    @property
    def identity(self) -> tuple[str, int]:
        """Cross-folder identity: (folder_key, uid)."""
        return (self.folder_key, self.uid)

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.SEEN)

    @is_read.setter
    def is_read(self, value: bool) -> None:
        if value:
            self.flags |= MessageFlags.SEEN
        else:
            self.flags &= ~MessageFlags.SEEN

    @property
    def is_flagged(self) -> bool:
        return bool(self.flags & MessageFlags.FLAGGED)

    def mark_read(self) -> None:
        self.is_read = True

    def mark_unread(self) -> None:
        self.is_read = False

    @property
    def display_sender(self) -> str:
        """Sender name if known, else address, else the raw header."""
        return self.from_name or self.from_email or self.from_

    # -------------------------------------------------------------------------
    # Body
    # -------------------------------------------------------------------------

    def html_body(self) -> str:
        """Render the body to HTML for display."""
        decoder = MimeDecoder(
            self.body,
            content_type=self.content_type,
            boundary=self.boundary,
            transfer_encoding=self.transfer_encoding,
        )
        return decoder.html()

    def copy(self, **changes) -> "Message":
        """Return a copy, optionally with some fields changed."""
        changes.setdefault("references", list(self.references))
        return replace(self, **changes)

    def __str__(self) -> str:
        status = " " if self.is_read else "*"
        return f"{status} {self.display_sender}: {self.subject}"

    def __repr__(self) -> str:
        return (
            f"Message(uid={self.uid}, folder={self.folder_key!r}, "
            f"subject={self.subject[:30]!r}, date={self.date.isoformat()})"
        )

# =============================================================================
# IMAP Response Parsing
# =============================================================================
# Splits the raw bytes of one tagged exchange into structured pieces:
#
#   * 3 EXISTS                                   -> UntaggedLine("3 EXISTS")
#   * 1 FETCH (UID 7 BODY[HEADER] {42}\r\n       -> UntaggedLine(
#   <42 bytes>)\r\n                                   "1 FETCH (UID 7 BODY[HEADER] {42})",
#                                                     literals=[<42 bytes>])
#   A0003 OK FETCH completed                     -> status="OK"
#
# Literals are cut out by their declared length, never by searching for
# delimiters, so message content can contain anything (including lines that
# look like tagged responses) without confusing the parser.
# =============================================================================

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

LITERAL_RE = re.compile(rb"\{(\d+)\+?\}$")


@dataclass
class UntaggedLine:
    """
    One logical untagged response ("* ...").

    Attributes:
        text: The response text without the leading "* ". Literal payloads
              are not included; their "{n}" markers remain in place.
        literals: Literal payloads in the order they appeared.
    """
    text: str
    literals: list[bytes] = field(default_factory=list)

    @property
    def keyword(self) -> str:
        """
        The response keyword: "SEARCH", "CAPABILITY", "FETCH", "EXISTS", ...

        For numeric responses ("3 EXISTS", "1 FETCH (...)") this is the
        word after the number.
        """
        parts = self.text.split(" ", 2)
        if parts and parts[0].isdigit() and len(parts) > 1:
            return parts[1].upper()
        return parts[0].upper() if parts else ""


@dataclass
class ImapResponse:
    """
    A complete response to one tagged command.

    Attributes:
        tag: The command tag.
        status: "OK", "NO", "BAD", or "+" if the read stopped at a
                continuation request.
        text: Human-readable text after the status (or after "+").
        untagged: Untagged responses received before completion.
    """
    tag: str
    status: str = ""
    text: str = ""
    untagged: list[UntaggedLine] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    @property
    def is_continuation(self) -> bool:
        return self.status == "+"

    def lines(self, keyword: str) -> list[UntaggedLine]:
        """Untagged responses with the given keyword."""
        keyword = keyword.upper()
        return [line for line in self.untagged if line.keyword == keyword]

    def __str__(self) -> str:
        return f"{self.tag} {self.status} {self.text}".strip()


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def parse_response(data: bytes, tag: str) -> ImapResponse:
    """
    Parse the raw bytes of a tagged exchange.

    Args:
        data: Bytes as returned by ProtocolTransport.read_tagged().
        tag: The command tag the bytes belong to.

    Returns:
        The parsed response. Lines that are neither untagged, tagged nor
        continuations are logged and skipped.
    """
    response = ImapResponse(tag=tag)
    prefix = tag.encode("ascii") + b" "
    pos = 0
    length = len(data)

    while pos < length:
        eol = data.find(b"\r\n", pos)
        if eol == -1:
            eol = length
        first = data[pos:eol]
        pos = eol + 2

        if first.startswith(prefix):
            status, _, text = _decode(first[len(prefix):]).partition(" ")
            response.status = status.upper()
            response.text = text
            continue

        if first.startswith(b"+"):
            response.status = "+"
            response.text = _decode(first[1:]).strip()
            continue

        if not first.startswith(b"*"):
            if first:
                logger.debug(f"Skipping unexpected response line: {first[:80]!r}")
            continue

        # Assemble the logical line, cutting out literals as we go
        segments = [first[1:].lstrip(b" ")]
        literals: list[bytes] = []
        segment = first
        while True:
            match = LITERAL_RE.search(segment)
            if not match:
                break
            size = int(match.group(1))
            literals.append(data[pos:pos + size])
            pos += size
            eol = data.find(b"\r\n", pos)
            if eol == -1:
                eol = length
            segment = data[pos:eol]
            segments.append(segment)
            pos = eol + 2

        response.untagged.append(
            UntaggedLine(text=_decode(b"".join(segments)), literals=literals)
        )

    return response


# =============================================================================
# Header Decoding
# =============================================================================
# Helpers for the header side of RFC 5322 messages:
#   - RFC 2047 encoded-word decoding (email.header)
#   - Header block unfolding and parsing
#   - Address splitting ("Name <addr>" -> ("Name", "addr")) via email.utils
#
# The IMAP client only ever sees header *fragments* (HEADER.FIELDS), so
# blocks are unfolded and split here. Charset labels always go through
# decode_bytes(), which survives unknown or lying charsets.
# =============================================================================

import email.errors
import email.header
import email.utils
import logging
import re

logger = logging.getLogger(__name__)

# =?charset?encoding?payload?=
ENCODED_WORD_RE = re.compile(r"=\?([^?]+)\?([BQbq])\?([^?]*)\?=")

BOUNDARY_RE = re.compile(r'boundary\s*=\s*"?([^";\s]+)"?', re.IGNORECASE)
CHARSET_RE = re.compile(r'charset\s*=\s*"?([^";\s]+)"?', re.IGNORECASE)

# Encoded words may legally decode to text that looks like another encoded
# word; cap the passes so that can't spin forever
_MAX_DECODE_PASSES = 8

# Charset labels seen in the wild, mapped to Python codec names
_CHARSET_ALIASES = {
    "utf-8": "utf-8",
    "utf8": "utf-8",
    "iso-8859-1": "latin-1",
    "iso8859-1": "latin-1",
    "latin1": "latin-1",
    "latin-1": "latin-1",
    "iso-8859-2": "iso-8859-2",
    "latin2": "iso-8859-2",
    "windows-1252": "cp1252",
    "cp1252": "cp1252",
    "us-ascii": "ascii",
    "ascii": "ascii",
}


# =============================================================================
# Charset Handling
# =============================================================================

def decode_bytes(data: bytes, charset: str | None = None) -> str:
    """
    Decode bytes using a declared charset, with sane fallbacks.

    Unknown or lying charsets fall back to UTF-8 and then Latin-1, which
    never fails, so this always returns *something* readable.

    Args:
        data: Raw bytes.
        charset: Declared charset label (case-insensitive), if any.

    Returns:
        Decoded text.
    """
    if charset:
        label = charset.strip().strip('"').lower()
        codec = _CHARSET_ALIASES.get(label, label)
        try:
            return data.decode(codec)
        except (LookupError, UnicodeDecodeError):
            logger.debug(f"Could not decode with charset {charset!r}, falling back")

    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _decode_header_once(value: str) -> str:
    """One pass of email.header.decode_header over a header value."""
    try:
        parts = email.header.decode_header(value)
    except email.errors.HeaderParseError:
        logger.debug(f"Undecodable encoded word in {value!r}")
        return value

    result = ""
    for part, charset in parts:
        if isinstance(part, str):
            result += part
        elif charset is None:
            # Unencoded runs come back as raw-unicode-escape bytes
            try:
                result += part.decode("raw-unicode-escape")
            except UnicodeDecodeError:
                # A literal "\u" in the text that isn't an escape
                result += part.decode("latin-1")
        else:
            # RFC 2231 language suffix: "utf-8*en"
            result += decode_bytes(part, charset.split("*", 1)[0])
    return result


def decode_encoded_words(value: str) -> str:
    """
    Decode every RFC 2047 encoded word in a header value.

    Decoding is applied repeatedly until no encoded word remains. Adjacent
    encoded words are joined without the whitespace between them.

    Args:
        value: Raw header value.

    Returns:
        Header value as Unicode.

    Example:
        >>> decode_encoded_words("=?UTF-8?B?SGVsbG8=?= =?UTF-8?Q?_W=C3=B6rld?=")
        'Hello Wörld'
    """
    if not value or "=?" not in value:
        return value

    for _ in range(_MAX_DECODE_PASSES):
        decoded = _decode_header_once(value)
        if decoded == value or not ENCODED_WORD_RE.search(decoded):
            return decoded
        value = decoded

    return value


# =============================================================================
# Header Blocks
# =============================================================================

def unfold_headers(block: str) -> list[str]:
    """
    Split a header block into logical header lines.

    Continuation lines (starting with a space or tab) are appended to the
    previous header, joined by a single space.
    """
    lines: list[str] = []
    for raw_line in re.split(r"\r?\n", block):
        if not raw_line:
            continue
        if raw_line[0] in " \t" and lines:
            lines[-1] = lines[-1] + " " + raw_line.strip()
        else:
            lines.append(raw_line.rstrip())
    return lines


def parse_header_block(block: str) -> dict[str, str]:
    """
    Parse a header block into a dict keyed by lowercase header name.

    Only the first occurrence of each header is kept (that's the one mail
    clients display). Values are returned raw, not RFC 2047 decoded.
    """
    headers: dict[str, str] = {}
    for line in unfold_headers(block):
        name, sep, value = line.partition(":")
        if not sep:
            continue
        key = name.strip().lower()
        if key and key not in headers:
            headers[key] = value.strip()
    return headers


def extract_boundary(content_type: str) -> str:
    """Return the multipart boundary from a Content-Type value, or ""."""
    match = BOUNDARY_RE.search(content_type or "")
    return match.group(1) if match else ""


def extract_charset(content_type: str) -> str | None:
    """Return the charset parameter from a Content-Type value, if present."""
    match = CHARSET_RE.search(content_type or "")
    return match.group(1) if match else None


# =============================================================================
# Addresses
# =============================================================================

def split_address(value: str) -> tuple[str, str]:
    """
    Split an address header into (display name, email address).

    Handles "Name <addr>", "\"Last, First\" <addr>", "<addr>" and bare
    "addr". The display name is RFC 2047 decoded.

    Example:
        >>> split_address('"Jane Doe" <jane@example.com>')
        ('Jane Doe', 'jane@example.com')
    """
    value = (value or "").strip()
    name, email_addr = email.utils.parseaddr(value)
    if not email_addr:
        # parseaddr gives up on some malformed headers; keep what we have
        return "", value.strip('"')
    return decode_encoded_words(name).strip(), email_addr


def parse_address_list(value: str) -> list[str]:
    """
    Split a comma-separated address list into individual entries.

    Commas inside quoted display names or angle brackets don't split.
    """
    entries: list[str] = []
    current: list[str] = []
    in_quotes = False
    in_angle = False

    for char in value or "":
        if char == '"':
            in_quotes = not in_quotes
        elif char == "<" and not in_quotes:
            in_angle = True
        elif char == ">" and not in_quotes:
            in_angle = False

        if char == "," and not in_quotes and not in_angle:
            entry = "".join(current).strip()
            if entry:
                entries.append(entry)
            current = []
        else:
            current.append(char)

    entry = "".join(current).strip()
    if entry:
        entries.append(entry)
    return entries


def extract_addresses(value: str | list[str]) -> list[str]:
    """
    Pull bare email addresses out of an address list.

    Entries without "<...>" are accepted only if they contain "@", so
    leftovers like an empty Cc field produce nothing.

    Args:
        value: Comma-separated string or list of entries.

    Returns:
        Addresses suitable for SMTP RCPT TO.
    """
    entries = value if isinstance(value, list) else parse_address_list(value)
    addresses = []
    for entry in entries:
        for part in parse_address_list(entry):
            match = re.search(r"<([^>]+)>", part)
            if match:
                addresses.append(match.group(1).strip())
            elif "@" in part:
                addresses.append(part.strip().strip('"'))
    return addresses

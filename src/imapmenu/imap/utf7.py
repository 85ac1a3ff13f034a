# =============================================================================
# Modified UTF-7 Codec
# =============================================================================
# IMAP mailbox names travel on the wire in a variant of UTF-7 (RFC 3501
# section 5.1.3):
#
#   - Printable ASCII (0x20-0x7E) is sent as-is, except "&"
#   - "&" itself is sent as "&-"
#   - Any other run of characters is UTF-16BE, base64'd with "," in place
#     of "/", padding stripped, and wrapped in "&" ... "-"
#
# Example:
#   "Entwürfe"  <->  "Entw&APw-rfe"
#   "R&D"       <->  "R&-D"
# =============================================================================

import base64
import logging

logger = logging.getLogger(__name__)


def _is_direct(char: str) -> bool:
    """Whether a character can be written to the wire unencoded."""
    return 0x20 <= ord(char) <= 0x7E and char != "&"


def _encode_run(run: list[str]) -> str:
    """Encode a run of non-direct characters as "&<modified base64>-"."""
    raw = "".join(run).encode("utf-16-be")
    b64 = base64.b64encode(raw).decode("ascii").rstrip("=")
    return "&" + b64.replace("/", ",") + "-"


def _decode_run(chunk: str) -> str:
    """Decode the base64 payload between "&" and "-"."""
    b64 = chunk.replace(",", "/")
    # Restore padding to a multiple of four
    b64 += "=" * (-len(b64) % 4)
    return base64.b64decode(b64).decode("utf-16-be")


def encode(name: str) -> str:
    """
    Encode a Unicode folder name into modified UTF-7.

    Args:
        name: The folder name as shown to the user.

    Returns:
        The mailbox name as it must be sent to the server.
    """
    out: list[str] = []
    pending: list[str] = []

    for char in name:
        if _is_direct(char):
            if pending:
                out.append(_encode_run(pending))
                pending = []
            out.append(char)
        elif char == "&":
            if pending:
                out.append(_encode_run(pending))
                pending = []
            out.append("&-")
        else:
            pending.append(char)

    if pending:
        out.append(_encode_run(pending))

    return "".join(out)


def decode(name: str) -> str:
    """
    Decode a modified UTF-7 mailbox name back to Unicode.

    Malformed shift sequences are kept verbatim rather than raising, since
    a folder list with one odd name is still useful.

    Args:
        name: The mailbox name as received from the server.

    Returns:
        The human-readable folder name.
    """
    out: list[str] = []
    i = 0
    length = len(name)

    while i < length:
        char = name[i]
        if char != "&":
            out.append(char)
            i += 1
            continue

        end = name.find("-", i + 1)
        if end == -1:
            # Unterminated shift; nothing sensible to do but keep it
            out.append(name[i:])
            break

        chunk = name[i + 1:end]
        if not chunk:
            out.append("&")
        else:
            try:
                out.append(_decode_run(chunk))
            except (ValueError, UnicodeDecodeError):
                logger.debug(f"Malformed modified UTF-7 sequence in {name!r}")
                out.append(name[i:end + 1])
        i = end + 1

    return "".join(out)

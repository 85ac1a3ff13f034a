# =============================================================================
# MIME Decoder
# =============================================================================
# Turns a raw message body into something a webview can display.
#
# Decoding strategy:
#   1. Find a multipart boundary (declared, or sniffed from the body)
#   2. Walk the parts recursively, undoing quoted-printable / base64 on the
#      leaves with email.message
#   3. Prefer the HTML leaf; fall back to the plain-text leaf wrapped in an
#      HTML shell; fall back to scraping readable lines out of the raw body
#
# Previews use the same walk but prefer the plain-text leaf, rendering HTML
# to text with inscriptis when that's all the message has.
#
# The walker is deliberately forgiving: real-world mail is full of missing
# terminators, lying headers and stray whitespace, and a best-effort render
# beats an exception in a menubar popover.
# =============================================================================

import email.message
import html as html_lib
import logging
import re
from dataclasses import dataclass

from inscriptis import get_text
from inscriptis.css_profiles import CSS_PROFILES
from inscriptis.model.config import ParserConfig

from imapmenu.mime.headers import (
    decode_bytes,
    extract_boundary,
    extract_charset,
    parse_header_block,
)

logger = logging.getLogger(__name__)

# A boundary delimiter line as it appears in the body: --XXXX followed by EOL
BODY_BOUNDARY_RE = re.compile(r"--([a-zA-Z0-9_=\-.'+]+)\r?\n")

PREVIEW_LENGTH = 150

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_STYLE_RE = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)

# Nested multiparts deeper than this are almost certainly malformed
_MAX_DEPTH = 10

_PLAIN_TEXT_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            font-size: 13px;
            line-height: 1.6;
            padding: 16px;
            color: #333;
            background: white;
            margin: 0;
        }}
    </style>
</head>
<body>{body}</body>
</html>"""

_PREVIEW_CONFIG = ParserConfig(
    css=CSS_PROFILES["strict"],
    display_links=False,
    display_images=False,
    display_anchors=False,
)


# =============================================================================
# Transfer Encodings
# =============================================================================

def decode_payload(content: str, encoding: str) -> bytes:
    """
    Undo a Content-Transfer-Encoding, the way email.message does it.

    Quoted-printable soft line breaks are removed and invalid "=" escapes
    pass through; base64 with bad padding is repaired where possible.
    Identity encodings (7bit, 8bit, binary, none) return the bytes as-is.
    """
    part = email.message.Message()
    part["Content-Transfer-Encoding"] = (encoding or "8bit").strip()
    part.set_payload(content.encode("utf-8"))
    return part.get_payload(decode=True)


def decode_quoted_printable(text: str, charset: str | None = None) -> str:
    """
    Decode a quoted-printable body.

    Args:
        text: Quoted-printable text.
        charset: Charset of the decoded bytes (UTF-8 then Latin-1 if unknown).

    Returns:
        Decoded text.
    """
    return decode_bytes(decode_payload(text, "quoted-printable"), charset)


def decode_transfer(content: str, encoding: str, charset: str | None = None) -> str:
    """Decode a part body according to its Content-Transfer-Encoding."""
    encoding = (encoding or "").strip().lower()
    if encoding not in ("quoted-printable", "base64"):
        # Identity encodings: already text
        return content.strip()
    return decode_bytes(decode_payload(content, encoding), charset).strip()


# =============================================================================
# HTML Helpers
# =============================================================================

def ensure_html_wrapper(html: str) -> str:
    """Make sure an HTML fragment is a complete document."""
    lowered = html.lower()
    if "<html" in lowered:
        return html
    head = '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
    if "<body" in lowered:
        return f"{head}{html}</html>"
    return f"{head}<body>{html}</body></html>"


def wrap_plain_text(text: str) -> str:
    """Escape plain text and wrap it in a minimal styled HTML document."""
    escaped = html_lib.escape(text, quote=False)
    escaped = escaped.replace("\r\n", "<br>").replace("\n", "<br>")
    return _PLAIN_TEXT_SHELL.format(body=escaped)


def html_to_text(html: str) -> str:
    """Render HTML to plain text with inscriptis (used for previews)."""
    if not html.strip():
        return ""
    return get_text(_STYLE_RE.sub("", html), _PREVIEW_CONFIG)


def make_preview(text: str, limit: int = PREVIEW_LENGTH) -> str:
    """Strip tags, collapse whitespace and truncate to a one-line preview."""
    text = _TAG_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if len(text) > limit:
        text = text[:limit] + "..."
    return text


def split_message(raw: bytes | str) -> tuple[str, str]:
    """
    Split a full RFC 5322 message into (header block, body).

    Args:
        raw: Full message as fetched with BODY.PEEK[].

    Returns:
        Tuple of header block and body text. The body is empty when the
        message has no blank line separating it from the headers.
    """
    if isinstance(raw, bytes):
        raw = decode_bytes(raw)
    for separator in ("\r\n\r\n", "\n\n"):
        idx = raw.find(separator)
        if idx != -1:
            return raw[:idx], raw[idx + len(separator):]
    return raw, ""


# =============================================================================
# Part Walking
# =============================================================================

@dataclass
class _Candidates:
    """First non-empty HTML and plain-text leaves found during a walk."""
    html: str = ""
    text: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.html and self.text)


class MimeDecoder:
    """
    Decodes a message body into HTML for display and text for previews.

    Usage:
        >>> decoder = MimeDecoder(body, content_type="multipart/alternative; boundary=xyz")
        >>> decoder.html()
        '<!DOCTYPE html>...'
        >>> decoder.preview()
        'Hi Bob, the quarterly numbers are in...'

    Attributes:
        body: Raw body text (everything after the top-level headers).
        content_type: Declared top-level Content-Type, may be empty.
        boundary: Declared multipart boundary, may be empty.
        transfer_encoding: Top-level Content-Transfer-Encoding, may be empty.
    """

    def __init__(
        self,
        body: str | bytes,
        content_type: str = "",
        boundary: str = "",
        transfer_encoding: str = "",
    ) -> None:
        if isinstance(body, bytes):
            body = decode_bytes(body)
        self.body = body
        self.content_type = content_type or ""
        self.boundary = boundary or extract_boundary(self.content_type)
        self.transfer_encoding = transfer_encoding or ""

    @classmethod
    def from_message(cls, raw: bytes | str) -> "MimeDecoder":
        """Build a decoder from a complete message (headers + body)."""
        header_block, body = split_message(raw)
        headers = parse_header_block(header_block)
        content_type = headers.get("content-type", "")
        return cls(
            body,
            content_type=content_type,
            boundary=extract_boundary(content_type),
            transfer_encoding=headers.get("content-transfer-encoding", ""),
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def html(self) -> str:
        """
        Render the body as a complete HTML document.

        Returns:
            HTML leaf if present, else the escaped plain-text leaf, else a
            best-effort scrape of the raw body.
        """
        boundary = self._effective_boundary()

        if boundary and f"--{boundary}" in self.body:
            found = _Candidates()
            self._walk(self.body, boundary, found, depth=0)
            if found.html.strip():
                return ensure_html_wrapper(found.html)
            if found.text.strip():
                return wrap_plain_text(found.text)
            logger.debug("No text leaves in multipart body, scraping")
            return wrap_plain_text(extract_readable_text(self.body))

        charset = extract_charset(self.content_type)
        decoded = decode_transfer(self.body, self.transfer_encoding, charset)
        if "text/html" in self.content_type.lower():
            return ensure_html_wrapper(decoded)
        return wrap_plain_text(decoded)

    def preview(self, limit: int = PREVIEW_LENGTH) -> str:
        """
        Produce a short single-line preview of the message.

        Args:
            limit: Maximum characters before the "..." ellipsis.
        """
        boundary = self._effective_boundary()
        text = ""

        if boundary and f"--{boundary}" in self.body:
            found = _Candidates()
            self._walk(self.body, boundary, found, depth=0)
            text = found.text or html_to_text(found.html)
        elif self.body.strip():
            charset = extract_charset(self.content_type)
            decoded = decode_transfer(self.body, self.transfer_encoding, charset)
            if "text/html" in self.content_type.lower():
                text = html_to_text(decoded)
            else:
                text = decoded

        if not text.strip():
            text = extract_readable_text(self.body)

        return make_preview(text, limit)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _effective_boundary(self) -> str:
        """The declared boundary, or one sniffed from the body."""
        if self.boundary:
            return self.boundary
        match = BODY_BOUNDARY_RE.search(self.body)
        return match.group(1) if match else ""

    def _walk(self, body: str, boundary: str, found: _Candidates, depth: int) -> None:
        """Collect HTML/plain candidates from one multipart level, recursing."""
        if depth > _MAX_DEPTH:
            logger.warning("MIME nesting too deep, giving up on inner parts")
            return

        for part in body.split(f"--{boundary}"):
            if found.complete:
                return

            stripped = part.strip()
            if not stripped or stripped.startswith("--"):
                continue

            header_block, content = _split_part(part)
            if header_block is None:
                continue

            headers = parse_header_block(header_block)
            if "content-type" not in headers:
                continue
            content_type = headers["content-type"].lower()

            content = content.strip()
            if content.endswith("--"):
                content = content[:-2].strip()

            if content_type.startswith("multipart/"):
                nested = extract_boundary(headers.get("content-type", ""))
                if nested:
                    self._walk(content, nested, found, depth + 1)
                continue

            if "text/html" not in content_type and "text/plain" not in content_type:
                continue

            disposition = headers.get("content-disposition", "").lower()
            if disposition.startswith("attachment"):
                continue

            decoded = decode_transfer(
                content,
                headers.get("content-transfer-encoding", ""),
                extract_charset(headers.get("content-type", "")),
            )
            if not decoded.strip():
                continue

            if "text/html" in content_type and not found.html:
                found.html = decoded
            elif "text/plain" in content_type and not found.text:
                found.text = decoded


def _split_part(part: str) -> tuple[str | None, str]:
    """Split a MIME part at the blank line between its headers and body."""
    # Drop the line ending that follows the boundary delimiter itself
    if part.startswith("\r\n"):
        part = part[2:]
    elif part.startswith("\n"):
        part = part[1:]

    for separator in ("\r\n\r\n", "\n\n"):
        idx = part.find(separator)
        if idx != -1:
            return part[:idx], part[idx + len(separator):]
    return None, ""


def extract_readable_text(body: str) -> str:
    """
    Last-resort scrape of human-readable lines from a raw body.

    Skips boundary delimiters and Content-*/MIME-* header lines, starts
    collecting after the first blank line, then quoted-printable decodes.
    """
    lines: list[str] = []
    in_content = False

    for line in re.split(r"\r?\n", body):
        trimmed = line.strip()
        lowered = trimmed.lower()

        if trimmed.startswith("--") and len(trimmed) > 20:
            in_content = False
            continue
        if lowered.startswith("content-") or lowered.startswith("mime-"):
            continue
        if not trimmed and not in_content:
            in_content = True
            continue
        if in_content and trimmed:
            lines.append(line)

    return decode_quoted_printable("\n".join(lines))

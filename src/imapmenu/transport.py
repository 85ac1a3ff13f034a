# =============================================================================
# Protocol Transport
# =============================================================================
# One TCP (optionally TLS) connection speaking a line-oriented protocol.
# Shared by the IMAP client (tagged commands) and the SMTP client (numeric
# replies).
#
# Key responsibilities:
#   - Connect with implicit TLS, or upgrade in place (SMTP STARTTLS)
#   - Generate command tags: A0001, A0002, ...
#   - Read until a response is complete:
#       * IMAP: until "<tag> OK|NO|BAD", skipping {n} literals by length so
#         a tag-looking line inside a message body never ends the read
#       * greeting / IDLE: a single CRLF-terminated line
#       * SMTP: until a reply line with a space in the fourth column
#   - Enforce two ceilings per read: wall-clock timeout and response size
#
# Design notes:
#   - Bytes accumulate in a bytearray and are scanned incrementally; the
#     scanner never revisits bytes it has already classified
#   - Any I/O failure, timeout or oversized response closes the socket and
#     marks the transport dead, so callers reconnect instead of reusing it
#   - One transport is not safe for concurrent commands; send_command holds
#     a lock for the whole request/response exchange
# =============================================================================

import asyncio
import logging
import re
import ssl
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# "{123}" or "{123+}" (LITERAL+) at the end of a line
LITERAL_RE = re.compile(rb"\{(\d+)\+?\}$")


@dataclass
class TaggedReply:
    """Raw bytes of one tagged IMAP exchange, up to and including the tagged line."""
    tag: str
    data: bytes


@dataclass
class SmtpReply:
    """
    A complete (possibly multi-line) SMTP reply.

    Attributes:
        code: Three-digit reply code (e.g., 250).
        lines: Text of each reply line, code and separator stripped.
    """
    code: int
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(self.lines)

    @property
    def is_positive(self) -> bool:
        return 200 <= self.code < 400

    def __str__(self) -> str:
        return f"{self.code} {self.text}"


class TaggedResponseScanner:
    """
    Incremental scanner that finds the end of a tagged IMAP response.

    Feed it the growing receive buffer; it remembers how far it got and
    returns the end offset once "<tag> OK|NO|BAD ..." has been seen at the
    start of a line. Literal payloads are skipped by their declared length.

    Args:
        tag: The command tag being waited for.
        stop_on_continuation: Also complete on a "+" continuation request
                              (used for AUTHENTICATE and IDLE).
    """

    def __init__(self, tag: str, stop_on_continuation: bool = False) -> None:
        self._prefix = tag.encode("ascii") + b" "
        self._stop_on_continuation = stop_on_continuation
        self._pos = 0
        self._at_line_start = True

    def feed(self, buffer: bytearray) -> int | None:
        """
        Scan newly arrived bytes.

        Returns:
            Offset just past the completing line, or None if more data is needed.
        """
        while True:
            eol = buffer.find(b"\r\n", self._pos)
            if eol == -1:
                return None

            segment = bytes(buffer[self._pos:eol])

            if self._at_line_start:
                if segment.startswith(self._prefix):
                    status = segment[len(self._prefix):].split(b" ", 1)[0].upper()
                    if status in (b"OK", b"NO", b"BAD"):
                        return eol + 2
                if self._stop_on_continuation and segment.startswith(b"+"):
                    return eol + 2

            match = LITERAL_RE.search(segment)
            if match:
                literal_end = eol + 2 + int(match.group(1))
                if len(buffer) < literal_end:
                    # Wait for the whole literal before classifying further
                    return None
                self._pos = literal_end
                self._at_line_start = False
            else:
                self._pos = eol + 2
                self._at_line_start = True


class ProtocolTransport:
    """
    A single connection to a mail server.

    Usage:
        >>> transport = ProtocolTransport(timeout=30)
        >>> await transport.connect("imap.example.com", 993, use_tls=True)
        >>> greeting = await transport.read_line()
        >>> reply = await transport.send_command("CAPABILITY")
        >>> await transport.close()

    Attributes:
        timeout: Wall-clock limit for each read or write operation (seconds).
        max_response_size: Byte ceiling for a single response.
    """

    DEFAULT_TIMEOUT = 30.0
    MAX_RESPONSE_SIZE = 5 * 1024 * 1024
    READ_CHUNK = 16 * 1024

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_response_size: int = MAX_RESPONSE_SIZE,
        tag_prefix: str = "A",
    ) -> None:
        self.timeout = timeout
        self.max_response_size = max_response_size
        self.host: str | None = None
        self.port: int | None = None
        self._tag_prefix = tag_prefix
        self._tag_counter = 0
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._buffer = bytearray()
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """False once the socket is closed or any I/O on it has failed."""
        return self._connected and self._writer is not None and not self._writer.is_closing()

    # =========================================================================
    # Connection Lifecycle
    # =========================================================================

    async def connect(
        self,
        host: str,
        port: int,
        use_tls: bool = True,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        """
        Open the connection.

        Args:
            host: Server hostname.
            port: Server port.
            use_tls: Negotiate TLS at socket open (implicit TLS ports).
            ssl_context: Custom TLS context; defaults to system trust store.

        Raises:
            TransportTimeout: If the connection can't be made in time.
            TransportError: If the connection is refused or TLS fails.
        """
        self.host = host
        self.port = port
        context = None
        if use_tls:
            context = ssl_context or ssl.create_default_context()

        logger.debug(f"Opening {'TLS ' if use_tls else ''}connection to {host}:{port}")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=context),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportTimeout(f"Connection to {host}:{port} timed out") from e
        except (OSError, ssl.SSLError) as e:
            raise TransportError(f"Connection to {host}:{port} failed: {e}") from e

        self._buffer.clear()
        self._connected = True

    async def start_tls(self, ssl_context: ssl.SSLContext | None = None) -> None:
        """
        Upgrade the open plain connection to TLS in place.

        Raises:
            TransportError: If not connected or the handshake fails.
        """
        if not self.is_connected:
            raise TransportClosed("Cannot start TLS: not connected")
        if self._buffer:
            # Bytes received before the handshake would be unauthenticated
            await self._abort()
            raise TransportError("Unexpected data before TLS handshake")

        context = ssl_context or ssl.create_default_context()
        logger.debug(f"Upgrading connection to {self.host} to TLS")
        try:
            await asyncio.wait_for(
                self._writer.start_tls(context, server_hostname=self.host),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            await self._abort()
            raise TransportTimeout("TLS handshake timed out") from e
        except (OSError, ssl.SSLError) as e:
            await self._abort()
            raise TransportError(f"TLS handshake failed: {e}") from e

    async def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        self._connected = False
        self._buffer.clear()
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
        except (OSError, ssl.SSLError, asyncio.TimeoutError) as e:
            logger.debug(f"Ignoring error while closing connection: {e}")

    async def _abort(self) -> None:
        """Mark the transport dead and drop the socket."""
        if self._connected:
            logger.debug(f"Connection to {self.host} marked dead")
        await self.close()

    # =========================================================================
    # Writing
    # =========================================================================

    def next_tag(self) -> str:
        """Return the next command tag (A0001, A0002, ...)."""
        self._tag_counter += 1
        return f"{self._tag_prefix}{self._tag_counter:04d}"

    async def write_line(self, line: str | bytes, redact: bool = False) -> None:
        """
        Send one line, appending CRLF.

        Args:
            line: Line content without line ending.
            redact: Don't log the content (credentials).

        Raises:
            TransportClosed: If the connection is not open or the write fails.
            TransportTimeout: If the peer stops reading.
        """
        data = line.encode("utf-8") if isinstance(line, str) else line
        await self.write_raw(data + b"\r\n", log_as="<redacted>" if redact else None)

    async def write_raw(self, data: bytes, log_as: str | None = None) -> None:
        """Send bytes verbatim."""
        if not self.is_connected:
            raise TransportClosed("Not connected")

        if log_as is not None:
            logger.debug(f"> {log_as}")
        elif len(data) <= 200:
            logger.debug(f"> {data.rstrip().decode('utf-8', errors='replace')}")
        else:
            logger.debug(f"> ({len(data)} bytes)")

        try:
            self._writer.write(data)
            await asyncio.wait_for(self._writer.drain(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await self._abort()
            raise TransportTimeout("Write timed out") from e
        except (OSError, ssl.SSLError) as e:
            await self._abort()
            raise TransportClosed(f"Write failed: {e}") from e

    async def send_command(
        self,
        command: str,
        redact: bool = False,
        stop_on_continuation: bool = False,
    ) -> TaggedReply:
        """
        Send a tagged command and read its complete response.

        Args:
            command: Command text without tag (e.g., 'SELECT "INBOX"').
            redact: Log the command verb only (used for LOGIN).
            stop_on_continuation: Return early on a "+" continuation request
                                  (AUTHENTICATE challenges).

        Returns:
            TaggedReply with the raw response bytes.
        """
        async with self._lock:
            tag = self.next_tag()
            if redact:
                verb = command.split(" ", 1)[0]
                await self.write_raw(f"{tag} {command}\r\n".encode("utf-8"), log_as=f"{tag} {verb} ***")
            else:
                await self.write_line(f"{tag} {command}")
            data = await self.read_tagged(tag, stop_on_continuation)
            return TaggedReply(tag=tag, data=data)

    # =========================================================================
    # Reading
    # =========================================================================

    async def read_tagged(self, tag: str, stop_on_continuation: bool = False) -> bytes:
        """
        Read until the tagged completion line for `tag`.

        Args:
            tag: Tag of the outstanding command.
            stop_on_continuation: Return early on a "+" continuation request.

        Returns:
            All bytes up to and including the completing line. Bytes that
            arrived after it stay buffered for the next read.
        """
        scanner = TaggedResponseScanner(tag, stop_on_continuation)
        return await self._read_until(scanner.feed)

    async def read_line(self, timeout: float | None = None) -> bytes:
        """
        Read a single CRLF-terminated line (greeting, IDLE notification).

        Args:
            timeout: Override the default timeout (IDLE waits much longer).
        """
        def find_eol(buffer: bytearray) -> int | None:
            eol = buffer.find(b"\r\n")
            return None if eol == -1 else eol + 2

        return await self._read_until(find_eol, timeout=timeout)

    async def read_smtp_reply(self) -> SmtpReply:
        """
        Read a complete SMTP reply.

        Multi-line replies use "250-..." for all but the final line, which
        has a space in the fourth column ("250 ...").

        Raises:
            TransportError: If the reply isn't a valid SMTP reply.
        """
        lines: list[str] = []
        while True:
            raw = await self.read_line()
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if len(line) < 3 or not line[:3].isdigit():
                await self._abort()
                raise TransportError(f"Malformed SMTP reply: {line!r}")
            lines.append(line[4:])
            if len(line) == 3 or line[3] == " ":
                return SmtpReply(code=int(line[:3]), lines=lines)

    async def _read_until(self, find_end, timeout: float | None = None) -> bytes:
        """
        Fill the buffer until find_end() reports a complete response.

        Enforces the byte ceiling and a single wall-clock deadline for the
        whole read.
        """
        if self._reader is None:
            raise TransportClosed("Not connected")

        budget = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget

        while True:
            end = find_end(self._buffer)
            if end is not None:
                data = bytes(self._buffer[:end])
                del self._buffer[:end]
                return data

            if len(self._buffer) > self.max_response_size:
                size = len(self._buffer)
                await self._abort()
                raise ResponseTooLarge(
                    f"Response too large ({size} bytes, limit {self.max_response_size})"
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                await self._abort()
                raise TransportTimeout(f"No complete response within {budget:.0f}s")

            try:
                chunk = await asyncio.wait_for(self._reader.read(self.READ_CHUNK), timeout=remaining)
            except asyncio.TimeoutError as e:
                await self._abort()
                raise TransportTimeout(f"No complete response within {budget:.0f}s") from e
            except (OSError, ssl.SSLError) as e:
                await self._abort()
                raise TransportClosed(f"Read failed: {e}") from e

            if not chunk:
                await self._abort()
                raise TransportClosed("Connection closed by server")

            self._buffer.extend(chunk)


# =============================================================================
# Exceptions
# =============================================================================

class TransportError(Exception):
    """Base exception for connection-level failures."""
    pass


class TransportClosed(TransportError):
    """Raised when the connection is closed or a read/write fails."""
    pass


class TransportTimeout(TransportError):
    """Raised when a read or write exceeds the timeout."""
    pass


class ResponseTooLarge(TransportError):
    """Raised when a response exceeds the size ceiling."""
    pass

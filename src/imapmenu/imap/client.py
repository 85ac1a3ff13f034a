# =============================================================================
# IMAP Client
# =============================================================================
# A hand-rolled async IMAP4rev1 client on top of ProtocolTransport.
#
# Key responsibilities:
#   - Connection lifecycle: greeting, STARTTLS, LOGIN / AUTHENTICATE XOAUTH2
#   - Folder operations: LIST (modified UTF-7 names), SELECT with an
#     "already selected" short-circuit
#   - UID SEARCH: ALL, SINCE, server-side filter queries, delta above a UID
#   - UID FETCH: header-only batches and full raw messages
#   - UID STORE / EXPUNGE for read, unread and delete
#   - NOOP keep-alive and IDLE push notifications
#
# State machine:
#   Disconnected -> Connected -> Authenticated -> Selected(folder)
#
# Design notes:
#   - Only the subset of IMAP the menubar needs; responses are parsed
#     tolerantly and a malformed message is skipped, never fatal
#   - Transport failures become IMAPError subclasses and leave the client
#     disconnected; reconnecting is the caller's decision (see ConnectionPool)
#   - BODY.PEEK everywhere so fetching never marks mail as read
# =============================================================================

import asyncio
import base64
import logging
import re
import ssl
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

from imapmenu.core import Folder, Message, MessageFlags
from imapmenu.core.message import EPOCH
from imapmenu.imap import utf7
from imapmenu.imap.errors import (
    FetchFailed,
    FolderNotFound,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    IMAPTimeout,
    InvalidResponse,
    NoMessages,
    NotConnected,
)
from imapmenu.imap.response import ImapResponse, UntaggedLine, parse_response
from imapmenu.imap.search import SearchCriteria, quote_string
from imapmenu.mime.headers import (
    decode_bytes,
    decode_encoded_words,
    extract_boundary,
    parse_header_block,
)
from imapmenu.transport import (
    ProtocolTransport,
    ResponseTooLarge,
    TransportError,
    TransportTimeout,
)

if TYPE_CHECKING:
    from imapmenu.core import Account
    from imapmenu.credentials import SecretStore

logger = logging.getLogger(__name__)

_MONTHS = {m: i for i, m in enumerate(
    ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), start=1)}

# 17-Jul-1996 02:44:25 -0700 (day may be space-padded)
INTERNALDATE_RE = re.compile(
    r"^\s*(\d{1,2})-([A-Za-z]{3})-(\d{4}) (\d{2}):(\d{2}):(\d{2}) ([+-])(\d{2})(\d{2})$"
)

_UID_RE = re.compile(r"\bUID (\d+)", re.IGNORECASE)
_FLAGS_RE = re.compile(r"\bFLAGS \(([^)]*)\)", re.IGNORECASE)
_INTERNALDATE_FIELD_RE = re.compile(r'\bINTERNALDATE "([^"]+)"', re.IGNORECASE)
_NOTIFICATION_RE = re.compile(r"^\*\s+\d+\s+(EXISTS|EXPUNGE|RECENT|FETCH)\b", re.IGNORECASE)
_LIST_RE = re.compile(r'^LIST \(([^)]*)\) (NIL|"(?:[^"\\]|\\.)*") (.+)$', re.IGNORECASE)
_RESP_CODE_RE = re.compile(r"\[(UIDVALIDITY|UIDNEXT|HIGHESTMODSEQ) (\d+)\]", re.IGNORECASE)


def parse_internaldate(value: str) -> datetime | None:
    """
    Parse an IMAP INTERNALDATE ("17-Jul-1996 02:44:25 -0700").

    Month names are matched in English regardless of locale.

    Returns:
        A timezone-aware datetime, or None if the value is malformed.
    """
    match = INTERNALDATE_RE.match(value)
    if not match:
        return None
    day, mon, year, hh, mm, ss, sign, tzh, tzm = match.groups()
    month = _MONTHS.get(mon.lower())
    if month is None:
        return None
    offset = timedelta(hours=int(tzh), minutes=int(tzm))
    if sign == "-":
        offset = -offset
    try:
        return datetime(int(year), month, int(day), int(hh), int(mm), int(ss),
                        tzinfo=timezone(offset))
    except ValueError:
        return None


def _unquote(value: str) -> str:
    """Strip IMAP string quoting from a LIST name or delimiter."""
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Socket open and greeting received.
        authenticated: Login succeeded.
        selected_folder: Currently selected folder path, if any.
        capabilities: Upper-cased capability atoms.
        uidvalidity: UIDVALIDITY of the selected folder.
    """
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    capabilities: list[str] = field(default_factory=list)
    uidvalidity: int | None = None


@dataclass
class SelectResult:
    """Mailbox status returned by SELECT."""
    exists: int = 0
    recent: int = 0
    uidvalidity: int | None = None
    uid_next: int | None = None
    highest_modseq: int | None = None


class IMAPClient:
    """
    Async IMAP client for the mail engine.

    Usage:
        >>> client = IMAPClient(account, secrets=KeyringSecretStore())
        >>> await client.connect()
        >>> await client.select_folder("INBOX")
        >>> uids = await client.search(SearchCriteria.all())
        >>> messages = await client.fetch_headers(uids[-20:], "personal:INBOX")
        >>> await client.disconnect()

    Attributes:
        account: The Account configuration for this connection.
        state: Current connection state.
    """

    # Timeout for each read/write (seconds)
    TIMEOUT = 30

    # UIDs per FETCH command on the single-connection path
    BATCH_SIZE = 100

    # Headers requested by fetch_headers()
    HEADER_FIELDS = (
        "FROM", "TO", "SUBJECT", "DATE", "MESSAGE-ID",
        "CONTENT-TYPE", "CONTENT-TRANSFER-ENCODING", "REFERENCES",
    )

    def __init__(
        self,
        account: "Account",
        secrets: "SecretStore | None" = None,
        *,
        timeout: float = TIMEOUT,
        max_response_size: int = ProtocolTransport.MAX_RESPONSE_SIZE,
        batch_size: int = BATCH_SIZE,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        """
        Initialize the IMAP client.

        Args:
            account: Account configuration with IMAP server details.
            secrets: Where to look up the password or access token.
            timeout: Per-operation read/write timeout in seconds.
            max_response_size: Byte ceiling for a single response.
            batch_size: UIDs per FETCH in fetch_headers().
            ssl_context: Custom TLS context (tests, self-signed servers).
        """
        self.account = account
        self.secrets = secrets
        self.batch_size = batch_size
        self.state = ConnectionState()
        self._ssl_context = ssl_context
        self._transport = ProtocolTransport(timeout=timeout, max_response_size=max_response_size)
        self._select_result: SelectResult | None = None
        self._idle_tag: str | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected, authenticated and the socket is alive."""
        return self.state.connected and self.state.authenticated and self._transport.is_connected

    @property
    def is_idling(self) -> bool:
        return self._idle_tag is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, secret: str | None = None) -> None:
        """
        Connect, negotiate TLS and log in.

        Args:
            secret: Password or OAuth2 access token. Looked up in the secret
                    store when not given.

        Raises:
            IMAPConnectionError: If unable to reach the server.
            IMAPAuthenticationError: If login fails or no secret is available.
            IMAPTimeout: If the server doesn't answer in time.
        """
        host, port = self.account.imap_host, self.account.imap_port
        logger.info(f"Connecting to {host}:{port}")

        if secret is None and self.secrets is not None:
            secret = self.secrets.get(self.account.key)
        if not secret:
            raise IMAPAuthenticationError(
                f"No password stored for {self.account.key}. "
                f"Set it with: imapmenu set-password {self.account.name}"
            )

        try:
            await self._transport.connect(
                host,
                port,
                use_tls=self.account.imap_security == "ssl",
                ssl_context=self._ssl_context,
            )
            greeting = (await self._transport.read_line()).decode("utf-8", errors="replace").strip()
        except TransportError as e:
            raise self._translate(e) from e

        logger.debug(f"Greeting: {greeting}")
        if greeting.upper().startswith("* BYE"):
            await self._transport.close()
            raise IMAPConnectionError(f"Server refused connection: {greeting}")
        if not greeting.upper().startswith(("* OK", "* PREAUTH")):
            await self._transport.close()
            raise InvalidResponse(f"Unexpected greeting: {greeting}")

        self.state.connected = True

        try:
            await self.capability()

            if self.account.imap_security == "starttls":
                await self._starttls()

            await self._authenticate(secret)
            # Servers often advertise more after login
            await self.capability()
        except IMAPError:
            await self._close_transport()
            raise

        logger.info(f"Successfully connected to {host}")

    async def _starttls(self) -> None:
        """Upgrade a plain connection with STARTTLS."""
        if not self.has_capability("STARTTLS"):
            raise IMAPConnectionError("Server does not support STARTTLS")
        response = await self._execute("STARTTLS")
        if not response.ok:
            raise IMAPConnectionError(f"STARTTLS rejected: {response.text}")
        try:
            await self._transport.start_tls(self._ssl_context)
        except TransportError as e:
            raise self._translate(e) from e
        # Capabilities must be re-read after the upgrade
        await self.capability()

    async def _authenticate(self, secret: str) -> None:
        """
        Log in with LOGIN or AUTHENTICATE XOAUTH2.

        Raises:
            IMAPAuthenticationError: If the server rejects the credentials.
        """
        username = self.account.username
        logger.debug(f"Authenticating as {username} ({self.account.auth_method})")

        if self.account.uses_oauth:
            if not self.has_capability("AUTH=XOAUTH2"):
                raise IMAPAuthenticationError("Server does not support XOAUTH2")
            token = f"user={username}\x01auth=Bearer {secret}\x01\x01"
            encoded = base64.b64encode(token.encode("utf-8")).decode("ascii")
            response = await self._execute(
                f"AUTHENTICATE XOAUTH2 {encoded}", redact=True, stop_on_continuation=True
            )
            if response.is_continuation:
                # Error details come base64'd in the challenge; an empty
                # line makes the server finish with NO
                detail = response.text
                try:
                    await self._transport.write_line("")
                    await self._transport.read_tagged(response.tag)
                except TransportError as e:
                    raise self._translate(e) from e
                raise IMAPAuthenticationError(f"XOAUTH2 rejected for {username}: {detail}")
        else:
            response = await self._execute(
                f"LOGIN {quote_string(username)} {quote_string(secret)}", redact=True
            )

        if not response.ok:
            raise IMAPAuthenticationError(f"{username}: {response.text or response.status}")

        self.state.authenticated = True
        logger.debug("Authentication successful")

    async def capability(self) -> list[str]:
        """Issue CAPABILITY and remember the result."""
        response = await self._execute("CAPABILITY")
        capabilities: list[str] = []
        for line in response.lines("CAPABILITY"):
            capabilities.extend(atom.upper() for atom in line.text.split()[1:])
        if capabilities:
            self.state.capabilities = capabilities
        logger.debug(f"Server capabilities: {self.state.capabilities}")
        return self.state.capabilities

    def has_capability(self, name: str) -> bool:
        return name.upper() in self.state.capabilities

    def supports_idle(self) -> bool:
        """Check if server supports IDLE command."""
        return self.has_capability("IDLE")

    async def disconnect(self) -> None:
        """
        Gracefully disconnect from the IMAP server.

        Sends LOGOUT when the connection is still usable; always closes.
        """
        if self._transport.is_connected and self.state.connected and not self.is_idling:
            try:
                logger.debug("Sending LOGOUT")
                await self._execute("LOGOUT")
            except IMAPError as e:
                logger.warning(f"Error during logout: {e}")
        await self._close_transport()

    async def logout(self) -> None:
        await self.disconnect()

    async def _close_transport(self) -> None:
        await self._transport.close()
        self.state = ConnectionState()
        self._select_result = None
        self._idle_tag = None

    # =========================================================================
    # Command Execution
    # =========================================================================

    async def _execute(
        self,
        command: str,
        redact: bool = False,
        stop_on_continuation: bool = False,
    ) -> ImapResponse:
        """Send a tagged command and parse its response."""
        if not self._transport.is_connected:
            self.state = ConnectionState()
            raise NotConnected()
        if self.is_idling:
            raise InvalidResponse("Connection is in IDLE; call idle_done() first")

        try:
            reply = await self._transport.send_command(
                command, redact=redact, stop_on_continuation=stop_on_continuation
            )
        except TransportError as e:
            self.state = ConnectionState()
            raise self._translate(e) from e

        response = parse_response(reply.data, reply.tag)
        if response.status == "BAD":
            logger.warning(f"Server rejected command as BAD: {response.text}")
        return response

    def _require_authenticated(self) -> None:
        if not self.is_connected:
            raise NotConnected()

    @staticmethod
    def _translate(error: TransportError) -> IMAPError:
        """Map a transport failure to the IMAP error taxonomy."""
        if isinstance(error, TransportTimeout):
            return IMAPTimeout()
        if isinstance(error, ResponseTooLarge):
            return FetchFailed("Response too large")
        return IMAPConnectionError(str(error))

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def list_folders(self) -> list[Folder]:
        """
        List all folders with LIST "" "*".

        Returns:
            Folders sorted by decoded name.
        """
        self._require_authenticated()
        response = await self._execute('LIST "" "*"')
        if not response.ok:
            raise InvalidResponse(f"LIST failed: {response.text}")

        folders = []
        for line in response.lines("LIST"):
            folder = self._parse_list_line(line)
            if folder:
                folders.append(folder)

        folders.sort(key=lambda f: f.name)
        logger.debug(f"Found {len(folders)} folders")
        return folders

    def _parse_list_line(self, line: UntaggedLine) -> Folder | None:
        """
        Parse a single LIST response into a Folder.

        Format:
            LIST (\\HasNoChildren) "/" "INBOX"
            LIST (\\HasNoChildren \\Sent) "." Sent
            LIST () "/" {12}        (name follows as a literal)
        """
        match = _LIST_RE.match(line.text)
        if not match:
            logger.warning(f"Could not parse folder line: {line.text}")
            return None

        flags_str, delimiter, raw_name = match.groups()
        flags = flags_str.split()
        delimiter = "" if delimiter.upper() == "NIL" else _unquote(delimiter)

        if re.fullmatch(r"\{\d+\+?\}", raw_name.strip()) and line.literals:
            raw_name = decode_bytes(line.literals[0])
        else:
            raw_name = _unquote(raw_name.strip())

        name = utf7.decode(raw_name)
        if name in ("", "/", "."):
            return None

        return Folder(
            name=name,
            folder_type=Folder.detect_type(name, flags),
            delimiter=delimiter,
            flags=flags,
        )

    async def select_folder(self, path: str, force: bool = False) -> SelectResult:
        """
        Select a folder for subsequent UID commands.

        A no-op when the folder is already selected, unless forced.

        Args:
            path: Decoded folder path.
            force: Re-issue SELECT even if already selected (refreshes EXISTS).

        Returns:
            SelectResult with EXISTS, RECENT, UIDVALIDITY, UIDNEXT.

        Raises:
            FolderNotFound: If the server answers NO or BAD.
        """
        self._require_authenticated()

        if not force and self.state.selected_folder == path and self._select_result:
            return self._select_result

        logger.debug(f"Selecting folder: {path}")
        response = await self._execute(f"SELECT {quote_string(utf7.encode(path))}")

        if not response.ok:
            self.state.selected_folder = None
            self._select_result = None
            raise FolderNotFound(path)

        result = SelectResult()
        for line in response.untagged:
            parts = line.text.split()
            if len(parts) >= 2 and parts[0].isdigit():
                if parts[1].upper() == "EXISTS":
                    result.exists = int(parts[0])
                elif parts[1].upper() == "RECENT":
                    result.recent = int(parts[0])
            for code, value in _RESP_CODE_RE.findall(line.text):
                code = code.upper()
                if code == "UIDVALIDITY":
                    result.uidvalidity = int(value)
                elif code == "UIDNEXT":
                    result.uid_next = int(value)
                else:
                    result.highest_modseq = int(value)

        if self.state.uidvalidity is not None and result.uidvalidity != self.state.uidvalidity:
            logger.info(f"UIDVALIDITY changed for {path}")

        self.state.selected_folder = path
        self.state.uidvalidity = result.uidvalidity
        self._select_result = result
        logger.debug(f"Selected folder: {path}, {result}")
        return result

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, criteria: SearchCriteria | str | None = None) -> list[int]:
        """
        Run UID SEARCH in the selected folder.

        Args:
            criteria: SearchCriteria (or a raw SEARCH string). Defaults to ALL.

        Returns:
            Matching UIDs, ascending and unique.

        Raises:
            FetchFailed: If the server rejects the search.
        """
        self._require_authenticated()
        if self.state.selected_folder is None:
            raise InvalidResponse("No folder selected")

        criteria = criteria or SearchCriteria.all()
        response = await self._execute(f"UID SEARCH {criteria}")
        if not response.ok:
            raise FetchFailed(f"SEARCH failed: {response.text}")

        uids: set[int] = set()
        for line in response.lines("SEARCH"):
            for token in line.text.split()[1:]:
                if token.isdigit() and int(token) > 0:
                    uids.add(int(token))

        result = sorted(uids)
        logger.debug(f"SEARCH {criteria}: {len(result)} UIDs")
        return result

    async def search_since_uid(self, watermark: int) -> list[int]:
        """
        Delta search: UIDs strictly greater than `watermark`.

        "UID n:*" always matches at least the highest UID in the folder,
        even when it's below n, so the result is filtered here as well.
        """
        uids = await self.search(SearchCriteria.after_uid(watermark))
        return [uid for uid in uids if uid > watermark]

    # =========================================================================
    # Fetch
    # =========================================================================

    async def fetch_headers(
        self,
        uids: list[int],
        folder_key: str = "",
        batch_size: int | None = None,
    ) -> list[Message]:
        """
        Fetch header-only messages for the given UIDs.

        Args:
            uids: UIDs to fetch, in the order batches should be issued.
            folder_key: Cache key stamped on each Message.
            batch_size: UIDs per FETCH (default: self.batch_size).

        Returns:
            Parsed messages; malformed entries are skipped.
        """
        messages: list[Message] = []
        async for batch in self.iter_header_batches(uids, folder_key, batch_size):
            messages.extend(batch)
        return messages

    async def iter_header_batches(
        self,
        uids: list[int],
        folder_key: str = "",
        batch_size: int | None = None,
    ) -> AsyncIterator[list[Message]]:
        """
        Fetch headers batch by batch, yielding each batch as it arrives.

        Yields:
            A list of Messages per FETCH command.
        """
        self._require_authenticated()
        if self.state.selected_folder is None:
            raise InvalidResponse("No folder selected")

        size = batch_size or self.batch_size
        fields = " ".join(self.HEADER_FIELDS)
        for start in range(0, len(uids), size):
            batch = uids[start:start + size]
            uid_list = ",".join(str(uid) for uid in batch)
            response = await self._execute(
                f"UID FETCH {uid_list} (UID FLAGS INTERNALDATE BODY.PEEK[HEADER.FIELDS ({fields})])"
            )
            if not response.ok:
                raise FetchFailed(f"FETCH failed: {response.text}")

            # Servers may report other messages (flag changes, new mail) mid-command
            requested = set(batch)
            messages = []
            for line in response.lines("FETCH"):
                message = self._parse_header_fetch(line, folder_key)
                if message is None:
                    continue
                if message.uid not in requested:
                    logger.debug(f"Ignoring unsolicited FETCH for UID {message.uid}")
                    continue
                requested.discard(message.uid)
                messages.append(message)

            logger.debug(f"Fetched {len(messages)}/{len(batch)} headers")
            yield messages

    def _parse_header_fetch(self, line: UntaggedLine, folder_key: str) -> Message | None:
        """Build a Message from one FETCH response, or None if it's unusable."""
        uid_match = _UID_RE.search(line.text)
        uid = int(uid_match.group(1)) if uid_match else 0
        if uid == 0:
            logger.debug(f"Skipping FETCH response without UID: {line.text[:80]}")
            return None

        flags_match = _FLAGS_RE.search(line.text)
        flags = MessageFlags.parse(flags_match.group(1)) if flags_match else MessageFlags.NONE

        header_block = decode_bytes(line.literals[0]) if line.literals else ""
        headers = parse_header_block(header_block)

        date = None
        date_match = _INTERNALDATE_FIELD_RE.search(line.text)
        if date_match:
            date = parse_internaldate(date_match.group(1))
        if date is None and headers.get("date"):
            try:
                date = parsedate_to_datetime(headers["date"])
            except (TypeError, ValueError):
                date = None
        if date is not None and date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)

        content_type = headers.get("content-type", "")
        references = headers.get("references", "").split()

        return Message(
            uid=uid,
            folder_key=folder_key,
            subject=decode_encoded_words(headers.get("subject", "")).strip() or "No Subject",
            from_=decode_encoded_words(headers.get("from", "")).strip() or "Unknown Sender",
            to=decode_encoded_words(headers.get("to", "")).strip(),
            date=date or EPOCH,
            content_type=content_type,
            boundary=extract_boundary(content_type),
            transfer_encoding=headers.get("content-transfer-encoding", ""),
            message_id=headers.get("message-id", ""),
            references=references,
            flags=flags,
        )

    async def fetch_full_message(self, uid: int) -> bytes:
        """
        Fetch the complete raw message with BODY.PEEK[].

        Returns:
            Exactly the bytes of the {n} literal.

        Raises:
            FetchFailed: If the message doesn't exist or has no body literal.
        """
        self._require_authenticated()
        response = await self._execute(f"UID FETCH {uid} (BODY.PEEK[])")
        if not response.ok:
            raise FetchFailed(f"FETCH {uid} failed: {response.text}")

        for line in response.lines("FETCH"):
            uid_match = _UID_RE.search(line.text)
            if uid_match and int(uid_match.group(1)) != uid:
                continue
            if line.literals:
                return line.literals[0]

        raise FetchFailed(f"Message {uid} not found")

    async def fetch_emails(
        self,
        folder_path: str,
        folder_key: str,
        limit: int,
        criteria: SearchCriteria | None = None,
        raise_if_empty: bool = False,
    ) -> list[Message]:
        """
        Select, search and fetch the newest `limit` messages.

        Args:
            folder_path: Folder to select.
            folder_key: Cache key stamped on each Message.
            limit: Keep at most this many of the highest UIDs.
            criteria: Search criteria (default ALL).
            raise_if_empty: Raise NoMessages instead of returning [].

        Returns:
            Messages sorted by receive time, newest first.
        """
        await self.select_folder(folder_path)
        uids = await self.search(criteria)
        if not uids:
            if raise_if_empty:
                raise NoMessages()
            return []

        newest = sorted(uids, reverse=True)[:limit] if limit > 0 else sorted(uids, reverse=True)
        messages = await self.fetch_headers(newest, folder_key)
        messages.sort(key=lambda m: m.date, reverse=True)
        return messages

    async def fetch_since(
        self,
        folder_path: str,
        folder_key: str,
        watermark: int,
        limit: int = 0,
    ) -> list[Message]:
        """Delta fetch: messages with UID above `watermark`, newest first."""
        await self.select_folder(folder_path, force=True)
        uids = await self.search_since_uid(watermark)
        if not uids:
            return []
        newest = sorted(uids, reverse=True)
        if limit > 0:
            newest = newest[:limit]
        messages = await self.fetch_headers(newest, folder_key)
        messages.sort(key=lambda m: m.date, reverse=True)
        return messages

    # =========================================================================
    # Flags and Deletion
    # =========================================================================

    async def store_flag(self, uid: int, flag: str, add: bool = True) -> None:
        """
        Add or remove a flag on one message.

        Args:
            uid: Message UID in the selected folder.
            flag: Flag atom, e.g. "\\Seen" or "\\Deleted".
            add: True for +FLAGS, False for -FLAGS.

        Raises:
            IMAPError: If the server rejects the STORE.
        """
        self._require_authenticated()
        op = "+FLAGS" if add else "-FLAGS"
        response = await self._execute(f"UID STORE {uid} {op} ({flag})")
        if not response.ok:
            raise IMAPError(f"Flag update failed for {uid}: {response.text}")

    async def mark_read(self, uid: int) -> None:
        await self.store_flag(uid, "\\Seen", add=True)

    async def mark_unread(self, uid: int) -> None:
        await self.store_flag(uid, "\\Seen", add=False)

    async def delete_message(self, uid: int) -> None:
        """
        Flag a message \\Deleted and expunge it.

        If EXPUNGE fails the flag is cleared again, so the message doesn't
        disappear on the next EXPUNGE from some other client.

        Raises:
            IMAPError: If the STORE or the EXPUNGE is rejected.
        """
        await self.store_flag(uid, "\\Deleted", add=True)
        try:
            await self.expunge()
        except IMAPError:
            try:
                await self.store_flag(uid, "\\Deleted", add=False)
            except IMAPError as e:
                logger.warning(f"Could not clear \\Deleted on {uid}: {e}")
            raise

    async def expunge(self) -> None:
        self._require_authenticated()
        response = await self._execute("EXPUNGE")
        if not response.ok:
            raise IMAPError(f"EXPUNGE failed: {response.text}")

    async def noop(self) -> None:
        """Keep-alive. Raises if the connection has died."""
        self._require_authenticated()
        response = await self._execute("NOOP")
        if not response.ok:
            raise InvalidResponse(f"NOOP failed: {response.text}")

    # =========================================================================
    # IDLE Support
    # =========================================================================

    async def idle_start(self, folder_path: str) -> None:
        """
        Enter IDLE mode on a folder.

        Selects the folder and starts IDLE. Use idle_wait() to wait for
        changes, then idle_done() to leave IDLE before any other command.

        Raises:
            InvalidResponse: If the server doesn't support or refuses IDLE.
        """
        if not self.supports_idle():
            raise InvalidResponse("Server does not support IDLE")

        await self.select_folder(folder_path)

        tag = self._transport.next_tag()
        logger.debug(f"Entering IDLE mode on {folder_path}")
        try:
            await self._transport.write_line(f"{tag} IDLE")
            data = await self._transport.read_tagged(tag, stop_on_continuation=True)
        except TransportError as e:
            self.state = ConnectionState()
            raise self._translate(e) from e

        response = parse_response(data, tag)
        if not response.is_continuation:
            raise InvalidResponse(f"IDLE failed: {response}")
        self._idle_tag = tag

    async def idle_wait(self, timeout: float = 29 * 60) -> list[str]:
        """
        Wait for an IDLE notification.

        Args:
            timeout: Seconds to wait before giving up (RFC 2177 suggests
                     re-issuing IDLE at least every 29 minutes).

        Returns:
            Notification strings such as "3 EXISTS" (without "* "), or an
            empty list on timeout.
        """
        if not self.is_idling:
            raise InvalidResponse("Not in IDLE")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("IDLE timeout - refreshing connection")
                return []
            try:
                # The outer wait_for cancels the read without tearing the
                # connection down; the transport's own deadline is looser
                raw = await asyncio.wait_for(self._transport.read_line(timeout=remaining + 60), remaining)
            except TimeoutError:
                logger.debug("IDLE timeout - refreshing connection")
                return []
            except TransportError as e:
                self.state = ConnectionState()
                self._idle_tag = None
                raise self._translate(e) from e

            line = raw.decode("utf-8", errors="replace").strip()
            if _NOTIFICATION_RE.match(line):
                logger.debug(f"IDLE notification: {line}")
                return [line[1:].strip()]
            if line.upper().startswith("* BYE"):
                self._idle_tag = None
                await self._close_transport()
                raise IMAPConnectionError(f"Server closed IDLE: {line}")
            logger.debug(f"Ignoring IDLE line: {line}")

    async def idle_done(self) -> None:
        """
        Exit IDLE mode.

        Must be called after idle_wait() before issuing other commands.
        """
        if not self.is_idling:
            return
        tag, self._idle_tag = self._idle_tag, None
        try:
            await self._transport.write_line("DONE")
            data = await self._transport.read_tagged(tag)
        except TransportError as e:
            self.state = ConnectionState()
            raise self._translate(e) from e

        response = parse_response(data, tag)
        if not response.ok:
            logger.warning(f"IDLE ended with {response.status}: {response.text}")

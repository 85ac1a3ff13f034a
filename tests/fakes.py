# =============================================================================
# Fake Mail Servers
# =============================================================================
# Small in-process IMAP and SMTP servers on asyncio streams, good enough to
# drive the real clients end to end:
#
#   - FakeIMAPServer: mailboxes of raw messages, LOGIN / XOAUTH2, SELECT,
#     LIST, UID SEARCH / FETCH / STORE, EXPUNGE, NOOP, IDLE, LOGOUT
#   - FakeSMTPServer: EHLO, AUTH PLAIN / LOGIN, MAIL / RCPT / DATA / RSET, QUIT
#   - ScriptedServer: replies to each line with canned bytes (transport tests)
#
# Every server records the commands it received so tests can assert on the
# conversation, and can be told to fail, stall or drop specific commands.
# =============================================================================

import asyncio
import base64
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_QUOTED_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')

BASE_DATE = datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


def internaldate(value: datetime) -> str:
    offset = value.utcoffset() or timedelta(0)
    minutes = int(offset.total_seconds() // 60)
    sign = "-" if minutes < 0 else "+"
    minutes = abs(minutes)
    return (
        f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year} "
        f"{value:%H:%M:%S} {sign}{minutes // 60:02d}{minutes % 60:02d}"
    )


def make_raw(
    subject: str = "Hello",
    from_: str = "Alice <alice@example.com>",
    to: str = "test@example.com",
    body: str = "Hi there",
    date: datetime = BASE_DATE,
    headers: dict[str, str] | None = None,
) -> bytes:
    """Build a simple RFC 5322 message with CRLF line endings."""
    lines = [
        f"From: {from_}",
        f"To: {to}",
        f"Subject: {subject}",
        f"Date: {date:%a, %d %b %Y %H:%M:%S +0000}",
        f"Message-ID: <{abs(hash((subject, date)))}@example.com>",
    ]
    for name, value in (headers or {"Content-Type": "text/plain; charset=utf-8"}).items():
        lines.append(f"{name}: {value}")
    text = "\r\n".join(lines) + "\r\n\r\n" + body.replace("\r\n", "\n").replace("\n", "\r\n")
    return text.encode("utf-8")


class MemorySecretStore:
    """SecretStore backed by a dict."""

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self.secrets = dict(secrets or {})

    def get(self, account_key: str) -> str | None:
        return self.secrets.get(account_key)

    def set(self, account_key: str, secret: str) -> None:
        self.secrets[account_key] = secret

    def delete(self, account_key: str) -> None:
        self.secrets.pop(account_key, None)


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


class _BaseServer:
    """asyncio server bookkeeping shared by the fakes."""

    def __init__(self) -> None:
        self.host = "127.0.0.1"
        self.port = 0
        self.connections = 0
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._accept, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self._stopping.set()
        await self.drop_all()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def drop_all(self) -> None:
        """Close every client connection from the server side."""
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        await asyncio.sleep(0.01)

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.add(writer)
        try:
            await self.handle(reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        raise NotImplementedError


# =============================================================================
# IMAP
# =============================================================================

@dataclass
class FakeMessage:
    uid: int
    raw: bytes
    date: datetime
    flags: set[str] = field(default_factory=set)

    @property
    def header_block(self) -> bytes:
        end = self.raw.find(b"\r\n\r\n")
        return self.raw if end == -1 else self.raw[:end + 4]


class FakeIMAPServer(_BaseServer):
    """
    Minimal IMAP4rev1 server.

    Mailboxes are keyed by their wire (modified UTF-7) names.

    Attributes:
        fail: Verb ("UID FETCH", "SELECT", ...) -> text of a NO reply.
        stall: Verbs that never get an answer.
        drop: Verbs that make the server close the connection.
        fetch_delay: Seconds to sleep before answering UID FETCH.
        extra_fetch_uids: UIDs sent back on every UID FETCH whether asked
            for or not, like a server reporting other messages mid-command.
    """

    def __init__(
        self,
        username: str = "test@example.com",
        password: str = "secret",
        capabilities: tuple[str, ...] = ("IMAP4rev1", "IDLE", "UIDPLUS", "AUTH=PLAIN"),
        greeting: str = "* OK Fake IMAP ready",
    ) -> None:
        super().__init__()
        self.username = username
        self.password = password
        self.capabilities = list(capabilities)
        self.greeting = greeting
        self.mailboxes: dict[str, list[FakeMessage]] = {"INBOX": []}
        self.commands: list[str] = []
        self.fail: dict[str, str] = {}
        self.stall: set[str] = set()
        self.drop: set[str] = set()
        self.fetch_delay = 0.0
        self.extra_fetch_uids: set[int] = set()
        self.idlers: set[asyncio.StreamWriter] = set()
        self.active_fetches = 0
        self.max_concurrent_fetches = 0
        self._next_uid: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Mailbox setup
    # -------------------------------------------------------------------------

    def add_message(
        self,
        folder: str = "INBOX",
        raw: bytes | None = None,
        flags: tuple[str, ...] = (),
        date: datetime | None = None,
        **fields,
    ) -> FakeMessage:
        """Append a message; INTERNALDATE increases with UID unless given."""
        box = self.mailboxes.setdefault(folder, [])
        uid = self._next_uid.get(folder, 1)
        self._next_uid[folder] = uid + 1
        date = date or BASE_DATE + timedelta(minutes=uid)
        if raw is None:
            fields.setdefault("subject", f"Message {uid}")
            raw = make_raw(date=date, **fields)
        message = FakeMessage(uid=uid, raw=raw, date=date, flags=set(flags))
        box.append(message)
        return message

    def add_messages(self, count: int, folder: str = "INBOX") -> list[FakeMessage]:
        return [self.add_message(folder) for _ in range(count)]

    def messages(self, folder: str = "INBOX") -> list[FakeMessage]:
        return self.mailboxes.get(folder, [])

    def commands_with(self, verb: str) -> list[str]:
        return [c for c in self.commands if c.startswith(verb)]

    async def push(self, line: str) -> None:
        """Send an untagged line to every client in IDLE."""
        for writer in list(self.idlers):
            writer.write(f"* {line}\r\n".encode("utf-8"))
            await writer.drain()

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        state = {"selected": None, "idle_tag": None}
        writer.write(f"{self.greeting}\r\n".encode("utf-8"))
        await writer.drain()

        while True:
            line = await reader.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")

            if state["idle_tag"] is not None:
                if text.upper() == "DONE":
                    self.idlers.discard(writer)
                    await self._send(writer, f"{state['idle_tag']} OK IDLE terminated")
                    state["idle_tag"] = None
                continue

            tag, _, rest = text.partition(" ")
            verb, _, args = rest.partition(" ")
            verb = verb.upper()
            if verb == "UID":
                sub, _, args = args.partition(" ")
                verb = f"UID {sub.upper()}"
            self.commands.append(f"{verb} {args}".strip())

            if verb in self.drop:
                return
            if verb in self.stall:
                await self._stopping.wait()
                return
            if verb in self.fail:
                await self._send(writer, f"{tag} NO {self.fail[verb]}")
                continue

            handler = getattr(self, "_cmd_" + verb.lower().replace(" ", "_"), None)
            if handler is None:
                await self._send(writer, f"{tag} BAD Unknown command")
                continue
            if await handler(tag, args, writer, reader, state) is False:
                return

    async def _send(self, writer: asyncio.StreamWriter, *lines: str | bytes) -> None:
        for line in lines:
            writer.write(line if isinstance(line, bytes) else f"{line}\r\n".encode("utf-8"))
        await writer.drain()

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def _cmd_capability(self, tag, args, writer, reader, state):
        await self._send(writer, f"* CAPABILITY {' '.join(self.capabilities)}", f"{tag} OK CAPABILITY completed")

    async def _cmd_login(self, tag, args, writer, reader, state):
        values = [v.replace('\\"', '"').replace("\\\\", "\\") for v in _QUOTED_RE.findall(args)]
        if values == [self.username, self.password]:
            await self._send(writer, f"{tag} OK LOGIN completed")
        else:
            await self._send(writer, f"{tag} NO [AUTHENTICATIONFAILED] Invalid credentials")

    async def _cmd_authenticate(self, tag, args, writer, reader, state):
        mechanism, _, payload = args.partition(" ")
        token = base64.b64decode(payload).decode("utf-8")
        if token == f"user={self.username}\x01auth=Bearer {self.password}\x01\x01":
            await self._send(writer, f"{tag} OK AUTHENTICATE completed")
            return
        challenge = base64.b64encode(b'{"status":"401"}').decode("ascii")
        await self._send(writer, f"+ {challenge}")
        await reader.readline()
        await self._send(writer, f"{tag} NO [AUTHENTICATIONFAILED] Invalid token")

    async def _cmd_select(self, tag, args, writer, reader, state):
        name = _QUOTED_RE.match(args).group(1) if args.startswith('"') else args
        if name not in self.mailboxes:
            state["selected"] = None
            await self._send(writer, f"{tag} NO Mailbox does not exist")
            return
        state["selected"] = name
        box = self.mailboxes[name]
        await self._send(
            writer,
            f"* {len(box)} EXISTS",
            "* 0 RECENT",
            "* OK [UIDVALIDITY 42] UIDs valid",
            f"* OK [UIDNEXT {self._next_uid.get(name, 1)}] Predicted next UID",
            "* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
            f"{tag} OK [READ-WRITE] SELECT completed",
        )

    async def _cmd_list(self, tag, args, writer, reader, state):
        lines = [f'* LIST (\\HasNoChildren) "/" "{name}"' for name in self.mailboxes]
        await self._send(writer, *lines, f"{tag} OK LIST completed")

    async def _cmd_noop(self, tag, args, writer, reader, state):
        await self._send(writer, f"{tag} OK NOOP completed")

    async def _cmd_logout(self, tag, args, writer, reader, state):
        await self._send(writer, "* BYE Logging out", f"{tag} OK LOGOUT completed")
        return False

    async def _cmd_idle(self, tag, args, writer, reader, state):
        state["idle_tag"] = tag
        self.idlers.add(writer)
        await self._send(writer, "+ idling")

    async def _cmd_expunge(self, tag, args, writer, reader, state):
        box = self.mailboxes[state["selected"]]
        lines = []
        for seq in range(len(box), 0, -1):
            if "\\Deleted" in box[seq - 1].flags:
                del box[seq - 1]
                lines.append(f"* {seq} EXPUNGE")
        await self._send(writer, *lines, f"{tag} OK EXPUNGE completed")

    async def _cmd_uid_search(self, tag, args, writer, reader, state):
        box = self.mailboxes[state["selected"]]
        uids = self._search(box, args.strip())
        await self._send(writer, "* SEARCH " + " ".join(str(u) for u in uids), f"{tag} OK SEARCH completed")

    async def _cmd_uid_store(self, tag, args, writer, reader, state):
        box = self.mailboxes[state["selected"]]
        uid_set, op, flag_list = args.split(" ", 2)
        flags = flag_list.strip("()").split()
        lines = []
        for seq, message in enumerate(box, start=1):
            if message.uid in self._uid_set(uid_set, box):
                if op.startswith("+"):
                    message.flags.update(flags)
                else:
                    message.flags.difference_update(flags)
                lines.append(f"* {seq} FETCH (UID {message.uid} FLAGS ({' '.join(sorted(message.flags))}))")
        await self._send(writer, *lines, f"{tag} OK STORE completed")

    async def _cmd_uid_fetch(self, tag, args, writer, reader, state):
        self.active_fetches += 1
        self.max_concurrent_fetches = max(self.max_concurrent_fetches, self.active_fetches)
        try:
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
            box = self.mailboxes[state["selected"]]
            uid_set, _, items = args.partition(" ")
            wanted = set(self._uid_set(uid_set, box))
            out = bytearray()
            for seq, message in enumerate(box, start=1):
                if message.uid not in wanted and message.uid not in self.extra_fetch_uids:
                    continue
                if "BODY.PEEK[]" in items.upper():
                    out += f"* {seq} FETCH (UID {message.uid} BODY[] {{{len(message.raw)}}}\r\n".encode()
                    out += message.raw + b")\r\n"
                else:
                    block = message.header_block
                    flags = " ".join(sorted(message.flags))
                    out += (
                        f"* {seq} FETCH (UID {message.uid} FLAGS ({flags}) "
                        f'INTERNALDATE "{internaldate(message.date)}" '
                        f"BODY[HEADER.FIELDS (FROM TO SUBJECT DATE)] {{{len(block)}}}\r\n"
                    ).encode()
                    out += block + b")\r\n"
            out += f"{tag} OK FETCH completed\r\n".encode()
            await self._send(writer, bytes(out))
        finally:
            self.active_fetches -= 1

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _uid_set(text: str, box: list[FakeMessage]) -> list[int]:
        uids = [m.uid for m in box]
        top = max(uids, default=0)
        result: list[int] = []
        for part in text.split(","):
            if ":" in part:
                lo, hi = part.split(":", 1)
                lo_n = top if lo == "*" else int(lo)
                hi_n = top if hi == "*" else int(hi)
                lo_n, hi_n = min(lo_n, hi_n), max(lo_n, hi_n)
                result.extend(u for u in uids if lo_n <= u <= hi_n)
            else:
                result.append(int(part))
        return result

    def _search(self, box: list[FakeMessage], criteria: str) -> list[int]:
        upper = criteria.upper()
        if upper.startswith("UID "):
            return sorted(set(self._uid_set(criteria[4:], box)))
        if upper.startswith("SINCE "):
            since = datetime.strptime(criteria[6:].strip(), "%d-%b-%Y").date()
            return [m.uid for m in box if m.date.date() >= since]

        terms = re.findall(r'(NOT )?(FROM|TO|SUBJECT) "([^"]*)"', criteria, re.IGNORECASE)
        if not terms:
            return [m.uid for m in box]
        uids = []
        for message in box:
            head = message.header_block.decode("utf-8", errors="replace")
            ok = True
            for negate, key, value in terms:
                found = re.search(rf"^{key}:.*{re.escape(value)}", head, re.IGNORECASE | re.MULTILINE)
                if bool(found) == bool(negate):
                    ok = False
            if ok:
                uids.append(message.uid)
        return uids


# =============================================================================
# SMTP
# =============================================================================

@dataclass
class ReceivedMail:
    mail_from: str
    rcpt_to: list[str]
    data: bytes


class FakeSMTPServer(_BaseServer):
    """
    Minimal ESMTP submission server.

    Attributes:
        extensions: EHLO keywords after the greeting line.
        reject_recipients: Addresses answered with 550.
        commands: Every command line received (AUTH payloads included).
        mail: Accepted messages.
    """

    def __init__(
        self,
        username: str = "test@example.com",
        password: str = "secret",
        extensions: tuple[str, ...] = ("AUTH PLAIN LOGIN", "8BITMIME", "SIZE 10240000"),
    ) -> None:
        super().__init__()
        self.username = username
        self.password = password
        self.extensions = list(extensions)
        self.reject_recipients: set[str] = set()
        self.commands: list[str] = []
        self.mail: list[ReceivedMail] = []

    def commands_with(self, verb: str) -> list[str]:
        return [c for c in self.commands if c.upper().startswith(verb)]

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        async def reply(*lines: str) -> None:
            for line in lines:
                writer.write(f"{line}\r\n".encode("utf-8"))
            await writer.drain()

        async def read() -> str:
            line = await reader.readline()
            if not line:
                raise ConnectionError("client went away")
            text = line.decode("utf-8").rstrip("\r\n")
            self.commands.append(text)
            return text

        await reply("220 fake.example ESMTP ready")
        # None outside a mail transaction
        mail_from: str | None = None
        rcpt_to: list[str] = []

        while True:
            text = await read()
            verb = text.split(" ", 1)[0].upper()

            if verb == "EHLO":
                lines = ["fake.example greets you"] + self.extensions
                await reply(*[f"250-{line}" for line in lines[:-1]], f"250 {lines[-1]}")
            elif verb == "AUTH":
                await self._auth(text, reply, read)
            elif verb == "MAIL":
                if mail_from is not None:
                    await reply("503 5.5.1 Error: nested MAIL command")
                    continue
                mail_from = text.split(":", 1)[1].strip("<>")
                rcpt_to = []
                await reply("250 OK")
            elif verb == "RSET":
                mail_from = None
                rcpt_to = []
                await reply("250 OK")
            elif verb == "RCPT":
                address = text.split(":", 1)[1].strip("<>")
                if address in self.reject_recipients:
                    await reply("550 No such user")
                else:
                    rcpt_to.append(address)
                    await reply("250 OK")
            elif verb == "DATA":
                await reply("354 End data with <CR><LF>.<CR><LF>")
                data = bytearray()
                while True:
                    line = await reader.readline()
                    if line == b".\r\n":
                        break
                    if line.startswith(b".."):
                        line = line[1:]
                    data += line
                self.mail.append(ReceivedMail(mail_from or "", rcpt_to, bytes(data)))
                mail_from = None
                await reply("250 OK queued")
            elif verb == "QUIT":
                await reply("221 Bye")
                return
            else:
                await reply("502 Command not implemented")

    async def _auth(self, text, reply, read) -> None:
        parts = text.split(" ")
        mechanism = parts[1].upper()
        if mechanism == "PLAIN" and "PLAIN" in " ".join(self.extensions):
            decoded = base64.b64decode(parts[2]).decode("utf-8")
            if decoded == f"\0{self.username}\0{self.password}":
                await reply("235 Authentication successful")
            else:
                await reply("535 Authentication failed")
        elif mechanism == "LOGIN":
            await reply("334 VXNlcm5hbWU6")
            user = base64.b64decode(await read()).decode("utf-8")
            await reply("334 UGFzc3dvcmQ6")
            password = base64.b64decode(await read()).decode("utf-8")
            if (user, password) == (self.username, self.password):
                await reply("235 Authentication successful")
            else:
                await reply("535 Authentication failed")
        else:
            await reply("504 Unrecognized authentication type")


# =============================================================================
# Scripted
# =============================================================================

class ScriptedServer(_BaseServer):
    """
    Sends a greeting, then answers each received line with the next reply.

    A reply is bytes or a list of byte chunks written with a short pause
    between them. "{tag}" is replaced by the first word of the received
    line. A reply of None means: read the line and say nothing.
    """

    def __init__(self, greeting: bytes | None, replies: list) -> None:
        super().__init__()
        self.greeting = greeting
        self.replies = list(replies)
        self.received: list[bytes] = []

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.greeting is not None:
            writer.write(self.greeting)
            await writer.drain()
        while self.replies:
            line = await reader.readline()
            if not line:
                return
            self.received.append(line)
            tag = line.split(b" ", 1)[0].strip()
            reply = self.replies.pop(0)
            if reply is None:
                continue
            chunks = reply if isinstance(reply, list) else [reply]
            for chunk in chunks:
                writer.write(chunk.replace(b"{tag}", tag))
                await writer.drain()
                await asyncio.sleep(0.01)
        # Keep the connection open until the client closes it
        await reader.read()

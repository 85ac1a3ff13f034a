# =============================================================================
# SMTP Client
# =============================================================================
# Provides a hand-rolled async SMTP client for sending emails.
#
# Key responsibilities:
#   - Connection management with implicit TLS or STARTTLS
#   - AUTH PLAIN (falling back to AUTH LOGIN) or XOAUTH2
#   - Envelope: MAIL FROM, one RCPT TO per To/Cc/Bcc address, DATA, and
#     RSET when the server rejects part of the transaction
#   - Building the RFC 5322 message (plain text, UTF-8) with threading
#     headers, via email.message.EmailMessage and policy.SMTP
#   - Drafting replies and forwards
#
# Protocol notes:
#   - Replies are "250 text", multi-line replies use "250-text" for all but
#     the last line; ProtocolTransport.read_smtp_reply() handles both
#   - Message lines starting with "." are dot-stuffed; the body ends with
#     "\r\n.\r\n"
# =============================================================================

import base64
import logging
import re
import ssl
from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import TYPE_CHECKING

from imapmenu.mime.headers import extract_addresses, parse_address_list, split_address
from imapmenu.transport import (
    ProtocolTransport,
    ResponseTooLarge,
    SmtpReply,
    TransportClosed,
    TransportError,
    TransportTimeout,
)

if TYPE_CHECKING:
    from imapmenu.core import Account, Message
    from imapmenu.credentials import SecretStore

logger = logging.getLogger(__name__)

X_MAILER = "IMAPMenu"


def _address_entries(value: str | list[str]) -> list[str]:
    """Normalize a comma string or list into individual address entries."""
    if isinstance(value, str):
        return parse_address_list(_single_line(value))
    entries = []
    for item in value:
        entries.extend(parse_address_list(_single_line(item)))
    return entries


@dataclass
class EmailDraft:
    """
    Represents an email being composed.

    Address fields accept either a list or a comma-separated string
    ("a@x.com, Bob <b@x.com>"); both are normalized to lists of entries.

    Attributes:
        to: Recipient entries.
        cc: CC entries.
        bcc: BCC entries (envelope only, never in headers).
        subject: Email subject line.
        body: Plain text body.
        in_reply_to: Message-ID we're replying to (for threading).
        references: References header (for threading).
    """
    to: list[str] | str = field(default_factory=list)
    cc: list[str] | str = field(default_factory=list)
    bcc: list[str] | str = field(default_factory=list)
    subject: str = ""
    body: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.to = _address_entries(self.to)
        self.cc = _address_entries(self.cc)
        self.bcc = _address_entries(self.bcc)

    @property
    def recipients(self) -> list[str]:
        """Envelope addresses: To, then Cc, then Bcc."""
        return extract_addresses(self.to) + extract_addresses(self.cc) + extract_addresses(self.bcc)


class SMTPClient:
    """
    Async SMTP client for sending emails.

    Usage:
        >>> client = SMTPClient(account, secrets=KeyringSecretStore())
        >>> await client.connect()
        >>> await client.send(draft)
        >>> await client.disconnect()

    Attributes:
        account: Account configuration with SMTP server details.
        capabilities: EHLO keywords, upper-cased ("STARTTLS", "AUTH PLAIN LOGIN").
    """

    # Timeout for SMTP operations (seconds)
    TIMEOUT = 30

    def __init__(
        self,
        account: "Account",
        secrets: "SecretStore | None" = None,
        *,
        timeout: float = TIMEOUT,
        local_hostname: str = "localhost",
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        """
        Initialize the SMTP client.

        Args:
            account: Account configuration with SMTP server details.
            secrets: Where to look up the password or access token.
            timeout: Per-operation timeout in seconds.
            local_hostname: Name sent with EHLO.
            ssl_context: Custom TLS context (tests, self-signed servers).
        """
        self.account = account
        self.secrets = secrets
        self.local_hostname = local_hostname
        self.capabilities: list[str] = []
        self._ssl_context = ssl_context
        self._transport = ProtocolTransport(timeout=timeout)
        self._authenticated = False

    @property
    def is_connected(self) -> bool:
        """Check if client is connected and logged in."""
        return self._authenticated and self._transport.is_connected

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, secret: str | None = None) -> None:
        """
        Connect, upgrade to TLS if configured, and authenticate.

        Args:
            secret: Password or OAuth2 access token. Looked up in the secret
                    store when not given.

        Raises:
            SMTPConnectionError: If unable to connect or negotiate TLS.
            SMTPAuthenticationError: If authentication fails.
            SMTPTimeout: If the server doesn't answer in time.
        """
        host, port = self.account.smtp_host, self.account.smtp_port
        logger.info(f"Connecting to SMTP {host}:{port}")

        if secret is None and self.secrets is not None:
            secret = self.secrets.get(self.account.key)
        if not secret:
            raise SMTPAuthenticationError(
                f"No password stored for {self.account.key}. "
                f"Set it with: imapmenu set-password {self.account.name}"
            )

        try:
            await self._transport.connect(
                host,
                port,
                use_tls=self.account.smtp_security == "ssl",
                ssl_context=self._ssl_context,
            )
        except TransportTimeout as e:
            raise SMTPTimeout() from e
        except TransportError as e:
            raise SMTPConnectionError(f"Failed to connect to SMTP {host}:{port}: {e}") from e

        try:
            greeting = await self._read_reply()
            if greeting.code != 220:
                raise SMTPConnectionError(f"Unexpected greeting: {greeting}")

            await self._ehlo()

            if self.account.smtp_security == "starttls":
                await self._starttls()

            await self._authenticate(secret)
        except SMTPError:
            await self._transport.close()
            raise

        logger.info(f"Successfully connected to SMTP {host}")

    async def _ehlo(self) -> None:
        reply = await self._command(f"EHLO {self.local_hostname}")
        if reply.code != 250:
            raise SMTPConnectionError(f"EHLO rejected: {reply}")
        # First line is the server's greeting, the rest are extensions
        self.capabilities = [line.upper() for line in reply.lines[1:]]
        logger.debug(f"SMTP capabilities: {self.capabilities}")

    def has_extension(self, name: str) -> bool:
        name = name.upper()
        return any(cap == name or cap.startswith(name + " ") for cap in self.capabilities)

    def auth_mechanisms(self) -> list[str]:
        for cap in self.capabilities:
            if cap.startswith("AUTH ") or cap.startswith("AUTH="):
                return cap[5:].split()
        return []

    async def _starttls(self) -> None:
        """Upgrade the plain connection, then EHLO again."""
        if not self.has_extension("STARTTLS"):
            raise SMTPConnectionError("Server does not support STARTTLS")
        reply = await self._command("STARTTLS")
        if reply.code != 220:
            raise SMTPConnectionError(f"STARTTLS failed: {reply}")
        try:
            await self._transport.start_tls(self._ssl_context)
        except TransportTimeout as e:
            raise SMTPTimeout() from e
        except TransportError as e:
            raise SMTPConnectionError(str(e)) from e
        logger.debug("SMTP TLS established")
        await self._ehlo()

    async def _authenticate(self, secret: str) -> None:
        """
        Authenticate with XOAUTH2, or AUTH PLAIN falling back to AUTH LOGIN.

        Raises:
            SMTPAuthenticationError: If every mechanism is rejected.
        """
        username = self.account.username
        logger.debug(f"Authenticating to SMTP as {username}")

        if self.account.uses_oauth:
            token = f"user={username}\x01auth=Bearer {secret}\x01\x01"
            encoded = base64.b64encode(token.encode("utf-8")).decode("ascii")
            reply = await self._command(f"AUTH XOAUTH2 {encoded}", redact=True)
            if reply.code == 334:
                # Error details arrive as a challenge; an empty reply ends it
                reply = await self._command("")
            if reply.code != 235:
                raise SMTPAuthenticationError(f"XOAUTH2 rejected for {username}: {reply}")
            self._authenticated = True
            return

        mechanisms = self.auth_mechanisms()

        if not mechanisms or "PLAIN" in mechanisms:
            plain = base64.b64encode(f"\0{username}\0{secret}".encode("utf-8")).decode("ascii")
            reply = await self._command(f"AUTH PLAIN {plain}", redact=True)
            if reply.code == 235:
                self._authenticated = True
                logger.debug("SMTP authentication successful (PLAIN)")
                return
            logger.debug(f"AUTH PLAIN rejected ({reply.code}), trying LOGIN")

        reply = await self._command("AUTH LOGIN")
        if reply.code == 334:
            reply = await self._command(base64.b64encode(username.encode("utf-8")).decode("ascii"), redact=True)
            if reply.code == 334:
                reply = await self._command(base64.b64encode(secret.encode("utf-8")).decode("ascii"), redact=True)
                if reply.code == 235:
                    self._authenticated = True
                    logger.debug("SMTP authentication successful (LOGIN)")
                    return

        raise SMTPAuthenticationError(f"SMTP authentication failed for {username}: {reply}")

    async def disconnect(self) -> None:
        """Send QUIT (if still connected) and close the connection."""
        if self._transport.is_connected:
            try:
                logger.debug("Disconnecting from SMTP")
                await self._command("QUIT")
            except SMTPError as e:
                logger.warning(f"Error during SMTP disconnect: {e}")
        await self._transport.close()
        self._authenticated = False

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, draft: EmailDraft) -> str:
        """
        Send an email.

        Args:
            draft: The email to send.

        Returns:
            Message-ID of the sent message.

        Raises:
            SMTPNotConnected: If connect() hasn't succeeded.
            SendError: If the server rejects the envelope or the message.
        """
        if not self.is_connected:
            raise SMTPNotConnected()

        recipients = draft.recipients
        if not recipients:
            raise SendError("No recipients specified")

        message_id = make_msgid(domain=self.account.email.rpartition("@")[2] or self.account.smtp_host)
        try:
            message = self.build_message(draft, message_id)
        except (UnicodeError, ValueError) as e:
            raise SendError(f"Cannot build message: {e}") from e

        logger.info(f"Sending email to {', '.join(recipients)}")

        reply = await self._command(f"MAIL FROM:<{self.account.email}>")
        if reply.code != 250:
            await self._reset()
            raise SendError(f"MAIL FROM failed: {reply}")

        for recipient in recipients:
            reply = await self._command(f"RCPT TO:<{recipient}>")
            if reply.code not in (250, 251):
                await self._reset()
                raise SendError(f"RCPT TO failed for {recipient}: {reply}")

        reply = await self._command("DATA")
        if reply.code != 354:
            await self._reset()
            raise SendError(f"DATA failed: {reply}")

        try:
            await self._transport.write_raw(_dot_stuff(message) + b".\r\n", log_as=f"<message {len(message)} bytes>")
        except TransportTimeout as e:
            raise SMTPTimeout() from e
        except TransportError as e:
            raise SMTPConnectionError(str(e)) from e

        reply = await self._read_reply()
        if reply.code != 250:
            raise SendError(f"Message rejected: {reply}")

        logger.info(f"Email sent successfully: {message_id}")
        return message_id

    async def _reset(self) -> None:
        """Abort the current mail transaction (RSET) so the connection stays usable."""
        try:
            reply = await self._command("RSET")
        except SMTPError as e:
            logger.warning(f"RSET failed: {e}")
            return
        if reply.code != 250:
            logger.warning(f"RSET rejected: {reply}")

    def build_message(self, draft: EmailDraft, message_id: str) -> bytes:
        """
        Build the RFC 5322 message for a draft.

        Bcc recipients are never written to the headers. CR/LF in header
        values is collapsed to a space, so a subject can't smuggle in extra
        headers. Non-ASCII subjects and display names are RFC 2047 encoded
        and long headers folded by policy.SMTP.

        Returns:
            The message with CRLF line endings, ending in CRLF.
        """
        msg = EmailMessage(policy=policy.SMTP)
        msg["From"] = formataddr((_single_line(self.account.display_name), self.account.email))
        if draft.to:
            msg["To"] = _format_address_list(draft.to)
        if draft.cc:
            msg["Cc"] = _format_address_list(draft.cc)
        if draft.subject:
            msg["Subject"] = _single_line(draft.subject)
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = message_id

        # Threading headers
        if draft.in_reply_to:
            msg["In-Reply-To"] = _single_line(draft.in_reply_to)
        if draft.references:
            msg["References"] = _single_line(" ".join(draft.references))

        # User agent
        msg["X-Mailer"] = X_MAILER

        msg.set_content(draft.body, charset="utf-8", cte="8bit")
        return msg.as_bytes()

    # =========================================================================
    # Drafts
    # =========================================================================

    def create_reply(
        self,
        original: "Message",
        *,
        reply_all: bool = False,
        quoted_text: str | None = None,
    ) -> EmailDraft:
        """
        Create a reply draft from an original message.

        Args:
            original: The message being replied to.
            reply_all: If True, include the original's other To recipients.
            quoted_text: Text to quote (default: the message preview).

        Returns:
            EmailDraft pre-populated for reply.
        """
        sender = original.from_email or original.from_
        to = [sender]

        if reply_all:
            ours = {self.account.email.lower(), sender.lower()}
            for recipient in extract_addresses(original.to):
                if recipient.lower() not in ours:
                    ours.add(recipient.lower())
                    to.append(recipient)

        # Build subject
        subject = original.subject
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"

        # Build references for threading
        references = list(original.references)
        if original.message_id and original.message_id not in references:
            references.append(original.message_id)

        # Quote original message
        date_str = original.date.strftime("%Y-%m-%d %H:%M")
        text = original.preview if quoted_text is None else quoted_text
        quoted = "".join(f"> {line}\n" for line in text.split("\n")) if text else ""
        body = f"\n\nOn {date_str}, {original.display_sender} wrote:\n{quoted}"

        return EmailDraft(
            to=to,
            subject=subject,
            body=body,
            in_reply_to=original.message_id,
            references=references,
        )

    def create_forward(self, original: "Message", text: str | None = None) -> EmailDraft:
        """
        Create a forward draft from an original message.

        Args:
            original: The message being forwarded.
            text: Body text to include (default: the message preview).

        Returns:
            EmailDraft with no recipients, ready for the user to fill in.
        """
        subject = original.subject
        if not subject.lower().startswith("fwd:"):
            subject = f"Fwd: {subject}"

        date_str = original.date.strftime("%Y-%m-%d %H:%M")
        header = (
            "\n\n---------- Forwarded message ----------\n"
            f"From: {original.from_}\n"
            f"Date: {date_str}\n"
            f"Subject: {original.subject}\n"
            f"To: {original.to}\n"
            "\n"
        )
        body = header + (original.preview if text is None else text)

        references = list(original.references)
        if original.message_id and original.message_id not in references:
            references.append(original.message_id)

        return EmailDraft(subject=subject, body=body, references=references)

    # =========================================================================
    # Command Execution
    # =========================================================================

    async def _command(self, line: str, redact: bool = False) -> SmtpReply:
        """Send one command line and read the reply."""
        try:
            await self._transport.write_line(line, redact=redact)
        except TransportTimeout as e:
            raise SMTPTimeout() from e
        except TransportError as e:
            self._authenticated = False
            raise SMTPConnectionError(str(e)) from e
        return await self._read_reply()

    async def _read_reply(self) -> SmtpReply:
        try:
            reply = await self._transport.read_smtp_reply()
        except TransportTimeout as e:
            self._authenticated = False
            raise SMTPTimeout() from e
        except (TransportClosed, ResponseTooLarge) as e:
            self._authenticated = False
            raise SMTPConnectionError(str(e)) from e
        except TransportError as e:
            self._authenticated = False
            raise SMTPInvalidResponse(str(e)) from e
        logger.debug(f"< {reply}")
        return reply


def _single_line(value: str) -> str:
    """Collapse CR/LF runs to a single space; header values are one line."""
    return re.sub(r"[\r\n]+", " ", value or "").strip()


def _format_address_list(entries: list[str]) -> str:
    """Format To/Cc entries with formataddr, encoding non-ASCII display names."""
    formatted = []
    for entry in entries:
        name, address = split_address(_single_line(entry))
        formatted.append(formataddr((name, address)))
    return ", ".join(formatted)


def _dot_stuff(message: bytes) -> bytes:
    """Double a leading "." on every line (RFC 5321 section 4.5.2)."""
    lines = message.split(b"\r\n")
    return b"\r\n".join(b"." + line if line.startswith(b".") else line for line in lines)


# =============================================================================
# Exceptions
# =============================================================================

class SMTPError(Exception):
    """Base exception for SMTP operations."""
    pass


class SMTPConnectionError(SMTPError):
    """Raised when unable to connect to SMTP server or the connection drops."""
    pass


class SMTPAuthenticationError(SMTPError):
    """Raised when SMTP authentication fails."""
    pass


class SendError(SMTPError):
    """Raised when email sending fails."""
    pass


class SMTPTimeout(SMTPError):
    """Raised when the server doesn't answer in time."""

    def __init__(self) -> None:
        super().__init__("SMTP timeout")


class SMTPNotConnected(SMTPError):
    """Raised when sending without a connection."""

    def __init__(self) -> None:
        super().__init__("Not connected to SMTP server")


class SMTPInvalidResponse(SMTPError):
    """Raised when the server sends something that isn't an SMTP reply."""
    pass

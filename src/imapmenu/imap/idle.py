# =============================================================================
# IDLE Worker
# =============================================================================
# Background worker for IMAP IDLE push notifications.
#
# Key responsibilities:
#   - Maintain an IDLE connection to each account's INBOX
#   - Turn "* n EXISTS / EXPUNGE / RECENT / FETCH" into IdleEvents
#   - Reconnect after connection errors; give up on auth failure
#   - Graceful shutdown
#
# Design notes:
#   - Each account gets its own IDLE connection, outside the ConnectionPool,
#     because IDLE ties the connection up
#   - RFC 2177 recommends re-issuing IDLE at least every 29 minutes
# =============================================================================

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from imapmenu.imap.client import IMAPClient
from imapmenu.imap.errors import IMAPAuthenticationError, IMAPError

if TYPE_CHECKING:
    from imapmenu.core import Account
    from imapmenu.credentials import SecretStore

logger = logging.getLogger(__name__)

_EVENT_RE = re.compile(r"^\*?\s*(\d+)\s+(EXISTS|EXPUNGE|RECENT|FETCH)\b", re.IGNORECASE)

_EVENT_TYPES = {
    "EXISTS": "new_mail",
    "RECENT": "recent",
    "EXPUNGE": "expunge",
    "FETCH": "flags",
}


@dataclass
class IdleEvent:
    """Event emitted when IDLE detects changes."""
    account_name: str
    folder_name: str
    event_type: str  # "new_mail", "recent", "expunge", "flags"
    number: int | None = None  # Message count for EXISTS/RECENT, sequence number otherwise


# Type for the callback function
IdleCallback = Callable[[IdleEvent], Awaitable[None]]


def parse_notification(account_name: str, folder_name: str, notification: str) -> IdleEvent | None:
    """
    Parse an IMAP IDLE notification into an event.

    Common notifications (with or without the leading *):
        - "N EXISTS" - N messages now exist (new mail if N increased)
        - "N RECENT" - N messages are recent
        - "N EXPUNGE" - Message N was deleted
        - "N FETCH (FLAGS ...)" - Flags changed on message N
    """
    match = _EVENT_RE.match(notification.strip())
    if not match:
        logger.debug(f"IDLE: Unknown notification from {account_name}: {notification}")
        return None
    return IdleEvent(
        account_name=account_name,
        folder_name=folder_name,
        event_type=_EVENT_TYPES[match.group(2).upper()],
        number=int(match.group(1)),
    )


class IdleWorker:
    """
    Keeps one IDLE connection per account and reports what the server pushes.

    Usage:
        >>> worker = IdleWorker(secrets=KeyringSecretStore())
        >>> worker.on_event = my_callback
        >>> await worker.start(accounts)
        >>> # ... later ...
        >>> await worker.stop()

    The callback receives IdleEvent objects. Callback errors are logged and
    don't interrupt monitoring.
    """

    # Wait after a dropped connection before dialing again (seconds)
    RECONNECT_DELAY = 30

    # Re-issue IDLE before servers time it out (RFC 2177: under 30 minutes)
    IDLE_TIMEOUT = 29 * 60

    # Grace period for monitor tasks to unwind on stop() (seconds)
    STOP_TIMEOUT = 2.0

    FOLDER = "INBOX"

    def __init__(
        self,
        secrets: "SecretStore | None" = None,
        client_factory: Callable[["Account"], IMAPClient] | None = None,
        reconnect_delay: float = RECONNECT_DELAY,
        idle_timeout: float = IDLE_TIMEOUT,
    ) -> None:
        """
        Args:
            secrets: Secret store for the default client factory.
            client_factory: Builds an unconnected client per account.
            reconnect_delay: Seconds to wait after a connection error.
            idle_timeout: Seconds before IDLE is re-issued.
        """
        self._factory = client_factory or (lambda account: IMAPClient(account, secrets=secrets))
        self.reconnect_delay = reconnect_delay
        self.idle_timeout = idle_timeout
        self.on_event: IdleCallback | None = None
        self._running = False
        self._tasks: dict[str, asyncio.Task] = {}      # account name -> monitor task
        self._clients: dict[str, IMAPClient] = {}      # account name -> live client

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, accounts: list["Account"]) -> None:
        """Start one monitor task per enabled account."""
        if self._running:
            logger.warning("IdleWorker already running")
            return

        self._running = True
        watched = [a for a in accounts if a.enabled]
        logger.info(f"IDLE worker watching {len(watched)} of {len(accounts)} accounts")
        for account in watched:
            self._tasks[account.name] = asyncio.create_task(
                self._watch(account),
                name=f"idle-{account.name}",
            )

    async def stop(self) -> None:
        """Cancel the monitors and close their connections."""
        if not self._running:
            return
        self._running = False

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.STOP_TIMEOUT)
            if pending:
                logger.warning(f"{len(pending)} IDLE monitors still running, closing their connections")

        clients = list(self._clients.values())
        self._tasks.clear()
        self._clients.clear()
        await asyncio.gather(*(self._close(client) for client in clients))
        logger.info("IDLE worker stopped")

    @staticmethod
    async def _close(client: IMAPClient) -> None:
        try:
            await asyncio.wait_for(client.disconnect(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out closing IDLE connection to {client.account.imap_host}")

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def _watch(self, account: "Account") -> None:
        """Keep an account in IDLE until stopped, reconnecting after errors."""
        logger.info(f"Watching {account.name} with IDLE")
        try:
            while self._running:
                if not await self._session(account):
                    break
                if self._running:
                    logger.info(f"Reconnecting IDLE for {account.name} in {self.reconnect_delay}s")
                    await asyncio.sleep(self.reconnect_delay)
        except asyncio.CancelledError:
            logger.debug(f"IDLE monitor cancelled for {account.name}")
            raise
        logger.info(f"IDLE monitor ended for {account.name}")

    async def _session(self, account: "Account") -> bool:
        """
        One connection's worth of IDLE.

        Returns:
            True if the connection dropped and is worth retrying; False when
            retrying can't help (bad credentials, no IDLE) or the worker is
            stopping.
        """
        client = self._factory(account)
        self._clients[account.name] = client
        try:
            await client.connect()
            if not client.supports_idle():
                logger.warning(f"{account.name} server does not support IDLE")
                return False
            await self._idle_loop(account, client)
            return False
        except IMAPAuthenticationError as e:
            # Needs the user to fix the password or token
            logger.error(f"IDLE auth failed for {account.name}: {e}")
            return False
        except IMAPError as e:
            logger.warning(f"IDLE connection lost for {account.name}: {e}")
            return True
        finally:
            await client.disconnect()

    async def _idle_loop(self, account: "Account", client: IMAPClient) -> None:
        """IDLE, wake up, leave IDLE, deliver, repeat."""
        while self._running:
            await client.idle_start(self.FOLDER)
            notifications = await client.idle_wait(timeout=self.idle_timeout)
            await client.idle_done()

            if not notifications:
                logger.debug(f"IDLE refresh for {account.name}")
                continue
            await self._dispatch(account, notifications)

    async def _dispatch(self, account: "Account", notifications: list[str]) -> None:
        if self.on_event is None:
            return
        for notification in notifications:
            event = parse_notification(account.name, self.FOLDER, notification)
            if event is None:
                continue
            try:
                await self.on_event(event)
            except Exception as e:
                logger.error(f"IDLE callback failed on {event.event_type} for {account.name}: {e}")

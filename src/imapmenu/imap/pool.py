# =============================================================================
# IMAP Connection Pool
# =============================================================================
# Keeps authenticated IMAP connections warm between refreshes.
#
# Key responsibilities:
#   - One primary connection per (host, user, folder), reused when idle
#   - Throwaway connections when the primary is busy, instead of waiting
#   - Invalidation after protocol errors so the next acquire starts clean
#   - A background reaper that closes connections idle for too long
#
# Design notes:
#   - acquire/release/invalidate/reap are serialized by one asyncio.Lock;
#     network I/O (connect, LOGOUT) happens outside it
#   - A key is reserved before its connection is opened, so a second caller
#     arriving mid-connect gets a throwaway rather than the same client
#   - Nothing here retries; a failed acquire propagates to the caller
# =============================================================================

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from imapmenu.imap.client import IMAPClient
from imapmenu.imap.errors import IMAPError
from imapmenu.transport import TransportError

if TYPE_CHECKING:
    from imapmenu.core import Account
    from imapmenu.credentials import SecretStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[["Account"], IMAPClient]


def pool_key(account: "Account", folder: str) -> str:
    """Pool key: host:user:folder."""
    return f"{account.imap_host}:{account.username}:{folder}"


@dataclass(eq=False)
class PooledConnection:
    """
    A connection handed out by the pool.

    Attributes:
        key: Pool key this connection belongs to.
        client: The connected, authenticated client with `folder` selected.
        folder: Folder path selected on the client.
        pooled: False for throwaway connections, which are closed on release.
        in_use: Held by a caller right now.
        last_used: time.monotonic() of the last release.
    """
    key: str
    client: IMAPClient
    folder: str
    pooled: bool = True
    in_use: bool = True
    last_used: float = field(default_factory=time.monotonic)

    @property
    def is_alive(self) -> bool:
        return self.client.is_connected


class ConnectionPool:
    """
    Pool of IMAP connections keyed by host, user and folder.

    Usage:
        >>> pool = ConnectionPool(secrets=KeyringSecretStore())
        >>> await pool.start()
        >>> async with pool.connection(account, "INBOX") as client:
        ...     uids = await client.search()
        >>> await pool.stop()
    """

    # Close pooled connections idle for longer than this (seconds)
    IDLE_TIMEOUT = 300

    # How often the reaper runs (seconds)
    REAP_INTERVAL = 120

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        secrets: "SecretStore | None" = None,
        idle_timeout: float = IDLE_TIMEOUT,
        reap_interval: float = REAP_INTERVAL,
    ) -> None:
        """
        Initialize the pool.

        Args:
            client_factory: Builds an unconnected IMAPClient for an account.
                            Defaults to IMAPClient(account, secrets).
            secrets: Secret store used by the default factory.
            idle_timeout: Seconds an unused connection may stay open.
            reap_interval: Seconds between reaper runs.
        """
        self.secrets = secrets
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self._factory = client_factory or (lambda account: IMAPClient(account, secrets=self.secrets))
        self._entries: dict[str, PooledConnection] = {}
        self._lock = asyncio.Lock()
        self._reaper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Acquire / Release
    # =========================================================================

    async def acquire(self, account: "Account", folder: str = "INBOX") -> PooledConnection:
        """
        Get a connection with `folder` selected.

        Reuses the pooled connection when it's idle and alive. When it's busy,
        a throwaway connection is opened instead (pooled=False).

        Raises:
            IMAPError: If a new connection can't be opened or the folder
                       can't be selected.
        """
        key = pool_key(account, folder)

        stale = None
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.in_use and not entry.is_alive:
                logger.debug(f"Discarding dead pooled connection {key}")
                del self._entries[key]
                stale, entry = entry, None

            if entry is not None and not entry.in_use:
                entry.in_use = True
                reused = entry
            elif entry is not None:
                reused = None
                conn = PooledConnection(key=key, client=self._factory(account), folder=folder, pooled=False)
            else:
                reused = None
                conn = PooledConnection(key=key, client=self._factory(account), folder=folder)
                # Reserve the key before connecting
                self._entries[key] = conn

        if stale is not None:
            await stale.client.disconnect()

        if reused is not None:
            logger.debug(f"Reusing pooled connection {key}")
            try:
                await reused.client.select_folder(folder)
            except (IMAPError, TransportError):
                await self.invalidate(account, folder)
                raise
            return reused

        logger.debug(f"Opening {'pooled' if conn.pooled else 'throwaway'} connection {key}")
        try:
            await conn.client.connect()
            await conn.client.select_folder(folder)
        except BaseException:
            if conn.pooled:
                async with self._lock:
                    if self._entries.get(key) is conn:
                        del self._entries[key]
            await conn.client.disconnect()
            raise
        return conn

    async def release(self, conn: PooledConnection) -> None:
        """
        Hand a connection back.

        Pooled connections stay open for the next caller; throwaways are
        closed.
        """
        if not conn.pooled:
            logger.debug(f"Closing throwaway connection {conn.key}")
            await conn.client.disconnect()
            return

        async with self._lock:
            conn.in_use = False
            conn.last_used = time.monotonic()
            # Invalidated while in use
            orphan = self._entries.get(conn.key) is not conn
        if orphan:
            await conn.client.disconnect()

    async def invalidate(self, account: "Account", folder: str = "INBOX") -> None:
        """Close and forget the pooled connection for a key."""
        key = pool_key(account, folder)
        async with self._lock:
            entry = self._entries.pop(key, None)
        if entry is not None:
            logger.info(f"Invalidated pooled connection {key}")
            await entry.client.disconnect()

    async def discard(self, conn: PooledConnection) -> None:
        """Close a connection that failed while held, removing it if pooled."""
        if conn.pooled:
            async with self._lock:
                if self._entries.get(conn.key) is conn:
                    del self._entries[conn.key]
        conn.in_use = False
        logger.debug(f"Discarding connection {conn.key}")
        await conn.client.disconnect()

    @asynccontextmanager
    async def connection(self, account: "Account", folder: str = "INBOX") -> AsyncIterator[IMAPClient]:
        """
        Acquire a connection for the duration of a block.

        On IMAPError, TransportError or cancellation the connection is
        discarded instead of being returned to the pool, since a command
        may still be in flight on it.
        """
        conn = await self.acquire(account, folder)
        try:
            yield conn.client
        except (IMAPError, TransportError, asyncio.CancelledError):
            await self.discard(conn)
            raise
        except BaseException:
            await self.release(conn)
            raise
        else:
            await self.release(conn)

    # =========================================================================
    # Reaping
    # =========================================================================

    async def reap(self) -> int:
        """
        Close pooled connections idle longer than idle_timeout.

        Returns:
            Number of connections closed.
        """
        now = time.monotonic()
        async with self._lock:
            expired = [
                entry for entry in self._entries.values()
                if not entry.in_use and (now - entry.last_used > self.idle_timeout or not entry.is_alive)
            ]
            for entry in expired:
                del self._entries[entry.key]

        for entry in expired:
            logger.debug(f"Reaping idle connection {entry.key}")
            await entry.client.disconnect()
        return len(expired)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                closed = await self.reap()
                if closed:
                    logger.info(f"Reaped {closed} idle connections")
            except Exception as e:
                logger.error(f"Connection reaper failed: {e}")

    async def start(self) -> None:
        """Start the periodic reaper."""
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop(), name="imap-pool-reaper")

    async def stop(self) -> None:
        """Stop the reaper and close every pooled connection."""
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        await self.close_all()

    async def close_all(self) -> None:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            await entry.client.disconnect()
        if entries:
            logger.info(f"Closed {len(entries)} pooled connections")

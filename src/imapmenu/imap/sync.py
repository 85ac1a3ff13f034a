# =============================================================================
# Sync Manager
# =============================================================================
# The engine surface the menubar talks to: fetch a watched folder, act on a
# message, list folders, load a message body.
#
# Fetch strategy:
#   1. Delta: the cache has a watermark for the folder -> one pooled
#      connection, UID SEARCH UID <watermark+1>:*, merge what's new; a
#      delta that finds nothing still refreshes the entry's age
#   2. Full: no watermark (or forced) -> SEARCH with the folder's criteria,
#      keep the newest max_emails UIDs, fetch them on one connection or with
#      the ParallelFetcher when there's more than one batch, then replace
#      the folder's cache entry
#
# Either way the folder's client-side filter is applied before anything
# reaches the cache or the caller, and SyncResult.new_unread lists unread
# messages that weren't cached before (for notifications).
#
# Threading considerations:
#   - Every network operation borrows a connection from the ConnectionPool
#   - Progress is reported via callbacks
#   - A CancelToken stops a fetch between batches
# =============================================================================

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from imapmenu.config import EngineConfig
from imapmenu.core import Folder, Message
from imapmenu.imap.actions import (
    ActionResult,
    DeleteAction,
    MarkReadAction,
    MarkUnreadAction,
    MessageAction,
)
from imapmenu.imap.errors import IMAPError
from imapmenu.imap.parallel import CancelToken, ParallelFetcher
from imapmenu.imap.search import SearchCriteria
from imapmenu.mime import MimeDecoder
from imapmenu.transport import TransportError

if TYPE_CHECKING:
    from imapmenu.core import Account, FolderConfig
    from imapmenu.imap.pool import ConnectionPool
    from imapmenu.storage.cache import EmailCache

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Current status of a fetch."""
    IDLE = auto()           # Not fetching
    CONNECTING = auto()     # Borrowing a connection
    SEARCHING = auto()      # UID SEARCH in progress
    FETCHING = auto()       # Header batches arriving
    COMPLETE = auto()       # Fetch finished
    ERROR = auto()          # Fetch failed
    CANCELLED = auto()      # Stopped by the cancel token


class FetchMode(Enum):
    """Delta uses the cached watermark when there is one; full ignores it."""
    DELTA = auto()
    FULL = auto()


@dataclass
class SyncProgress:
    """
    Progress information for a fetch.

    Attributes:
        status: Current status.
        account: Account name.
        folder: Folder key being fetched.
        total_messages: UIDs selected for fetching.
        synced_messages: Messages delivered so far.
        error: Error message if status is ERROR.
    """
    status: SyncStatus = SyncStatus.IDLE
    account: str | None = None
    folder: str | None = None
    total_messages: int = 0
    synced_messages: int = 0
    error: str | None = None

    @property
    def percent_complete(self) -> float:
        """Returns completion percentage (0.0 - 100.0)."""
        if self.total_messages == 0:
            return 0.0
        return min(100.0, (self.synced_messages / self.total_messages) * 100.0)


# Type aliases for callbacks
ProgressCallback = Callable[[SyncProgress], None]
BatchCallback = Callable[[list[Message]], Awaitable[None] | None]


@dataclass
class SyncResult:
    """
    Result of fetching one folder.

    Attributes:
        folder_key: Cache key of the folder.
        mode: The mode actually used (a delta request without a watermark
              runs as FULL).
        success: True if no error occurred.
        messages: Everything fetched this time, newest first.
        new_messages: Messages that weren't cached before.
        new_unread: The unread subset of new_messages.
        cancelled: Stopped early by the cancel token.
        errors: Error messages encountered.
        duration_seconds: Time taken.
    """
    folder_key: str
    mode: FetchMode = FetchMode.FULL
    success: bool = True
    messages: list[Message] = field(default_factory=list)
    new_messages: list[Message] = field(default_factory=list)
    new_unread: list[Message] = field(default_factory=list)
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def error(self) -> str | None:
        return self.errors[0] if self.errors else None


class SyncManager:
    """
    Fetches watched folders for one account into the EmailCache.

    Usage:
        >>> sync = SyncManager(account, pool, cache)
        >>> result = await sync.fetch_folder(FolderConfig(path="INBOX"), on_batch=show)
        >>> for message in result.new_unread:
        ...     notify(message)

    Attributes:
        account: Account being fetched.
        pool: Connection pool shared with the rest of the engine.
        cache: Email cache shared with the presentation layer.
        engine: Engine tuning.
    """

    def __init__(
        self,
        account: "Account",
        pool: "ConnectionPool",
        cache: "EmailCache",
        engine: EngineConfig | None = None,
    ) -> None:
        self.account = account
        self.pool = pool
        self.cache = cache
        self.engine = engine or EngineConfig()
        self._progress = SyncProgress(account=account.name)

    @property
    def progress(self) -> SyncProgress:
        return self._progress

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch_folder(
        self,
        folder: "FolderConfig",
        mode: FetchMode = FetchMode.DELTA,
        on_batch: BatchCallback | None = None,
        cancel: CancelToken | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> SyncResult:
        """
        Fetch one watched folder.

        Args:
            folder: The folder and its limits and filters.
            mode: DELTA to fetch only above the cached watermark when there
                  is one, FULL to refetch and replace the cache entry.
            on_batch: Receives each batch of (filtered) messages as it arrives.
            cancel: Stops the fetch between batches.
            progress_callback: Receives SyncProgress updates.

        Returns:
            SyncResult. Errors are reported in it, not raised.
        """
        key = folder.folder_key(self.account)
        start = time.monotonic()
        watermark = self.cache.get_highest_uid(key) if mode is FetchMode.DELTA else None
        result = SyncResult(folder_key=key, mode=FetchMode.DELTA if watermark else FetchMode.FULL)
        known = {m.uid for m in self.cache.get_cached_emails(key) or []}

        self._progress = SyncProgress(account=self.account.name, folder=key)
        self._update_progress(SyncStatus.CONNECTING, progress_callback)

        try:
            if watermark:
                await self._fetch_delta(folder, key, watermark, result, on_batch, cancel, progress_callback)
            else:
                await self._fetch_full(folder, key, result, on_batch, cancel, progress_callback)
        except (IMAPError, TransportError) as e:
            logger.error(f"Fetch of {key} failed: {e}")
            result.success = False
            result.errors.append(str(e))
            self._progress.error = str(e)
            self._update_progress(SyncStatus.ERROR, progress_callback)

        result.messages.sort(key=lambda m: m.date, reverse=True)
        result.new_messages = [m for m in result.messages if m.uid not in known]
        result.new_unread = [m for m in result.new_messages if not m.is_read]
        result.duration_seconds = time.monotonic() - start

        if result.success:
            status = SyncStatus.CANCELLED if result.cancelled else SyncStatus.COMPLETE
            self._update_progress(status, progress_callback)
            logger.info(
                f"Fetched {key} ({result.mode.name.lower()}): {len(result.messages)} messages, "
                f"{len(result.new_unread)} new unread in {result.duration_seconds:.2f}s"
            )
        return result

    async def _fetch_delta(
        self,
        folder: "FolderConfig",
        key: str,
        watermark: int,
        result: SyncResult,
        on_batch: BatchCallback | None,
        cancel: CancelToken | None,
        progress_callback: ProgressCallback | None,
    ) -> None:
        """New messages above the watermark, merged into the cache."""
        limit = folder.max_emails or self.engine.default_max_emails

        async with self.pool.connection(self.account, folder.path) as client:
            # Re-select so the server reports messages that arrived since
            await client.select_folder(folder.path, force=True)
            self._update_progress(SyncStatus.SEARCHING, progress_callback)
            uids = await client.search_since_uid(watermark)
            newest = sorted(uids, reverse=True)[:limit]
            logger.debug(f"Delta search above {watermark} in {key}: {len(uids)} UIDs")

            self._progress.total_messages = len(newest)
            self._update_progress(SyncStatus.FETCHING, progress_callback)
            batch_size = self.engine.header_batch_size
            for start in range(0, len(newest), batch_size):
                if cancel is not None and cancel.is_cancelled:
                    result.cancelled = True
                    break
                chunk = newest[start:start + batch_size]
                batch = await client.fetch_headers(chunk, key, batch_size=len(chunk))
                await self._deliver(folder, key, batch, result, on_batch, progress_callback, merge=True)

        if not result.cancelled:
            # Nothing new is still a successful check
            self.cache.touch(key)

    async def _fetch_full(
        self,
        folder: "FolderConfig",
        key: str,
        result: SyncResult,
        on_batch: BatchCallback | None,
        cancel: CancelToken | None,
        progress_callback: ProgressCallback | None,
    ) -> None:
        """Search with the folder's criteria, fetch the newest, replace the cache."""
        limit = folder.max_emails or self.engine.default_max_emails
        criteria = SearchCriteria.for_folder(folder)

        async with self.pool.connection(self.account, folder.path) as client:
            self._update_progress(SyncStatus.SEARCHING, progress_callback)
            uids = await client.search(criteria)
            newest = sorted(uids, reverse=True)[:limit]
            logger.debug(f"Search {criteria} in {key}: {len(uids)} UIDs, keeping {len(newest)}")

            self._progress.total_messages = len(newest)
            self._update_progress(SyncStatus.FETCHING, progress_callback)

            if len(newest) <= self.engine.header_batch_size:
                if cancel is not None and cancel.is_cancelled:
                    result.cancelled = True
                elif newest:
                    batch = await client.fetch_headers(newest, key)
                    await self._deliver(folder, key, batch, result, on_batch, progress_callback)

        if len(newest) > self.engine.header_batch_size:
            fetcher = ParallelFetcher(
                self.pool,
                self.account,
                folder.path,
                folder_key=key,
                lanes=self.engine.parallel_lanes,
                max_extra_lanes=self.engine.parallel_extra_lanes,
                batch_size=self.engine.parallel_batch_size,
                max_total=min(limit, self.engine.parallel_max_total),
                timeout=self.engine.parallel_timeout,
            )

            async def deliver(batch: list[Message]) -> None:
                await self._deliver(folder, key, batch, result, on_batch, progress_callback)

            outcome = await fetcher.run(newest, on_batch=deliver, cancel=cancel)
            result.cancelled = outcome.cancelled
            for error in outcome.errors:
                result.errors.append(str(error))
            # Partial data still counts; only a fetch with nothing is a failure
            if outcome.errors and not outcome.fetched:
                result.success = False
                self._progress.error = result.errors[0]
                self._update_progress(SyncStatus.ERROR, progress_callback)

        if result.success and result.cancelled:
            # A partial snapshot must not replace what's cached
            self.cache.merge_new_emails(result.messages, key, folder.max_emails or None)
        elif result.success:
            self.cache.set_cached_emails(key, result.messages)

    async def _deliver(
        self,
        folder: "FolderConfig",
        key: str,
        batch: list[Message],
        result: SyncResult,
        on_batch: BatchCallback | None,
        progress_callback: ProgressCallback | None,
        merge: bool = False,
    ) -> None:
        """Filter a batch, record it, optionally merge it, hand it on."""
        self._progress.synced_messages += len(batch)
        kept = [m for m in batch if folder.matches(m)]
        if len(kept) != len(batch):
            logger.debug(f"Filtered out {len(batch) - len(kept)} messages in {key}")
        result.messages.extend(kept)

        if merge and kept:
            self.cache.merge_new_emails(kept, key, folder.max_emails or None)

        self._update_progress(SyncStatus.FETCHING, progress_callback)
        if on_batch is not None and kept:
            outcome = on_batch(kept)
            if inspect.isawaitable(outcome):
                await outcome

    async def fetch_all(
        self,
        folders: list["FolderConfig"],
        mode: FetchMode = FetchMode.DELTA,
        on_batch: BatchCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> list[SyncResult]:
        """Fetch every enabled folder concurrently."""
        enabled = [f for f in folders if f.enabled]
        if not enabled:
            return []
        return list(await asyncio.gather(*(
            self.fetch_folder(folder, mode=mode, on_batch=on_batch, cancel=cancel)
            for folder in enabled
        )))

    def cached_messages(self, folder: "FolderConfig") -> list[Message] | None:
        """Snapshot to show before the network round trip completes, if fresh."""
        key = folder.folder_key(self.account)
        if not self.cache.is_cache_valid(key, self.engine.cache_max_age):
            return None
        return self.cache.get_cached_emails(key)

    # =========================================================================
    # Message Actions
    # =========================================================================

    async def mark_read(self, folder: "FolderConfig", message: Message) -> ActionResult:
        return await self._run_action(folder, MarkReadAction(self.cache, folder.folder_key(self.account), message))

    async def mark_unread(self, folder: "FolderConfig", message: Message) -> ActionResult:
        return await self._run_action(folder, MarkUnreadAction(self.cache, folder.folder_key(self.account), message))

    async def delete(self, folder: "FolderConfig", message: Message) -> ActionResult:
        return await self._run_action(folder, DeleteAction(self.cache, folder.folder_key(self.account), message))

    async def _run_action(self, folder: "FolderConfig", action: MessageAction) -> ActionResult:
        """
        Run an optimistic action.

        The local change is visible before the connection is even borrowed;
        a failure to connect compensates it like any other server failure.
        """
        action.apply()
        try:
            async with self.pool.connection(self.account, folder.path) as client:
                await action.perform(client)
        except (IMAPError, TransportError) as e:
            logger.error(f"{action.name} failed for {action!r}: {e}")
            action.compensate()
            return ActionResult(ok=False, uid=action.message.uid, error=str(e))
        logger.debug(f"{action.name} succeeded for {action!r}")
        return ActionResult(ok=True, uid=action.message.uid)

    # =========================================================================
    # Folders and Bodies
    # =========================================================================

    async def list_folders(self) -> list[Folder]:
        """All folders on the server, for the folder picker."""
        async with self.pool.connection(self.account, "INBOX") as client:
            return await client.list_folders()

    async def fetch_body(self, folder: "FolderConfig", message: Message) -> str:
        """
        Download and render a message body.

        Also fills in the message's preview (and the cached copy's).

        Returns:
            HTML suitable for display.

        Raises:
            IMAPError: If the message can't be fetched.
        """
        key = folder.folder_key(self.account)
        async with self.pool.connection(self.account, folder.path) as client:
            raw = await client.fetch_full_message(message.uid)

        decoder = MimeDecoder.from_message(raw)
        html = decoder.html()
        message.preview = decoder.preview()
        self.cache.update_email(key, message.uid, preview=message.preview)
        logger.debug(f"Rendered body of {key}/{message.uid} ({len(raw)} bytes)")
        return html

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def _update_progress(self, status: SyncStatus, callback: ProgressCallback | None) -> None:
        self._progress.status = status
        if callback:
            callback(self._progress)

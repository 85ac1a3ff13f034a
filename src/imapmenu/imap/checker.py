# =============================================================================
# Mail Checker
# =============================================================================
# Keeps the watched folders of every account fresh while the app runs.
#
# Two triggers:
#   1. A timer every check_interval_minutes (0 = no timer, manual only)
#   2. IMAP IDLE pushes, when use_idle is set:
#        - new mail / recent   -> delta fetch of the pushed folder
#        - expunge / flags     -> full fetch of the pushed folder, since a
#                                 delta only sees UIDs above the watermark
#
# Checks never overlap: the timer and IDLE share one lock. Each SyncResult
# is handed to on_result (for notifications and the menu's unread badge).
# =============================================================================

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from imapmenu.core import FolderConfig
from imapmenu.imap.idle import IdleEvent, IdleWorker
from imapmenu.imap.sync import FetchMode, SyncManager, SyncResult

if TYPE_CHECKING:
    from imapmenu.config import SyncConfig

logger = logging.getLogger(__name__)

ResultCallback = Callable[[SyncResult], Awaitable[None] | None]

# IDLE event type -> how to refetch the folder it came from
_IDLE_FETCH_MODES = {
    "new_mail": FetchMode.DELTA,
    "recent": FetchMode.DELTA,
    "expunge": FetchMode.FULL,
    "flags": FetchMode.FULL,
}


class MailChecker:
    """
    Periodic and push-driven checking for new mail.

    Usage:
        >>> checker = MailChecker(syncs, watched, config.sync, idle=IdleWorker(secrets))
        >>> checker.on_result = notify_new_unread
        >>> await checker.start()
        >>> # ... later ...
        >>> await checker.stop()

    Attributes:
        syncs: Account name -> SyncManager.
        watched: Account name -> folders to check (INBOX when missing).
        interval: Seconds between timer checks; 0 disables the timer.
        idle: IDLE worker, used only when the settings ask for IDLE.
        on_result: Receives every SyncResult. Errors in it are logged.
    """

    def __init__(
        self,
        syncs: dict[str, SyncManager],
        watched: dict[str, list[FolderConfig]],
        settings: "SyncConfig",
        idle: IdleWorker | None = None,
        interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            syncs: Account name -> SyncManager.
            watched: Account name -> folders to check.
            settings: check_interval_minutes and use_idle.
            idle: Worker to start when settings.use_idle is set.
            interval: Seconds between checks, overriding the settings.
            clock: Time source for seconds_until_check().
        """
        self.syncs = syncs
        self.watched = watched
        self.interval = settings.check_interval_minutes * 60 if interval is None else interval
        self.idle = idle if settings.use_idle else None
        self.on_result: ResultCallback | None = None
        self._clock = clock
        self._lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._next_check: float | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def seconds_until_check(self) -> float | None:
        """Time left before the next timer check; None without a timer."""
        if self._next_check is None:
            return None
        return max(0.0, self._next_check - self._clock())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, initial_check: bool = True) -> None:
        """
        Start the timer and IDLE.

        Args:
            initial_check: Check every folder once before returning.
        """
        if self._running:
            logger.warning("MailChecker already running")
            return
        self._running = True

        if initial_check:
            await self.check_now()

        if self.interval > 0:
            self._timer = asyncio.create_task(self._timer_loop(), name="mail-checker")
            logger.info(f"Checking mail every {self.interval:g}s")
        elif self.idle is None:
            logger.info("No check interval and no IDLE: checking on request only")

        if self.idle is not None:
            self.idle.on_event = self._on_idle_event
            await self.idle.start([sync.account for sync in self.syncs.values()])

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._next_check = None

        if self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
            self._timer = None
        if self.idle is not None:
            await self.idle.stop()
        logger.info("Mail checker stopped")

    # =========================================================================
    # Checking
    # =========================================================================

    async def check_now(
        self,
        account: str | None = None,
        mode: FetchMode = FetchMode.DELTA,
    ) -> list[SyncResult]:
        """
        Check the watched folders of one account, or of all of them.

        Disabled accounts are skipped unless asked for by name.

        Returns:
            One SyncResult per fetched folder.
        """
        results: list[SyncResult] = []
        async with self._lock:
            for name, sync in self.syncs.items():
                if account is not None and name != account:
                    continue
                if account is None and not sync.account.enabled:
                    continue
                results.extend(await sync.fetch_all(self._folders(name), mode=mode))

        new_unread = sum(len(r.new_unread) for r in results)
        logger.debug(f"Checked {len(results)} folders, {new_unread} new unread")
        await self._report(results)
        return results

    async def _timer_loop(self) -> None:
        try:
            while self._running:
                self._next_check = self._clock() + self.interval
                await asyncio.sleep(self.interval)
                await self.check_now()
        except asyncio.CancelledError:
            logger.debug("Mail check timer cancelled")
            raise

    async def _on_idle_event(self, event: IdleEvent) -> None:
        """Refetch the folder an IDLE push came from."""
        mode = _IDLE_FETCH_MODES.get(event.event_type)
        sync = self.syncs.get(event.account_name)
        if mode is None or sync is None:
            return

        folders = [f for f in self._folders(event.account_name) if f.path == event.folder_name]
        if not folders:
            logger.debug(f"IDLE {event.event_type} for unwatched {event.account_name}:{event.folder_name}")
            return

        logger.info(f"IDLE {event.event_type} on {event.account_name}:{event.folder_name}, refreshing")
        async with self._lock:
            results = await sync.fetch_all(folders, mode=mode)
        await self._report(results)

    async def _report(self, results: list[SyncResult]) -> None:
        if self.on_result is None:
            return
        for result in results:
            try:
                outcome = self.on_result(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Result callback failed for {result.folder_key}: {e}")

    def _folders(self, account_name: str) -> list[FolderConfig]:
        return self.watched.get(account_name) or [FolderConfig(path="INBOX")]

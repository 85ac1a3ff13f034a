# =============================================================================
# Virtual Folder View
# =============================================================================
# Shows several watched folders, possibly on different accounts, as one
# message list.
#
# How it works:
#   - Messages come straight from the EmailCache entries of the sources;
#     a virtual folder has no cache entry of its own
#   - The merged list is filtered with the virtual folder's rules, sorted
#     newest first and cut to max_emails
#   - refresh() fetches every source through its account's SyncManager
#   - Actions go to the SyncManager that owns the message, found by the
#     message's folder_key
# =============================================================================

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from imapmenu.core import FolderConfig, Message, VirtualFolder, VirtualFolderSource
from imapmenu.imap.actions import ActionResult
from imapmenu.imap.parallel import CancelToken
from imapmenu.imap.sync import FetchMode, SyncManager, SyncResult

if TYPE_CHECKING:
    from imapmenu.storage.cache import EmailCache

logger = logging.getLogger(__name__)


class VirtualFolderView:
    """
    A live, merged view of a VirtualFolder's sources.

    Usage:
        >>> view = VirtualFolderView(folder, cache, {"work": work_sync, "home": home_sync})
        >>> await view.refresh()
        >>> for message in view.messages():
        ...     print(message)
        >>> await view.mark_read(message)

    Attributes:
        folder: The virtual folder definition.
        cache: Cache shared with the SyncManagers.
        syncs: Account name -> SyncManager for that account.
        watched: Account name -> watched folders, so a source fetches with
                 its folder's own limits and filters.
        last_refresh: When refresh() last completed, if ever.
    """

    def __init__(
        self,
        folder: VirtualFolder,
        cache: "EmailCache",
        syncs: dict[str, SyncManager],
        watched: dict[str, list[FolderConfig]] | None = None,
    ) -> None:
        self.folder = folder
        self.cache = cache
        self.syncs = syncs
        self.watched = watched or {}
        self.last_refresh: datetime | None = None

    @property
    def name(self) -> str:
        return self.folder.name

    # =========================================================================
    # Reads
    # =========================================================================

    def messages(self) -> list[Message]:
        """Merged, filtered messages of all sources, newest first."""
        merged: list[Message] = []
        for source in self._sources():
            cached = self.cache.get_cached_emails(source.folder_key)
            if cached is None:
                continue
            merged.extend(m for m in cached if self.folder.matches(m))

        merged.sort(key=lambda m: (m.date, m.uid), reverse=True)
        if self.folder.max_emails > 0:
            del merged[self.folder.max_emails:]
        return merged

    def unread_count(self) -> int:
        """Unread messages among those messages() would show."""
        return sum(1 for m in self.messages() if not m.is_read)

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(
        self,
        mode: FetchMode = FetchMode.DELTA,
        cancel: CancelToken | None = None,
    ) -> list[SyncResult]:
        """
        Fetch every source folder.

        Sources on accounts without a SyncManager are skipped with a
        warning; the others are fetched concurrently.

        Returns:
            One SyncResult per fetched source.
        """
        if not self.folder.enabled:
            logger.debug(f"Virtual folder {self.name} is disabled, not refreshing")
            return []

        jobs = []
        for source in self._sources():
            sync = self.syncs.get(source.account)
            if sync is None:
                logger.warning(f"Virtual folder {self.name}: no account named {source.account!r}")
                continue
            jobs.append(sync.fetch_folder(self._folder_config(source), mode=mode, cancel=cancel))

        results = list(await asyncio.gather(*jobs))
        self.last_refresh = datetime.now()
        failed = sum(1 for r in results if not r.success)
        logger.info(
            f"Refreshed virtual folder {self.name}: {len(results)} sources, {failed} failed, "
            f"{self.unread_count()} unread"
        )
        return results

    # =========================================================================
    # Message Actions
    # =========================================================================

    async def mark_read(self, message: Message) -> ActionResult:
        owner = self._owner(message)
        if owner is None:
            return self._not_ours(message)
        sync, folder = owner
        return await sync.mark_read(folder, message)

    async def mark_unread(self, message: Message) -> ActionResult:
        owner = self._owner(message)
        if owner is None:
            return self._not_ours(message)
        sync, folder = owner
        return await sync.mark_unread(folder, message)

    async def delete(self, message: Message) -> ActionResult:
        owner = self._owner(message)
        if owner is None:
            return self._not_ours(message)
        sync, folder = owner
        return await sync.delete(folder, message)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _sources(self) -> list[VirtualFolderSource]:
        """Sources without duplicates, in configured order."""
        unique: dict[str, VirtualFolderSource] = {}
        for source in self.folder.sources:
            unique.setdefault(source.folder_key, source)
        return list(unique.values())

    def _folder_config(self, source: VirtualFolderSource) -> FolderConfig:
        for folder in self.watched.get(source.account, []):
            if folder.path == source.path:
                return folder
        return FolderConfig(path=source.path)

    def _owner(self, message: Message) -> tuple[SyncManager, FolderConfig] | None:
        source = self.folder.source_for(message.folder_key)
        if source is None or source.account not in self.syncs:
            return None
        return self.syncs[source.account], self._folder_config(source)

    def _not_ours(self, message: Message) -> ActionResult:
        error = f"{message.folder_key} is not a source of virtual folder {self.name}"
        logger.warning(error)
        return ActionResult(ok=False, uid=message.uid, error=error)

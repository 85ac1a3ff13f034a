# =============================================================================
# Email Cache
# =============================================================================
# In-memory, per-folder cache of message headers.
#
# Key responsibilities:
#   - Snapshot of each watched folder, newest first by receive time
#   - Delta-fetch watermark (highest cached UID) per folder
#   - Merging newly fetched messages without duplicates
#   - Optimistic edits (read/unread/delete) without a refetch
#   - Bounding memory per folder and across all folders
#
# Eviction:
#   1. After every write, the written folder is cut to its per-folder cap
#      (newest messages kept).
#   2. Then, while the whole cache holds more than max_total messages, the
#      oldest message across all folders is evicted, whatever its folder.
#
# Thread safety:
#   All access goes through one RLock. Reads return copies, so callers can
#   never observe (or mutate) a half-updated list.
# =============================================================================

import heapq
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from imapmenu.core import Message

logger = logging.getLogger(__name__)


@dataclass
class FolderEntry:
    """
    Cached state of one folder.

    Attributes:
        messages: Messages sorted newest first by date.
        highest_uid: Max UID over `messages`; 0 when empty.
        last_fetch: Clock reading of the last write, for freshness checks.
    """
    messages: list[Message] = field(default_factory=list)
    highest_uid: int = 0
    last_fetch: float = 0.0

    def reindex(self) -> None:
        """Re-sort and recompute the watermark. Call after any change."""
        self.messages.sort(key=lambda m: (m.date, m.uid), reverse=True)
        self.highest_uid = max((m.uid for m in self.messages), default=0)


class EmailCache:
    """
    Bounded per-folder message cache.

    Usage:
        >>> cache = EmailCache(max_per_folder=500, max_total=2000)
        >>> cache.set_cached_emails("work:INBOX", messages)
        >>> cache.get_highest_uid("work:INBOX")
        1234
        >>> new = cache.merge_new_emails(fetched, "work:INBOX")
    """

    MAX_PER_FOLDER = 500
    MAX_TOTAL = 2000

    # Default freshness window for is_cache_valid() (seconds)
    MAX_AGE = 300

    def __init__(
        self,
        max_per_folder: int = MAX_PER_FOLDER,
        max_total: int = MAX_TOTAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_folder = max_per_folder
        self.max_total = max_total
        self._clock = clock
        self._folders: dict[str, FolderEntry] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_cached_emails(self, folder_key: str) -> list[Message] | None:
        """
        Get a copy of a folder's cached messages.

        Returns:
            Messages newest first, or None if the folder was never cached.
        """
        with self._lock:
            entry = self._folders.get(folder_key)
            if entry is None:
                return None
            return [m.copy() for m in entry.messages]

    def get_email(self, folder_key: str, uid: int) -> Message | None:
        with self._lock:
            entry = self._folders.get(folder_key)
            if entry is None:
                return None
            for message in entry.messages:
                if message.uid == uid:
                    return message.copy()
            return None

    def get_highest_uid(self, folder_key: str) -> int | None:
        """
        The delta-fetch watermark for a folder.

        Returns:
            Highest cached UID, or None when nothing is cached.
        """
        with self._lock:
            entry = self._folders.get(folder_key)
            if entry is None or not entry.messages:
                return None
            return entry.highest_uid

    def is_cache_valid(self, folder_key: str, max_age: float = MAX_AGE) -> bool:
        """Check whether a folder was written within the last `max_age` seconds."""
        with self._lock:
            entry = self._folders.get(folder_key)
            if entry is None:
                return False
            return self._clock() - entry.last_fetch <= max_age

    def unread_count(self, folder_key: str | None = None) -> int:
        """Unread messages in one folder, or across the whole cache."""
        with self._lock:
            if folder_key is not None:
                entries = [self._folders[folder_key]] if folder_key in self._folders else []
            else:
                entries = list(self._folders.values())
            return sum(1 for entry in entries for m in entry.messages if not m.is_read)

    def stats(self) -> dict:
        """Summary counts for logging and the CLI."""
        with self._lock:
            folders = {key: len(entry.messages) for key, entry in self._folders.items()}
            return {
                "folders": len(folders),
                "messages": sum(folders.values()),
                "per_folder": folders,
                "max_per_folder": self.max_per_folder,
                "max_total": self.max_total,
            }

    # =========================================================================
    # Writes
    # =========================================================================

    def set_cached_emails(self, folder_key: str, messages: list[Message]) -> None:
        """
        Replace a folder's snapshot (full refresh).

        Duplicate UIDs keep their first occurrence.
        """
        unique: dict[int, Message] = {}
        for message in messages:
            unique.setdefault(message.uid, message.copy(folder_key=folder_key))

        with self._lock:
            entry = FolderEntry(messages=list(unique.values()), last_fetch=self._clock())
            entry.reindex()
            self._folders[folder_key] = entry
            self._enforce_limits(folder_key, self.max_per_folder)
            logger.debug(f"Cached {len(entry.messages)} messages for {folder_key}")

    def merge_new_emails(
        self,
        new_messages: list[Message],
        folder_key: str,
        max_per_folder: int | None = None,
    ) -> list[Message]:
        """
        Merge freshly fetched messages into a folder.

        Args:
            new_messages: Messages from a delta (or partial) fetch.
            folder_key: Folder to merge into.
            max_per_folder: Override the per-folder cap for this merge.

        Returns:
            Copies of the messages that weren't cached before (by UID) and
            survived eviction.
        """
        with self._lock:
            entry = self._folders.setdefault(folder_key, FolderEntry())
            known = {m.uid for m in entry.messages}
            added = []
            for message in new_messages:
                if message.uid in known:
                    continue
                known.add(message.uid)
                added.append(message.copy(folder_key=folder_key))

            entry.messages.extend(added)
            entry.last_fetch = self._clock()
            entry.reindex()
            self._enforce_limits(folder_key, max_per_folder or self.max_per_folder)

            remaining = {m.uid for m in entry.messages}
            result = [m.copy() for m in added if m.uid in remaining]
            if result:
                logger.debug(f"Merged {len(result)} new messages into {folder_key}")
            return result

    def touch(self, folder_key: str) -> bool:
        """
        Mark a folder as fetched just now without changing its messages.

        A delta fetch that finds nothing new still proves the snapshot is
        current.

        Returns:
            False if the folder isn't cached (nothing to refresh).
        """
        with self._lock:
            entry = self._folders.get(folder_key)
            if entry is None:
                return False
            entry.last_fetch = self._clock()
            return True

    def update_email(self, folder_key: str, uid: int, **changes) -> Message | None:
        """
        Apply attribute changes to one cached message.

        Example:
            >>> cache.update_email("work:INBOX", 42, flags=MessageFlags.SEEN)

        Returns:
            A copy of the message as it was before the change, or None if it
            isn't cached.
        """
        with self._lock:
            entry = self._folders.get(folder_key)
            if entry is None:
                return None
            for index, message in enumerate(entry.messages):
                if message.uid == uid:
                    entry.messages[index] = message.copy(**changes)
                    entry.reindex()
                    return message.copy()
            return None

    def remove_email(self, folder_key: str, uid: int) -> Message | None:
        """
        Remove one message.

        Returns:
            The removed message, or None if it wasn't cached.
        """
        with self._lock:
            entry = self._folders.get(folder_key)
            if entry is None:
                return None
            for index, message in enumerate(entry.messages):
                if message.uid == uid:
                    del entry.messages[index]
                    entry.reindex()
                    return message.copy()
            return None

    def restore_email(self, folder_key: str, message: Message) -> None:
        """Put back a message removed with remove_email()."""
        with self._lock:
            entry = self._folders.setdefault(folder_key, FolderEntry(last_fetch=self._clock()))
            if any(m.uid == message.uid for m in entry.messages):
                return
            entry.messages.append(message.copy(folder_key=folder_key))
            entry.reindex()
            self._enforce_limits(folder_key, self.max_per_folder)

    def invalidate(self, folder_key: str) -> None:
        """Drop a folder from the cache."""
        with self._lock:
            if self._folders.pop(folder_key, None) is not None:
                logger.debug(f"Invalidated cache for {folder_key}")

    def clear(self) -> None:
        with self._lock:
            self._folders.clear()

    # =========================================================================
    # Eviction
    # =========================================================================

    def _enforce_limits(self, folder_key: str, max_per_folder: int) -> None:
        """Per-folder cap on the written folder, then the global cap."""
        entry = self._folders[folder_key]
        if max_per_folder > 0 and len(entry.messages) > max_per_folder:
            dropped = len(entry.messages) - max_per_folder
            del entry.messages[max_per_folder:]
            entry.reindex()
            logger.debug(f"Evicted {dropped} messages from {folder_key} (per-folder cap)")

        total = sum(len(e.messages) for e in self._folders.values())
        excess = total - self.max_total
        if self.max_total <= 0 or excess <= 0:
            return

        # Globally oldest first; each folder list is already newest first
        candidates = (
            (m.date, m.uid, key)
            for key, e in self._folders.items()
            for m in e.messages
        )
        victims = heapq.nsmallest(excess, candidates)

        doomed: dict[str, set[int]] = {}
        for _, uid, key in victims:
            doomed.setdefault(key, set()).add(uid)
        for key, uids in doomed.items():
            e = self._folders[key]
            e.messages = [m for m in e.messages if m.uid not in uids]
            e.reindex()
        logger.debug(f"Evicted {excess} messages across folders (global cap)")

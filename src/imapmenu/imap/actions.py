# =============================================================================
# Message Actions
# =============================================================================
# Optimistic read/unread/delete.
#
# Each action is a small command object:
#
#   apply()       change the cache (and the caller's Message) right away
#   perform(c)    make the same change on the server with client `c`
#   compensate()  undo exactly what apply() did
#
# SyncManager runs them: apply, then perform; if the server round trip
# fails, compensate and report the error in the ActionResult.
# =============================================================================

from dataclasses import dataclass
from typing import TYPE_CHECKING

from imapmenu.core import Message, MessageFlags

if TYPE_CHECKING:
    from imapmenu.imap.client import IMAPClient
    from imapmenu.storage.cache import EmailCache


@dataclass
class ActionResult:
    """
    Outcome of a message action.

    Attributes:
        ok: True if the server accepted the change.
        error: Human-readable failure, when not ok.
        uid: The message acted on.
    """
    ok: bool
    uid: int
    error: str | None = None


class MessageAction:
    """Base class for optimistic message commands."""

    name = "action"

    def __init__(self, cache: "EmailCache", folder_key: str, message: Message) -> None:
        self.cache = cache
        self.folder_key = folder_key
        self.message = message
        self._applied = False

    def apply(self) -> None:
        raise NotImplementedError

    def compensate(self) -> None:
        raise NotImplementedError

    async def perform(self, client: "IMAPClient") -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.folder_key!r}, uid={self.message.uid})"


class _FlagAction(MessageAction):
    """Set or clear \\Seen."""

    seen = True

    def __init__(self, cache: "EmailCache", folder_key: str, message: Message) -> None:
        super().__init__(cache, folder_key, message)
        self._previous_flags = message.flags

    def apply(self) -> None:
        self._previous_flags = self.message.flags
        if self.seen:
            self.message.mark_read()
        else:
            self.message.mark_unread()
        cached = self.cache.get_email(self.folder_key, self.message.uid)
        flags = cached.flags if cached is not None else self._previous_flags
        flags = flags | MessageFlags.SEEN if self.seen else flags & ~MessageFlags.SEEN
        self.cache.update_email(self.folder_key, self.message.uid, flags=flags)
        self._applied = True

    def compensate(self) -> None:
        if not self._applied:
            return
        self.message.flags = self._previous_flags
        self.cache.update_email(self.folder_key, self.message.uid, flags=self._previous_flags)
        self._applied = False


class MarkReadAction(_FlagAction):
    name = "mark_read"
    seen = True

    async def perform(self, client: "IMAPClient") -> None:
        await client.mark_read(self.message.uid)


class MarkUnreadAction(_FlagAction):
    name = "mark_unread"
    seen = False

    async def perform(self, client: "IMAPClient") -> None:
        await client.mark_unread(self.message.uid)


class DeleteAction(MessageAction):
    """STORE +FLAGS (\\Deleted) then EXPUNGE; removed from the cache first."""

    name = "delete"

    def __init__(self, cache: "EmailCache", folder_key: str, message: Message) -> None:
        super().__init__(cache, folder_key, message)
        self._removed: Message | None = None

    def apply(self) -> None:
        self._removed = self.cache.remove_email(self.folder_key, self.message.uid)
        self._applied = True

    def compensate(self) -> None:
        if not self._applied:
            return
        if self._removed is not None:
            self.cache.restore_email(self.folder_key, self._removed)
        self._applied = False

    async def perform(self, client: "IMAPClient") -> None:
        await client.delete_message(self.message.uid)

# =============================================================================
# IMAPMenu Core Module
# =============================================================================
# Plain dataclasses shared by every layer of the engine:
#   - Account: where the servers are and how to log in
#   - Folder / FolderConfig / FilterRule: server mailboxes and watched folders
#   - VirtualFolder: watched folders merged into one list
#   - Message / MessageFlags: a fetched message and its IMAP flags
# =============================================================================

from imapmenu.core.account import Account
from imapmenu.core.folder import (
    FilterRule,
    Folder,
    FolderConfig,
    FolderType,
    VirtualFolder,
    VirtualFolderSource,
)
from imapmenu.core.message import Message, MessageFlags

__all__ = [
    "Account",
    "FilterRule",
    "Folder",
    "FolderConfig",
    "FolderType",
    "Message",
    "MessageFlags",
    "VirtualFolder",
    "VirtualFolderSource",
]

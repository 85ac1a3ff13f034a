# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP (Internet Message Access Protocol) operations:
#   - Connecting to IMAP servers with SSL/STARTTLS, LOGIN or XOAUTH2
#   - Listing folders (modified UTF-7 names)
#   - Searching and fetching headers in batches, full or delta
#   - Managing message flags (read, unread, deleted)
#   - Pooling connections and fetching over several in parallel
#   - IMAP IDLE for push notifications
#   - Checking for new mail on a timer and on IDLE pushes
#   - Virtual folders merging watched folders across accounts
#
# The protocol is implemented directly on asyncio streams (see
# imapmenu.transport); no IMAP library is involved.
# =============================================================================

from imapmenu.imap.client import (
    IMAPClient,
    ConnectionState,
    SelectResult,
)
from imapmenu.imap.errors import (
    IMAPError,
    IMAPConnectionError,
    IMAPAuthenticationError,
    FolderNotFound,
    FetchFailed,
    InvalidResponse,
    IMAPTimeout,
    NotConnected,
    NoMessages,
)
from imapmenu.imap.search import SearchCriteria
from imapmenu.imap.pool import ConnectionPool, PooledConnection
from imapmenu.imap.parallel import CancelToken, FetchOutcome, ParallelFetcher
from imapmenu.imap.actions import ActionResult
from imapmenu.imap.sync import (
    FetchMode,
    SyncManager,
    SyncStatus,
    SyncProgress,
    SyncResult,
)
from imapmenu.imap.idle import (
    IdleWorker,
    IdleEvent,
)
from imapmenu.imap.checker import MailChecker
from imapmenu.imap.virtual import VirtualFolderView

__all__ = [
    # Client
    "IMAPClient",
    "ConnectionState",
    "SelectResult",
    "SearchCriteria",
    # Errors
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "FolderNotFound",
    "FetchFailed",
    "InvalidResponse",
    "IMAPTimeout",
    "NotConnected",
    "NoMessages",
    # Pooling and parallel fetch
    "ConnectionPool",
    "PooledConnection",
    "CancelToken",
    "FetchOutcome",
    "ParallelFetcher",
    # Sync
    "ActionResult",
    "FetchMode",
    "SyncManager",
    "SyncStatus",
    "SyncProgress",
    "SyncResult",
    # IDLE
    "IdleWorker",
    "IdleEvent",
    # Periodic checks
    "MailChecker",
    # Virtual folders
    "VirtualFolderView",
]

# =============================================================================
# IMAP Exceptions
# =============================================================================
# Every failure the IMAP layer reports is an IMAPError subclass whose str()
# is a single human-readable message, fit for showing in the menu:
#
#   IMAPError
#     +-- IMAPConnectionError      "Connection failed: ..."
#     +-- IMAPAuthenticationError  "Authentication failed: ..."
#     +-- FolderNotFound           "Folder not found: INBOX/Foo"
#     +-- FetchFailed              "Fetch failed: ..."
#     +-- InvalidResponse          "Invalid server response: ..."
#     +-- IMAPTimeout              "Connection timeout"
#     +-- NotConnected             "Not connected to server"
#     +-- NoMessages               "No messages in folder"
#
# These live in their own module so the pool and orchestrator can catch
# them without importing the client.
# =============================================================================


class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when the server can't be reached or the connection drops."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Connection failed: {detail}")


class IMAPAuthenticationError(IMAPError):
    """Raised when LOGIN or AUTHENTICATE is rejected or no secret is available."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Authentication failed: {detail}")


class FolderNotFound(IMAPError):
    """Raised when SELECT is answered with NO or BAD."""

    def __init__(self, folder: str) -> None:
        self.folder = folder
        super().__init__(f"Folder not found: {folder}")


class FetchFailed(IMAPError):
    """Raised when SEARCH, FETCH or STORE fails, or a response is too large."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Fetch failed: {detail}")


class InvalidResponse(IMAPError):
    """Raised when the server says something we can't make sense of."""

    def __init__(self, detail: str = "") -> None:
        message = "Invalid server response"
        super().__init__(f"{message}: {detail}" if detail else message)


class IMAPTimeout(IMAPError):
    """Raised when a read or write exceeds the timeout."""

    def __init__(self) -> None:
        super().__init__("Connection timeout")


class NotConnected(IMAPError):
    """Raised when a command is issued on a closed client."""

    def __init__(self) -> None:
        super().__init__("Not connected to server")


class NoMessages(IMAPError):
    """Raised by convenience fetches when the folder is empty."""

    def __init__(self) -> None:
        super().__init__("No messages in folder")

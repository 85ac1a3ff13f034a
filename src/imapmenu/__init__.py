# =============================================================================
# IMAPMenu: The Mail Engine Behind a Menubar Mail Checker
# =============================================================================
#
# IMAPMenu watches a handful of IMAP folders and keeps an up-to-date list of
# recent mail for a menubar popover, without any IMAP or SMTP library:
#
# Features:
#   - Hand-rolled IMAP client (LOGIN / XOAUTH2, SEARCH, FETCH, STORE, IDLE)
#   - Hand-rolled SMTP sender with STARTTLS and AUTH PLAIN/LOGIN
#   - MIME and RFC 2047 decoding to HTML plus a short preview
#   - Delta fetches above a cached UID watermark
#   - Connection pooling and parallel multi-connection fetch
#   - XDG Base Directory compliant configuration
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "imapmenu"

# Main entry point - this is what gets called by the 'imapmenu' command
from imapmenu.app import main

__all__ = ["main", "__version__", "__app_name__"]

# =============================================================================
# SMTP Module
# =============================================================================
# Handles sending emails via SMTP (Simple Mail Transfer Protocol).
#
# Features:
#   - Connection with SSL/STARTTLS
#   - AUTH PLAIN, AUTH LOGIN and XOAUTH2
#   - Message composition (reply, reply-all, forward)
# =============================================================================

from imapmenu.smtp.client import (
    SMTPClient,
    EmailDraft,
    SMTPError,
    SMTPConnectionError,
    SMTPAuthenticationError,
    SendError,
    SMTPTimeout,
    SMTPNotConnected,
    SMTPInvalidResponse,
)

__all__ = [
    "SMTPClient",
    "EmailDraft",
    "SMTPError",
    "SMTPConnectionError",
    "SMTPAuthenticationError",
    "SendError",
    "SMTPTimeout",
    "SMTPNotConnected",
    "SMTPInvalidResponse",
]

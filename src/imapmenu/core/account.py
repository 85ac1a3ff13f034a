# =============================================================================
# Account Model
# =============================================================================
# Represents a mail account: where the IMAP and SMTP servers live and how
# to log in to them.
#
# IMPORTANT: Secrets are NOT stored here. Passwords and OAuth2 access tokens
# are looked up at connect time through a SecretStore (keyring by default),
# keyed by Account.key.
# =============================================================================

from dataclasses import dataclass


# Supported connection security modes
SECURITY_MODES = ("ssl", "starttls", "plain")

# Supported login mechanisms
AUTH_METHODS = ("password", "oauth2")


@dataclass
class Account:
    """
    Represents a mail account with IMAP and SMTP configuration.

    Attributes:
        name: Unique identifier for this account (e.g., "personal", "work").
              Used as the key in the config file.
        email: The email address, used as the envelope sender.
        username: Login name. Defaults to the email address.
        display_name: Name shown in the "From" header when sending.

        imap_host: Hostname of the IMAP server.
        imap_port: 993 for implicit TLS, 143 for plain/STARTTLS.
        imap_security: "ssl", "starttls" or "plain".

        smtp_host: Hostname of the SMTP server.
        smtp_port: 465 for implicit TLS, 587 for submission with STARTTLS.
        smtp_security: "ssl", "starttls" or "plain".

        auth_method: "password" for LOGIN / AUTH PLAIN, "oauth2" for XOAUTH2
                     with an access token from the secret store.
        enabled: Disabled accounts are skipped by sync and IDLE.

    Example:
        >>> account = Account(
        ...     name="personal",
        ...     email="user@example.com",
        ...     imap_host="imap.example.com",
        ...     smtp_host="smtp.example.com",
        ... )
        >>> account.key
        'user@example.com@imap.example.com'
    """

    # Account identification
    name: str
    email: str
    username: str = ""
    display_name: str = ""

    # IMAP configuration (receiving)
    imap_host: str = ""
    imap_port: int = 993
    imap_security: str = "ssl"

    # SMTP configuration (sending)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_security: str = "starttls"

    auth_method: str = "password"
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.username:
            self.username = self.email
        if not self.display_name:
            self.display_name = self.email
        if self.imap_security not in SECURITY_MODES:
            raise ValueError(f"Unknown IMAP security mode: {self.imap_security!r}")
        if self.smtp_security not in SECURITY_MODES:
            raise ValueError(f"Unknown SMTP security mode: {self.smtp_security!r}")
        if self.auth_method not in AUTH_METHODS:
            raise ValueError(f"Unknown auth method: {self.auth_method!r}")

    @property
    def key(self) -> str:
        """
        Account key used by the secret store: "<username>@<imap host>".

        The same key is used for SMTP so one stored secret serves both.
        """
        return f"{self.username}@{self.imap_host}"

    @property
    def uses_oauth(self) -> bool:
        return self.auth_method == "oauth2"

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"

    def __repr__(self) -> str:
        return (
            f"Account(name={self.name!r}, user={self.username!r}, "
            f"imap={self.imap_host}:{self.imap_port}, "
            f"smtp={self.smtp_host}:{self.smtp_port})"
        )

# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating IMAPMenu configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/imapmenu/  (default: ~/.config/imapmenu/)
#   - State:   $XDG_STATE_HOME/imapmenu/   (default: ~/.local/state/imapmenu/)
#
# Files:
#   - config.toml: Accounts, watched folders with filters, engine tuning
#   - imapmenu.log: Debug log written with --debug (in state directory)
#
# Passwords are NOT stored here; see imapmenu.credentials.
#
# Example config.toml:
#
#   [general]
#   default_account = "work"
#
#   [accounts.work]
#   email = "me@example.com"
#   imap_host = "imap.example.com"
#   smtp_host = "smtp.example.com"
#
#   [[accounts.work.folders]]
#   path = "INBOX"
#   max_emails = 100
#
#   [[accounts.work.folders]]
#   path = "Lists/Python"
#   days_to_fetch = 7
#   filters = [{ field = "from", operator = "contains", value = "python.org" }]
#
#   [[virtual_folders]]
#   name = "Everything unread"
#   sources = [{ account = "work", path = "INBOX" }, { account = "home", path = "INBOX" }]
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from imapmenu.core import Account, FilterRule, FolderConfig, VirtualFolder, VirtualFolderSource


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "imapmenu"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for IMAPMenu.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/imapmenu/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_state_home() -> Path:
    """
    Returns the XDG state directory for IMAPMenu.

    Respects $XDG_STATE_HOME if set, otherwise uses ~/.local/state/imapmenu/
    """
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base = Path(xdg_state)
    else:
        base = Path.home() / ".local" / "state"
    return base / APP_NAME


def ensure_directories() -> dict[str, Path]:
    """
    Creates the XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "state": get_xdg_state_home(),
    }
    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)
    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class EngineConfig:
    """
    Tuning knobs for the mail engine.

    Attributes:
        timeout: Per read/write timeout in seconds.
        max_response_size: Byte ceiling for one server response.
        header_batch_size: UIDs per FETCH on a single connection.
        default_max_emails: Messages kept per folder when a folder doesn't
                            set max_emails.
        parallel_lanes: Chunks a large fetch is split into.
        parallel_extra_lanes: Chunks fetched concurrently after the first.
        parallel_batch_size: UIDs per FETCH within a lane.
        parallel_max_total: Hard cap on UIDs per fetch.
        parallel_timeout: Wall-clock limit for the concurrent lanes.
        pool_idle_timeout: Seconds before an unused pooled connection closes.
        pool_reap_interval: Seconds between pool reaper runs.
        cache_max_per_folder: Cached messages per folder.
        cache_max_total: Cached messages across all folders.
        cache_max_age: Seconds a cached snapshot counts as fresh.
    """
    timeout: float = 30.0
    max_response_size: int = 5 * 1024 * 1024
    header_batch_size: int = 100
    default_max_emails: int = 50
    parallel_lanes: int = 4
    parallel_extra_lanes: int = 2
    parallel_batch_size: int = 50
    parallel_max_total: int = 300
    parallel_timeout: float = 120.0
    pool_idle_timeout: float = 300.0
    pool_reap_interval: float = 120.0
    cache_max_per_folder: int = 500
    cache_max_total: int = 2000
    cache_max_age: float = 300.0


@dataclass
class SyncConfig:
    """
    Configuration for mail checking.

    Attributes:
        check_interval_minutes: How often to poll for new mail (0 = manual only).
        use_idle: Use IMAP IDLE for push notifications (if server supports it).
    """
    check_interval_minutes: int = 5
    use_idle: bool = True               # Use IMAP IDLE for push


@dataclass
class Config:
    """
    Main configuration container for IMAPMenu.

    Attributes:
        default_account: Name of the account used when none is given.
        accounts: Configured email accounts, keyed by name.
        folders: Watched folders per account name.
        engine: Mail engine tuning.
        sync: Mail checking configuration.

    Usage:
        >>> config = Config.load()
        >>> print(config.accounts['personal'].email)
        'user@example.com'
    """
    # General settings
    default_account: str = ""

    # Account configurations (name -> Account)
    accounts: dict[str, Account] = field(default_factory=dict)

    # Watched folders (account name -> folders)
    folders: dict[str, list[FolderConfig]] = field(default_factory=dict)

    # Merged views over watched folders
    virtual_folders: list[VirtualFolder] = field(default_factory=list)

    # Subsystem configurations
    engine: EngineConfig = field(default_factory=EngineConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def log_file_path() -> Path:
        """Returns the path to the debug log."""
        return get_xdg_state_home() / "imapmenu.log"

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_account(self, name: str | None = None) -> Account:
        """
        Look up an account by name, or the default account.

        Raises:
            ConfigError: If no such account is configured.
        """
        name = name or self.default_account or next(iter(self.accounts), "")
        account = self.accounts.get(name)
        if account is None:
            raise ConfigError(f"Unknown account: {name or '(none configured)'}")
        return account

    def folders_for(self, account_name: str) -> list[FolderConfig]:
        """Watched folders for an account; INBOX when none are configured."""
        return self.folders.get(account_name) or [FolderConfig(path="INBOX")]

    def checked_folders(self, account_name: str) -> list[FolderConfig]:
        """
        Folders to keep fresh for an account.

        The watched folders, plus any folder an enabled virtual folder reads
        from that isn't watched already.
        """
        folders = list(self.folders_for(account_name))
        paths = {f.path for f in folders}
        for virtual in self.virtual_folders:
            if not virtual.enabled:
                continue
            for source in virtual.sources:
                if source.account == account_name and source.path not in paths:
                    paths.add(source.path)
                    folders.append(FolderConfig(path=source.path))
        return folders

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.

        Args:
            path: Config file to read (default: XDG config location).

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            # No config file yet - return defaults
            return cls()

        # Load and parse the TOML file
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to the config file.

        Creates the config directory if it doesn't exist.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Converts account entries into Account objects and their folder
        tables into FolderConfig objects.
        """
        config = cls()

        # General settings
        general = data.get("general", {})
        config.default_account = general.get("default_account", "")

        # Engine settings - unknown keys are rejected to catch typos
        engine = data.get("engine", {})
        known = {f.name for f in fields(EngineConfig)}
        unknown = set(engine) - known
        if unknown:
            raise ConfigError(f"Unknown engine settings: {', '.join(sorted(unknown))}")
        config.engine = EngineConfig(**engine)

        # Sync settings
        sync = data.get("sync", {})
        config.sync = SyncConfig(
            check_interval_minutes=sync.get("check_interval_minutes", 5),
            use_idle=sync.get("use_idle", True),
        )

        # Accounts - each key under [accounts] is an account name
        accounts_data = data.get("accounts", {})
        for name, acct_data in accounts_data.items():
            try:
                config.accounts[name] = Account(
                    name=name,
                    email=acct_data.get("email", ""),
                    username=acct_data.get("username", ""),
                    display_name=acct_data.get("display_name", ""),
                    imap_host=acct_data.get("imap_host", ""),
                    imap_port=acct_data.get("imap_port", 993),
                    imap_security=acct_data.get("imap_security", "ssl"),
                    smtp_host=acct_data.get("smtp_host", ""),
                    smtp_port=acct_data.get("smtp_port", 587),
                    smtp_security=acct_data.get("smtp_security", "starttls"),
                    auth_method=acct_data.get("auth_method", "password"),
                    enabled=acct_data.get("enabled", True),
                )
                config.folders[name] = [
                    _folder_from_dict(folder) for folder in acct_data.get("folders", [])
                ]
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid account '{name}': {e}") from e

        # Virtual folders
        for index, vf_data in enumerate(data.get("virtual_folders", [])):
            try:
                config.virtual_folders.append(_virtual_folder_from_dict(vf_data))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid virtual folder #{index + 1}: {e}") from e

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        data: dict[str, Any] = {}

        # General settings
        data["general"] = {
            "default_account": self.default_account,
        }

        # Engine and sync settings
        data["engine"] = {f.name: getattr(self.engine, f.name) for f in fields(EngineConfig)}
        data["sync"] = {
            "check_interval_minutes": self.sync.check_interval_minutes,
            "use_idle": self.sync.use_idle,
        }

        # Accounts
        data["accounts"] = {}
        for name, account in self.accounts.items():
            data["accounts"][name] = {
                "email": account.email,
                "username": account.username,
                "display_name": account.display_name,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "smtp_host": account.smtp_host,
                "smtp_port": account.smtp_port,
                "smtp_security": account.smtp_security,
                "auth_method": account.auth_method,
                "enabled": account.enabled,
                "folders": [_folder_to_dict(folder) for folder in self.folders.get(name, [])],
            }

        data["virtual_folders"] = [_virtual_folder_to_dict(vf) for vf in self.virtual_folders]

        return data


def _folder_from_dict(data: dict[str, Any]) -> FolderConfig:
    """Build a FolderConfig from one [[accounts.<name>.folders]] table."""
    return FolderConfig(
        path=data["path"],
        name=data.get("name", ""),
        enabled=data.get("enabled", True),
        max_emails=data.get("max_emails", 0),
        days_to_fetch=data.get("days_to_fetch", 0),
        filters=_filters_from_list(data.get("filters", [])),
        match_all=data.get("match_all", True),
    )


def _folder_to_dict(folder: FolderConfig) -> dict[str, Any]:
    return {
        "path": folder.path,
        "name": folder.name,
        "enabled": folder.enabled,
        "max_emails": folder.max_emails,
        "days_to_fetch": folder.days_to_fetch,
        "match_all": folder.match_all,
        "filters": _filters_to_list(folder.filters),
    }


def _virtual_folder_from_dict(data: dict[str, Any]) -> VirtualFolder:
    """Build a VirtualFolder from one [[virtual_folders]] table."""
    return VirtualFolder(
        name=data["name"],
        sources=[
            VirtualFolderSource(account=source["account"], path=source.get("path", "INBOX"))
            for source in data.get("sources", [])
        ],
        enabled=data.get("enabled", True),
        max_emails=data.get("max_emails", 100),
        filters=_filters_from_list(data.get("filters", [])),
        match_all=data.get("match_all", True),
    )


def _virtual_folder_to_dict(folder: VirtualFolder) -> dict[str, Any]:
    return {
        "name": folder.name,
        "enabled": folder.enabled,
        "max_emails": folder.max_emails,
        "match_all": folder.match_all,
        "sources": [{"account": s.account, "path": s.path} for s in folder.sources],
        "filters": _filters_to_list(folder.filters),
    }


def _filters_from_list(rules: list[dict[str, Any]]) -> list[FilterRule]:
    return [
        FilterRule(
            field=rule["field"],
            operator=rule.get("operator", "contains"),
            value=rule.get("value", ""),
        )
        for rule in rules
    ]


def _filters_to_list(rules: list[FilterRule]) -> list[dict[str, Any]]:
    return [{"field": r.field, "operator": r.operator, "value": r.value} for r in rules]


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Log file:     {Config.log_file_path()}")

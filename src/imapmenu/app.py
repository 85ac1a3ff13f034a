# =============================================================================
# IMAPMenu Command Line
# =============================================================================
# The menubar UI lives elsewhere; this module is the engine's own entry point
# for trying accounts out and debugging servers from a terminal:
#
#   imapmenu folders work                 list folders on the server
#   imapmenu fetch work INBOX --limit 20  fetch and print recent mail
#   imapmenu virtual "All inboxes"        refresh and print a virtual folder
#   imapmenu watch                        check for new mail until interrupted
#   imapmenu send work --to a@x.com ...   send a plain text message
#   imapmenu set-password work            store a password in the keyring
#
# The app manages:
#   - Configuration loading
#   - Logging setup (--debug)
#   - Building the engine services (pool, cache, sync managers, checker)
# =============================================================================

import argparse
import asyncio
import dataclasses
import getpass
import logging
import sys
from pathlib import Path

from imapmenu import __version__, __app_name__
from imapmenu.config import Config, ConfigError, ensure_directories, print_paths
from imapmenu.core import FolderConfig
from imapmenu.credentials import KeyringSecretStore
from imapmenu.imap import (
    ConnectionPool,
    FetchMode,
    IdleWorker,
    IMAPError,
    MailChecker,
    SyncManager,
    SyncResult,
    VirtualFolderView,
)
from imapmenu.smtp import EmailDraft, SMTPClient, SMTPError
from imapmenu.storage import EmailCache

logger = logging.getLogger(__name__)


# =============================================================================
# Commands
# =============================================================================

def _build_services(config: Config) -> tuple[ConnectionPool, EmailCache]:
    engine = config.engine
    pool = ConnectionPool(
        secrets=KeyringSecretStore(),
        idle_timeout=engine.pool_idle_timeout,
        reap_interval=engine.pool_reap_interval,
    )
    cache = EmailCache(
        max_per_folder=engine.cache_max_per_folder,
        max_total=engine.cache_max_total,
    )
    return pool, cache


async def cmd_folders(config: Config, args: argparse.Namespace) -> int:
    """List the account's folders."""
    account = config.get_account(args.account)
    pool, cache = _build_services(config)
    sync = SyncManager(account, pool, cache, config.engine)
    try:
        folders = await sync.list_folders()
    finally:
        await pool.stop()

    for folder in folders:
        marker = "" if folder.is_selectable else "  (not selectable)"
        print(f"{folder.name:<40} {folder.folder_type.name.lower()}{marker}")
    return 0


async def cmd_fetch(config: Config, args: argparse.Namespace) -> int:
    """Fetch a folder and print the newest messages."""
    account = config.get_account(args.account)
    folder = next(
        (f for f in config.folders_for(account.name) if f.path == args.folder),
        FolderConfig(path=args.folder),
    )
    if args.limit:
        folder.max_emails = args.limit

    pool, cache = _build_services(config)
    sync = SyncManager(account, pool, cache, config.engine)
    try:
        result = await sync.fetch_folder(folder, mode=FetchMode.FULL if args.full else FetchMode.DELTA)
    finally:
        await pool.stop()

    for message in result.messages:
        print(f"{message.date:%Y-%m-%d %H:%M}  {message}")
    print(f"\n{len(result.messages)} messages, {len(result.new_unread)} unread "
          f"({result.duration_seconds:.2f}s)")
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    return 0


async def cmd_virtual(config: Config, args: argparse.Namespace) -> int:
    """Refresh a virtual folder's sources and print the merged list."""
    folder = next((vf for vf in config.virtual_folders if vf.name == args.name), None)
    if folder is None:
        raise ConfigError(f"Unknown virtual folder: {args.name}")

    pool, cache = _build_services(config)
    names = {source.account for source in folder.sources}
    syncs = {
        name: SyncManager(config.get_account(name), pool, cache, config.engine)
        for name in names if name in config.accounts
    }
    watched = {name: config.folders_for(name) for name in syncs}
    view = VirtualFolderView(folder, cache, syncs, watched)
    try:
        results = await view.refresh(mode=FetchMode.FULL if args.full else FetchMode.DELTA)
    finally:
        await pool.stop()

    messages = view.messages()
    for message in messages:
        print(f"{message.date:%Y-%m-%d %H:%M}  {message.folder_key:<24} {message}")
    print(f"\n{len(messages)} messages, {view.unread_count()} unread from {len(results)} folders")

    failed = [r for r in results if not r.success]
    for result in failed:
        print(f"Error in {result.folder_key}: {result.error}", file=sys.stderr)
    return 1 if failed else 0


def _print_new_mail(result: SyncResult) -> None:
    for message in result.new_unread:
        print(f"{message.date:%Y-%m-%d %H:%M}  {result.folder_key:<24} {message}", flush=True)
    if not result.success:
        print(f"Error in {result.folder_key}: {result.error}", file=sys.stderr)


async def cmd_watch(config: Config, args: argparse.Namespace) -> int:
    """Check for new mail on a timer and on IDLE pushes; print what arrives."""
    if args.account:
        accounts = [config.get_account(args.account)]
    else:
        accounts = [a for a in config.accounts.values() if a.enabled]
    if not accounts:
        raise ConfigError("No enabled accounts to watch")

    settings = config.sync
    if args.interval is not None:
        settings = dataclasses.replace(settings, check_interval_minutes=args.interval)
    if args.no_idle:
        settings = dataclasses.replace(settings, use_idle=False)

    pool, cache = _build_services(config)
    syncs = {a.name: SyncManager(a, pool, cache, config.engine) for a in accounts}
    watched = {a.name: config.checked_folders(a.name) for a in accounts}
    checker = MailChecker(syncs, watched, settings, idle=IdleWorker(secrets=KeyringSecretStore()))
    checker.on_result = _print_new_mail
    views = [VirtualFolderView(vf, cache, syncs, watched) for vf in config.virtual_folders if vf.enabled]

    try:
        await checker.start()
        for view in views:
            print(f"{view.name}: {view.unread_count()} unread")

        if checker.interval <= 0 and checker.idle is None:
            logger.info("Nothing left to wait for: no check interval and IDLE is off")
            return 0
        if args.duration > 0:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await checker.stop()
        await pool.stop()
    return 0


async def cmd_send(config: Config, args: argparse.Namespace) -> int:
    """Send a plain text message read from stdin."""
    account = config.get_account(args.account)
    draft = EmailDraft(to=args.to, cc=args.cc or "", subject=args.subject, body=sys.stdin.read())

    client = SMTPClient(account, secrets=KeyringSecretStore(), timeout=config.engine.timeout)
    try:
        await client.connect()
        message_id = await client.send(draft)
    finally:
        await client.disconnect()

    print(f"Sent {message_id}")
    return 0


def cmd_set_password(config: Config, args: argparse.Namespace) -> int:
    """Prompt for a password and store it in the keyring."""
    account = config.get_account(args.account)
    secret = getpass.getpass(f"Password for {account.key}: ")
    if not secret:
        print("No password entered", file=sys.stderr)
        return 1
    KeyringSecretStore().set(account.key, secret)
    print(f"Stored password for {account.key}")
    return 0


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="IMAPMenu: the mail engine behind a menubar mail checker",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    commands = parser.add_subparsers(dest="command")

    folders = commands.add_parser("folders", help="List folders on the server")
    folders.add_argument("account", nargs="?", help="Account name (default: default account)")

    fetch = commands.add_parser("fetch", help="Fetch and print recent messages")
    fetch.add_argument("account", help="Account name")
    fetch.add_argument("folder", nargs="?", default="INBOX", help="Folder path (default: INBOX)")
    fetch.add_argument("--full", action="store_true", help="Ignore the cache watermark")
    fetch.add_argument("--limit", type=int, default=0, help="Messages to fetch")

    virtual = commands.add_parser("virtual", help="Refresh and print a virtual folder")
    virtual.add_argument("name", help="Virtual folder name")
    virtual.add_argument("--full", action="store_true", help="Ignore the cache watermarks")

    watch = commands.add_parser("watch", help="Check for new mail until interrupted")
    watch.add_argument("account", nargs="?", help="Only this account (default: all enabled)")
    watch.add_argument("--interval", type=int, help="Minutes between checks (0 = no timer)")
    watch.add_argument("--no-idle", action="store_true", help="Don't use IMAP IDLE")
    watch.add_argument("--duration", type=float, default=0, help="Stop after this many seconds")

    send = commands.add_parser("send", help="Send a message (body from stdin)")
    send.add_argument("account", help="Account name")
    send.add_argument("--to", required=True, help="Comma-separated recipients")
    send.add_argument("--cc", help="Comma-separated CC recipients")
    send.add_argument("--subject", default="", help="Subject line")

    password = commands.add_parser("set-password", help="Store an account password in the keyring")
    password.add_argument("account", nargs="?", help="Account name (default: default account)")

    return parser.parse_args(argv)


def setup_logging(debug: bool) -> None:
    """Warnings to stderr; with --debug, everything to stderr and the log file."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if debug:
        ensure_directories()
        handlers.append(logging.FileHandler(Config.log_file_path(), encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        handlers=handlers,
    )


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for IMAPMenu.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration
        4. Runs the requested command

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)
    setup_logging(args.debug)

    # Handle --paths flag
    if args.paths:
        print_paths()
        return 0

    if args.command is None:
        print("No command given; see --help", file=sys.stderr)
        return 2

    try:
        config = Config.load(args.config)
        if args.command == "set-password":
            return cmd_set_password(config, args)
        handler = {
            "folders": cmd_folders,
            "fetch": cmd_fetch,
            "virtual": cmd_virtual,
            "watch": cmd_watch,
            "send": cmd_send,
        }[args.command]
        return asyncio.run(handler(config, args))
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1
    except (IMAPError, SMTPError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

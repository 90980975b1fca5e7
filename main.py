"""SSHBridge command-line entry point.

Configures logging, loads credentials from the saved profile / environment,
builds a :class:`~sshbridge.RemoteEngine`, and runs one operation.  Results
are printed to stdout as JSON; logs go to stderr.  The ``profile`` and
``passphrase`` commands manage local settings and never connect.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import signal
import sys
from typing import Any, Callable

import keyring.errors

from sshbridge import EngineError, RemoteEngine, __version__
from sshbridge.config import ConfigManager, account_name, delete_passphrase, store_passphrase
from sshbridge.listing import DirectoryListing
from sshbridge.streaming import ProgressEvent
from sshbridge.utils.path_helpers import human_readable_size

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

logger = logging.getLogger("sshbridge.cli")


def _configure_logging(level: str | int) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def install_signal_handlers(engine: RemoteEngine) -> None:
    """Disconnect *engine* before exiting on SIGINT/SIGTERM."""

    def _shutdown(signum: int, _frame: Any) -> None:
        logger.info("Received %s — shutting down", signal.Signals(signum).name)
        engine.disconnect()
        sys.exit(128 + signum)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2))


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


def _cmd_exec(engine: RemoteEngine, args: argparse.Namespace, config: ConfigManager) -> int:
    timeout = args.timeout if args.timeout is not None else config.get("command_timeout")
    result = engine.exec_with_timeout(args.command, timeout=timeout, cwd=args.cwd)
    _emit(result.to_dict())
    return result.exit_code


def _cmd_stream(engine: RemoteEngine, args: argparse.Namespace, config: ConfigManager) -> int:
    def _progress(event: ProgressEvent) -> None:
        sys.stderr.write(event.text)
        sys.stderr.flush()

    result = engine.run_with_progress(
        args.command,
        _progress,
        cwd=args.cwd,
        interval=float(config.get("progress_interval")),
    )
    _emit(result.to_dict())
    return result.exit_code


def _walk(engine: RemoteEngine, path: str, include_hidden: bool) -> list[DirectoryListing]:
    """List *path* and, depth first, every directory below it."""
    listing = engine.list_files(path, include_hidden=include_hidden)
    listings = [listing]
    for entry in sorted(listing, key=lambda e: e.name):
        if entry.is_dir:
            listings.extend(_walk(engine, entry.path, include_hidden))
    return listings


def _cmd_ls(engine: RemoteEngine, args: argparse.Namespace, config: ConfigManager) -> int:
    include_hidden = not args.no_hidden
    if args.recursive:
        listings = _walk(engine, args.path, include_hidden)
    else:
        listings = [engine.list_files(args.path, include_hidden=include_hidden)]

    if args.long:
        for listing in listings:
            if args.recursive:
                print(f"{listing.path}:")
            for entry in sorted(listing, key=lambda e: e.name):
                suffix = "/" if entry.is_dir else ""
                print(
                    f"{entry.permissions.string}  {human_readable_size(entry.size):>9}  "
                    f"{entry.name}{suffix}"
                )
        return 0

    _emit(
        [
            {
                "path": listing.path,
                "strategy": listing.strategy,
                "hiddenMayBeMissing": listing.hidden_may_be_missing,
                "entries": [e.to_dict() for e in sorted(listing, key=lambda e: e.name)],
            }
            for listing in listings
        ]
    )
    return 0


def _cmd_read(engine: RemoteEngine, args: argparse.Namespace, config: ConfigManager) -> int:
    max_size = args.max_size if args.max_size is not None else int(config.get("max_read_size"))
    result = engine.read_file(args.path, encoding=args.encoding, max_size=max_size)
    _emit(result.to_dict())
    return 0


def _cmd_write(engine: RemoteEngine, args: argparse.Namespace, config: ConfigManager) -> int:
    content = sys.stdin.read()
    outcome = engine.write_file(
        args.path,
        content,
        encoding=args.encoding,
        create_dirs=args.create_dirs,
        backup=args.backup,
    )
    _emit(outcome.to_dict())
    return 0


_COMMANDS: dict[str, Callable[[RemoteEngine, argparse.Namespace, ConfigManager], int]] = {
    "exec": _cmd_exec,
    "stream": _cmd_stream,
    "ls": _cmd_ls,
    "read": _cmd_read,
    "write": _cmd_write,
}


# ---------------------------------------------------------------------------
# Local commands (no connection)
# ---------------------------------------------------------------------------


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "host": args.host,
        "port": args.port,
        "username": args.username,
        "key_path": args.key_path,
    }


def _cmd_profile(args: argparse.Namespace, config: ConfigManager) -> int:
    if args.action == "list":
        _emit({name: config.get_profile(name) for name in config.profile_names()})
        return 0
    if args.action == "save":
        _emit({args.name: config.save_profile(args.name, _overrides(args))})
        return 0
    return 0 if config.delete_profile(args.name) else 1


def _cmd_passphrase(args: argparse.Namespace, config: ConfigManager) -> int:
    account = account_name(config.resolve(args.profile, overrides=_overrides(args)))
    if args.action == "clear":
        return 0 if delete_passphrase(account) else 1
    secret = getpass.getpass(f"Passphrase for {account}: ")
    if not secret:
        logger.error("Empty passphrase; nothing stored")
        return 2
    store_passphrase(account, secret)
    return 0


_LOCAL_COMMANDS: dict[str, Callable[[argparse.Namespace, ConfigManager], int]] = {
    "profile": _cmd_profile,
    "passphrase": _cmd_passphrase,
}


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level parser with one sub-parser per operation."""
    parser = argparse.ArgumentParser(
        prog="sshbridge",
        description="Run commands and move files on a remote host over one SSH session.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--profile", help="Saved connection profile to use.")
    parser.add_argument("--host", help="Remote host (overrides profile and environment).")
    parser.add_argument("--port", type=int, help="SSH port.")
    parser.add_argument("--user", dest="username", help="Remote username.")
    parser.add_argument("--key", dest="key_path", help="Path to the private key file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    sub = parser.add_subparsers(dest="operation", required=True)

    p_exec = sub.add_parser("exec", help="Run a command and print its buffered result.")
    p_exec.add_argument("command")
    p_exec.add_argument("--cwd", help="Working directory for the command.")
    p_exec.add_argument("--timeout", type=float, help="Timeout in seconds.")

    p_stream = sub.add_parser("stream", help="Run a command, echoing output as it arrives.")
    p_stream.add_argument("command")
    p_stream.add_argument("--cwd", help="Working directory for the command.")

    p_ls = sub.add_parser("ls", help="List a remote directory.")
    p_ls.add_argument("path")
    p_ls.add_argument("-R", "--recursive", action="store_true", help="Descend into subdirectories.")
    p_ls.add_argument("-l", "--long", action="store_true", help="Print a table instead of JSON.")
    p_ls.add_argument("--no-hidden", action="store_true", help="Omit dot-files.")

    p_read = sub.add_parser("read", help="Print a remote file's content.")
    p_read.add_argument("path")
    p_read.add_argument("--encoding", default="utf-8", help="utf-8, ascii, base64, ...")
    p_read.add_argument("--max-size", type=int, help="Refuse files larger than this many bytes.")

    p_write = sub.add_parser("write", help="Atomically write stdin to a remote file.")
    p_write.add_argument("path")
    p_write.add_argument("--encoding", default="utf-8", help="utf-8, ascii, base64, ...")
    p_write.add_argument("--create-dirs", action="store_true", help="Create missing parent directories.")
    p_write.add_argument("--backup", action="store_true", help="Keep the old file as <path>.backup.")

    p_profile = sub.add_parser(
        "profile", help="Manage saved connection profiles (fields come from --host/--user/--key/--port)."
    )
    profile_sub = p_profile.add_subparsers(dest="action", required=True)
    profile_sub.add_parser("list", help="Print every saved profile.")
    for action in ("save", "delete"):
        profile_sub.add_parser(action, help=f"{action.capitalize()} a profile.").add_argument("name")

    p_pass = sub.add_parser("passphrase", help="Store or clear a key passphrase in the OS keyring.")
    p_pass.add_argument("action", choices=("set", "clear"))

    return parser


def main(argv: list[str] | None = None, config: ConfigManager | None = None) -> int:
    """Entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)
    config = config or ConfigManager()
    _configure_logging(logging.DEBUG if args.verbose else str(config.get("log_level")).upper())

    if args.operation in _LOCAL_COMMANDS:
        try:
            return _LOCAL_COMMANDS[args.operation](args, config)
        except (ValueError, keyring.errors.KeyringError) as exc:
            logger.error("%s failed: %s", args.operation, exc)
            return 1

    try:
        credentials = config.load_credentials(profile=args.profile, overrides=_overrides(args))
    except (ValueError, OSError) as exc:
        logger.error("Cannot load connection settings: %s", exc)
        return 1

    engine = RemoteEngine.from_credentials(credentials, **config.connection_options())
    install_signal_handlers(engine)
    try:
        return _COMMANDS[args.operation](engine, args, config)
    except EngineError as exc:
        logger.error("%s failed: %s", args.operation, exc)
        _emit({"error": str(exc), "type": type(exc).__name__})
        return 1
    except ValueError as exc:
        logger.error("%s: %s", args.operation, exc)
        return 2
    finally:
        engine.disconnect()


if __name__ == "__main__":
    raise SystemExit(main())

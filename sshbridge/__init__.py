"""SSHBridge: remote command execution and file transfer over one SSH session.

:class:`RemoteEngine` is the entry point; it owns a :class:`ConnectionManager`
and wires every operation component to it.
"""

from __future__ import annotations

import logging

from sshbridge.connection import ConnectionManager, ConnectionState, Credentials
from sshbridge.errors import (
    ChannelClosedError,
    ChannelError,
    CommandError,
    ConnectionError,
    EngineError,
    NotFound,
    SizeLimitExceeded,
    StatError,
    StreamInterrupted,
    TransferError,
    UnknownHostError,
)
from sshbridge.executor import DEFAULT_TIMEOUT, CommandExecutor, CommandResult
from sshbridge.listing import DirectoryLister, DirectoryListing, FileEntry
from sshbridge.streaming import (
    PROGRESS_INTERVAL,
    ProgressCallback,
    ProgressEvent,
    StreamExecutor,
    StreamHandles,
)
from sshbridge.transfer import DEFAULT_ENCODING, DEFAULT_MAX_SIZE, FileTransfer, ReadResult, WriteOutcome

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

__all__ = [
    "ChannelClosedError",
    "ChannelError",
    "CommandError",
    "CommandResult",
    "ConnectionError",
    "ConnectionManager",
    "ConnectionState",
    "Credentials",
    "DirectoryListing",
    "EngineError",
    "FileEntry",
    "NotFound",
    "ProgressEvent",
    "ReadResult",
    "RemoteEngine",
    "SizeLimitExceeded",
    "StatError",
    "StreamHandles",
    "StreamInterrupted",
    "TransferError",
    "UnknownHostError",
    "WriteOutcome",
]


class RemoteEngine:
    """All remote operations over a single owned SSH connection."""

    def __init__(self, connection: ConnectionManager, log: logging.Logger | None = None) -> None:
        """Wire the operation components to *connection*.

        Args:
            connection: The connection every component shares.  The engine
                takes ownership and closes it in :meth:`disconnect`.
            log: Logger handed to every component.
        """
        self.connection = connection
        self._log = log or logger
        self.commands = CommandExecutor(connection, log=self._log)
        self.streams = StreamExecutor(connection, log=self._log)
        self.lister = DirectoryLister(connection, executor=self.commands, log=self._log)
        self.files = FileTransfer(connection, log=self._log)

    @classmethod
    def from_credentials(cls, credentials: Credentials, log: logging.Logger | None = None, **options) -> RemoteEngine:
        """Build an engine with a fresh :class:`ConnectionManager`.

        Extra keyword *options* are passed to the manager.
        """
        return cls(ConnectionManager(credentials, log=log, **options), log=log)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self) -> None:
        self.connection.connect()

    def disconnect(self) -> None:
        self.connection.disconnect()

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    def __enter__(self) -> RemoteEngine:
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def exec(self, command: str, timeout: float | None = None, cwd: str | None = None) -> str:
        return self.commands.exec(command, timeout=timeout, cwd=cwd)

    def exec_with_timeout(
        self,
        command: str,
        timeout: float | None = DEFAULT_TIMEOUT,
        cwd: str | None = None,
    ) -> CommandResult:
        return self.commands.exec_with_timeout(command, timeout=timeout, cwd=cwd)

    def exec_stream(self, command: str, cwd: str | None = None) -> StreamHandles:
        return self.streams.exec_stream(command, cwd=cwd)

    def run_with_progress(
        self,
        command: str,
        notify: ProgressCallback,
        cwd: str | None = None,
        interval: float = PROGRESS_INTERVAL,
    ) -> CommandResult:
        return self.streams.run_with_progress(command, notify, cwd=cwd, interval=interval)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def list_files(self, path: str, include_hidden: bool = True) -> DirectoryListing:
        return self.lister.list_files(path, include_hidden=include_hidden)

    def read_file(
        self,
        path: str,
        encoding: str = DEFAULT_ENCODING,
        max_size: int = DEFAULT_MAX_SIZE,
    ) -> ReadResult:
        return self.files.read_file(path, encoding=encoding, max_size=max_size)

    def write_file(
        self,
        path: str,
        content: str,
        encoding: str = DEFAULT_ENCODING,
        create_dirs: bool = False,
        backup: bool = False,
    ) -> WriteOutcome:
        return self.files.write_file(
            path, content, encoding=encoding, create_dirs=create_dirs, backup=backup
        )

"""Exception hierarchy for the SSHBridge engine.

Every failure the engine reports derives from :class:`EngineError` so a
caller can catch the whole family in one place.  Timeouts of buffered
commands are deliberately *not* here: they are reported as
``CommandResult.timed_out`` instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sshbridge.executor import CommandResult


class EngineError(Exception):
    """Base class for all engine failures."""


class ConnectionError(EngineError):  # noqa: A001  (shadows built-in intentionally)
    """Raised when the SSH handshake or authentication fails.

    The original transport/authentication exception is chained as
    ``__cause__``.
    """

    def __init__(self, message: str, host: str = "") -> None:
        """Initialise with the host the attempt was made against."""
        super().__init__(message)
        self.host = host


class UnknownHostError(ConnectionError):
    """Raised when strict host-key checking rejects an unknown host key.

    Carries the fingerprint so the caller can show it to an operator.
    """

    def __init__(
        self,
        message: str,
        host: str = "",
        key_type: str = "",
        fingerprint: str = "",
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message, host=host)
        self.key_type = key_type
        self.fingerprint = fingerprint


class ChannelError(EngineError):
    """Raised when a logical channel cannot be opened or breaks mid-use."""


class ChannelClosedError(ChannelError):
    """Raised when a channel is torn down before reporting an exit status."""


class CommandError(EngineError):
    """Raised when a buffered command exits non-zero (or times out)."""

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        """Initialise with the command and how it failed."""
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class StreamInterrupted(CommandError):
    """Raised when a streaming command breaks before completing.

    ``result`` holds everything received up to the failure, so no buffered
    output is lost.
    """

    def __init__(self, message: str, result: CommandResult, command: str = "") -> None:
        """Initialise with the partial result assembled so far."""
        super().__init__(message, command=command, exit_code=result.exit_code)
        self.result = result


class StatError(EngineError):
    """Raised when a remote path cannot be inspected."""

    def __init__(self, message: str, path: str = "") -> None:
        """Initialise with the offending remote path."""
        super().__init__(message)
        self.path = path


class NotFound(StatError):
    """Raised when a remote path does not exist or is inaccessible."""


class SizeLimitExceeded(EngineError):
    """Raised when a file is larger than the caller allowed to read."""

    def __init__(self, path: str, size: int, limit: int) -> None:
        """Initialise with the actual and permitted sizes."""
        super().__init__(f"File too large: {size} bytes (max: {limit} bytes): {path}")
        self.path = path
        self.size = size
        self.limit = limit


class TransferError(EngineError):
    """Raised when any step of a file read/write fails."""

    def __init__(self, message: str, path: str = "") -> None:
        """Initialise with the remote path being transferred."""
        super().__init__(message)
        self.path = path

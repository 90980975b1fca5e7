"""Buffered remote command execution with a deadline."""

from __future__ import annotations

import logging
import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass

import paramiko

from sshbridge.channels import ChannelPump
from sshbridge.connection import ConnectionManager
from sshbridge.errors import ChannelError, CommandError
from sshbridge.utils.path_helpers import with_cwd

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds
TIMEOUT_EXIT_CODE = 124
TIMEOUT_MESSAGE = "Command execution timed out"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one buffered command run."""

    stdout: bytes
    stderr: bytes
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """True when the command ran to completion with exit code 0."""
        return self.exit_code == 0 and not self.timed_out

    def stdout_text(self, encoding: str = "utf-8") -> str:
        """Decode stdout, replacing undecodable bytes."""
        return self.stdout.decode(encoding, errors="replace")

    def stderr_text(self, encoding: str = "utf-8") -> str:
        """Decode stderr, replacing undecodable bytes."""
        return self.stderr.decode(encoding, errors="replace")

    def to_dict(self) -> dict:
        """JSON-friendly representation with decoded output."""
        return {
            "stdout": self.stdout_text(),
            "stderr": self.stderr_text(),
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
        }


TIMED_OUT_RESULT = CommandResult(
    stdout=b"",
    stderr=TIMEOUT_MESSAGE.encode(),
    exit_code=TIMEOUT_EXIT_CODE,
    timed_out=True,
)


def start_command(
    connection: ConnectionManager,
    command: str,
    log: logging.Logger | None = None,
) -> ChannelPump:
    """Open a session channel, run *command* on it and start draining it.

    Raises:
        ConnectionError: If the session cannot be established.
        ChannelError: If the channel cannot be opened or the exec request fails.
    """
    channel = connection.open_session()
    try:
        channel.exec_command(command)
    except (paramiko.SSHException, OSError) as exc:
        channel.close()
        raise ChannelError(f"Could not start command: {exc}") from exc
    return ChannelPump(channel, label=connection.host, log=log).start()


class CommandExecutor:
    """Runs commands to completion over the shared connection."""

    def __init__(self, connection: ConnectionManager, log: logging.Logger | None = None) -> None:
        self._connection = connection
        self._log = log or logger

    def exec_with_timeout(
        self,
        command: str,
        timeout: float | None = DEFAULT_TIMEOUT,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run *command* and race its completion against *timeout* seconds.

        On timeout the channel is closed and :data:`TIMED_OUT_RESULT` is
        returned; output collected so far is discarded.  ``timeout=None``
        waits indefinitely.

        Raises:
            ConnectionError: If the session cannot be established.
            ChannelError: If the channel cannot be opened, or breaks before
                the command exits.
        """
        full_command = with_cwd(command, cwd)
        self._log.debug("Executing SSH command %r (timeout=%s)", full_command, timeout)
        started = time.monotonic()

        pump = start_command(self._connection, full_command, log=self._log)
        try:
            exit_code = pump.exit_code.result(timeout=timeout)
        except FutureTimeout:
            self._log.warning("SSH command timed out after %ss: %r", timeout, full_command)
            pump.channel.close()
            return TIMED_OUT_RESULT
        except ChannelError as exc:
            self._log.error("SSH command %r failed: %s", full_command, exc)
            raise

        result = CommandResult(
            stdout=pump.stdout.read_all(),
            stderr=pump.stderr.read_all(),
            exit_code=exit_code,
        )
        self._log.debug(
            "SSH command completed: exit=%d duration=%.0fms stdout=%d bytes stderr=%d bytes",
            result.exit_code,
            (time.monotonic() - started) * 1000,
            len(result.stdout),
            len(result.stderr),
        )
        return result

    def exec(self, command: str, timeout: float | None = None, cwd: str | None = None) -> str:
        """Run *command* and return its decoded stdout.

        Raises:
            CommandError: The command exited non-zero or timed out.
            ConnectionError: If the session cannot be established.
            ChannelError: If the channel cannot be opened or breaks.
        """
        result = self.exec_with_timeout(command, timeout=timeout, cwd=cwd)
        if result.timed_out:
            raise CommandError(
                TIMEOUT_MESSAGE,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr_text(),
            )
        if result.exit_code != 0:
            stderr = result.stderr_text()
            raise CommandError(
                f"Command failed with code {result.exit_code}: {stderr.strip()}",
                command=command,
                exit_code=result.exit_code,
                stderr=stderr,
            )
        return result.stdout_text()

"""Streaming remote command execution with progress notifications.

:class:`StreamExecutor` hands back live output handles immediately.  The
rate-limiting policy for turning chunks into progress notifications lives
alongside it (:class:`ProgressThrottle`, :func:`collect_with_progress`) but is
applied by the caller, not by the executor.
"""

from __future__ import annotations

import logging
import queue
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable

import paramiko

from sshbridge.channels import ChunkStream
from sshbridge.connection import ConnectionManager
from sshbridge.errors import ChannelError, StreamInterrupted
from sshbridge.executor import CommandResult, start_command
from sshbridge.utils.path_helpers import with_cwd

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 0.1  # seconds
_INTERRUPTED_EXIT_CODE = -1


@dataclass(frozen=True)
class ProgressEvent:
    """One merged progress notification."""

    output: bytes
    total_bytes: int
    sequence: int

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class StreamHandles:
    """Live handles for one streaming execution.

    Close ``channel`` to abort the command; ``exit_code`` then fails with
    :class:`~sshbridge.errors.ChannelClosedError` instead of hanging.
    """

    command: str
    stdout: ChunkStream
    stderr: ChunkStream
    exit_code: Future
    channel: paramiko.Channel


# ---------------------------------------------------------------------------
# Progress policy
# ---------------------------------------------------------------------------


class ProgressThrottle:
    """Merges chunks so *notify* fires at most once per *interval*.

    Chunks offered inside the suppression window are held and emitted
    together with the next chunk that falls outside it, or by :meth:`flush`.
    """

    def __init__(
        self,
        notify: ProgressCallback,
        interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        log: logging.Logger | None = None,
    ) -> None:
        self._notify = notify
        self.interval = interval
        self._clock = clock
        self._log = log or logger
        self._pending: list[bytes] = []
        self._last_emit: float | None = None
        self.total_bytes = 0
        self.sequence = 0

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def time_until_due(self) -> float:
        """Seconds until held output may be emitted (0 if already due)."""
        if self._last_emit is None:
            return 0.0
        return max(0.0, self._last_emit + self.interval - self._clock())

    def offer(self, chunk: bytes) -> bool:
        """Accept *chunk*; return True if a notification was emitted."""
        self._pending.append(chunk)
        self.total_bytes += len(chunk)
        if self.time_until_due() > 0:
            return False
        return self.flush()

    def flush(self) -> bool:
        """Emit held output now, regardless of the window."""
        if not self._pending:
            return False
        output = b"".join(self._pending)
        self._pending = []
        self._last_emit = self._clock()
        self.sequence += 1
        try:
            self._notify(ProgressEvent(output, self.total_bytes, self.sequence))
        except Exception:
            self._log.exception("Exception in progress callback")
        return True


def collect_with_progress(
    handles: StreamHandles,
    notify: ProgressCallback,
    interval: float = PROGRESS_INTERVAL,
    clock: Callable[[], float] = time.monotonic,
    log: logging.Logger | None = None,
) -> CommandResult:
    """Consume *handles*, emitting throttled progress, and assemble the result.

    Held output is flushed once the window elapses even if no new chunk
    arrives, and always before returning.

    Raises:
        StreamInterrupted: The channel broke mid-stream; ``result`` carries
            every byte received before the failure.
    """
    throttle = ProgressThrottle(notify, interval=interval, clock=clock, log=log)
    stdout: list[bytes] = []

    def _partial() -> CommandResult:
        return CommandResult(
            stdout=b"".join(stdout),
            stderr=_drain_nowait(handles.stderr),
            exit_code=_INTERRUPTED_EXIT_CODE,
        )

    try:
        while True:
            wait = throttle.time_until_due() if throttle.has_pending else None
            try:
                chunk = handles.stdout.get(timeout=wait)
            except queue.Empty:
                throttle.flush()
                continue
            if chunk is None:
                break
            stdout.append(chunk)
            throttle.offer(chunk)
        exit_code = handles.exit_code.result()
    except ChannelError as exc:
        throttle.flush()
        raise StreamInterrupted(
            f"Stream interrupted: {exc}", result=_partial(), command=handles.command
        ) from exc

    throttle.flush()
    return CommandResult(
        stdout=b"".join(stdout),
        stderr=handles.stderr.read_all(),
        exit_code=exit_code,
    )


def _drain_nowait(stream: ChunkStream) -> bytes:
    """Collect whatever *stream* already holds without blocking."""
    chunks: list[bytes] = []
    while True:
        try:
            chunk = stream.get(timeout=0)
        except (queue.Empty, ChannelError):
            break
        if chunk is None:
            break
        chunks.append(chunk)
    return b"".join(chunks)


# ---------------------------------------------------------------------------
# StreamExecutor
# ---------------------------------------------------------------------------


class StreamExecutor:
    """Starts commands whose output is delivered while they run."""

    def __init__(self, connection: ConnectionManager, log: logging.Logger | None = None) -> None:
        self._connection = connection
        self._log = log or logger

    def exec_stream(self, command: str, cwd: str | None = None) -> StreamHandles:
        """Start *command* and return its live handles without waiting.

        Raises:
            ConnectionError: If the session cannot be established.
            ChannelError: If the channel cannot be opened.
        """
        full_command = with_cwd(command, cwd)
        self._log.debug("Streaming SSH command %r", full_command)
        pump = start_command(self._connection, full_command, log=self._log)
        return StreamHandles(
            command=full_command,
            stdout=pump.stdout,
            stderr=pump.stderr,
            exit_code=pump.exit_code,
            channel=pump.channel,
        )

    def run_with_progress(
        self,
        command: str,
        notify: ProgressCallback,
        cwd: str | None = None,
        interval: float = PROGRESS_INTERVAL,
    ) -> CommandResult:
        """Run *command* to completion, reporting throttled progress to *notify*."""
        started = time.monotonic()
        handles = self.exec_stream(command, cwd=cwd)
        result = collect_with_progress(handles, notify, interval=interval, log=self._log)
        self._log.debug(
            "Streamed command completed: exit=%d duration=%.0fms stdout=%d bytes",
            result.exit_code,
            (time.monotonic() - started) * 1000,
            len(result.stdout),
        )
        return result

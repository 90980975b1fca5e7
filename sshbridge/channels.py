"""Turn a polled paramiko ``Channel`` into chunk streams and an exit-code future.

A :class:`ChannelPump` drains one command channel on a daemon thread and
feeds two :class:`ChunkStream` queues (stdout, stderr).  When the remote
command exits the streams are closed and ``exit_code`` resolves; if the
channel breaks or is torn down first, the stdout stream raises the error and
the future fails with it.
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from concurrent.futures import Future
from typing import Iterator

import paramiko

from sshbridge.errors import ChannelClosedError, ChannelError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024
POLL_INTERVAL = 0.02  # seconds between readiness checks when idle

# paramiko reports -1 when a channel closed without an exit-status message
_NO_EXIT_STATUS = -1

_END = object()


class _Failure:
    """Queue marker wrapping the error that ended a stream."""

    __slots__ = ("error",)

    def __init__(self, error: BaseException) -> None:
        self.error = error


# ---------------------------------------------------------------------------
# ChunkStream
# ---------------------------------------------------------------------------


class ChunkStream:
    """Lazy, single-consumer sequence of ``bytes`` chunks.

    Iterating yields chunks as they arrive and stops when the producer
    finishes.  If the producer failed, the error is raised from the iterator
    after all chunks received before it.
    """

    def __init__(self, name: str = "stream") -> None:
        self.name = name
        self._queue: queue.Queue = queue.Queue()
        self._done = False

    # Producer side ------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Append a chunk."""
        self._queue.put(data)

    def finish(self) -> None:
        """Mark the stream as complete."""
        self._queue.put(_END)

    def fail(self, error: BaseException) -> None:
        """Terminate the stream with *error*."""
        self._queue.put(_Failure(error))

    # Consumer side ------------------------------------------------------

    def get(self, timeout: float | None = None) -> bytes | None:
        """Return the next chunk, or ``None`` once the stream has ended.

        Raises:
            queue.Empty: No chunk arrived within *timeout* seconds.
            ChannelError: The producer failed.
        """
        if self._done:
            return None
        item = self._queue.get(timeout=timeout)
        if item is _END:
            self._done = True
            return None
        if isinstance(item, _Failure):
            self._done = True
            raise item.error
        return item

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.get()
            if chunk is None:
                return
            yield chunk

    def read_all(self) -> bytes:
        """Block until the stream ends and return every chunk joined."""
        return b"".join(self)


# ---------------------------------------------------------------------------
# ChannelPump
# ---------------------------------------------------------------------------


class ChannelPump:
    """Drains one exec channel on a background thread."""

    def __init__(
        self,
        channel: paramiko.Channel,
        label: str = "",
        log: logging.Logger | None = None,
    ) -> None:
        self.channel = channel
        self.label = label
        self.stdout = ChunkStream("stdout")
        self.stderr = ChunkStream("stderr")
        self.exit_code: Future = Future()
        self._log = log or logger
        self._thread = threading.Thread(
            target=self._run,
            name=f"channel-pump-{label}" if label else "channel-pump",
            daemon=True,
        )

    def start(self) -> ChannelPump:
        """Start draining; returns ``self`` for chaining."""
        self._thread.start()
        return self

    def join(self, timeout: float | None = None) -> None:
        """Wait for the pump thread to exit."""
        self._thread.join(timeout)

    def _run(self) -> None:
        channel = self.channel
        try:
            while True:
                progressed = False
                if channel.recv_ready():
                    data = channel.recv(CHUNK_SIZE)
                    if data:
                        self.stdout.feed(data)
                        progressed = True
                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(CHUNK_SIZE)
                    if data:
                        self.stderr.feed(data)
                        progressed = True
                if progressed:
                    continue
                if channel.exit_status_ready():
                    if not (channel.recv_ready() or channel.recv_stderr_ready()):
                        break
                    continue
                time.sleep(POLL_INTERVAL)

            status = channel.recv_exit_status()
            if status == _NO_EXIT_STATUS:
                raise ChannelClosedError("Channel closed before the command reported an exit status")
        except ChannelError as exc:
            self._fail(exc)
            return
        except (paramiko.SSHException, socket.error, EOFError) as exc:
            self._fail(ChannelError(f"Channel failed mid-stream: {exc}"))
            return
        except Exception as exc:
            # Readers block on the futures, so every exit path must resolve them.
            self._log.exception("Channel pump crashed")
            error = ChannelError(f"Channel pump crashed: {exc}")
            error.__cause__ = exc
            self._fail(error)
            return
        finally:
            try:
                channel.close()
            except Exception as exc:
                self._log.debug("Ignoring error while closing channel: %s", exc)

        self.stdout.finish()
        self.stderr.finish()
        self.exit_code.set_result(status)

    def _fail(self, error: ChannelError) -> None:
        self._log.warning("Channel %s ended abnormally: %s", self.label or "?", error)
        self.stdout.fail(error)
        self.stderr.finish()
        self.exit_code.set_exception(error)

"""Shared fakes for the paramiko objects the engine talks to.

``FakeChannel`` plays back scripted stdout/stderr chunks and an exit status;
``FakeSFTP`` is a dict-backed remote filesystem; ``FakeConnection`` hands
them out the way :class:`~sshbridge.connection.ConnectionManager` does.
"""

from __future__ import annotations

import errno
import io
import stat as stat_module
import time
from typing import Iterable

import pytest
from paramiko import SFTPAttributes

# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


def _script(items: Iterable) -> list[tuple[float, bytes]]:
    """Accept ``bytes`` or ``(delay_seconds, bytes)`` items."""
    out = []
    for item in items:
        if isinstance(item, tuple):
            out.append((float(item[0]), item[1]))
        else:
            out.append((0.0, item))
    return out


class FakeChannel:
    """Stands in for ``paramiko.Channel`` on an exec request."""

    def __init__(
        self,
        stdout: Iterable = (),
        stderr: Iterable = (),
        exit_status: int = 0,
        hang: bool = False,
        fail_with: BaseException | None = None,
        exec_error: BaseException | None = None,
    ) -> None:
        self._stdout = _script(stdout)
        self._stderr = _script(stderr)
        self.exit_status = exit_status
        self.hang = hang
        self.fail_with = fail_with
        self.exec_error = exec_error
        self.command: str | None = None
        self.closed = False
        self._started: float | None = None

    def exec_command(self, command: str) -> None:
        if self.exec_error is not None:
            raise self.exec_error
        self.command = command
        self._started = time.monotonic()

    def _due(self, script: list[tuple[float, bytes]]) -> bool:
        if self.closed or not script or self._started is None:
            return False
        return time.monotonic() - self._started >= script[0][0]

    def recv_ready(self) -> bool:
        return self._due(self._stdout)

    def recv(self, nbytes: int) -> bytes:
        return self._stdout.pop(0)[1]

    def recv_stderr_ready(self) -> bool:
        return self._due(self._stderr)

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._stderr.pop(0)[1]

    def _finished(self) -> bool:
        return not self.hang and not self._stdout and not self._stderr

    def exit_status_ready(self) -> bool:
        if self.fail_with is not None and not self._stdout:
            raise self.fail_with
        return self.closed or self._finished()

    def recv_exit_status(self) -> int:
        if self._finished() and not self.closed:
            return self.exit_status
        return -1

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# SFTP
# ---------------------------------------------------------------------------


def _missing(path: str) -> OSError:
    return IOError(errno.ENOENT, "No such file", path)


class _ReadHandle:
    def __init__(self, data: bytes) -> None:
        self._buf = io.BytesIO(data)

    def __enter__(self) -> _ReadHandle:
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def prefetch(self, size: int | None = None) -> None:
        return None

    def read(self, size: int | None = None) -> bytes:
        return self._buf.read() if size is None else self._buf.read(size)


class _WriteHandle:
    def __init__(self, sftp: FakeSFTP, path: str) -> None:
        self._sftp = sftp
        self._path = path
        self._buf = io.BytesIO()

    def __enter__(self) -> _WriteHandle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._sftp._commit(self._path, self._buf.getvalue())

    def set_pipelined(self, pipelined: bool = True) -> None:
        return None

    def write(self, data: bytes) -> None:
        self._sftp._maybe_fail("write", self._path)
        self._buf.write(data)


class FakeSFTP:
    """Dict-backed stand-in for ``paramiko.SFTPClient``.

    ``errors[(operation, path)]`` makes that operation raise for that path.
    ``events`` records every mutation in order.  ``native_hides_dotfiles``
    mimics servers whose readdir omits hidden entries.
    """

    def __init__(self, native_hides_dotfiles: bool = False) -> None:
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {"/"}
        self.links: dict[str, str] = {}
        self.errors: dict[tuple[str, str], BaseException] = {}
        self.events: list[tuple] = []
        self.opened: list[tuple[str, str]] = []
        self.native_hides_dotfiles = native_hides_dotfiles
        self.closed = False
        self.mtime = 1_700_000_000

    # context manager / lifecycle -------------------------------------

    def __enter__(self) -> FakeSFTP:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    # helpers ----------------------------------------------------------

    def _maybe_fail(self, op: str, path: str) -> None:
        error = self.errors.get((op, path))
        if error is not None:
            raise error

    @staticmethod
    def _parent(path: str) -> str:
        parent = path.rsplit("/", 1)[0]
        return parent or "/"

    def _commit(self, path: str, data: bytes) -> None:
        if self._parent(path) not in self.dirs:
            raise _missing(path)
        self.files[path] = data
        self.events.append(("write", path))

    def add_file(self, path: str, data: bytes = b"") -> None:
        self.files[path] = data

    def add_dir(self, path: str) -> None:
        self.dirs.add(path)

    def _attrs(self, path: str, follow: bool) -> SFTPAttributes:
        attrs = SFTPAttributes()
        attrs.st_uid = 1000
        attrs.st_gid = 1000
        attrs.st_atime = self.mtime
        attrs.st_mtime = self.mtime
        if not follow and path in self.links:
            attrs.st_mode = stat_module.S_IFLNK | 0o777
            attrs.st_size = len(self.links[path])
        elif path in self.files:
            attrs.st_mode = stat_module.S_IFREG | 0o644
            attrs.st_size = len(self.files[path])
        elif path in self.dirs:
            attrs.st_mode = stat_module.S_IFDIR | 0o755
            attrs.st_size = 4096
        else:
            raise _missing(path)
        return attrs

    # SFTPClient API ---------------------------------------------------

    def stat(self, path: str) -> SFTPAttributes:
        self._maybe_fail("stat", path)
        return self._attrs(path, follow=True)

    def lstat(self, path: str) -> SFTPAttributes:
        self._maybe_fail("lstat", path)
        if path in self.links:
            return self._attrs(path, follow=False)
        return self._attrs(path, follow=True)

    def listdir_attr(self, path: str = ".") -> list[SFTPAttributes]:
        self._maybe_fail("listdir_attr", path)
        if path not in self.dirs:
            raise _missing(path)
        prefix = path.rstrip("/") + "/"
        children = set()
        for candidate in list(self.files) + list(self.dirs) + list(self.links):
            if candidate.startswith(prefix) and "/" not in candidate[len(prefix):] and candidate != path:
                children.add(candidate)
        result = []
        for child in sorted(children):
            name = child[len(prefix):]
            if self.native_hides_dotfiles and name.startswith("."):
                continue
            attrs = self.lstat(child)
            attrs.filename = name
            result.append(attrs)
        return result

    def open(self, path: str, mode: str = "r"):
        self.opened.append((path, mode))
        self._maybe_fail("open", path)
        if "r" in mode:
            if path not in self.files:
                raise _missing(path)
            return _ReadHandle(self.files[path])
        return _WriteHandle(self, path)

    def posix_rename(self, oldpath: str, newpath: str) -> None:
        self._maybe_fail("posix_rename", oldpath)
        if oldpath not in self.files:
            raise _missing(oldpath)
        self.files[newpath] = self.files.pop(oldpath)
        self.events.append(("rename", oldpath, newpath))

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        self._maybe_fail("mkdir", path)
        if self._parent(path) not in self.dirs:
            raise _missing(path)
        self.dirs.add(path)
        self.events.append(("mkdir", path))

    def remove(self, path: str) -> None:
        self._maybe_fail("remove", path)
        if path not in self.files:
            raise _missing(path)
        del self.files[path]
        self.events.append(("remove", path))


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class FakeConnection:
    """Hands out queued fake channels and a shared fake SFTP client."""

    host = "fake-host"

    def __init__(self, channels: Iterable[FakeChannel] = (), sftp: FakeSFTP | None = None) -> None:
        self.channels = list(channels)
        self.sftp = sftp or FakeSFTP()
        self.opened: list[FakeChannel] = []
        self.open_session_error: BaseException | None = None

    def open_session(self) -> FakeChannel:
        if self.open_session_error is not None:
            raise self.open_session_error
        channel = self.channels.pop(0) if self.channels else FakeChannel()
        self.opened.append(channel)
        return channel

    def open_sftp(self) -> FakeSFTP:
        return self.sftp


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sftp() -> FakeSFTP:
    """Return an empty fake remote filesystem with ``/tmp`` present."""
    fs = FakeSFTP()
    fs.add_dir("/tmp")
    return fs


@pytest.fixture()
def connection(sftp: FakeSFTP) -> FakeConnection:
    """Return a fake connection backed by the ``sftp`` fixture."""
    return FakeConnection(sftp=sftp)

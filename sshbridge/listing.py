"""Remote directory listing with rich metadata.

Two strategies, tried in order:

1. *hybrid*: ``ls -1A`` supplies the authoritative set of names (hidden
   ones included), then each name is ``lstat``-ed over SFTP.
2. *native*: SFTP ``listdir_attr``, used only when the shell enumeration
   fails.  Servers may leave dot-files out of this view, so the listing is
   flagged with ``hidden_may_be_missing`` whenever hidden entries were asked
   for.
"""

from __future__ import annotations

import errno
import logging
import shlex
import stat as stat_module
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Iterator

import paramiko
from paramiko import SFTPAttributes

from sshbridge.connection import ConnectionManager
from sshbridge.errors import ChannelError, CommandError, NotFound, StatError
from sshbridge.executor import CommandExecutor
from sshbridge.utils.path_helpers import is_hidden, mode_to_permission_string, posix_join

logger = logging.getLogger(__name__)

STRATEGY_HYBRID = "hybrid"
STRATEGY_NATIVE = "native"

LIST_TIMEOUT = 30  # seconds


@dataclass(frozen=True)
class Access:
    """Read/write/execute bits for one permission class."""

    read: bool
    write: bool
    execute: bool

    @classmethod
    def from_bits(cls, bits: int) -> Access:
        return cls(read=bool(bits & 0o4), write=bool(bits & 0o2), execute=bool(bits & 0o1))


@dataclass(frozen=True)
class Permissions:
    """Decoded permission bits of a file mode."""

    mode: int
    string: str
    owner: Access
    group: Access
    others: Access

    @classmethod
    def from_mode(cls, mode: int) -> Permissions:
        return cls(
            mode=mode & 0o7777,
            string=mode_to_permission_string(mode),
            owner=Access.from_bits(mode >> 6),
            group=Access.from_bits(mode >> 3),
            others=Access.from_bits(mode),
        )


@dataclass(frozen=True)
class FileEntry:
    """One directory entry with its metadata."""

    name: str
    path: str
    type: str
    size: int
    permissions: Permissions
    uid: int | None
    gid: int | None
    accessed: datetime | None
    modified: datetime | None

    @property
    def is_dir(self) -> bool:
        return self.type == "directory"

    def to_dict(self) -> dict:
        """JSON-friendly representation (timestamps as ISO 8601)."""
        data = asdict(self)
        data["accessed"] = self.accessed.isoformat() if self.accessed else None
        data["modified"] = self.modified.isoformat() if self.modified else None
        return data


@dataclass
class DirectoryListing:
    """Entries of one directory plus how they were obtained."""

    path: str
    entries: list[FileEntry] = field(default_factory=list)
    strategy: str = STRATEGY_HYBRID
    hidden_may_be_missing: bool = False

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]


# ---------------------------------------------------------------------------
# Attribute conversion
# ---------------------------------------------------------------------------


def file_type(mode: int | None) -> str:
    """Classify a file mode as file, directory, symlink or other."""
    if mode is None:
        return "other"
    if stat_module.S_ISDIR(mode):
        return "directory"
    if stat_module.S_ISREG(mode):
        return "file"
    if stat_module.S_ISLNK(mode):
        return "symlink"
    return "other"


def _timestamp(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def entry_from_attributes(directory: str, name: str, attrs: SFTPAttributes) -> FileEntry:
    """Build a :class:`FileEntry` from SFTP attributes."""
    mode = attrs.st_mode or 0
    return FileEntry(
        name=name,
        path=posix_join(directory, name),
        type=file_type(attrs.st_mode),
        size=attrs.st_size or 0,
        permissions=Permissions.from_mode(mode),
        uid=attrs.st_uid,
        gid=attrs.st_gid,
        accessed=_timestamp(attrs.st_atime),
        modified=_timestamp(attrs.st_mtime),
    )


# ---------------------------------------------------------------------------
# DirectoryLister
# ---------------------------------------------------------------------------


class DirectoryLister:
    """Enumerates remote directories over the shared connection."""

    def __init__(
        self,
        connection: ConnectionManager,
        executor: CommandExecutor | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._connection = connection
        self._log = log or logger
        self._executor = executor or CommandExecutor(connection, log=self._log)

    def list_files(self, path: str, include_hidden: bool = True) -> DirectoryListing:
        """List *path* without recursing.

        Raises:
            NotFound: The directory does not exist (native fallback only).
            StatError: Neither strategy could read the directory.
            ConnectionError: If the session cannot be established.
        """
        try:
            names = self._enumerate_names(path)
        except (CommandError, ChannelError) as exc:
            self._log.warning(
                "Shell enumeration of %s failed (%s); falling back to SFTP readdir", path, exc
            )
            return self._list_native(path, include_hidden)

        if not include_hidden:
            names = [name for name in names if not is_hidden(name)]
        return self._list_hybrid(path, names)

    def _enumerate_names(self, path: str) -> list[str]:
        """Return every entry name in *path* (except ``.`` and ``..``)."""
        output = self._executor.exec(f"LC_ALL=C ls -1A -- {shlex.quote(path)}", timeout=LIST_TIMEOUT)
        return [name for name in output.split("\n") if name and name not in (".", "..")]

    def _list_hybrid(self, path: str, names: list[str]) -> DirectoryListing:
        listing = DirectoryListing(path=path, strategy=STRATEGY_HYBRID)
        with self._connection.open_sftp() as sftp:
            for name in names:
                full_path = posix_join(path, name)
                try:
                    attrs = sftp.lstat(full_path)
                except (OSError, paramiko.SSHException) as exc:
                    self._log.warning("Skipping %s: stat failed (%s)", full_path, exc)
                    continue
                listing.entries.append(entry_from_attributes(path, name, attrs))
        self._log.debug("Listed %d entries in %s (hybrid)", len(listing), path)
        return listing

    def _list_native(self, path: str, include_hidden: bool) -> DirectoryListing:
        with self._connection.open_sftp() as sftp:
            try:
                attributes = sftp.listdir_attr(path)
            except OSError as exc:
                if exc.errno == errno.ENOENT:
                    raise NotFound(f"Directory not found: {path}", path=path) from exc
                raise StatError(f"Cannot list {path}: {exc}", path=path) from exc
            except paramiko.SSHException as exc:
                raise StatError(f"Cannot list {path}: {exc}", path=path) from exc

        listing = DirectoryListing(
            path=path,
            strategy=STRATEGY_NATIVE,
            hidden_may_be_missing=include_hidden,
        )
        for attrs in attributes:
            name = attrs.filename
            if name in (".", ".."):
                continue
            if not include_hidden and is_hidden(name):
                continue
            listing.entries.append(entry_from_attributes(path, name, attrs))

        if include_hidden:
            self._log.warning("Listing of %s used SFTP readdir; hidden entries may be missing", path)
        self._log.debug("Listed %d entries in %s (native)", len(listing), path)
        return listing

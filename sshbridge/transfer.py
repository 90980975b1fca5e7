"""File read/write over SFTP for SSHBridge.

Reads are size-guarded: the file is stat-ed first and never partially read.
Writes are atomic: content goes to ``<path>.tmp`` and is then renamed over
``<path>`` in one operation, optionally after moving the old file aside to
``<path>.backup``.
"""

from __future__ import annotations

import base64
import binascii
import codecs
import errno
import logging
import time
from dataclasses import dataclass

import paramiko

from sshbridge.connection import ConnectionManager
from sshbridge.errors import NotFound, SizeLimitExceeded, TransferError
from sshbridge.utils.path_helpers import ancestors, validate_remote_path

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "utf-8"
DEFAULT_MAX_SIZE = 1_048_576  # 1 MiB
BASE64 = "base64"

TMP_SUFFIX = ".tmp"
BACKUP_SUFFIX = ".backup"

_SFTP_ERRORS = (OSError, paramiko.SSHException)


@dataclass(frozen=True)
class ReadResult:
    """Decoded content of a remote file."""

    content: str
    size: int
    encoding: str

    def to_dict(self) -> dict:
        return {"content": self.content, "size": self.size, "encoding": self.encoding}


@dataclass(frozen=True)
class WriteOutcome:
    """Result of an atomic write."""

    success: bool
    bytes_written: int
    backup_path: str | None = None

    def to_dict(self) -> dict:
        data = {"success": self.success, "bytesWritten": self.bytes_written}
        if self.backup_path is not None:
            data["backupPath"] = self.backup_path
        return data


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def check_encoding(encoding: str) -> str:
    """Return *encoding* if supported, else raise ValueError."""
    if encoding.lower() == BASE64:
        return BASE64
    try:
        codecs.lookup(encoding)
    except LookupError as exc:
        raise ValueError(f"Unsupported encoding: {encoding!r}") from exc
    return encoding


def decode_content(data: bytes, encoding: str) -> str:
    """Decode raw file bytes; ``base64`` yields the base64 text of *data*."""
    if encoding == BASE64:
        return base64.b64encode(data).decode("ascii")
    return data.decode(encoding)


def encode_content(content: str, encoding: str) -> bytes:
    """Encode text for writing; ``base64`` decodes *content* to raw bytes."""
    if encoding == BASE64:
        return base64.b64decode(content.encode("ascii"), validate=True)
    return content.encode(encoding)


def _is_missing(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno == errno.ENOENT


# ---------------------------------------------------------------------------
# FileTransfer
# ---------------------------------------------------------------------------


class FileTransfer:
    """Reads and writes whole remote files over the shared connection."""

    def __init__(self, connection: ConnectionManager, log: logging.Logger | None = None) -> None:
        self._connection = connection
        self._log = log or logger

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read_file(
        self,
        path: str,
        encoding: str = DEFAULT_ENCODING,
        max_size: int = DEFAULT_MAX_SIZE,
    ) -> ReadResult:
        """Read and decode the whole of *path*.

        Raises:
            ValueError: Unsupported *encoding* or invalid *path*.
            NotFound: The file cannot be stat-ed.
            SizeLimitExceeded: The file is larger than *max_size*; nothing is read.
            TransferError: Reading or decoding failed.
        """
        encoding = check_encoding(encoding)
        if not validate_remote_path(path):
            raise ValueError(f"Invalid remote path: {path!r}")

        self._log.info("File operation: read %s (encoding=%s, max_size=%d)", path, encoding, max_size)
        started = time.monotonic()

        with self._connection.open_sftp() as sftp:
            try:
                size = sftp.stat(path).st_size or 0
            except _SFTP_ERRORS as exc:
                self._log.error("File stat failed for %s: %s", path, exc)
                raise NotFound(f"File not found or inaccessible: {path}", path=path) from exc

            if size > max_size:
                self._log.warning("File too large: %s (%d > %d bytes)", path, size, max_size)
                raise SizeLimitExceeded(path, size, max_size)

            try:
                with sftp.open(path, "rb") as remote_fh:
                    remote_fh.prefetch(size)
                    data = remote_fh.read(max_size + 1)
            except _SFTP_ERRORS as exc:
                self._log.error("File read failed for %s: %s", path, exc)
                raise TransferError(f"Failed to read file: {exc}", path=path) from exc

        # The file may have grown between stat and read.
        if len(data) > max_size:
            self._log.warning("File grew past limit while reading: %s (> %d bytes)", path, max_size)
            raise SizeLimitExceeded(path, len(data), max_size)

        try:
            content = decode_content(data, encoding)
        except UnicodeDecodeError as exc:
            raise TransferError(f"File is not valid {encoding}: {exc}", path=path) from exc

        self._log.debug(
            "File read completed: %s (%d bytes, %.0fms)",
            path,
            len(data),
            (time.monotonic() - started) * 1000,
        )
        return ReadResult(content=content, size=len(data), encoding=encoding)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write_file(
        self,
        path: str,
        content: str,
        encoding: str = DEFAULT_ENCODING,
        create_dirs: bool = False,
        backup: bool = False,
    ) -> WriteOutcome:
        """Atomically replace *path* with *content*.

        Steps run in order and any failure aborts the rest: create parent
        directories, move the old file to ``.backup``, write ``.tmp``, rename
        ``.tmp`` over *path*.

        Raises:
            ValueError: Unsupported *encoding*, invalid *path*, or bad base64.
            TransferError: Any remote step failed.
        """
        encoding = check_encoding(encoding)
        if not validate_remote_path(path):
            raise ValueError(f"Invalid remote path: {path!r}")
        try:
            payload = encode_content(content, encoding)
        except (UnicodeEncodeError, binascii.Error) as exc:
            raise ValueError(f"Content cannot be encoded as {encoding}: {exc}") from exc

        self._log.info(
            "File operation: write %s (%d bytes, encoding=%s, create_dirs=%s, backup=%s)",
            path,
            len(payload),
            encoding,
            create_dirs,
            backup,
        )
        started = time.monotonic()
        tmp_path = path + TMP_SUFFIX

        with self._connection.open_sftp() as sftp:
            if create_dirs:
                self._make_parents(sftp, path)

            backup_path = self._backup(sftp, path) if backup else None

            try:
                with sftp.open(tmp_path, "wb") as remote_fh:
                    remote_fh.set_pipelined(True)
                    remote_fh.write(payload)
            except _SFTP_ERRORS as exc:
                self._log.error("Writing %s failed: %s", tmp_path, exc)
                self._discard(sftp, tmp_path)
                raise TransferError(f"Failed to write file: {exc}", path=path) from exc

            try:
                sftp.posix_rename(tmp_path, path)
            except _SFTP_ERRORS as exc:
                self._log.error("File rename failed: %s → %s: %s", tmp_path, path, exc)
                raise TransferError(
                    f"Failed to rename temp file {tmp_path} onto {path}: {exc}", path=path
                ) from exc

        self._log.debug(
            "File write completed: %s (%d bytes, %.0fms, backup=%s)",
            path,
            len(payload),
            (time.monotonic() - started) * 1000,
            backup_path,
        )
        return WriteOutcome(success=True, bytes_written=len(payload), backup_path=backup_path)

    def _make_parents(self, sftp: paramiko.SFTPClient, path: str) -> None:
        """Create any missing ancestor directories of *path*, outermost first."""
        for directory in ancestors(path):
            try:
                sftp.stat(directory)
                continue
            except _SFTP_ERRORS as exc:
                if not _is_missing(exc):
                    raise TransferError(f"Cannot inspect {directory}: {exc}", path=path) from exc
            try:
                sftp.mkdir(directory)
                self._log.debug("Created remote directory %s", directory)
            except _SFTP_ERRORS as exc:
                raise TransferError(f"Failed to create directory {directory}: {exc}", path=path) from exc

    def _backup(self, sftp: paramiko.SFTPClient, path: str) -> str | None:
        """Move *path* aside; return the backup path, or None if there was nothing."""
        backup_path = path + BACKUP_SUFFIX
        try:
            sftp.posix_rename(path, backup_path)
        except _SFTP_ERRORS as exc:
            if _is_missing(exc):
                self._log.debug("No existing %s to back up", path)
                return None
            raise TransferError(f"Failed to create backup: {exc}", path=path) from exc
        self._log.info("Backed up %s to %s", path, backup_path)
        return backup_path

    def _discard(self, sftp: paramiko.SFTPClient, tmp_path: str) -> None:
        try:
            sftp.remove(tmp_path)
        except _SFTP_ERRORS as exc:
            self._log.debug("Could not remove partial %s: %s", tmp_path, exc)

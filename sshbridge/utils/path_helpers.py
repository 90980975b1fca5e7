"""Remote path, shell-quoting and display helpers."""

from __future__ import annotations

import logging
import posixpath
import shlex

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def parent_dir(path: str) -> str:
    """Return the parent directory of remote *path* (``/`` for top-level paths)."""
    parent = posixpath.dirname(path.rstrip("/") or "/")
    return parent or "."


def ancestors(path: str) -> list[str]:
    """Return every ancestor directory of *path*, outermost first.

    Example::

        >>> ancestors("/srv/app/conf/site.yml")
        ['/srv', '/srv/app', '/srv/app/conf']
    """
    parent = parent_dir(path)
    if parent in ("/", "."):
        return []
    absolute = parent.startswith("/")
    parts = [p for p in parent.split("/") if p]
    result: list[str] = []
    cumulative = ""
    for part in parts:
        if cumulative:
            cumulative = f"{cumulative}/{part}"
        else:
            cumulative = f"/{part}" if absolute else part
        result.append(cumulative)
    return result


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is usable for SFTP operations.

    Rejects empty paths and paths that contain null bytes.
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    return True


def with_cwd(command: str, cwd: str | None) -> str:
    """Prefix *command* with a quoted ``cd`` when *cwd* is given."""
    if not cwd:
        return command
    return f"cd {shlex.quote(cwd)} && {command}"


def is_hidden(name: str) -> bool:
    """Return True for dot-files."""
    return name.startswith(".")


_SIZE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")


def human_readable_size(size_bytes: int | float) -> str:
    """Format an ``ls -l`` size column entry with IEC units, e.g. ``"4.2 MiB"``.

    Counts under 1 KiB print as whole bytes; negative input prints as ``"0 B"``.
    """
    size = max(float(size_bytes), 0.0)
    unit = 0
    while size >= 1024 and unit < len(_SIZE_UNITS) - 1:
        size /= 1024
        unit += 1
    if unit == 0:
        return f"{int(size)} B"
    return f"{size:.1f} {_SIZE_UNITS[unit]}"


def mode_to_permission_string(mode: int) -> str:
    """Render the permission bits of *mode* as ``rwxr-xr-x``."""
    chars = []
    for shift in (6, 3, 0):
        bits = (mode >> shift) & 0o7
        chars.append("r" if bits & 0o4 else "-")
        chars.append("w" if bits & 0o2 else "-")
        chars.append("x" if bits & 0o1 else "-")
    return "".join(chars)

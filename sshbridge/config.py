"""Configuration and profile management for SSHBridge.

Settings and connection profiles are stored as JSON files under
``~/.sshbridge/``.  Key passphrases are never written to disk; they are
delegated to ``keyring``.  Environment variables override profile fields so
the engine can be driven without any files at all.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping

import keyring
import keyring.errors

from sshbridge.connection import DEFAULT_PORT, Credentials

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "SSHBridge"

ENV_HOST = "SSHBRIDGE_HOST"
ENV_PORT = "SSHBRIDGE_PORT"
ENV_USER = "SSHBRIDGE_USER"
ENV_KEY_PATH = "SSHBRIDGE_KEY_PATH"

# Fields a profile may carry; anything else (passwords included) is dropped.
PROFILE_FIELDS = ("host", "port", "username", "key_path")

_ENV_FIELDS = (
    ("host", ENV_HOST),
    ("port", ENV_PORT),
    ("username", ENV_USER),
    ("key_path", ENV_KEY_PATH),
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "port": DEFAULT_PORT,
    "connect_timeout": 15,
    "keepalive_interval": 30,
    "command_timeout": 30,
    "max_read_size": 1_048_576,
    "progress_interval": 0.1,
    "strict_host_keys": False,
    "log_level": "INFO",
}

# ---------------------------------------------------------------------------
# Keyring helpers
# ---------------------------------------------------------------------------


def get_passphrase(account: str) -> str | None:
    """Return the stored key passphrase for *account* (``user@host``), if any."""
    try:
        return keyring.get_password(KEYRING_SERVICE, account)
    except keyring.errors.KeyringError as exc:
        logger.warning("Keyring unavailable, continuing without passphrase: %s", exc)
        return None


def store_passphrase(account: str, passphrase: str) -> None:
    """Store *passphrase* in the OS keyring for *account*."""
    keyring.set_password(KEYRING_SERVICE, account, passphrase)
    logger.info("Passphrase stored in keyring for %s", account)


def delete_passphrase(account: str) -> bool:
    """Remove the stored passphrase for *account*; False if there was none."""
    try:
        keyring.delete_password(KEYRING_SERVICE, account)
    except keyring.errors.PasswordDeleteError:
        logger.warning("No passphrase stored for %s", account)
        return False
    logger.info("Passphrase deleted from keyring for %s", account)
    return True


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Reads settings and keeps named connection profiles.

    ``config.json`` holds engine settings merged over :data:`DEFAULT_CONFIG`;
    ``profiles.json`` maps profile names to connection fields.  Both are
    replaced atomically on write, and an unreadable file is reset with a
    warning rather than raised to the caller.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.sshbridge/`` if necessary."""
        self._base = base_dir or Path.home() / ".sshbridge"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        stored = self._read_json(self._config_path, dict, lambda: dict(DEFAULT_CONFIG))
        self._config: dict[str, Any] = {**DEFAULT_CONFIG, **stored}
        self._profiles: dict[str, dict[str, Any]] = self._read_json(self._profiles_path, dict, dict)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _write_json(self, path: Path, data: Any) -> None:
        """Write *data* to a sibling temp file, then replace *path* with it."""
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _read_json(self, path: Path, kind: type, fallback: Callable[[], Any]) -> Any:
        """Load *path* as a JSON value of type *kind*.

        A missing file is created from *fallback*; an unreadable one, or one
        whose root is not a *kind*, is overwritten with it.
        """
        if not path.exists():
            logger.debug("Creating %s", path)
            value = fallback()
            self._write_json(path, value)
            return value
        try:
            value = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable %s (%s); resetting", path.name, exc)
        else:
            if isinstance(value, kind):
                return value
            logger.warning("Unexpected %s root in %s; resetting", type(value).__name__, path.name)
        value = fallback()
        self._write_json(path, value)
        return value

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the setting *key*, or *default* if missing."""
        return self._config.get(key, default)

    def connection_options(self) -> dict[str, Any]:
        """Keyword arguments for :class:`~sshbridge.connection.ConnectionManager`."""
        return {
            "connect_timeout": float(self.get("connect_timeout")),
            "keepalive_interval": int(self.get("keepalive_interval")),
            "strict_host_keys": bool(self.get("strict_host_keys")),
        }

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def profile_names(self) -> list[str]:
        """Return saved profile names in sorted order."""
        return sorted(self._profiles)

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return a copy of the fields saved under *name*, or ``None``."""
        fields = self._profiles.get(name)
        return dict(fields) if isinstance(fields, dict) else None

    def save_profile(self, name: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Create or update profile *name* and return what was stored.

        Only :data:`PROFILE_FIELDS` are kept and ``None`` values leave the
        existing field untouched, so secrets never reach ``profiles.json``.

        Raises:
            ValueError: Empty *name*, or a non-numeric port.
        """
        if not name:
            raise ValueError("Profile name must not be empty")
        profile = dict(self._profiles.get(name) or {})
        profile.update({k: fields[k] for k in PROFILE_FIELDS if fields.get(k) is not None})
        if "port" in profile:
            profile["port"] = _parse_port(profile["port"])
        self._profiles[name] = profile
        self._write_json(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s", name)
        return dict(profile)

    def delete_profile(self, name: str) -> bool:
        """Delete profile *name*; returns False if it did not exist."""
        if self._profiles.pop(name, None) is None:
            logger.warning("delete_profile: profile not found: %s", name)
            return False
        self._write_json(self._profiles_path, self._profiles)
        logger.info("Profile deleted: %s", name)
        return True

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def resolve(
        self,
        profile: str | None = None,
        env: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Merge connection fields; later sources win.

        Order: configured port, the named *profile*, ``SSHBRIDGE_*``
        environment variables, then *overrides* (``None`` values ignored).

        Raises:
            ValueError: Unknown profile.
        """
        env = os.environ if env is None else env
        fields: dict[str, Any] = {"port": self.get("port", DEFAULT_PORT)}

        if profile is not None:
            stored = self.get_profile(profile)
            if stored is None:
                raise ValueError(f"Unknown profile: {profile!r}")
            fields.update({k: v for k, v in stored.items() if v is not None})

        fields.update({key: env[var] for key, var in _ENV_FIELDS if env.get(var)})
        if overrides:
            fields.update({k: v for k, v in overrides.items() if v is not None})
        return fields

    def load_credentials(
        self,
        profile: str | None = None,
        env: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> Credentials:
        """Resolve :class:`Credentials`, reading the key file and keyring.

        The passphrase is looked up in the keyring under ``user@host``.

        Raises:
            ValueError: Unknown profile, host/username/key_path missing, or
                an invalid port.
            OSError: The key file cannot be read.
        """
        fields = self.resolve(profile, env, overrides)
        _require(fields, ("host", "username", "key_path"))
        port = _parse_port(fields["port"])

        key_path = Path(fields["key_path"]).expanduser()
        private_key = key_path.read_bytes()
        account = account_name(fields)

        logger.debug("Loaded credentials for %s:%d (key %s)", account, port, key_path)
        return Credentials(
            host=fields["host"],
            username=fields["username"],
            private_key=private_key,
            port=port,
            passphrase=get_passphrase(account),
        )


def account_name(fields: Mapping[str, Any]) -> str:
    """Keyring account for resolved *fields*: ``user@host``.

    Raises:
        ValueError: host or username missing.
    """
    _require(fields, ("host", "username"))
    return f"{fields['username']}@{fields['host']}"


def _require(fields: Mapping[str, Any], keys: tuple[str, ...]) -> None:
    missing = [k for k in keys if not fields.get(k)]
    if missing:
        raise ValueError(f"Missing connection settings: {', '.join(missing)}")


def _parse_port(value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid port: {value!r}") from exc
    if not 0 < port < 65536:
        raise ValueError(f"Invalid port: {value!r}")
    return port

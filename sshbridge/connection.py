"""SSH connection lifecycle management for SSHBridge.

Implements a small state machine around a single ``paramiko.SSHClient``:
lazy connect on first use, a shared in-flight handshake for concurrent
callers, and clean teardown.  All methods are safe to call from any thread.
"""

from __future__ import annotations

import io
import logging
import socket
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import paramiko

from sshbridge.errors import ChannelError, ConnectionError, UnknownHostError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

DEFAULT_PORT = 22
_KEEPALIVE_INTERVAL = 30  # seconds
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass(frozen=True)
class Credentials:
    """Everything needed to reach and authenticate against one host."""

    host: str
    username: str
    private_key: bytes = field(repr=False)
    port: int = DEFAULT_PORT
    passphrase: str | None = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        fingerprint = key_fingerprint(key)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts "
            f"(key type {key.get_name()}, MD5 fingerprint {fingerprint})",
            host=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def key_fingerprint(key: paramiko.PKey) -> str:
    """Return the colon-separated MD5 fingerprint of *key*."""
    return ":".join(f"{b:02x}" for b in key.get_fingerprint())


def load_private_key(material: bytes, passphrase: str | None = None) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key *material* into a paramiko key.

    Raises:
        ConnectionError: If no supported key type can parse the material.
    """
    text = material.decode("utf-8", errors="replace")
    last_error: Exception | None = None
    for key_cls in _KEY_CLASSES:
        try:
            return key_cls.from_private_key(io.StringIO(text), password=passphrase)
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise ConnectionError(f"Unsupported or unreadable private key: {last_error}") from last_error


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging rather than raising on cleanup noise."""
    try:
        client.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    READY = auto()
    FAILED = auto()


# ---------------------------------------------------------------------------
# ConnectionManager
# ---------------------------------------------------------------------------


class ConnectionManager:
    """Owns a single SSH session and hands out channels over it.

    Thread-safety:
    - ``_lock`` protects all state transitions.
    - The handshake itself runs outside the lock; concurrent callers wait on
      the same ``Future`` instead of starting a second handshake.
    - Channels are opened without holding any lock, so operations proceed
      concurrently once the session is up.
    """

    def __init__(
        self,
        credentials: Credentials,
        connect_timeout: float = 15.0,
        keepalive_interval: int = _KEEPALIVE_INTERVAL,
        strict_host_keys: bool = False,
        known_hosts: Path | None = None,
        on_state_change: StateChangeCallback | None = None,
        log: logging.Logger | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            credentials: Host, port, username and key material.
            connect_timeout: TCP/handshake timeout in seconds.
            keepalive_interval: Seconds between transport keepalive packets.
            strict_host_keys: Reject hosts missing from known_hosts.
            known_hosts: Override for ``~/.ssh/known_hosts``.
            on_state_change: Callback invoked on every state transition.
                Called with ``(new_state, optional_message)``.
            log: Logger to use instead of the module logger.
            client_factory: Builds the underlying ``SSHClient``.
        """
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.strict_host_keys = strict_host_keys
        self.known_hosts = known_hosts or Path.home() / ".ssh" / "known_hosts"
        self._on_state_change = on_state_change
        self._log = log or logger
        self._client_factory = client_factory

        self._client: paramiko.SSHClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._failure_reason: str | None = None
        self._pending: Future | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def host(self) -> str:
        """Remote host this manager connects to."""
        return self.credentials.host

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def failure_reason(self) -> str | None:
        """Reason for the last failed handshake, while in ``FAILED``."""
        with self._lock:
            return self._failure_reason

    def is_connected(self) -> bool:
        """Return True if the session is ``READY`` and its transport still active."""
        with self._lock:
            return self._state is ConnectionState.READY and self._transport_alive()

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        self._failure_reason = message if new_state is ConnectionState.FAILED else None
        self._log.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                self._log.exception("Exception in on_state_change callback")

    def _transport_alive(self) -> bool:
        """Return True if the current client's transport is still active (must hold lock)."""
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Establish the SSH session unless it is already ``READY``.

        Concurrent callers during ``CONNECTING`` block on the same attempt
        and see the same outcome.

        Raises:
            UnknownHostError: Strict host-key checking rejected the host.
            ConnectionError: Handshake, authentication or network failure.
        """
        with self._lock:
            if self._state is ConnectionState.READY:
                if self._transport_alive():
                    return
                self._log.warning("Transport for %s lost — reconnecting", self.host)
                stale, self._client = self._client, None
                self._set_state(ConnectionState.DISCONNECTED, "transport closed")
                if stale is not None:
                    _close_client_safely(stale)

            pending = self._pending
            owner = pending is None
            if owner:
                pending = self._pending = Future()
                self._set_state(ConnectionState.CONNECTING)

        if not owner:
            self._log.debug("connect() joining in-flight attempt for %s", self.host)
            pending.result()
            return

        try:
            client = self._do_connect()
        except Exception as exc:
            error = exc
            if not isinstance(exc, ConnectionError):
                error = ConnectionError(f"Could not connect to {self.host}: {exc}", host=self.host)
                error.__cause__ = exc
            with self._lock:
                # A disconnect() during the handshake already moved us on.
                if self._pending is pending:
                    self._pending = None
                    self._set_state(ConnectionState.FAILED, str(error))
            pending.set_exception(error)
            raise error

        with self._lock:
            cancelled = self._pending is not pending
            if cancelled:
                _close_client_safely(client)
            else:
                self._client = client
                self._pending = None
                self._set_state(ConnectionState.READY)
        if cancelled:
            self._log.info("Connection to %s cancelled by disconnect()", self.host)
            error = ConnectionError(
                f"Connection attempt to {self.host} cancelled by disconnect()", host=self.host
            )
            pending.set_exception(error)
            raise error
        pending.set_result(None)

    def _do_connect(self) -> paramiko.SSHClient:
        """Internal connection logic, called without holding the lock."""
        creds = self.credentials
        self._log.info("Connecting to %s@%s:%d", creds.username, creds.host, creds.port)

        try:
            pkey = load_private_key(creds.private_key, creds.passphrase)
        except ConnectionError as exc:
            exc.host = creds.host
            raise

        client = self._client_factory()
        if self.known_hosts.exists():
            client.load_host_keys(str(self.known_hosts))
        if self.strict_host_keys:
            client.set_missing_host_key_policy(_CapturingPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.WarningPolicy())

        try:
            client.connect(
                hostname=creds.host,
                port=creds.port,
                username=creds.username,
                pkey=pkey,
                timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {creds.host} — check known_hosts",
                host=creds.host,
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            self._log.error("Authentication failed for %s@%s", creds.username, creds.host)
            raise ConnectionError(
                f"Authentication failed for {creds.username}@{creds.host}: {exc}",
                host=creds.host,
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_client_safely(client)
            self._log.error("SSH connection to %s failed: %s", creds.host, exc)
            raise ConnectionError(
                f"Could not connect to {creds.host}:{creds.port}: {exc}",
                host=creds.host,
            ) from exc

        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(self.keepalive_interval)

        self._log.info("Connected to %s", creds.host)
        return client

    def disconnect(self) -> None:
        """Close the SSH session; a no-op when already disconnected.

        An in-flight handshake is cancelled: its ``connect()`` callers get
        :class:`ConnectionError` and the half-open client is closed.
        """
        with self._lock:
            # Detaching the attempt tells its owner not to install the client.
            self._pending = None
            client, self._client = self._client, None
            if client is None and self._state is ConnectionState.DISCONNECTED:
                return
            if client is not None:
                _close_client_safely(client)
            self._set_state(ConnectionState.DISCONNECTED)
        self._log.info("Disconnected from %s", self.host)

    def __enter__(self) -> ConnectionManager:
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def get_transport(self) -> paramiko.Transport:
        """Connect if needed and return the live paramiko Transport.

        Raises:
            ConnectionError: If the session cannot be established.
        """
        self.connect()
        with self._lock:
            transport = self._client.get_transport() if self._client else None
        if transport is None:
            raise ConnectionError("SSH transport unavailable", host=self.host)
        return transport

    def open_session(self) -> paramiko.Channel:
        """Open a new command channel over the shared transport.

        Raises:
            ConnectionError: If the session cannot be established.
            ChannelError: If the server refuses the channel.
        """
        transport = self.get_transport()
        try:
            return transport.open_session()
        except (paramiko.SSHException, OSError) as exc:
            self._log.error("Could not open session channel on %s: %s", self.host, exc)
            raise ChannelError(f"Could not open session channel: {exc}") from exc

    def open_sftp(self) -> paramiko.SFTPClient:
        """Open a new SFTP channel over the shared transport.

        The returned client is a context manager; close it when done.

        Raises:
            ConnectionError: If the session cannot be established.
            ChannelError: If the SFTP subsystem cannot be started.
        """
        transport = self.get_transport()
        try:
            sftp = paramiko.SFTPClient.from_transport(transport)
        except (paramiko.SSHException, OSError) as exc:
            self._log.error("Could not open SFTP channel on %s: %s", self.host, exc)
            raise ChannelError(f"Could not open SFTP channel: {exc}") from exc
        if sftp is None:
            raise ChannelError("SFTP subsystem unavailable")
        return sftp

    def __repr__(self) -> str:
        """Developer representation of the connection."""
        creds = self.credentials
        return (
            f"ConnectionManager({creds.username}@{creds.host}:{creds.port}, "
            f"state={self.state.name})"
        )

"""SSH/SFTP session establishment for SiteBackup.

:func:`connect` opens one public-key-authenticated session per backup run
and wraps it in a :class:`Session`.  Every failure is raised as a classified
:class:`~sitebackup.errors.BackupError`; the underlying paramiko client is
closed on every error path.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import keyring
import keyring.errors
import paramiko
from paramiko import SFTPAttributes

from sitebackup.errors import BackupError, FailureKind, classify

logger = logging.getLogger(__name__)

_KEYRING_SERVICE = "SiteBackup"

CONNECT_TIMEOUT = 30.0  # seconds
_KEEPALIVE_INTERVAL = 30  # seconds


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SshConnectionConfig:
    """Immutable connection parameters for one server."""

    hostname: str
    port: int
    username: str
    key_path: str

    def validate(self) -> None:
        """Raise ``ValueError`` if any field is empty or the port is out of range."""
        for name in ("hostname", "username", "key_path"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} must be a non-empty string")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError("port must be an integer")
        if not 0 < self.port <= 65535:
            raise ValueError(f"port must be in 1-65535, got {self.port}")

    @property
    def display(self) -> str:
        """``user@host:port`` for log and error messages."""
        return f"{self.username}@{self.hostname}:{self.port}"


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(Exception):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it to known_hosts via :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


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
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts "
            f"(key type {key.get_name()}, MD5 fingerprint {fingerprint})",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def _known_hosts_path() -> Path:
    return Path.home() / ".ssh" / "known_hosts"


def accept_host_key(hostname: str, key: paramiko.PKey, port: int = 22) -> None:
    """Append *key* for *hostname* to ``~/.ssh/known_hosts`` and save.

    Creates the file and ``.ssh/`` directory if they do not exist.  Non-22
    ports are stored in the ``[host]:port`` form OpenSSH uses.
    """
    known_hosts_path = _known_hosts_path()
    known_hosts_path.parent.mkdir(mode=0o700, exist_ok=True)

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    entry = hostname if port == 22 else f"[{hostname}]:{port}"
    host_keys.add(entry, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", entry)


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising."""
    try:
        client.close()
    except Exception:
        logger.debug("Ignoring error while closing SSH client", exc_info=True)


# ---------------------------------------------------------------------------
# Private key checks
# ---------------------------------------------------------------------------


def _sniff_key_format(key_path: Path) -> str:
    """Return "OpenSSH", "PEM" or "unknown" from the key file header."""
    try:
        with open(key_path, "r", encoding="ascii", errors="replace") as fh:
            header = fh.readline()
    except OSError:
        return "unknown"
    if "BEGIN OPENSSH PRIVATE KEY" in header:
        return "OpenSSH"
    if "PRIVATE KEY" in header:
        return "PEM"
    return "unknown"


def check_private_key(key_path: str) -> str:
    """Validate the private key file before any network I/O.

    Returns:
        The detected key format ("OpenSSH", "PEM" or "unknown").

    Raises:
        BackupError: ``AUTHENTICATION`` if the file is missing or, on POSIX,
            readable by group/other.
    """
    path = Path(key_path).expanduser()
    if not path.is_file():
        raise BackupError(
            FailureKind.AUTHENTICATION,
            "Private key file not found",
            str(path),
        )
    if os.name == "posix":
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & 0o077:
            raise BackupError(
                FailureKind.AUTHENTICATION,
                "Private key file permissions are too open",
                f"mode {mode:o} on {path}; run: chmod 600 {path}",
            )
    return _sniff_key_format(path)


# ---------------------------------------------------------------------------
# Key passphrase (OS keyring)
# ---------------------------------------------------------------------------


def get_key_passphrase(key_path: str) -> str | None:
    """Return the stored passphrase for *key_path*, or None."""
    try:
        return keyring.get_password(_KEYRING_SERVICE, key_path)
    except keyring.errors.KeyringError as exc:
        logger.debug("Keyring unavailable (%s) — assuming unencrypted key", exc)
        return None


def store_key_passphrase(key_path: str, passphrase: str) -> None:
    """Store *passphrase* for *key_path* in the OS keyring."""
    keyring.set_password(_KEYRING_SERVICE, key_path, passphrase)
    logger.debug("Key passphrase stored in keyring for %s", key_path)


def delete_key_passphrase(key_path: str) -> None:
    """Remove the stored passphrase for *key_path* from the OS keyring."""
    try:
        keyring.delete_password(_KEYRING_SERVICE, key_path)
    except keyring.errors.PasswordDeleteError:
        pass
    logger.debug("Key passphrase deleted from keyring for %s", key_path)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemoteEntry:
    """One entry of a remote directory listing."""

    path: str
    name: str
    is_directory: bool
    is_file: bool
    size: int

    @classmethod
    def from_attributes(cls, parent: str, attr: SFTPAttributes) -> "RemoteEntry":
        mode = attr.st_mode or 0
        return cls(
            path=f"{parent.rstrip('/')}/{attr.filename}",
            name=attr.filename,
            is_directory=stat.S_ISDIR(mode),
            is_file=stat.S_ISREG(mode),
            size=attr.st_size or 0,
        )


class Session:
    """An authenticated SSH session and its SFTP channel.

    Owned by exactly one backup run.  :meth:`close` is idempotent and the
    session is a context manager, so callers can guarantee teardown::

        with connect(config) as session:
            engine.backup(session, ...)
    """

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient, username: str) -> None:
        self._client = client
        self._sftp = sftp
        self.username = username
        self._transfer_lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def is_active(self) -> bool:
        """True while the underlying transport is alive."""
        if self._closed:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        """Close the SFTP channel and the SSH client."""
        if self._closed:
            return
        self._closed = True
        try:
            self._sftp.close()
        except Exception:
            logger.debug("Ignoring error while closing SFTP channel", exc_info=True)
        _close_client_safely(self._client)
        logger.info("Session closed")

    @contextmanager
    def active_transfer(self) -> Iterator[None]:
        """Mark the session busy for the duration of a transfer.

        Raises:
            RuntimeError: If another transfer is already running on it.
        """
        if self._closed:
            raise RuntimeError("Session is closed")
        if not self._transfer_lock.acquire(blocking=False):
            raise RuntimeError("Session already has an active transfer")
        try:
            yield
        finally:
            self._transfer_lock.release()

    # ------------------------------------------------------------------
    # SFTP operations
    # ------------------------------------------------------------------

    def home_directory(self) -> str:
        """The login directory as reported by the server.

        Falls back to ``/home/<username>`` if the server cannot resolve it.
        """
        try:
            return self._sftp.normalize(".")
        except (OSError, paramiko.SSHException) as exc:
            logger.debug("normalize('.') failed (%s) — using /home/%s", exc, self.username)
            return f"/home/{self.username}"

    def stat(self, remote_path: str) -> SFTPAttributes:
        return self._sftp.stat(remote_path)

    def listdir(self, remote_path: str) -> list[RemoteEntry]:
        """List *remote_path* in server order.

        Raises:
            OSError: On permission denied or path-not-found.
            paramiko.SSHException: On SFTP protocol errors.
        """
        entries = [RemoteEntry.from_attributes(remote_path, attr) for attr in self._sftp.listdir_attr(remote_path)]
        logger.debug("Listed %d entries in %s", len(entries), remote_path)
        return entries

    def open_file(self, remote_path: str):
        """Open *remote_path* for reading and return the SFTP file object."""
        return self._sftp.open(remote_path, "rb")

    def set_read_timeout(self, seconds: Optional[float]) -> None:
        """Bound every blocking read on the SFTP channel to *seconds*."""
        channel = self._sftp.get_channel()
        if channel is not None:
            channel.settimeout(seconds)


# ---------------------------------------------------------------------------
# connect
# ---------------------------------------------------------------------------


def connect(
    config: SshConnectionConfig,
    connect_timeout: float = CONNECT_TIMEOUT,
    passphrase: str | None = None,
) -> Session:
    """Open an authenticated SFTP session to *config*'s server.

    Authentication is public-key only: no password, no agent, no default
    key search.  Failures are not retried here.

    Args:
        config: Connection parameters; validated before use.
        connect_timeout: Bound on TCP connect, SSH banner and authentication.
        passphrase: Passphrase for an encrypted key.  When None the OS
            keyring is consulted.

    Raises:
        ValueError: *config* is invalid.
        BackupError: ``AUTHENTICATION``, ``CONNECTION`` or ``TIMEOUT``.
    """
    config.validate()
    key_path = str(Path(config.key_path).expanduser())
    key_format = check_private_key(key_path)
    if passphrase is None:
        passphrase = get_key_passphrase(config.key_path)

    logger.info("Connecting to %s", config.display)

    client = paramiko.SSHClient()
    known_hosts_path = _known_hosts_path()
    if known_hosts_path.exists():
        client.load_host_keys(str(known_hosts_path))
    client.set_missing_host_key_policy(_CapturingPolicy())

    try:
        client.connect(
            hostname=config.hostname,
            port=config.port,
            username=config.username,
            key_filename=key_path,
            passphrase=passphrase,
            timeout=connect_timeout,
            banner_timeout=connect_timeout,
            auth_timeout=connect_timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except UnknownHostError as exc:
        _close_client_safely(client)
        raise BackupError(
            FailureKind.AUTHENTICATION,
            f"Host key for {config.hostname} is not trusted",
            str(exc),
        ) from exc
    except paramiko.BadHostKeyException as exc:
        _close_client_safely(client)
        raise BackupError(
            FailureKind.AUTHENTICATION,
            f"Host key mismatch for {config.hostname} — check ~/.ssh/known_hosts",
            str(exc),
        ) from exc
    except paramiko.AuthenticationException as exc:
        _close_client_safely(client)
        raise BackupError(
            FailureKind.AUTHENTICATION,
            f"Public-key authentication failed for {config.display} (key format: {key_format})",
            str(exc),
        ) from exc
    except Exception as exc:
        _close_client_safely(client)
        raise classify(exc, f"Could not connect to {config.display}") from exc

    # Large window so big reads don't stall on ACKs; no rekey pauses mid-file.
    transport = client.get_transport()
    if transport:
        transport.set_keepalive(_KEEPALIVE_INTERVAL)
        transport.default_window_size = 64 * 1024 * 1024
        transport.packetizer.REKEY_BYTES = pow(2, 40)
        transport.packetizer.REKEY_TIME = pow(2, 40)

    try:
        sftp = client.open_sftp()
    except Exception as exc:
        _close_client_safely(client)
        raise classify(exc, f"Could not open SFTP channel on {config.display}") from exc

    logger.info("Connected to %s", config.display)
    return Session(client, sftp, config.username)

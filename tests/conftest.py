"""Shared fixtures: an in-memory SFTP server, a fake clock and sleep recorders."""

from __future__ import annotations

import errno
import io
import stat
from unittest.mock import MagicMock

import pytest
from paramiko import SFTPAttributes

from sitebackup.connection import Session
from sitebackup.retry import RetryPolicy


class FakeRemoteFile(io.BytesIO):
    """BytesIO with the paramiko ``SFTPFile.prefetch`` hook."""

    def prefetch(self, file_size=None) -> None:
        pass


class FakeSftp:
    """Minimal stand-in for ``paramiko.SFTPClient`` backed by a dict.

    *files* maps absolute POSIX paths to ``bytes`` (a file) or ``None``
    (a directory).  Parent directories are created implicitly; listing
    order follows insertion order.
    """

    def __init__(self, files: dict[str, bytes | None], home: str = "/home/user") -> None:
        self.home = home
        self.nodes: dict[str, bytes | None] = {"/": None}
        for path, data in files.items():
            self._add(path, data)
        self.listed: list[str] = []
        self.opened: list[str] = []
        self.open_errors: dict[str, list[BaseException]] = {}
        self.list_errors: dict[str, list[BaseException]] = {}
        self.channel = MagicMock()
        self.closed = False

    def _add(self, path: str, data: bytes | None) -> None:
        parts = [p for p in path.split("/") if p]
        for i in range(1, len(parts)):
            self.nodes.setdefault("/" + "/".join(parts[:i]), None)
        self.nodes["/" + "/".join(parts)] = data

    def _attr(self, path: str) -> SFTPAttributes:
        data = self.nodes[path]
        attr = SFTPAttributes()
        attr.filename = path.rsplit("/", 1)[-1]
        if data is None:
            attr.st_mode = stat.S_IFDIR | 0o755
            attr.st_size = 4096
        else:
            attr.st_mode = stat.S_IFREG | 0o644
            attr.st_size = len(data)
        return attr

    def _children(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return [p for p in self.nodes if p != "/" and p.startswith(prefix) and "/" not in p[len(prefix):]]

    # -- SFTPClient API ------------------------------------------------

    def listdir_attr(self, path: str) -> list[SFTPAttributes]:
        self.listed.append(path)
        pending = self.list_errors.get(path)
        if pending:
            raise pending.pop(0)
        if path not in self.nodes:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        if self.nodes[path] is not None:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", path)
        return [self._attr(child) for child in self._children(path)]

    def stat(self, path: str) -> SFTPAttributes:
        path = path.rstrip("/") or "/"
        if path not in self.nodes:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        return self._attr(path)

    def open(self, path: str, mode: str = "r") -> FakeRemoteFile:
        self.opened.append(path)
        pending = self.open_errors.get(path)
        if pending:
            raise pending.pop(0)
        data = self.nodes.get(path)
        if data is None:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        return FakeRemoteFile(data)

    def normalize(self, path: str) -> str:
        return self.home

    def get_channel(self) -> MagicMock:
        return self.channel

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def make_session():
    """Return a factory ``(files) -> (Session, FakeSftp)``."""

    def _make(files: dict[str, bytes | None], username: str = "user") -> tuple[Session, FakeSftp]:
        sftp = FakeSftp(files, home=f"/home/{username}")
        client = MagicMock()
        session = Session(client, sftp, username)
        return session, sftp

    return _make


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeps() -> list[float]:
    """Delays passed to a recording sleep (see ``fast_retry``)."""
    return []


@pytest.fixture()
def fast_retry(sleeps: list[float], clock: FakeClock) -> RetryPolicy:
    """Default retry parameters; sleeping records the delay and advances ``clock``."""

    def _sleep(delay: float) -> None:
        sleeps.append(delay)
        clock.advance(delay)

    return RetryPolicy(sleep=_sleep, clock=clock)

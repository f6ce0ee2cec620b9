"""Tests for sitebackup/utils/path_helpers.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from sitebackup.utils.path_helpers import (
    human_readable_size,
    is_hidden,
    is_safe_entry_name,
    normalize_local_path,
    posix_join,
    validate_remote_path,
)


class TestPosixJoin:
    def test_join(self) -> None:
        assert posix_join("/home/user", "example.com", "public_html") == "/home/user/example.com/public_html"

    def test_trailing_slash(self) -> None:
        assert posix_join("/site/", "a.txt") == "/site/a.txt"


class TestHumanReadableSize:
    @pytest.mark.parametrize(
        "size, expected",
        [
            (0, "0 B"),
            (1023, "1023 B"),
            (1024, "1.0 KB"),
            (3 * 1024 * 1024, "3.0 MB"),
            (-5, "0 B"),
        ],
    )
    def test_sizes(self, size: int, expected: str) -> None:
        assert human_readable_size(size) == expected


class TestNames:
    @pytest.mark.parametrize("name", [".git", ".htaccess", ".well-known"])
    def test_hidden(self, name: str) -> None:
        assert is_hidden(name)

    def test_not_hidden(self) -> None:
        assert not is_hidden("index.html")

    @pytest.mark.parametrize("name", ["", ".", "..", "a/b", "bad\x00name"])
    def test_unsafe_entry_names(self, name: str) -> None:
        assert not is_safe_entry_name(name)

    def test_safe_entry_name(self) -> None:
        assert is_safe_entry_name("wp-config.php")


class TestValidateRemotePath:
    @pytest.mark.parametrize("path", ["/", "/home/user", "public_html", "/site/a..b"])
    def test_valid(self, path: str) -> None:
        assert validate_remote_path(path)

    @pytest.mark.parametrize("path", ["", "/home/../etc", "..", "/site/\x00"])
    def test_invalid(self, path: str) -> None:
        assert not validate_remote_path(path)


def test_normalize_local_path(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert normalize_local_path("backups") == (tmp_path / "backups").resolve()
    assert normalize_local_path("~").is_absolute()

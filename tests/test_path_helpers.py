"""Tests for sshbridge/utils/path_helpers.py."""

from __future__ import annotations

import pytest

from sshbridge.utils.path_helpers import (
    ancestors,
    human_readable_size,
    is_hidden,
    mode_to_permission_string,
    parent_dir,
    posix_join,
    validate_remote_path,
    with_cwd,
)


class TestPaths:
    def test_posix_join(self) -> None:
        assert posix_join("/srv", "app", "conf") == "/srv/app/conf"
        assert posix_join("/srv/", "file") == "/srv/file"

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/srv/app/site.yml", "/srv/app"),
            ("/site.yml", "/"),
            ("/srv/app/", "/srv"),
            ("relative.txt", "."),
        ],
    )
    def test_parent_dir(self, path: str, expected: str) -> None:
        assert parent_dir(path) == expected

    def test_ancestors_outermost_first(self) -> None:
        assert ancestors("/srv/app/conf/site.yml") == ["/srv", "/srv/app", "/srv/app/conf"]

    def test_ancestors_of_top_level_file(self) -> None:
        assert ancestors("/site.yml") == []

    def test_ancestors_of_relative_path(self) -> None:
        assert ancestors("build/out/app.bin") == ["build", "build/out"]

    def test_validate_remote_path(self) -> None:
        assert validate_remote_path("/tmp/x") is True
        assert validate_remote_path("") is False
        assert validate_remote_path("/tmp/\x00evil") is False


class TestShell:
    def test_without_cwd_command_is_unchanged(self) -> None:
        assert with_cwd("ls -la", None) == "ls -la"

    def test_cwd_is_quoted(self) -> None:
        assert with_cwd("make", "/home/ci/it's here") == "cd '/home/ci/it'\"'\"'s here' && make"


class TestDisplay:
    def test_is_hidden(self) -> None:
        assert is_hidden(".bashrc") is True
        assert is_hidden("bashrc") is False

    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (1023, "1023 B"), (2048, "2.0 KiB"), (5 * 1024 * 1024, "5.0 MiB"),
         (3 * 1024 ** 6, "3072.0 PiB"), (-1, "0 B")],
    )
    def test_human_readable_size(self, size: int, expected: str) -> None:
        assert human_readable_size(size) == expected

    def test_mode_to_permission_string(self) -> None:
        assert mode_to_permission_string(0o755) == "rwxr-xr-x"
        assert mode_to_permission_string(0o100600) == "rw-------"

"""Tests for scan root containment checks."""

import os
import sys

import pytest

from tunescan.application.services.path_safety import (
    is_path_inside_allowed_roots,
    is_path_inside_root,
    resolve_scan_root,
)
from tunescan.domain.exceptions import PathEscapeError, ScanRootUnreadableError


class TestIsPathInsideRoot:
    """Test relative-path containment."""

    @pytest.mark.parametrize(
        ("candidate", "root", "expected"),
        [
            ("/music", "/music", True),
            ("/music/", "/music", True),
            ("/music/a/b", "/music", True),
            ("/music/../etc", "/music", False),
            ("/music-private", "/music", False),
            ("/", "/music", False),
            ("/music/..foo", "/music", True),
        ],
    )
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX paths")
    def test_posix_paths(self, candidate: str, root: str, expected: bool) -> None:
        assert is_path_inside_root(candidate, root) is expected

    def test_any_allowed_root(self) -> None:
        root = os.path.abspath("lib")
        other = os.path.abspath("other")
        candidate = os.path.join(other, "x")

        assert is_path_inside_allowed_roots(candidate, [root, other])
        assert not is_path_inside_allowed_roots(candidate, [root])


class TestResolveScanRoot:
    """Test realpath resolution and escape detection."""

    def test_root_inside_allowed(self, tmp_path) -> None:
        music = tmp_path / "music"
        (music / "sub").mkdir(parents=True)

        resolved = resolve_scan_root(str(music / "sub"), [str(music)])

        assert resolved == os.path.realpath(music / "sub")

    def test_dotdot_escape(self, tmp_path) -> None:
        music = tmp_path / "music"
        music.mkdir()

        with pytest.raises(PathEscapeError):
            resolve_scan_root(str(music / ".."), [str(music)])

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
    def test_symlink_escape(self, tmp_path) -> None:
        """A symlink inside the allowed root pointing outside is an escape."""
        music = tmp_path / "music"
        music.mkdir()
        outside = tmp_path / "outside"
        outside.mkdir()
        (music / "sneaky").symlink_to(outside, target_is_directory=True)

        with pytest.raises(PathEscapeError) as exc_info:
            resolve_scan_root(str(music / "sneaky"), [str(music)])
        assert exc_info.value.path == os.path.realpath(outside)

    def test_missing_root(self, tmp_path) -> None:
        with pytest.raises(ScanRootUnreadableError):
            resolve_scan_root(str(tmp_path / "missing"), [str(tmp_path)])

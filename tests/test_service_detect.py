"""Tests for backend detection and interpreter lookup."""

from unittest.mock import patch

import pytest

from agent_runtime.config import RuntimeConfig, set_config
from agent_runtime.exceptions import InterpreterNotFoundError
from agent_runtime.service import detect
from agent_runtime.service.detect import (
    build_service_path,
    detect_backend,
    is_wsl,
    resolve_interpreter_path,
)


class TestDetectBackend:
    """Tests for service-manager backend detection."""

    def test_detect_macos(self):
        with patch("platform.system", return_value="Darwin"):
            assert detect_backend() == "launchd"

    def test_detect_linux_systemd(self):
        with (
            patch("platform.system", return_value="Linux"),
            patch.object(detect, "is_wsl", return_value=False),
        ):
            assert detect_backend() == "systemd"

    def test_detect_wsl_uses_pm2(self):
        """WSL reports Linux, but user units are unreliable there."""
        with (
            patch("platform.system", return_value="Linux"),
            patch.object(detect, "is_wsl", return_value=True),
        ):
            assert detect_backend() == "pm2"

    def test_detect_windows(self):
        with patch("platform.system", return_value="Windows"):
            assert detect_backend() == "pm2"

    def test_detect_other(self):
        with patch("platform.system", return_value="FreeBSD"):
            assert detect_backend() == "pm2"


class TestIsWsl:
    """Tests for WSL detection via /proc/version."""

    def test_microsoft_kernel(self, tmp_path, monkeypatch):
        proc_version = tmp_path / "version"
        proc_version.write_text(
            "Linux version 5.15.90.1-microsoft-standard-WSL2 (gcc version 11.2.0)"
        )
        monkeypatch.setattr(detect, "PROC_VERSION", proc_version)
        with patch("platform.system", return_value="Linux"):
            assert is_wsl() is True

    def test_plain_linux_kernel(self, tmp_path, monkeypatch):
        proc_version = tmp_path / "version"
        proc_version.write_text("Linux version 6.5.0-14-generic (buildd@lcy02)")
        monkeypatch.setattr(detect, "PROC_VERSION", proc_version)
        with patch("platform.system", return_value="Linux"):
            assert is_wsl() is False

    def test_unreadable_proc_version(self, tmp_path, monkeypatch):
        monkeypatch.setattr(detect, "PROC_VERSION", tmp_path / "missing")
        with patch("platform.system", return_value="Linux"):
            assert is_wsl() is False

    def test_not_linux(self):
        with patch("platform.system", return_value="Darwin"):
            assert is_wsl() is False


class TestResolveInterpreterPath:
    """Tests for locating the interpreter that runs agent scripts."""

    @pytest.fixture
    def fake_interpreter(self, tmp_path):
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        interpreter = bin_dir / "python3"
        interpreter.touch()
        return interpreter

    def test_absolute_path_exists(self, fake_interpreter):
        assert resolve_interpreter_path(str(fake_interpreter)) == str(fake_interpreter)

    def test_absolute_path_missing(self, tmp_path):
        with pytest.raises(InterpreterNotFoundError):
            resolve_interpreter_path(str(tmp_path / "nope" / "python3"))

    def test_found_on_path(self, fake_interpreter):
        with patch.object(detect.shutil, "which", return_value=str(fake_interpreter)):
            assert resolve_interpreter_path("python3") == str(fake_interpreter)

    def test_falls_back_to_search_dirs(self, fake_interpreter, monkeypatch):
        monkeypatch.setattr(
            detect, "INTERPRETER_SEARCH_DIRS", [fake_interpreter.parent]
        )
        with patch.object(detect.shutil, "which", return_value=None):
            assert resolve_interpreter_path("python3") == str(fake_interpreter)

    def test_not_found_anywhere(self, tmp_path, monkeypatch):
        monkeypatch.setattr(detect, "INTERPRETER_SEARCH_DIRS", [tmp_path / "empty"])
        with patch.object(detect.shutil, "which", return_value=None):
            with pytest.raises(InterpreterNotFoundError, match="python3"):
                resolve_interpreter_path("python3")

    def test_default_comes_from_runtime_config(self, fake_interpreter):
        set_config(RuntimeConfig(interpreter=str(fake_interpreter)))
        assert resolve_interpreter_path() == str(fake_interpreter)


class TestBuildServicePath:
    def test_interpreter_dir_first(self):
        path = build_service_path("/opt/python/bin/python3")
        parts = path.split(":")
        assert parts[0] == "/opt/python/bin"
        assert "/usr/bin" in parts
        assert "/bin" in parts

    def test_no_duplicate_when_interpreter_in_system_dir(self):
        parts = build_service_path("/usr/bin/python3").split(":")
        assert parts[0] == "/usr/bin"
        assert parts.count("/usr/bin") == 1

#!/usr/bin/env python
"""
Tests for platform_utils.py - OS detection and Docker host helpers.
"""

from pathlib import Path
from unittest.mock import patch

from ticketforge.platform_utils import (
    DEFAULT_DOCKER_SOCKET,
    WINDOWS_DOCKER_PIPE,
    OSType,
    detect_os,
    docker_host_url,
    get_default_shell,
    get_platform_info,
    get_platform_summary,
    get_uid,
    is_default_socket,
    parse_docker_host,
)


class TestOSDetection:
    """Test OS detection functionality."""

    @patch("ticketforge.platform_utils.platform.system")
    def test_detect_windows(self, mock_system):
        mock_system.return_value = "Windows"
        assert detect_os() == OSType.WINDOWS

    @patch("ticketforge.platform_utils.platform.system")
    def test_detect_macos(self, mock_system):
        mock_system.return_value = "Darwin"
        assert detect_os() == OSType.MACOS

    @patch("ticketforge.platform_utils.platform.system")
    def test_detect_linux(self, mock_system):
        mock_system.return_value = "Linux"
        assert detect_os() == OSType.LINUX

    @patch("ticketforge.platform_utils.platform.system")
    def test_detect_unknown_defaults_to_linux(self, mock_system):
        mock_system.return_value = "FreeBSD"
        assert detect_os() == OSType.LINUX


class TestDefaultShell:

    @patch("ticketforge.platform_utils.detect_os", return_value=OSType.LINUX)
    def test_linux_zsh(self, _mock_os):
        with patch.dict("os.environ", {"SHELL": "/usr/bin/zsh"}):
            assert get_default_shell() == "zsh"

    @patch("ticketforge.platform_utils.detect_os", return_value=OSType.LINUX)
    def test_linux_defaults_to_bash(self, _mock_os):
        with patch.dict("os.environ", {"SHELL": "/bin/bash"}):
            assert get_default_shell() == "bash"

    @patch("ticketforge.platform_utils.detect_os", return_value=OSType.LINUX)
    def test_other_login_shell_reported(self, _mock_os):
        with patch.dict("os.environ", {"SHELL": "/usr/local/bin/fish"}):
            assert get_default_shell() == "fish"

    def test_macos_fallback_without_shell_env(self):
        with patch.dict("os.environ", {}, clear=True):
            assert get_default_shell(OSType.MACOS) == "zsh"

    @patch("ticketforge.platform_utils.shutil.which", return_value=None)
    @patch("ticketforge.platform_utils.detect_os", return_value=OSType.WINDOWS)
    def test_windows_without_powershell(self, _mock_os, _mock_which):
        assert get_default_shell() == "cmd"


class TestPlatformInfo:

    @patch("ticketforge.platform_utils.get_default_shell", return_value="powershell")
    @patch("ticketforge.platform_utils.detect_os", return_value=OSType.WINDOWS)
    def test_windows_uses_npipe(self, _mock_os, _mock_shell):
        info = get_platform_info()
        assert info.os_type == OSType.WINDOWS
        assert info.docker_host_scheme == "npipe"

    @patch("ticketforge.platform_utils.get_default_shell", return_value="zsh")
    @patch("ticketforge.platform_utils.detect_os", return_value=OSType.MACOS)
    def test_macos_uses_unix(self, _mock_os, _mock_shell):
        info = get_platform_info()
        assert info.docker_host_scheme == "unix"
        assert isinstance(info.home_dir, Path)

    @patch("ticketforge.platform_utils.os")
    def test_uid_none_without_getuid(self, mock_os):
        del mock_os.getuid
        assert get_uid() is None

    def test_summary_mentions_platform(self):
        summary = get_platform_summary()
        assert "Platform:" in summary
        assert "Docker host scheme:" in summary


class TestDockerHost:
    """Socket path <-> DOCKER_HOST conversions."""

    def test_default_socket(self):
        assert is_default_socket(DEFAULT_DOCKER_SOCKET)
        assert not is_default_socket("/Users/me/.colima/default/docker.sock")
        assert not is_default_socket(None)

    def test_unix_url(self):
        assert docker_host_url("/tmp/docker.sock", OSType.LINUX) == "unix:///tmp/docker.sock"
        assert docker_host_url("/tmp/docker.sock", OSType.MACOS) == "unix:///tmp/docker.sock"

    def test_windows_url(self):
        assert docker_host_url(WINDOWS_DOCKER_PIPE, OSType.WINDOWS) == "npipe:////./pipe/docker_engine"

    def test_parse_unix(self):
        assert parse_docker_host("unix:///var/run/docker.sock") == "/var/run/docker.sock"

    def test_parse_npipe(self):
        assert parse_docker_host("npipe:////./pipe/docker_engine") == WINDOWS_DOCKER_PIPE

    def test_parse_bare_path(self):
        assert parse_docker_host("/run/user/1000/podman/podman.sock") == "/run/user/1000/podman/podman.sock"

    def test_parse_tcp_is_not_a_socket(self):
        assert parse_docker_host("tcp://10.0.0.5:2376") is None

    def test_parse_empty(self):
        assert parse_docker_host("") is None
        assert parse_docker_host(None) is None
        assert parse_docker_host("unix://") is None

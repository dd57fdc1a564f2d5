"""
Platform Utilities for Cross-Platform Support
==============================================

Central module for OS detection and the platform-specific details that the
runtime resolver and launch planner depend on: home directory, user id,
default shell, and how a Docker socket path is expressed as a DOCKER_HOST URL.
Supports Windows, macOS, and Linux.
"""

import platform
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import NamedTuple, Optional


DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"
WINDOWS_DOCKER_PIPE = "//./pipe/docker_engine"


class OSType(Enum):
    """Supported operating system types."""
    WINDOWS = "windows"
    MACOS = "macos"
    LINUX = "linux"


class PlatformInfo(NamedTuple):
    """Platform-specific configuration information."""
    os_type: OSType
    home_dir: Path
    uid: Optional[int]              # None on Windows
    shell_name: str                 # "bash", "zsh", "cmd", or "powershell"
    docker_host_scheme: str         # "unix" or "npipe"


def detect_os() -> OSType:
    """
    Detect the current operating system.

    Returns:
        OSType enum value for the current OS
    """
    system = platform.system().lower()
    if system == "windows":
        return OSType.WINDOWS
    elif system == "darwin":
        return OSType.MACOS
    else:
        return OSType.LINUX


def get_default_shell(os_type: Optional[OSType] = None) -> str:
    """
    Name of the user's login shell, for display. Launch scripts always run
    under bash whatever this returns.
    """
    os_type = os_type or detect_os()
    if os_type == OSType.WINDOWS:
        return "powershell" if shutil.which("pwsh") or shutil.which("powershell") else "cmd"

    fallback = "/bin/zsh" if os_type == OSType.MACOS else "/bin/bash"
    return Path(os.environ.get("SHELL") or fallback).name


def get_home_dir() -> Path:
    """Return the current user's home directory."""
    return Path.home()


def get_uid() -> Optional[int]:
    """Return the numeric user id, or None where the platform has none."""
    getuid = getattr(os, "getuid", None)
    if getuid is None:
        return None
    return getuid()


def get_platform_info() -> PlatformInfo:
    """
    Get platform-specific configuration.

    Returns:
        PlatformInfo with all platform-specific settings
    """
    os_type = detect_os()
    return PlatformInfo(
        os_type=os_type,
        home_dir=get_home_dir(),
        uid=get_uid(),
        shell_name=get_default_shell(os_type),
        docker_host_scheme="npipe" if os_type == OSType.WINDOWS else "unix",
    )


# =============================================================================
# Docker Socket Helpers
# =============================================================================

def is_default_socket(socket_path: Optional[str]) -> bool:
    """True when the path is the conventional Docker socket (no DOCKER_HOST needed)."""
    return socket_path == DEFAULT_DOCKER_SOCKET


def docker_host_url(socket_path: str, os_type: Optional[OSType] = None) -> str:
    """
    Format a socket path as a DOCKER_HOST value.

    Args:
        socket_path: Unix socket path or Windows named pipe path
        os_type: Platform to format for (defaults to the current one)

    Returns:
        ``unix:///path`` on macOS/Linux, ``npipe:////./pipe/...`` on Windows
    """
    if os_type is None:
        os_type = detect_os()
    scheme = "npipe" if os_type == OSType.WINDOWS else "unix"
    return f"{scheme}://{socket_path}"


def parse_docker_host(value: Optional[str]) -> Optional[str]:
    """
    Extract a socket path from a DOCKER_HOST value.

    ``unix://`` and ``npipe://`` URLs yield their path, a bare absolute path is
    returned as-is. TCP hosts and anything else are not socket-based and yield
    None.
    """
    if not value:
        return None
    value = value.strip()
    for scheme in ("unix://", "npipe://"):
        if value.startswith(scheme):
            path = value[len(scheme):]
            return path or None
    if value.startswith("/"):
        return value
    return None


def get_platform_summary() -> str:
    """
    Get a summary of the current platform configuration.

    Returns:
        Human-readable summary string
    """
    info = get_platform_info()

    summary = [
        f"Platform: {info.os_type.value.title()}",
        f"Shell: {info.shell_name}",
        f"Home: {info.home_dir}",
        f"Docker host scheme: {info.docker_host_scheme}",
    ]
    if info.uid is not None:
        summary.append(f"UID: {info.uid}")

    return "\n".join(summary)

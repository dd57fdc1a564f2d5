"""
Container Runtime Resolver
==========================

Detects which Docker-compatible runtime is usable on this host and which
socket reaches it.

Detection order:
1. Explicit configuration (``docker_socket_path`` or a non-auto ``docker_runtime``)
2. ``DOCKER_HOST`` environment variable (unix://, npipe:// or a bare path)
3. Lima (macOS)
4. Colima (macOS)
5. Rancher Desktop
6. Docker Desktop / the default Docker socket
7. Podman

The first socket that answers the liveness probe wins. Results are cached for
a short TTL inside a ``RuntimeCache`` snapshot that is replaced wholesale on
every refresh, so concurrent readers never see a half-updated value.

Usage:
    resolver = RuntimeResolver(ForgeConfig.load())
    info = resolver.resolve()
    if info.running:
        ...
"""

import logging
import os
import stat
import subprocess
import time
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from ticketforge.config import ForgeConfig
from ticketforge.platform_utils import (
    OSType,
    WINDOWS_DOCKER_PIPE,
    detect_os,
    docker_host_url,
    get_home_dir,
    get_uid,
    is_default_socket,
    parse_docker_host,
)

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 5.0


class RuntimeKind(Enum):
    """Container runtimes the resolver knows how to find."""
    AUTO = "auto"
    LIMA = "lima"
    COLIMA = "colima"
    RANCHER = "rancher"
    DOCKER_DESKTOP = "docker-desktop"
    PODMAN = "podman"


class DetectionSource(Enum):
    """How a RuntimeInfo was arrived at."""
    DETECTED = "detected"         # found by scanning the priority list
    CONFIGURED = "configured"     # explicit user choice
    ENVIRONMENT = "environment"   # DOCKER_HOST
    NONE = "none"                 # nothing found


RUNTIME_PRIORITY = [
    RuntimeKind.LIMA,
    RuntimeKind.COLIMA,
    RuntimeKind.RANCHER,
    RuntimeKind.DOCKER_DESKTOP,
    RuntimeKind.PODMAN,
]


@dataclass(frozen=True)
class RuntimeInfo:
    """Immutable snapshot of the resolved runtime."""
    kind: RuntimeKind
    socket_path: Optional[str]
    available: bool
    running: bool
    source: DetectionSource = DetectionSource.NONE
    version: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        """An explicitly configured runtime counts as confirmed once its daemon answered."""
        return self.source == DetectionSource.CONFIGURED and self.running

    @classmethod
    def unavailable(cls) -> "RuntimeInfo":
        return cls(kind=RuntimeKind.AUTO, socket_path=None, available=False, running=False)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["source"] = self.source.value
        data["confirmed"] = self.confirmed
        return data


def candidate_sockets(
    kind: RuntimeKind,
    os_type: OSType,
    home: Path,
    uid: Optional[int] = None,
) -> List[str]:
    """
    Default socket paths for a runtime on a platform, most likely first.

    Returns an empty list when the runtime does not exist on the platform.
    """
    home_str = str(home)
    if kind == RuntimeKind.LIMA:
        if os_type != OSType.MACOS:
            return []
        return [
            f"{home_str}/.lima/docker/sock/docker.sock",
            f"{home_str}/.lima/default/sock/docker.sock",
        ]
    if kind == RuntimeKind.COLIMA:
        if os_type != OSType.MACOS:
            return []
        return [f"{home_str}/.colima/default/docker.sock"]
    if kind == RuntimeKind.RANCHER:
        return [f"{home_str}/.rd/docker.sock"]
    if kind == RuntimeKind.DOCKER_DESKTOP:
        if os_type == OSType.WINDOWS:
            return [WINDOWS_DOCKER_PIPE]
        return ["/var/run/docker.sock", f"{home_str}/.docker/run/docker.sock"]
    if kind == RuntimeKind.PODMAN:
        if os_type == OSType.WINDOWS:
            return []
        if os_type == OSType.MACOS:
            return [
                f"{home_str}/.local/share/containers/podman/machine/podman.sock",
                f"{home_str}/.local/share/containers/podman/machine/qemu/podman.sock",
            ]
        paths = []
        if uid is not None:
            paths.append(f"/run/user/{uid}/podman/podman.sock")
        paths.append("/var/run/podman/podman.sock")
        return paths
    return []


def infer_kind_from_socket(socket_path: str) -> RuntimeKind:
    """Best-effort guess of the runtime behind an arbitrary socket path."""
    markers = [
        ("/.lima/", RuntimeKind.LIMA),
        ("/.colima/", RuntimeKind.COLIMA),
        ("/.rd/", RuntimeKind.RANCHER),
        ("podman", RuntimeKind.PODMAN),
        ("/.docker/run/", RuntimeKind.DOCKER_DESKTOP),
        ("docker_engine", RuntimeKind.DOCKER_DESKTOP),
    ]
    for marker, kind in markers:
        if marker in socket_path:
            return kind
    return RuntimeKind.AUTO


def docker_host_env_value(info: RuntimeInfo, os_type: Optional[OSType] = None) -> Optional[str]:
    """
    DOCKER_HOST value needed to reach the resolved runtime.

    Returns None when no socket is known or the socket is the default one.
    """
    if not info.socket_path or is_default_socket(info.socket_path):
        return None
    return docker_host_url(info.socket_path, os_type)


# =============================================================================
# Probing
# =============================================================================

class RuntimeProbe:
    """
    Liveness checks against a socket.

    ``socket_alive`` is the cheap check (the socket file exists); ``server_version``
    asks the daemon behind it for its version and returns None when it does not
    answer.
    """

    def __init__(self, os_type: Optional[OSType] = None, docker_binary: str = "docker",
                 timeout: float = PROBE_TIMEOUT_SECONDS):
        self.os_type = os_type or detect_os()
        self.docker_binary = docker_binary
        self.timeout = timeout

    def socket_alive(self, socket_path: str) -> bool:
        try:
            if self.os_type == OSType.WINDOWS:
                return os.path.exists(socket_path)
            mode = os.stat(socket_path).st_mode
        except OSError:
            return False
        return stat.S_ISSOCK(mode)

    def server_version(self, socket_path: str) -> Optional[str]:
        env = dict(os.environ)
        env["DOCKER_HOST"] = docker_host_url(socket_path, self.os_type)
        try:
            result = subprocess.run(
                [self.docker_binary, "version", "--format", "{{.Server.Version}}"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("docker version probe failed for %s: %s", socket_path, e)
            return None
        if result.returncode != 0:
            return None
        version = result.stdout.strip()
        return version or None


# =============================================================================
# Cache
# =============================================================================

@dataclass(frozen=True)
class RuntimeCache:
    """One cached resolution. Replaced, never mutated."""
    value: Optional[RuntimeInfo] = None
    last_checked: Optional[float] = None

    def is_fresh(self, now: float, ttl: float) -> bool:
        if self.value is None or self.last_checked is None:
            return False
        return (now - self.last_checked) < ttl


# =============================================================================
# Resolver
# =============================================================================

class RuntimeResolver:
    """
    Resolves the container runtime with a TTL cache.

    ``resolve()`` never raises: when nothing is found the result is
    ``RuntimeInfo(kind=AUTO, available=False)``.
    """

    def __init__(
        self,
        config: Optional[ForgeConfig] = None,
        probe: Optional[RuntimeProbe] = None,
        clock: Callable[[], float] = time.monotonic,
        os_type: Optional[OSType] = None,
        home: Optional[Path] = None,
        uid: Optional[int] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config or ForgeConfig()
        self.os_type = os_type or detect_os()
        self.probe = probe or RuntimeProbe(self.os_type)
        self.clock = clock
        self.home = home if home is not None else get_home_dir()
        self.uid = uid if uid is not None else get_uid()
        self.environ = environ if environ is not None else os.environ
        self._cache = RuntimeCache()

    @property
    def cache(self) -> RuntimeCache:
        return self._cache

    def resolve(self, force_refresh: bool = False) -> RuntimeInfo:
        """
        Return the current runtime, probing only when the cache is stale.

        Args:
            force_refresh: Ignore the cache and probe again

        Returns:
            RuntimeInfo snapshot (the identical object within the TTL window)
        """
        cached = self._cache
        now = self.clock()
        if not force_refresh and cached.is_fresh(now, self.config.runtime_cache_ttl_seconds):
            return cached.value

        try:
            info = self._detect()
        except Exception as e:
            logger.warning("Runtime detection failed: %s", e)
            info = RuntimeInfo.unavailable()

        self._cache = RuntimeCache(value=info, last_checked=now)
        return info

    def clear_cache(self) -> None:
        self._cache = RuntimeCache()

    def list_available(self) -> List[RuntimeInfo]:
        """
        Every runtime with a live socket on this host, in priority order.

        Not cached; intended for a settings screen rather than polling.
        """
        results: List[RuntimeInfo] = []
        seen = set()

        env_path = parse_docker_host(self.environ.get("DOCKER_HOST"))
        if env_path and self.probe.socket_alive(env_path):
            seen.add(env_path)
            results.append(self._build(infer_kind_from_socket(env_path), env_path,
                                       DetectionSource.ENVIRONMENT))

        for kind in RUNTIME_PRIORITY:
            for path in self._candidates(kind):
                if path in seen or not self.probe.socket_alive(path):
                    continue
                seen.add(path)
                results.append(self._build(kind, path, DetectionSource.DETECTED))
                break

        return results

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _candidates(self, kind: RuntimeKind) -> List[str]:
        return candidate_sockets(kind, self.os_type, self.home, self.uid)

    def _build(self, kind: RuntimeKind, socket_path: str, source: DetectionSource) -> RuntimeInfo:
        version = self.probe.server_version(socket_path)
        return RuntimeInfo(
            kind=kind,
            socket_path=socket_path,
            available=True,
            running=version is not None,
            source=source,
            version=version,
        )

    def _configured_kind(self) -> RuntimeKind:
        try:
            return RuntimeKind(self.config.docker_runtime or "auto")
        except ValueError:
            logger.warning("Unknown docker_runtime %r, using auto-detection", self.config.docker_runtime)
            return RuntimeKind.AUTO

    def _detect(self) -> RuntimeInfo:
        kind = self._configured_kind()

        socket_override = self.config.docker_socket_path
        if socket_override:
            if kind == RuntimeKind.AUTO:
                kind = infer_kind_from_socket(socket_override)
            if self.probe.socket_alive(socket_override):
                return self._build(kind, socket_override, DetectionSource.CONFIGURED)
            logger.warning("Configured Docker socket not accessible: %s", socket_override)
            return RuntimeInfo(kind=kind, socket_path=socket_override, available=False,
                               running=False, source=DetectionSource.CONFIGURED)

        if kind != RuntimeKind.AUTO:
            candidates = self._candidates(kind)
            for path in candidates:
                if self.probe.socket_alive(path):
                    return self._build(kind, path, DetectionSource.CONFIGURED)
            logger.warning("Configured runtime %r has no accessible socket", kind.value)
            return RuntimeInfo(kind=kind, socket_path=candidates[0] if candidates else None,
                               available=False, running=False, source=DetectionSource.CONFIGURED)

        docker_host = self.environ.get("DOCKER_HOST")
        if docker_host:
            env_path = parse_docker_host(docker_host)
            if env_path is None:
                logger.warning("DOCKER_HOST %r is not a socket path; ignoring", docker_host)
            elif self.probe.socket_alive(env_path):
                return self._build(infer_kind_from_socket(env_path), env_path,
                                   DetectionSource.ENVIRONMENT)
            else:
                logger.warning("DOCKER_HOST set but socket not accessible: %s", docker_host)

        for candidate_kind in RUNTIME_PRIORITY:
            for path in self._candidates(candidate_kind):
                if self.probe.socket_alive(path):
                    logger.info("Detected %s runtime at %s", candidate_kind.value, path)
                    return self._build(candidate_kind, path, DetectionSource.DETECTED)

        return RuntimeInfo.unavailable()

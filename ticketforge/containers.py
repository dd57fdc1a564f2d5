"""
Container Lifecycle Monitor
===========================

Read-only views of session containers through the docker CLI: which session
containers exist, what they cost in CPU and memory, and what they have
printed.

Every operation tolerates a runtime that is not running by returning an
empty result with ``available=False``. Failures of the docker CLI itself are
absorbed into the result's ``error`` field; a failed poll says nothing about
the health of the session behind it.

Containers are matched by name prefix so containers that do not belong to a
session never show up.

Suggested poll intervals for callers driving this from a timer are exported
as ``LIST_POLL_SECONDS``, ``LOGS_POLL_SECONDS`` and ``STATS_POLL_SECONDS``.
"""

import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ticketforge.config import (
    DEFAULT_CONTAINER_PREFIX,
    DEFAULT_SANDBOX_IMAGE,
    DEFAULT_SANDBOX_NETWORK,
)
from ticketforge.errors import DockerCommandError
from ticketforge.launch import (
    LABEL_EPIC_ID,
    LABEL_EPIC_TITLE,
    LABEL_PROJECT_ID,
    LABEL_PROJECT_NAME,
)
from ticketforge.runtime import RuntimeResolver, docker_host_env_value

logger = logging.getLogger(__name__)

LIST_POLL_SECONDS = 3
LOGS_POLL_SECONDS = 1
STATS_POLL_SECONDS = 10

DEFAULT_LOG_TAIL = 500

LIST_TIMEOUT = 10.0
STATS_TIMEOUT = 15.0
LOGS_TIMEOUT = 30.0
INSPECT_TIMEOUT = 5.0

_ITERATION_PATTERN = re.compile(r"Iteration\s+(\d+)\s+of\s+(\d+)")
_CONTAINER_NAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
_SIZE_PATTERN = re.compile(r"^\s*([\d.]+)\s*([a-zA-Z]*)\s*$")

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000 ** 2,
    "gb": 1000 ** 3,
    "tb": 1000 ** 4,
    "kib": 1024,
    "mib": 1024 ** 2,
    "gib": 1024 ** 3,
    "tib": 1024 ** 4,
}


# =============================================================================
# Result Types
# =============================================================================

@dataclass(frozen=True)
class ContainerDescriptor:
    """A session container as reported by ``docker ps``."""
    name: str
    is_running: bool
    container_id: str = ""
    image: str = ""
    status: str = ""
    created_at: str = ""
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    epic_id: Optional[str] = None
    epic_title: Optional[str] = None


@dataclass(frozen=True)
class ContainerStats:
    """Point-in-time resource usage for one container."""
    container_name: str
    cpu_percent: float
    mem_usage_bytes: int
    mem_limit_bytes: int

    @property
    def mem_percent(self) -> float:
        if not self.mem_limit_bytes:
            return 0.0
        return 100.0 * self.mem_usage_bytes / self.mem_limit_bytes


@dataclass(frozen=True)
class IterationProgress:
    current: int
    total: int


@dataclass
class ContainerListResult:
    containers: List[ContainerDescriptor] = field(default_factory=list)
    available: bool = True
    error: Optional[str] = None


@dataclass
class ContainerStatsResult:
    stats: List[ContainerStats] = field(default_factory=list)
    available: bool = True
    error: Optional[str] = None


@dataclass
class ContainerLogs:
    text: str = ""
    container_running: bool = False
    available: bool = True
    error: Optional[str] = None

    @property
    def progress(self) -> Optional[IterationProgress]:
        return parse_iteration_progress(self.text)


@dataclass
class SandboxReadiness:
    """Whether a sandbox launch can go ahead on the resolved runtime."""
    image_present: bool = False
    network_present: bool = False
    warnings: List[str] = field(default_factory=list)
    available: bool = True
    error: Optional[str] = None

    @property
    def ready(self) -> bool:
        # the launch script creates a missing network itself
        return self.available and self.error is None and self.image_present


# =============================================================================
# Parsing Helpers
# =============================================================================

def parse_iteration_progress(text: str) -> Optional[IterationProgress]:
    """
    Find the most recent "Iteration N of M" marker in log text.

    Returns:
        IterationProgress for the last match, or None if there is none
    """
    last = None
    for match in _ITERATION_PATTERN.finditer(text or ""):
        last = match
    if last is None:
        return None
    return IterationProgress(current=int(last.group(1)), total=int(last.group(2)))


def parse_size(value: str) -> int:
    """
    Convert a docker size string (``100MiB``, ``1.5GB``, ``512kB``) to bytes.

    Raises:
        ValueError: the string is not a recognisable size
    """
    match = _SIZE_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Unrecognised size: {value!r}")
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unrecognised size unit: {value!r}")
    return int(float(number) * multiplier)


def parse_percent(value: str) -> float:
    """``"12.34%"`` -> ``12.34``. ``"--"`` (container stopping) -> ``0.0``."""
    value = (value or "").strip().rstrip("%")
    if not value or value == "--":
        return 0.0
    return float(value)


def parse_labels(labels: str) -> Dict[str, str]:
    """Parse docker's ``key=value,key2=value2`` label format."""
    result = {}
    if not labels:
        return result
    for part in labels.split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            result[key.strip()] = value.strip()
    return result


def parse_ps_line(line: str) -> ContainerDescriptor:
    """
    Build a descriptor from one ``docker ps --format '{{json .}}'`` line.

    Raises:
        ValueError: the line is not a JSON object with a container name
    """
    data = json.loads(line)
    if not isinstance(data, dict) or not data.get("Names"):
        raise ValueError("container JSON has no Names field")
    labels = parse_labels(data.get("Labels") or "")
    return ContainerDescriptor(
        name=data["Names"],
        is_running=data.get("State") == "running",
        container_id=data.get("ID", ""),
        image=data.get("Image", ""),
        status=data.get("Status", ""),
        created_at=data.get("CreatedAt", ""),
        project_id=labels.get(LABEL_PROJECT_ID),
        project_name=labels.get(LABEL_PROJECT_NAME),
        epic_id=labels.get(LABEL_EPIC_ID),
        epic_title=labels.get(LABEL_EPIC_TITLE),
    )


def parse_stats_line(line: str) -> ContainerStats:
    """
    Build stats from one ``docker stats --no-stream --format '{{json .}}'`` line.

    Raises:
        ValueError: the line or one of its fields cannot be parsed
    """
    data = json.loads(line)
    if not isinstance(data, dict) or not data.get("Name"):
        raise ValueError("stats JSON has no Name field")
    usage, _, limit = (data.get("MemUsage") or "").partition("/")
    return ContainerStats(
        container_name=data["Name"],
        cpu_percent=parse_percent(data.get("CPUPerc", "")),
        mem_usage_bytes=parse_size(usage) if usage.strip() else 0,
        mem_limit_bytes=parse_size(limit) if limit.strip() else 0,
    )


# =============================================================================
# Docker CLI
# =============================================================================

class DockerCommandRunner:
    """Runs docker CLI commands against a specific daemon."""

    def __init__(self, docker_binary: str = "docker"):
        self.docker_binary = docker_binary

    def run(
        self,
        args: Sequence[str],
        docker_host: Optional[str] = None,
        timeout: float = LIST_TIMEOUT,
    ) -> subprocess.CompletedProcess:
        """
        Run ``docker <args>``.

        Raises:
            DockerCommandError: the CLI is missing, timed out, or exited non-zero
        """
        env = dict(os.environ)
        if docker_host:
            env["DOCKER_HOST"] = docker_host

        try:
            result = subprocess.run(
                [self.docker_binary, *args],
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except FileNotFoundError:
            raise DockerCommandError(f"{self.docker_binary} CLI not found")
        except subprocess.TimeoutExpired:
            raise DockerCommandError(f"docker {args[0]} timed out after {timeout:g}s")
        except OSError as e:
            raise DockerCommandError(f"docker {args[0]} failed to start: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise DockerCommandError(
                stderr or f"docker {args[0]} exited with code {result.returncode}",
                stderr=stderr,
                returncode=result.returncode,
            )
        return result


# =============================================================================
# Monitor
# =============================================================================

class ContainerMonitor:
    """
    Lists, measures, and tails session containers.

    Usage:
        monitor = ContainerMonitor(RuntimeResolver(config), prefix=config.container_prefix)
        for container in monitor.list_containers().containers:
            ...
    """

    def __init__(
        self,
        resolver: RuntimeResolver,
        runner: Optional[DockerCommandRunner] = None,
        prefix: str = DEFAULT_CONTAINER_PREFIX,
    ):
        self.resolver = resolver
        self.runner = runner or DockerCommandRunner()
        self.prefix = prefix

    def _docker_host(self):
        """Resolved runtime and the DOCKER_HOST to reach it (None when not running)."""
        info = self.resolver.resolve()
        if not info.running:
            return None, None
        return info, docker_host_env_value(info, self.resolver.os_type)

    def list_containers(self) -> ContainerListResult:
        """All containers, running or exited, whose name carries the session prefix."""
        info, docker_host = self._docker_host()
        if info is None:
            return ContainerListResult(containers=[], available=False)

        try:
            result = self.runner.run(
                ["ps", "-a", "--filter", f"name={self.prefix}", "--format", "{{json .}}"],
                docker_host=docker_host,
                timeout=LIST_TIMEOUT,
            )
        except DockerCommandError as e:
            logger.warning("Failed to list containers: %s", e)
            return ContainerListResult(containers=[], available=False,
                                       error=f"Failed to list containers: {e}")

        containers = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            try:
                container = parse_ps_line(line)
            except ValueError:
                logger.warning("Skipped malformed container JSON: %s", line[:100])
                continue
            # docker's name filter is a substring match
            if container.name.startswith(self.prefix):
                containers.append(container)

        return ContainerListResult(containers=containers)

    def stats(self, names: Optional[Sequence[str]] = None) -> ContainerStatsResult:
        """
        Resource usage for session containers.

        Args:
            names: Containers to measure; defaults to every running session container

        Heavier than ``list_containers``; poll it less often.
        """
        info, docker_host = self._docker_host()
        if info is None:
            return ContainerStatsResult(stats=[], available=False)

        if names is None:
            listing = self.list_containers()
            if listing.error:
                return ContainerStatsResult(stats=[], available=False, error=listing.error)
            names = [c.name for c in listing.containers if c.is_running]

        names = [n for n in names if n.startswith(self.prefix) and _CONTAINER_NAME.match(n)]
        if not names:
            return ContainerStatsResult(stats=[])

        try:
            result = self.runner.run(
                ["stats", "--no-stream", "--format", "{{json .}}", *names],
                docker_host=docker_host,
                timeout=STATS_TIMEOUT,
            )
        except DockerCommandError as e:
            logger.warning("Failed to get container stats: %s", e)
            return ContainerStatsResult(stats=[], available=False,
                                        error=f"Failed to get container stats: {e}")

        stats = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            try:
                stats.append(parse_stats_line(line))
            except ValueError:
                logger.warning("Skipped unparseable stats line: %s", line[:100])

        return ContainerStatsResult(stats=stats)

    def logs(self, name: str, tail_lines: int = DEFAULT_LOG_TAIL) -> ContainerLogs:
        """
        Last ``tail_lines`` lines of a container's output and whether it still runs.

        A container that no longer exists yields empty text and
        ``container_running=False`` rather than an error.
        """
        if not _CONTAINER_NAME.match(name or ""):
            return ContainerLogs(available=False, error=f"Invalid container name: {name!r}")
        if not name.startswith(self.prefix):
            return ContainerLogs(available=False,
                                 error=f"Not a session container: {name!r}")

        info, docker_host = self._docker_host()
        if info is None:
            return ContainerLogs(available=False)

        args = ["logs"]
        if tail_lines and tail_lines > 0:
            args.append(f"--tail={int(tail_lines)}")
        args.append(name)

        try:
            result = self.runner.run(args, docker_host=docker_host, timeout=LOGS_TIMEOUT)
            # docker logs replays the container's stderr on our stderr
            text = (result.stdout or "") + (result.stderr or "")
            state = self.runner.run(
                ["inspect", "--format", "{{.State.Running}}", name],
                docker_host=docker_host,
                timeout=INSPECT_TIMEOUT,
            )
        except DockerCommandError as e:
            if "No such container" in str(e) or "No such object" in str(e):
                return ContainerLogs(text="", container_running=False)
            logger.warning("Failed to get logs for %s: %s", name, e)
            return ContainerLogs(available=False, error=f"Failed to get logs: {e}")

        return ContainerLogs(text=text, container_running=state.stdout.strip() == "true")

    def sandbox_ready(
        self,
        image: str = DEFAULT_SANDBOX_IMAGE,
        network: str = DEFAULT_SANDBOX_NETWORK,
    ) -> SandboxReadiness:
        """
        Check the daemon, the sandbox image and the session network before a
        sandbox launch. Never raises; problems land in ``error`` and
        ``warnings``.
        """
        info, docker_host = self._docker_host()
        if info is None:
            return SandboxReadiness(available=False)

        try:
            self.runner.run(["info", "--format", "{{.ServerVersion}}"],
                            docker_host=docker_host, timeout=LIST_TIMEOUT)
        except DockerCommandError as e:
            logger.warning("Docker is not accessible: %s", e)
            return SandboxReadiness(available=False, error=f"Docker is not accessible: {e}")

        readiness = SandboxReadiness(
            image_present=self._object_exists(["image", "inspect", image], docker_host),
            network_present=self._object_exists(["network", "inspect", network], docker_host),
        )
        if not readiness.image_present:
            readiness.warnings.append(f"Sandbox image {image} not found; build it before launching")
        if not readiness.network_present:
            readiness.warnings.append(f"Docker network {network} does not exist yet; the launch script creates it")

        ssh_sock = os.environ.get("SSH_AUTH_SOCK")
        if not ssh_sock or not os.path.exists(ssh_sock):
            readiness.warnings.append(
                "SSH agent not running; git push may not work from the container. "
                "Start one with: eval $(ssh-agent) && ssh-add"
            )

        return readiness

    def _object_exists(self, args: List[str], docker_host: Optional[str]) -> bool:
        try:
            self.runner.run(args, docker_host=docker_host, timeout=INSPECT_TIMEOUT)
        except DockerCommandError as e:
            logger.debug("docker %s %s: %s", args[0], args[-1], e)
            return False
        return True

"""
Service Manifest Reader
=======================

Reads ``.ralph-services.json``, the file a sandboxed session writes to
report which dev servers it has running and on which ports. This module only
reads it; the session owns it.

File format:
    {
      "services": [
        {"name": "vite-dev-server", "type": "frontend", "port": 8100,
         "status": "running", "healthEndpoint": "/", "startedAt": "..."}
      ],
      "updatedAt": "2024-01-15T10:35:00Z"
    }

A missing file, malformed JSON, or a ``services`` value that is not a list
all yield an empty manifest. Only the malformed cases are logged.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

SERVICES_FILENAME = ".ralph-services.json"


class ServiceType(Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    STORYBOOK = "storybook"
    DOCS = "docs"
    DATABASE = "database"
    OTHER = "other"


class ServiceStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    STARTING = "starting"
    ERROR = "error"


# Ports the sandbox container publishes, by service type
PORT_RANGES: Dict[ServiceType, Tuple[int, int]] = {
    ServiceType.FRONTEND: (8100, 8110),
    ServiceType.BACKEND: (8200, 8210),
    ServiceType.STORYBOOK: (8300, 8310),
    ServiceType.DOCS: (8300, 8310),
    ServiceType.DATABASE: (8400, 8410),
}


@dataclass
class ServiceDescriptor:
    """One service reported by a session."""
    name: str
    type: ServiceType
    port: int
    status: ServiceStatus
    health_endpoint: Optional[str] = None
    started_at: Optional[str] = None
    description: Optional[str] = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    @property
    def port_in_range(self) -> bool:
        port_range = port_range_for_type(self.type)
        if port_range is None:
            return is_valid_service_port(self.port)
        return port_range[0] <= self.port <= port_range[1]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the manifest's wire keys."""
        data = {
            "name": self.name,
            "type": self.type.value,
            "port": self.port,
            "status": self.status.value,
            "healthEndpoint": self.health_endpoint,
            "startedAt": self.started_at,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceDescriptor":
        """
        Parse one manifest entry.

        Raises:
            ValueError: entry is missing a name, has a non-integer port, or
                carries an unknown type or status
        """
        if not isinstance(data, dict):
            raise ValueError("service entry is not an object")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("service entry has no name")
        port = data.get("port")
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"service {name!r} has a non-integer port")
        return cls(
            name=name,
            type=ServiceType(data.get("type", ServiceType.OTHER.value)),
            port=port,
            status=ServiceStatus(data.get("status", ServiceStatus.STOPPED.value)),
            health_endpoint=data.get("healthEndpoint"),
            started_at=data.get("startedAt"),
            description=data.get("description"),
        )


@dataclass
class ServiceManifest:
    services: List[ServiceDescriptor] = field(default_factory=list)
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "services": [s.to_dict() for s in self.services],
            "updatedAt": self.updated_at,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def read_service_manifest(
    project_path: Union[str, Path],
    now: Optional[str] = None,
) -> ServiceManifest:
    """
    Read the service manifest for a project.

    Args:
        project_path: Project root containing ``.ralph-services.json``
        now: Timestamp to use for the fallback manifest (defaults to current UTC)

    Returns:
        ServiceManifest, empty when the file is absent or unusable
    """
    fallback = ServiceManifest(services=[], updated_at=now or _now_iso())
    manifest_path = Path(project_path) / SERVICES_FILENAME

    if not manifest_path.exists():
        return fallback

    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Could not read %s: %s", manifest_path, e)
        return fallback

    if not isinstance(data, dict) or not isinstance(data.get("services"), list):
        logger.warning("Invalid structure in %s: services is not an array", manifest_path)
        return fallback

    services = []
    for entry in data["services"]:
        try:
            services.append(ServiceDescriptor.from_dict(entry))
        except ValueError as e:
            logger.warning("Skipping service entry in %s: %s", manifest_path, e)

    updated_at = data.get("updatedAt")
    return ServiceManifest(
        services=services,
        updated_at=updated_at if isinstance(updated_at, str) else fallback.updated_at,
    )


def running_services(manifest: ServiceManifest) -> List[ServiceDescriptor]:
    return [s for s in manifest.services if s.status == ServiceStatus.RUNNING]


def has_running_services(project_path: Union[str, Path]) -> bool:
    """Quick check used to decide whether to show service links at all."""
    return bool(running_services(read_service_manifest(project_path)))


def port_range_for_type(service_type: ServiceType) -> Optional[Tuple[int, int]]:
    return PORT_RANGES.get(service_type)


def infer_type_from_port(port: int) -> ServiceType:
    """Map a port back to the service type whose range contains it."""
    for service_type, (low, high) in PORT_RANGES.items():
        if low <= port <= high:
            return service_type
    return ServiceType.OTHER


def is_valid_service_port(port: int) -> bool:
    """True if the port falls inside one of the published sandbox ranges."""
    return any(low <= port <= high for low, high in PORT_RANGES.values())

"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Any, Dict
from dataclasses import dataclass, field, asdict

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ticketforge_config.json"

DEFAULT_SESSION_TIMEOUT = 3600
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_RUNTIME_CACHE_TTL = 60.0
DEFAULT_CONTAINER_PREFIX = "ralph-"
DEFAULT_SANDBOX_IMAGE = "ticketforge-ralph-sandbox:latest"
DEFAULT_SANDBOX_NETWORK = "ralph-net"
DEFAULT_REVIEW_MARKER = ".claude/.review-completed"
DEFAULT_REVIEW_MAX_AGE_MINUTES = 30


@dataclass(frozen=True)
class ResourceLimits:
    """Sandbox container resource limits."""
    memory: str = "2g"
    cpus: str = "1.5"
    pids_limit: int = 256
    stop_timeout: int = 30


@dataclass
class ForgeConfig:
    """ticketforge configuration."""
    docker_runtime: str = "auto"
    docker_socket_path: Optional[str] = None
    session_timeout_seconds: int = DEFAULT_SESSION_TIMEOUT
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    runtime_cache_ttl_seconds: float = DEFAULT_RUNTIME_CACHE_TTL
    container_prefix: str = DEFAULT_CONTAINER_PREFIX
    sandbox_image: str = DEFAULT_SANDBOX_IMAGE
    sandbox_network: str = DEFAULT_SANDBOX_NETWORK
    review_marker_path: str = DEFAULT_REVIEW_MARKER
    review_max_age_minutes: int = DEFAULT_REVIEW_MAX_AGE_MINUTES
    preferred_terminal: Optional[str] = None
    resources: ResourceLimits = field(default_factory=ResourceLimits)

    @classmethod
    def load(cls, project_dir: Optional[Path] = None) -> "ForgeConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (ticketforge_config.json)
        3. Default values

        The config file is looked up in ``project_dir`` when given, otherwise
        in the current directory.
        """
        config: Dict[str, Any] = {}

        base = Path(project_dir) if project_dir else Path(".")
        config_path = base / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    file_config = json.load(f)
                if isinstance(file_config, dict):
                    config.update(file_config)
                else:
                    logger.warning("Ignoring %s: top level is not an object", config_path)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config file %s: %s", config_path, e)

        env_map = {
            "TICKETFORGE_DOCKER_RUNTIME": ("docker_runtime", str),
            "TICKETFORGE_DOCKER_SOCKET": ("docker_socket_path", str),
            "TICKETFORGE_SESSION_TIMEOUT": ("session_timeout_seconds", int),
            "TICKETFORGE_MAX_ITERATIONS": ("max_iterations", int),
            "TICKETFORGE_RUNTIME_CACHE_TTL": ("runtime_cache_ttl_seconds", float),
            "TICKETFORGE_CONTAINER_PREFIX": ("container_prefix", str),
            "TICKETFORGE_SANDBOX_IMAGE": ("sandbox_image", str),
            "TICKETFORGE_TERMINAL": ("preferred_terminal", str),
        }
        for env_name, (key, cast) in env_map.items():
            raw = os.environ.get(env_name)
            if not raw:
                continue
            try:
                config[key] = cast(raw)
            except ValueError:
                logger.warning("Ignoring %s=%r: expected %s", env_name, raw, cast.__name__)

        return cls.from_dict(config)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForgeConfig":
        """
        Build a config from a plain dict, ignoring unknown keys.

        Values are cast to the type of the field's default the same way
        environment overrides are; a value that will not cast is logged and
        the default kept.
        """
        defaults = cls()
        resources = data.get("resources")
        if isinstance(resources, dict):
            resource_defaults = ResourceLimits()
            resources = ResourceLimits(**{
                name: _cast_value(f"resources.{name}", resources[name], getattr(resource_defaults, name))
                for name in ResourceLimits.__dataclass_fields__
                if name in resources
            })
        else:
            resources = defaults.resources

        values = {}
        for name in cls.__dataclass_fields__:
            if name == "resources":
                continue
            default = getattr(defaults, name)
            values[name] = _cast_value(name, data[name], default) if name in data else default

        return cls(resources=resources, **values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _cast_value(name: str, value: Any, default: Any) -> Any:
    """Cast ``value`` to the type of ``default``; optional (None) fields take strings."""
    if value is None and default is None:
        return None
    cast = str if default is None else type(default)
    # bool is an int, and containers stringify into nonsense
    if value is None or isinstance(value, (bool, dict, list)):
        logger.warning("Ignoring config value %s=%r: expected %s", name, value, cast.__name__)
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring config value %s=%r: expected %s", name, value, cast.__name__)
        return default

"""
Tests for Configuration Loading
===============================

Tests for ticketforge/config.py
"""

import json
import logging
from unittest.mock import patch

from ticketforge.config import (
    CONFIG_FILENAME,
    DEFAULT_CONTAINER_PREFIX,
    ForgeConfig,
    ResourceLimits,
)


class TestDefaults:

    def test_default_values(self):
        config = ForgeConfig()
        assert config.docker_runtime == "auto"
        assert config.docker_socket_path is None
        assert config.session_timeout_seconds == 3600
        assert config.max_iterations == 10
        assert config.runtime_cache_ttl_seconds == 60.0
        assert config.container_prefix == DEFAULT_CONTAINER_PREFIX == "ralph-"
        assert config.review_marker_path == ".claude/.review-completed"
        assert config.review_max_age_minutes == 30
        assert config.resources == ResourceLimits()


class TestLoad:
    """Tests for ForgeConfig.load precedence."""

    def test_no_file_no_env(self, tmp_path):
        with patch.dict("os.environ", {}, clear=True):
            config = ForgeConfig.load(tmp_path)
        assert config == ForgeConfig()

    def test_file_values(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(json.dumps({
            "docker_runtime": "colima",
            "max_iterations": 3,
            "resources": {"memory": "4g", "unknown": 1},
            "not_a_field": True,
        }))
        with patch.dict("os.environ", {}, clear=True):
            config = ForgeConfig.load(tmp_path)

        assert config.docker_runtime == "colima"
        assert config.max_iterations == 3
        assert config.resources.memory == "4g"
        assert config.resources.cpus == "1.5"

    def test_env_overrides_file(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(json.dumps({"max_iterations": 3}))
        env = {
            "TICKETFORGE_MAX_ITERATIONS": "7",
            "TICKETFORGE_DOCKER_SOCKET": "/tmp/custom.sock",
        }
        with patch.dict("os.environ", env, clear=True):
            config = ForgeConfig.load(tmp_path)

        assert config.max_iterations == 7
        assert config.docker_socket_path == "/tmp/custom.sock"

    def test_bad_env_value_keeps_default(self, tmp_path, caplog):
        with patch.dict("os.environ", {"TICKETFORGE_SESSION_TIMEOUT": "soon"}, clear=True):
            with caplog.at_level(logging.WARNING):
                config = ForgeConfig.load(tmp_path)

        assert config.session_timeout_seconds == 3600
        assert "TICKETFORGE_SESSION_TIMEOUT" in caplog.text

    def test_malformed_file_is_ignored(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILENAME).write_text("{not json")
        with patch.dict("os.environ", {}, clear=True):
            with caplog.at_level(logging.WARNING):
                config = ForgeConfig.load(tmp_path)

        assert config == ForgeConfig()
        assert "Failed to load config file" in caplog.text

    def test_non_object_file_is_ignored(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILENAME).write_text("[1, 2]")
        with patch.dict("os.environ", {}, clear=True):
            with caplog.at_level(logging.WARNING):
                config = ForgeConfig.load(tmp_path)

        assert config == ForgeConfig()


class TestSerialization:

    def test_round_trip(self):
        config = ForgeConfig(docker_runtime="podman", resources=ResourceLimits(pids_limit=64))
        assert ForgeConfig.from_dict(config.to_dict()) == config


class TestFileValueTypes:
    """Config file values are cast like environment overrides."""

    def test_uncastable_value_keeps_default(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILENAME).write_text(json.dumps({"max_iterations": "ten"}))
        with patch.dict("os.environ", {}, clear=True):
            with caplog.at_level(logging.WARNING):
                config = ForgeConfig.load(tmp_path)

        assert config.max_iterations == 10
        assert "max_iterations" in caplog.text

    def test_numeric_strings_are_cast(self):
        config = ForgeConfig.from_dict({
            "max_iterations": "7",
            "session_timeout_seconds": 120.0,
            "runtime_cache_ttl_seconds": 5,
        })

        assert config.max_iterations == 7
        assert isinstance(config.session_timeout_seconds, int)
        assert config.runtime_cache_ttl_seconds == 5.0

    def test_bool_and_null_rejected_for_numbers(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = ForgeConfig.from_dict({"max_iterations": True, "session_timeout_seconds": None})

        assert config.max_iterations == 10
        assert config.session_timeout_seconds == 3600

    def test_optional_fields_accept_null(self):
        config = ForgeConfig.from_dict({"docker_socket_path": None, "preferred_terminal": "kitty"})

        assert config.docker_socket_path is None
        assert config.preferred_terminal == "kitty"

    def test_resource_limits_cast(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = ForgeConfig.from_dict({"resources": {"pids_limit": "128", "stop_timeout": "later"}})

        assert config.resources.pids_limit == 128
        assert config.resources.stop_timeout == 30
        assert "resources.stop_timeout" in caplog.text

    def test_plan_survives_bad_file_value(self, tmp_path):
        from ticketforge.launch import LaunchMode, LaunchTarget, plan
        from ticketforge.platform_utils import OSType

        (tmp_path / CONFIG_FILENAME).write_text(json.dumps({"max_iterations": "ten"}))
        with patch.dict("os.environ", {}, clear=True):
            config = ForgeConfig.load(tmp_path)

        launch_plan = plan(LaunchTarget(project_path="/p", ticket_id="T-1"),
                           LaunchMode.TERMINAL, None, OSType.LINUX, config)
        assert launch_plan.max_iterations == 10

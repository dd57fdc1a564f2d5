"""
Tests for the forge CLI
=======================

Tests for ticketforge/cli/forge_cli.py. Docker and git are replaced with fakes;
only argument handling and exit codes are checked here.
"""

import io
import json
from unittest.mock import patch

import pytest

from ticketforge.cli.forge_cli import build_parser, main
from ticketforge.containers import SandboxReadiness
from ticketforge.db.connection import dispose_db, init_db
from ticketforge.event_log import SessionEvent, SqlEventLog
from ticketforge.runtime import RuntimeInfo, RuntimeKind


class TestParser:

    def test_commands_parse(self):
        parser = build_parser()

        args = parser.parse_args(["logs", "ralph-1", "--tail", "20"])
        assert (args.command, args.name, args.tail) == ("logs", "ralph-1", 20)

        args = parser.parse_args(["workflow", "T-1", "--status", "in_progress"])
        assert args.status == "in_progress"

        args = parser.parse_args(["plan", "/p", "--ticket", "T-1", "--mode", "sandbox"])
        assert args.mode == "sandbox"

        args = parser.parse_args(["gate", "git push origin main"])
        assert args.command_text == "git push origin main"

    def test_no_command_prints_help(self):
        assert main([]) == 1


class TestCommands:

    @patch("ticketforge.cli.forge_cli.RuntimeResolver.resolve", return_value=RuntimeInfo.unavailable())
    def test_runtime_unavailable(self, _mock_resolve):
        assert main(["runtime"]) == 1

    @patch("ticketforge.cli.forge_cli.RuntimeResolver.resolve", return_value=RuntimeInfo.unavailable())
    def test_containers_without_runtime(self, _mock_resolve):
        assert main(["containers"]) == 1

    def test_services_empty(self, tmp_path):
        assert main(["services", str(tmp_path)]) == 0

    def test_plan_terminal(self, tmp_path):
        assert main(["plan", str(tmp_path), "--ticket", "T-1"]) == 0

    def test_fold(self, tmp_path):
        log = SqlEventLog(init_db(tmp_path))
        log.append(SessionEvent.start("s1", "1"))
        log.append(SessionEvent.state_change("s1", "2", "testing"))
        dispose_db()

        try:
            assert main(["fold", "s1", "--project-dir", str(tmp_path)]) == 0
        finally:
            dispose_db()

    def test_workflow(self, tmp_path):
        try:
            assert main(["workflow", "T-1", "--status", "done", "--project-dir", str(tmp_path), "--json"]) == 0
        finally:
            dispose_db()

    @patch("ticketforge.review_gate.get_source_changes", return_value=["src/a.py"])
    def test_gate_blocks(self, _mock_changes, tmp_path):
        assert main(["gate", "git push", "--project-dir", str(tmp_path)]) == 2

    def test_gate_hook_payload_other_tool(self, tmp_path):
        payload = json.dumps({"tool_name": "Read", "tool_input": {}})
        with patch("sys.stdin", io.StringIO(payload)):
            assert main(["gate", "--hook", "--project-dir", str(tmp_path)]) == 0

    def test_gate_hook_invalid_payload(self, tmp_path):
        with patch("sys.stdin", io.StringIO("{nope")):
            assert main(["gate", "--hook", "--project-dir", str(tmp_path)]) == 2

    @pytest.mark.parametrize("payload", ["[]", '"Bash"', "42", "null"])
    def test_gate_hook_non_object_payload_allows(self, payload, tmp_path):
        with patch("sys.stdin", io.StringIO(payload)):
            assert main(["gate", "--hook", "--project-dir", str(tmp_path)]) == 0

    def test_gate_hook_non_object_tool_input(self, tmp_path):
        payload = json.dumps({"tool_name": "Bash", "tool_input": ["git", "status"]})
        with patch("sys.stdin", io.StringIO(payload)):
            assert main(["gate", "--hook", "--project-dir", str(tmp_path)]) == 0


class TestRuntimeCommand:

    @patch("ticketforge.cli.forge_cli.get_platform_summary", return_value="Platform: Linux")
    @patch("ticketforge.cli.forge_cli.RuntimeResolver.resolve")
    def test_shows_platform_summary(self, mock_resolve, mock_summary):
        mock_resolve.return_value = RuntimeInfo(RuntimeKind.DOCKER_DESKTOP, "/var/run/docker.sock", True, True)

        assert main(["runtime"]) == 0
        mock_summary.assert_called_once()


class TestSandboxPlan:

    @patch("ticketforge.cli.forge_cli.ContainerMonitor.sandbox_ready")
    @patch("ticketforge.cli.forge_cli.RuntimeResolver.resolve")
    def test_checks_readiness(self, mock_resolve, mock_ready, tmp_path):
        mock_resolve.return_value = RuntimeInfo(RuntimeKind.DOCKER_DESKTOP, "/var/run/docker.sock", True, True)
        mock_ready.return_value = SandboxReadiness(image_present=False, warnings=["Sandbox image missing"])

        assert main(["plan", str(tmp_path), "--ticket", "T-1", "--mode", "sandbox"]) == 0
        mock_ready.assert_called_once_with("ticketforge-ralph-sandbox:latest", "ralph-net")

    @patch("ticketforge.cli.forge_cli.ContainerMonitor.sandbox_ready")
    def test_terminal_mode_skips_readiness(self, mock_ready, tmp_path):
        assert main(["plan", str(tmp_path), "--ticket", "T-1"]) == 0
        mock_ready.assert_not_called()


class TestActiveCommand:

    def test_active_session(self, tmp_path):
        log = SqlEventLog(init_db(tmp_path))
        log.bind_session("s1", "T-1")
        log.append(SessionEvent.start("s1", "1"))
        log.append(SessionEvent.state_change("s1", "2", "implementing"))
        dispose_db()

        try:
            assert main(["active", "T-1", "--project-dir", str(tmp_path)]) == 0
            assert main(["active", "T-1", "--json", "--project-dir", str(tmp_path)]) == 0
            assert main(["active", "T-9", "--project-dir", str(tmp_path)]) == 1
        finally:
            dispose_db()

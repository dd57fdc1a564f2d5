#!/usr/bin/env python
"""
Forge CLI - Inspect runtimes, session containers, and ticket workflows.

Usage:
    forge-cli runtime [--refresh]
    forge-cli containers
    forge-cli stats [NAME ...]
    forge-cli logs NAME [--tail N]
    forge-cli fold SESSION_ID [--project-dir DIR]
    forge-cli active TICKET_ID [--json] [--project-dir DIR]
    forge-cli workflow TICKET_ID --status STATUS [--project-dir DIR]
    forge-cli plan PROJECT_PATH --ticket ID [--mode terminal|sandbox]
    forge-cli gate [COMMAND] [--hook] [--project-dir DIR]
    forge-cli services PROJECT_PATH

All commands are read-only.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from ticketforge.config import ForgeConfig
from ticketforge.containers import ContainerMonitor, DEFAULT_LOG_TAIL
from ticketforge.db.connection import init_db
from ticketforge.errors import TicketforgeError
from ticketforge.event_log import SqlEventLog
from ticketforge.launch import LaunchMode, LaunchTarget, format_timeout, plan
from ticketforge.output import (
    console,
    create_table,
    icon,
    print_blocked_panel,
    print_code,
    is_verbose,
    print_error,
    print_error_panel,
    print_header,
    print_info,
    print_json_data,
    print_key_value_table,
    print_muted,
    print_success,
    print_table,
    print_warning,
    set_verbose,
    setup_rich_logging,
    status_marker,
)
from ticketforge.platform_utils import detect_os, get_platform_summary
from ticketforge.review_gate import ReviewGate
from ticketforge.runtime import RuntimeResolver
from ticketforge.services import read_service_manifest
from ticketforge.session_state import SessionStateReconstructor
from ticketforge.workflow import SqlWorkflowSources, WorkflowTracker

logger = logging.getLogger(__name__)


def _format_bytes(value: int) -> str:
    if value < 1024:
        return f"{value}B"
    size = float(value)
    for unit in ("KiB", "MiB", "GiB"):
        size /= 1024
        if size < 1024:
            break
    return f"{size:.1f}{unit}"


def _monitor(config: ForgeConfig) -> ContainerMonitor:
    return ContainerMonitor(RuntimeResolver(config), prefix=config.container_prefix)


# =============================================================================
# Commands
# =============================================================================

def cmd_runtime(args, config: ForgeConfig) -> int:
    """Show the resolved container runtime."""
    info = RuntimeResolver(config).resolve(force_refresh=args.refresh)

    print_header("Container Runtime")
    print_muted(get_platform_summary())
    print_key_value_table({
        "Kind": info.kind.value,
        "Socket": info.socket_path or "-",
        "Source": info.source.value,
        "Available": "yes" if info.available else "no",
        "Running": "yes" if info.running else "no",
        "Version": info.version or "-",
    })

    if not info.available:
        print_warning("No container runtime found")
        return 1
    if not info.running:
        print_warning("Runtime socket found but the daemon did not answer")
    return 0


def cmd_containers(args, config: ForgeConfig) -> int:
    """List session containers."""
    result = _monitor(config).list_containers()
    if not result.available:
        print_warning(result.error or "Container runtime is not running")
        return 1

    if not result.containers:
        print_info(f"No containers named {config.container_prefix}*")
        return 0

    print_header(f"Containers ({len(result.containers)})")
    table = create_table(columns=["Name", "State", "Project", "Epic", "Status", "Image"])
    for container in result.containers:
        table.add_row(
            container.name,
            status_marker(container.is_running),
            container.project_name or container.project_id or "",
            container.epic_title or container.epic_id or "",
            container.status,
            container.image,
        )
    print_table(table)
    return 0


def cmd_stats(args, config: ForgeConfig) -> int:
    """Show CPU and memory for running session containers."""
    result = _monitor(config).stats(args.names or None)
    if not result.available:
        print_warning(result.error or "Container runtime is not running")
        return 1

    if not result.stats:
        print_info("No running containers")
        return 0

    table = create_table(columns=["Name", "CPU", "Memory", "Limit", "Mem %"])
    for stats in result.stats:
        table.add_row(
            stats.container_name,
            f"[tf.number]{stats.cpu_percent:.1f}%[/]",
            _format_bytes(stats.mem_usage_bytes),
            _format_bytes(stats.mem_limit_bytes),
            f"{stats.mem_percent:.1f}%",
        )
    print_table(table)
    return 0


def cmd_logs(args, config: ForgeConfig) -> int:
    """Tail a container's logs."""
    logs = _monitor(config).logs(args.name, tail_lines=args.tail)
    if not logs.available:
        print_warning(logs.error or "Container runtime is not running")
        return 1

    print_header(f"{args.name} {icon('arrow_right')} {'running' if logs.container_running else 'stopped'}")
    if logs.text:
        console.print(logs.text, markup=False, highlight=False)
    else:
        print_muted("(no output)")

    progress = logs.progress
    if progress:
        console.print()
        print_info(f"Iteration {progress.current} of {progress.total}")
    return 0


def cmd_fold(args, config: ForgeConfig) -> int:
    """Reconstruct a session's state from its event log."""
    init_db(args.project_dir)
    reconstructor = SessionStateReconstructor(SqlEventLog(), monitor=_monitor(config))
    observation = reconstructor.observe(args.session_id, container_name=args.container)
    fold = observation.fold

    if not fold.events_applied:
        print_warning(f"No events recorded for session {args.session_id}")

    print_header(f"Session {args.session_id}")
    data = {
        "State": fold.state,
        "Started": "yes" if fold.started else "no",
        "Ended": f"yes ({fold.end_reason})" if fold.ended and fold.end_reason else ("yes" if fold.ended else "no"),
        "Events": fold.events_applied,
        "Tool calls": fold.tool_calls,
        "Last sequence": fold.last_sequence_id or "-",
    }
    stats = reconstructor.event_stats(args.session_id)
    if stats.total:
        data["By type"] = ", ".join(f"{name}={count}" for name, count in sorted(stats.by_type.items()))
        data["First event"] = stats.first_event_at.isoformat()
        data["Last event"] = stats.last_event_at.isoformat()
    if observation.container_running is not None:
        data["Container"] = "running" if observation.container_running else "stopped"
    if observation.iteration is not None:
        data["Iteration"] = f"{observation.iteration} of {observation.max_iterations}"
    print_key_value_table(data)

    if is_verbose() and fold.events_applied:
        console.print()
        events = reconstructor.event_log.events(args.session_id)
        print_json_data([event.to_dict() for event in events], title="Events")
    return 0


def cmd_active(args, config: ForgeConfig) -> int:
    """Show the session currently running for a ticket."""
    init_db(args.project_dir)
    reconstructor = SessionStateReconstructor(SqlEventLog())
    active = reconstructor.active_session(args.ticket_id)

    if active is None:
        print_info(f"No active session for ticket {args.ticket_id}")
        return 1

    if args.json:
        data = active.to_dict()
        data["stats"] = reconstructor.event_stats(active.session_id).to_dict()
        print_json_data(data)
        return 0

    print_header(f"Ticket {args.ticket_id}")
    print_key_value_table({
        "Session": active.session_id,
        "State": active.state,
        "Started": active.started_at.isoformat() if active.started_at else "-",
        "Events": active.fold.events_applied,
    })
    if active.history:
        table = create_table(columns=["Sequence", "State", "At"])
        for transition in active.history:
            table.add_row(transition.sequence_id, transition.state, transition.at.isoformat())
        print_table(table)
    return 0


def cmd_workflow(args, config: ForgeConfig) -> int:
    """Derive a ticket's workflow phase."""
    init_db(args.project_dir)
    sources = SqlWorkflowSources(lambda ticket_id: args.status, SqlEventLog())
    state = WorkflowTracker(sources).derive(args.ticket_id)
    if state is None:
        print_error(f"Unknown ticket {args.ticket_id}")
        return 1

    if args.json:
        print_json_data(state.to_dict())
        return 0

    phase = state.current_phase.value
    print_header(f"Ticket {args.ticket_id}")
    console.print(f"  [tf.key]Phase:[/] [tf.phase.{phase}]{phase}[/]")
    console.print(f"  [tf.key]Review iteration:[/] [tf.number]{state.review_iteration}[/]")

    if state.demo_generated:
        if state.demo_approved is True:
            demo = "approved"
        elif state.demo_approved is False:
            demo = "rejected"
        elif state.demo_completed:
            demo = "completed"
        else:
            demo = "generated"
        console.print(f"  [tf.key]Demo:[/] {demo}")

    findings = state.findings_summary
    if findings.total:
        console.print()
        table = create_table(columns=["Critical", "Major", "Minor", "Suggestion", "Fixed", "Total"])
        table.add_row(*(str(v) for v in (
            findings.critical, findings.major, findings.minor,
            findings.suggestion, findings.fixed, findings.total,
        )))
        print_table(table)
    return 0


def cmd_plan(args, config: ForgeConfig) -> int:
    """Print the launch script for a ticket."""
    mode = LaunchMode(args.mode)
    os_type = detect_os()
    runtime = None
    if mode == LaunchMode.SANDBOX:
        resolver = RuntimeResolver(config, os_type=os_type)
        runtime = resolver.resolve()
        readiness = ContainerMonitor(resolver, prefix=config.container_prefix).sandbox_ready(
            config.sandbox_image, config.sandbox_network,
        )
        if not runtime.running:
            print_warning("No running container runtime; the sandbox script will fail its image check")
        elif readiness.error:
            print_warning(readiness.error)
        for warning in readiness.warnings:
            print_warning(warning)

    target = LaunchTarget(
        project_path=str(Path(args.project_path).resolve()),
        ticket_id=args.ticket,
        title=args.title or "",
        prompt=args.prompt or "",
    )
    launch_plan = plan(target, mode, runtime, os_type, config)

    print_code(launch_plan.script, title=f"{mode.value} launch")
    print_muted(
        f"timeout {format_timeout(launch_plan.timeout_seconds)}, "
        f"max {launch_plan.max_iterations} iterations"
    )
    return 0


def cmd_gate(args, config: ForgeConfig) -> int:
    """Check whether a publish command would pass the review gate."""
    project_dir = args.project_dir
    command = args.command_text

    if args.hook:
        try:
            payload = json.load(sys.stdin)
        except json.JSONDecodeError as e:
            print_error(f"Invalid hook payload: {e}")
            return 2
        if not isinstance(payload, dict):
            print_warning(f"Ignoring hook payload that is not an object: {type(payload).__name__}")
            return 0
        if payload.get("tool_name") != "Bash":
            return 0
        tool_input = payload.get("tool_input")
        command = tool_input.get("command", "") if isinstance(tool_input, dict) else ""
        if isinstance(payload.get("cwd"), str) and payload["cwd"]:
            project_dir = Path(payload["cwd"])

    if not command:
        command = "git push"

    gate = ReviewGate(project_dir, ForgeConfig.load(project_dir))
    decision = gate.evaluate(command)

    if decision.allowed:
        print_success(f"Allowed: {decision.reason}")
        return 0

    print_blocked_panel(decision.reason, title="Review Required")
    return 2


def cmd_services(args, config: ForgeConfig) -> int:
    """Show dev services announced by a session."""
    manifest = read_service_manifest(args.project_path)
    if not manifest.services:
        print_info("No services reported")
        return 0

    print_header(f"Services (updated {manifest.updated_at})")
    table = create_table(columns=["Name", "Type", "Status", "URL", "Started"])
    for service in manifest.services:
        url = service.url if service.port_in_range else f"{service.url} [tf.warn](out of range)[/]"
        table.add_row(
            service.name,
            service.type.value,
            status_marker(service.status.value == "running"),
            url,
            service.started_at or "",
        )
    print_table(table)
    return 0


COMMANDS = {
    "runtime": cmd_runtime,
    "containers": cmd_containers,
    "stats": cmd_stats,
    "logs": cmd_logs,
    "fold": cmd_fold,
    "active": cmd_active,
    "workflow": cmd_workflow,
    "plan": cmd_plan,
    "gate": cmd_gate,
    "services": cmd_services,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect runtimes, session containers, and ticket workflows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    # Shared by commands that read the project database or config
    project = argparse.ArgumentParser(add_help=False)
    project.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current dir)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    runtime_parser = subparsers.add_parser("runtime", help="Show the container runtime")
    runtime_parser.add_argument("--refresh", action="store_true", help="Ignore the cached result")

    subparsers.add_parser("containers", help="List session containers")

    stats_parser = subparsers.add_parser("stats", help="Show container resource usage")
    stats_parser.add_argument("names", nargs="*", help="Container names (default: all running)")

    logs_parser = subparsers.add_parser("logs", help="Tail container logs")
    logs_parser.add_argument("name", help="Container name")
    logs_parser.add_argument("--tail", "-n", type=int, default=DEFAULT_LOG_TAIL, help="Lines to show")

    fold_parser = subparsers.add_parser("fold", parents=[project], help="Reconstruct session state")
    fold_parser.add_argument("session_id", help="Session ID")
    fold_parser.add_argument("--container", help="Container name for sandbox sessions")

    active_parser = subparsers.add_parser("active", parents=[project], help="Show the running session for a ticket")
    active_parser.add_argument("ticket_id", help="Ticket ID")
    active_parser.add_argument("--json", action="store_true", help="Print JSON")

    workflow_parser = subparsers.add_parser("workflow", parents=[project], help="Derive a ticket's workflow phase")
    workflow_parser.add_argument("ticket_id", help="Ticket ID")
    workflow_parser.add_argument("--status", required=True, help="Ticket status from the ticket store")
    workflow_parser.add_argument("--json", action="store_true", help="Print JSON")

    plan_parser = subparsers.add_parser("plan", help="Print a launch script")
    plan_parser.add_argument("project_path", help="Project directory")
    plan_parser.add_argument("--ticket", required=True, help="Ticket ID")
    plan_parser.add_argument("--mode", choices=[m.value for m in LaunchMode], default="terminal")
    plan_parser.add_argument("--title", help="Ticket title")
    plan_parser.add_argument("--prompt", help="Agent prompt")

    gate_parser = subparsers.add_parser("gate", parents=[project], help="Check the pre-publish review gate")
    gate_parser.add_argument("command_text", nargs="?", metavar="COMMAND", help="Command to check (default: git push)")
    gate_parser.add_argument("--hook", action="store_true", help="Read a pre-tool-use hook payload from stdin")

    services_parser = subparsers.add_parser("services", help="Show the service manifest")
    services_parser.add_argument("project_path", type=Path, help="Project directory")

    return parser


def main(argv=None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    set_verbose(args.verbose)
    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    config = ForgeConfig.load(getattr(args, "project_dir", None))
    try:
        return COMMANDS[args.command](args, config)
    except TicketforgeError as e:
        print_error_panel(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())

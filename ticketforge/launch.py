"""
Session Launch Planner
======================

Builds the shell command sequence that starts an agent session for a ticket
or epic, either directly in a terminal or inside the sandbox container.

Planning is pure: nothing here touches the filesystem, the runtime, or a
process. The resulting LaunchPlan is handed to whatever opens the terminal.

Every value that ends up inside shell text (paths, titles, prompts, labels)
goes through ``escape_shell_value`` first. Ticket titles are user input.

Terminal scripts intentionally never enable fail-fast mode: when the agent
exits non-zero the shell stays open so the user can read the output.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from ticketforge.config import ForgeConfig
from ticketforge.errors import UnsupportedTerminalError
from ticketforge.platform_utils import OSType, docker_host_url, is_default_socket
from ticketforge.runtime import RuntimeInfo
from ticketforge.services import PORT_RANGES, ServiceType


# Container labels used to trace a sandbox back to its project and epic
LABEL_PROJECT_ID = "ticketforge.project-id"
LABEL_PROJECT_NAME = "ticketforge.project-name"
LABEL_EPIC_ID = "ticketforge.epic-id"
LABEL_EPIC_TITLE = "ticketforge.epic-title"

PROMPT_FILENAME = ".ralph-prompt.md"
ITERATION_BANNER = "Ralph Iteration"

# Anything that would turn the interactive shell into a fail-fast one
_FAIL_FAST_PATTERN = re.compile(
    r"^\s*set\s+(-[a-zA-Z]*e[a-zA-Z]*\b|-o\s+errexit\b)|\berrexit\b",
    re.MULTILINE,
)

_SHELL_SPECIAL = re.compile(r'([`$\\!"])')


class LaunchMode(Enum):
    TERMINAL = "terminal"
    SANDBOX = "sandbox"


@dataclass(frozen=True)
class LaunchTarget:
    """What a session works on."""
    project_path: str
    ticket_id: Optional[str] = None
    epic_id: Optional[str] = None
    title: str = ""
    prompt: str = ""
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    epic_title: Optional[str] = None

    def __post_init__(self):
        if not self.ticket_id and not self.epic_id:
            raise ValueError("LaunchTarget needs a ticket_id or an epic_id")

    @property
    def target_id(self) -> str:
        return self.ticket_id or self.epic_id


@dataclass(frozen=True)
class LaunchPlan:
    """Immutable result of planning one launch."""
    mode: LaunchMode
    command_sequence: Tuple[str, ...]
    timeout_seconds: int
    max_iterations: int
    container_name_prefix: Optional[str] = None
    image: Optional[str] = None

    @property
    def script(self) -> str:
        return render_script(self)


def escape_shell_value(value: str) -> str:
    """
    Backslash-escape characters that are special inside a double-quoted
    shell string: ``"``, ``\\``, ``$``, backtick and ``!``. Single quotes are
    literal there and pass through untouched.
    """
    return _SHELL_SPECIAL.sub(r"\\\1", str(value))


def has_fail_fast(script: str) -> bool:
    """True if the script turns on exit-on-error (``set -e`` and friends)."""
    return bool(_FAIL_FAST_PATTERN.search(script))


def format_timeout(seconds: int) -> str:
    """Human-readable duration, e.g. ``1h 30m``."""
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def render_script(plan: LaunchPlan) -> str:
    """Join a plan's commands into an executable bash script."""
    return "#!/bin/bash\n\n" + "\n\n".join(plan.command_sequence) + "\n"


# =============================================================================
# Planning
# =============================================================================

def plan(
    target: LaunchTarget,
    mode: LaunchMode,
    runtime: Optional[RuntimeInfo],
    os_type: OSType,
    config: Optional[ForgeConfig] = None,
) -> LaunchPlan:
    """
    Build the launch plan for a session.

    Args:
        target: Ticket or epic to work on
        mode: Terminal or sandbox
        runtime: Resolved container runtime (only consulted in sandbox mode)
        os_type: Platform the script will run on
        config: Timeouts, iteration budget, image and container naming

    Returns:
        LaunchPlan whose timeout and iteration budget are the configured values
    """
    config = config or ForgeConfig()
    commands = _preamble(target, config)

    if mode == LaunchMode.SANDBOX:
        commands.extend(_sandbox_commands(target, runtime, os_type, config))
        return LaunchPlan(
            mode=mode,
            command_sequence=tuple(commands),
            timeout_seconds=config.session_timeout_seconds,
            max_iterations=config.max_iterations,
            container_name_prefix=config.container_prefix,
            image=config.sandbox_image,
        )

    commands.extend(_terminal_commands())
    return LaunchPlan(
        mode=mode,
        command_sequence=tuple(commands),
        timeout_seconds=config.session_timeout_seconds,
        max_iterations=config.max_iterations,
    )


def _preamble(target: LaunchTarget, config: ForgeConfig) -> List[str]:
    project_path = escape_shell_value(target.project_path)
    title = escape_shell_value(target.title or target.target_id)
    prompt = escape_shell_value(target.prompt or f"Work on {target.title or target.target_id}")

    return [
        "\n".join([
            f'PROJECT_PATH="{project_path}"',
            f'TARGET_ID="{escape_shell_value(target.target_id)}"',
            f'TARGET_TITLE="{title}"',
            f"MAX_ITERATIONS=${{1:-{int(config.max_iterations)}}}",
            f"RALPH_TIMEOUT={int(config.session_timeout_seconds)}",
            'SESSION_ID="$(date +%s)-$$"',
            f'PROMPT_FILE="$PROJECT_PATH/{PROMPT_FILENAME}"',
            "export RALPH_TIMEOUT SESSION_ID",
        ]),
        'cd "$PROJECT_PATH" || echo "Could not enter $PROJECT_PATH"',
        f'printf \'%s\\n\' "{prompt}" > "$PROMPT_FILE"',
        'echo "Starting session $SESSION_ID for $TARGET_TITLE '
        f'(timeout {format_timeout(config.session_timeout_seconds)})"',
    ]


def _iteration_loop(agent_command: str) -> str:
    return "\n".join([
        "for ((i=1; i<=MAX_ITERATIONS; i++)); do",
        f'  echo "{ITERATION_BANNER} $i of $MAX_ITERATIONS"',
        f"  {agent_command}",
        "  AGENT_EXIT=$?",
        '  if [ "$AGENT_EXIT" -ne 0 ]; then',
        '    echo "Agent exited with code $AGENT_EXIT"',
        "  fi",
        "done",
    ])


def _terminal_commands() -> List[str]:
    return [
        _iteration_loop(
            'claude --dangerously-skip-permissions --output-format text -p "$(cat "$PROMPT_FILE")"'
        ),
        'echo "Session finished after $MAX_ITERATIONS iterations. Run again with: $0 <max_iterations>"',
        "exec bash",
    ]


def _sandbox_commands(
    target: LaunchTarget,
    runtime: Optional[RuntimeInfo],
    os_type: OSType,
    config: ForgeConfig,
) -> List[str]:
    commands = []
    socket_path = runtime.socket_path if runtime else None
    if socket_path and not is_default_socket(socket_path):
        host = escape_shell_value(docker_host_url(socket_path, os_type))
        commands.append(f'export DOCKER_HOST="{host}"')

    image = escape_shell_value(config.sandbox_image)
    network = escape_shell_value(config.sandbox_network)
    commands.append("\n".join([
        f'if ! docker image inspect "{image}" >/dev/null 2>&1; then',
        f'  echo "Sandbox image {image} not found. Build it before launching."',
        "  exit 1",
        "fi",
    ]))
    commands.append(
        f'docker network inspect "{network}" >/dev/null 2>&1 || '
        f'docker network create "{network}" >/dev/null'
    )
    commands.append(_iteration_loop(_docker_run(target, config)))
    commands.append('echo "Sandbox session $SESSION_ID finished"')
    return commands


def _docker_run(target: LaunchTarget, config: ForgeConfig) -> str:
    limits = config.resources
    prefix = escape_shell_value(config.container_prefix)
    args = [
        "docker run --rm -it",
        f'--name "{prefix}${{SESSION_ID}}"',
        f'--network "{escape_shell_value(config.sandbox_network)}"',
        f"--memory={limits.memory}",
        f"--memory-swap={limits.memory}",
        f"--cpus={limits.cpus}",
        f"--pids-limit={int(limits.pids_limit)}",
        f"--stop-timeout={int(limits.stop_timeout)}",
        "--security-opt=no-new-privileges:true",
    ]
    for label, value in _labels(target):
        args.append(f'--label "{label}={escape_shell_value(value)}"')
    for low, high in _published_port_ranges():
        args.append(f"-p {low}-{high}:{low}-{high}")
    args.extend([
        '-v "$PROJECT_PATH:/workspace"',
        "-e RALPH_TIMEOUT -e SESSION_ID",
        "-w /workspace",
        f'"{escape_shell_value(config.sandbox_image)}"',
        f"claude --dangerously-skip-permissions /workspace/{PROMPT_FILENAME}",
    ])
    return " \\\n    ".join(args)


def _labels(target: LaunchTarget) -> List[Tuple[str, str]]:
    labels = []
    if target.project_id:
        labels.append((LABEL_PROJECT_ID, target.project_id))
    if target.project_name:
        labels.append((LABEL_PROJECT_NAME, target.project_name))
    if target.epic_id:
        labels.append((LABEL_EPIC_ID, target.epic_id))
        labels.append((LABEL_EPIC_TITLE, target.epic_title or ""))
    return labels


def _published_port_ranges() -> List[Tuple[int, int]]:
    seen = []
    for service_type in ServiceType:
        port_range = PORT_RANGES.get(service_type)
        if port_range and port_range not in seen:
            seen.append(port_range)
    return sorted(seen)


# =============================================================================
# Terminal Emulators
# =============================================================================

ALLOWED_TERMINALS = (
    "ghostty",
    "gnome-terminal",
    "konsole",
    "xfce4-terminal",
    "mate-terminal",
    "terminator",
    "alacritty",
    "kitty",
    "tilix",
    "xterm",
    "x-terminal-emulator",
)

MACOS_TERMINALS = ("terminal", "iterm2")


def is_allowed_terminal(terminal: str, os_type: OSType = OSType.LINUX) -> bool:
    if os_type == OSType.MACOS:
        return terminal in MACOS_TERMINALS or terminal in ALLOWED_TERMINALS
    return terminal in ALLOWED_TERMINALS


def _applescript_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_terminal_argv(
    terminal: str,
    project_path: str,
    script_path: str,
    os_type: OSType = OSType.LINUX,
) -> List[str]:
    """
    Argument vector that opens ``terminal`` in ``project_path`` and runs the script.

    The argv is meant for ``subprocess`` without a shell. On macOS the
    Terminal.app and iTerm2 variants go through ``osascript``, where the
    inner shell command is escaped like any other embedded value.

    Raises:
        UnsupportedTerminalError: terminal is not in the supported list
    """
    if not is_allowed_terminal(terminal, os_type):
        raise UnsupportedTerminalError(f"Terminal {terminal!r} is not allowed")

    if os_type == OSType.MACOS and terminal in MACOS_TERMINALS:
        shell_command = (
            f'cd "{escape_shell_value(project_path)}" && '
            f'bash "{escape_shell_value(script_path)}"'
        )
        if terminal == "iterm2":
            return [
                "osascript",
                "-e", 'tell application "iTerm" to create window with default profile',
                "-e", 'tell application "iTerm" to tell current session of current window '
                      f"to write text {_applescript_string(shell_command)}",
            ]
        return [
            "osascript",
            "-e", f'tell application "Terminal" to do script {_applescript_string(shell_command)}',
        ]

    argv = {
        "ghostty": ["ghostty", f"--working-directory={project_path}", "-e", script_path],
        "gnome-terminal": ["gnome-terminal", f"--working-directory={project_path}", "--", script_path],
        "konsole": ["konsole", "--workdir", project_path, "-e", script_path],
        "xfce4-terminal": ["xfce4-terminal", f"--working-directory={project_path}", "-e", script_path],
        "mate-terminal": ["mate-terminal", f"--working-directory={project_path}", "-e", script_path],
        "terminator": ["terminator", f"--working-directory={project_path}", "-e", script_path],
        "alacritty": ["alacritty", "--working-directory", project_path, "-e", script_path],
        "kitty": ["kitty", "--directory", project_path, script_path],
        "tilix": ["tilix", f"--working-directory={project_path}", "-e", script_path],
        "xterm": ["xterm", "-e", script_path],
        "x-terminal-emulator": ["x-terminal-emulator", "-e", script_path],
    }
    return argv[terminal]

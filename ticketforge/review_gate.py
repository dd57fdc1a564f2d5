"""
Pre-Publish Review Gate
=======================

Blocks ``git push`` and ``gh pr create`` while there are unreviewed source
changes.

Flow:
1. Ignore anything that is not a publish command
2. Collect changed source files (working tree and staged diffs)
3. No source changes: allow, there is nothing to review
4. Check the review marker (``.claude/.review-completed``):
   fresh (< 30 minutes) allows, stale or missing blocks

The gate fails open: when git or the marker check breaks, the publish is
allowed and a warning is logged.

``ReviewGate.evaluate`` returns a decision and ``ReviewGate.enforce`` raises
``ReviewRequiredError``. ``review_gate_hook`` wraps the same check as a
pre-tool-use hook for the agent SDK.
"""

import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ticketforge.config import ForgeConfig
from ticketforge.errors import GitCommandError, ReviewRequiredError

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = frozenset({
    ".ts", ".tsx", ".js", ".jsx", ".py", ".go", ".rs",
    ".java", ".c", ".cpp", ".h", ".hpp",
})
EXCLUDED_DIRS = frozenset({"node_modules", "dist", "build", ".next", ".turbo"})

DIFF_COMMANDS = (
    ("diff", "--name-only", "HEAD"),
    ("diff", "--cached", "--name-only"),
)

MAX_LISTED_FILES = 5
GIT_TIMEOUT = 10.0


class ReviewMarkerStatus(Enum):
    MISSING = "missing"
    STALE = "stale"
    FRESH = "fresh"


# =============================================================================
# Marker
# =============================================================================

def marker_status(
    exists: bool,
    mtime: Optional[float],
    now: float,
    max_age_minutes: float = 30,
) -> ReviewMarkerStatus:
    """
    Classify the review marker from its existence and modification time.

    Args:
        exists: Whether the marker file exists
        mtime: Its modification time (epoch seconds)
        now: Current time (epoch seconds)
        max_age_minutes: Age below which the marker counts as fresh
    """
    if not exists or mtime is None:
        return ReviewMarkerStatus.MISSING
    age_minutes = (now - mtime) / 60.0
    if age_minutes < max_age_minutes:
        return ReviewMarkerStatus.FRESH
    return ReviewMarkerStatus.STALE


def check_review_marker(
    marker_path: Path,
    now: Optional[float] = None,
    max_age_minutes: float = 30,
) -> ReviewMarkerStatus:
    """
    Stat the marker file and classify it.

    Raises:
        OSError: the marker exists but cannot be read
    """
    if now is None:
        now = time.time()
    try:
        mtime = os.stat(marker_path).st_mtime
    except FileNotFoundError:
        return marker_status(False, None, now, max_age_minutes)
    return marker_status(True, mtime, now, max_age_minutes)


# =============================================================================
# Command Detection
# =============================================================================

def split_command_segments(command_string: str) -> List[str]:
    """
    Split a compound command into individual command segments.

    Handles command chaining (&&, ||, ;) and pipes.
    """
    segments = re.split(r"\s*(?:&&|\|\||\||;)\s*", command_string)
    return [s.strip() for s in segments if s.strip()]


def _strip_env_assignments(tokens: List[str]) -> List[str]:
    index = 0
    while index < len(tokens) and re.match(r"^[A-Za-z_][A-Za-z0-9_]*=", tokens[index]):
        index += 1
    return tokens[index:]


def _segment_publishes(segment: str) -> bool:
    try:
        tokens = _strip_env_assignments(shlex.split(segment))
    except ValueError:
        return False
    if not tokens:
        return False
    program = os.path.basename(tokens[0])
    if program == "git":
        # git [-C dir] [-c key=val] push
        rest = tokens[1:]
        while rest and rest[0] in ("-C", "-c"):
            rest = rest[2:]
        return bool(rest) and rest[0] == "push"
    if program == "gh":
        return tokens[1:3] == ["pr", "create"]
    return False


def is_publish_command(command: str) -> bool:
    """True if the shell command pushes code or opens a pull request."""
    if not command:
        return False
    if "git push" in command or "gh pr create" in command:
        return True
    return any(_segment_publishes(segment) for segment in split_command_segments(command))


# =============================================================================
# Changed Files
# =============================================================================

def is_source_file(path: str) -> bool:
    """Recognised source extension, not a type declaration, not under a build/dependency dir."""
    pure = PurePosixPath(path.replace("\\", "/"))
    if pure.name.endswith(".d.ts"):
        return False
    if pure.suffix not in SOURCE_EXTENSIONS:
        return False
    return not any(part in EXCLUDED_DIRS for part in pure.parts[:-1])


def filter_source_files(paths: Iterable[str]) -> List[str]:
    """Keep source files, drop duplicates, preserve first-seen order."""
    seen = set()
    result = []
    for path in paths:
        path = path.strip()
        if not path or path in seen or not is_source_file(path):
            continue
        seen.add(path)
        result.append(path)
    return result


class GitRunner:
    """Runs git in a working directory."""

    def __init__(self, git_binary: str = "git", timeout: float = GIT_TIMEOUT):
        self.git_binary = git_binary
        self.timeout = timeout

    def run(self, args: Sequence[str], cwd: Path) -> str:
        """
        Run ``git <args>`` and return stdout.

        Raises:
            GitCommandError: git is missing, timed out, or exited non-zero
        """
        try:
            result = subprocess.run(
                [self.git_binary, *args],
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise GitCommandError(f"git {' '.join(args)} failed: {e}")
        if result.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} exited with code {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout


def get_source_changes(project_dir: Path, runner: Optional[GitRunner] = None) -> List[str]:
    """
    Changed source files: union of ``git diff --name-only HEAD`` and
    ``git diff --cached --name-only``.

    One failing diff (e.g. no commits yet, so no HEAD) is treated as empty.

    Raises:
        GitCommandError: every diff failed
    """
    runner = runner or GitRunner()
    outputs = []
    failures = []
    for args in DIFF_COMMANDS:
        try:
            outputs.append(runner.run(args, project_dir))
        except GitCommandError as e:
            logger.debug("Ignoring failed diff: %s", e)
            failures.append(e)
    if len(failures) == len(DIFF_COMMANDS):
        raise failures[-1]
    return filter_source_files("\n".join(outputs).splitlines())


# =============================================================================
# Decision
# =============================================================================

def _file_listing(changed_files: Sequence[str]) -> str:
    listing = "\n  ".join(changed_files[:MAX_LISTED_FILES])
    extra = len(changed_files) - MAX_LISTED_FILES
    if extra > 0:
        listing += f"\n  ... and {extra} more files"
    return listing


def format_block_message(status: ReviewMarkerStatus, changed_files: Sequence[str],
                         max_age_minutes: float = 30) -> str:
    """Remediation text shown when the gate blocks."""
    count = len(changed_files)
    listing = _file_listing(changed_files)
    if status == ReviewMarkerStatus.STALE:
        return (
            f"CODE REVIEW REQUIRED - Your review marker is stale (> {max_age_minutes:g} minutes old).\n\n"
            f"Detected {count} uncommitted source file(s):\n"
            f"  {listing}\n\n"
            f"Your previous review was completed more than {max_age_minutes:g} minutes ago. "
            "You need a fresh review.\n\n"
            "To proceed, run the review again:\n"
            "  /review\n\n"
            "After review completes, retry the push command."
        )
    return (
        f"CODE REVIEW REQUIRED before push. Detected {count} uncommitted source file(s):\n"
        f"  {listing}\n\n"
        "Code review is mandatory before pushing. Run the code review pipeline:\n"
        "  /review\n\n"
        "This will analyze your changes for:\n"
        "  - Code quality and project guidelines\n"
        "  - Error handling and silent failures\n"
        "  - Unnecessary complexity and simplification opportunities\n\n"
        "After review completes and all critical/major findings are fixed, retry the push command."
    )


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    marker_status: Optional[ReviewMarkerStatus] = None
    changed_files: Tuple[str, ...] = field(default_factory=tuple)
    reason: str = ""

    @property
    def listed_files(self) -> List[str]:
        return list(self.changed_files[:MAX_LISTED_FILES])

    @property
    def more_files(self) -> int:
        return max(0, len(self.changed_files) - MAX_LISTED_FILES)


class ReviewGate:
    """
    Review gate for one project directory.

    Usage:
        gate = ReviewGate(Path("."))
        decision = gate.evaluate("git push origin main")
        if not decision.allowed:
            print(decision.reason)
    """

    def __init__(
        self,
        project_dir: Path,
        config: Optional[ForgeConfig] = None,
        clock: Callable[[], float] = time.time,
        runner: Optional[GitRunner] = None,
    ):
        self.project_dir = Path(project_dir)
        self.config = config or ForgeConfig()
        self.clock = clock
        self.runner = runner or GitRunner()

    @property
    def marker_path(self) -> Path:
        return self.project_dir / self.config.review_marker_path

    def evaluate(self, command: str) -> GateDecision:
        """Decide whether ``command`` may run. Never raises."""
        try:
            return self._evaluate(command)
        except Exception as e:
            logger.warning("Review gate failed, allowing command: %s", e)
            return GateDecision(allowed=True, reason=f"review gate error: {e}")

    def _evaluate(self, command: str) -> GateDecision:
        if not is_publish_command(command):
            return GateDecision(allowed=True, reason="not a publish command")

        try:
            changed = get_source_changes(self.project_dir, self.runner)
        except (GitCommandError, OSError) as e:
            logger.warning("Could not list changed files, allowing publish: %s", e)
            return GateDecision(allowed=True, reason="changed files unavailable")

        if not changed:
            return GateDecision(allowed=True, reason="no source changes")

        max_age = self.config.review_max_age_minutes
        try:
            status = check_review_marker(self.marker_path, now=self.clock(), max_age_minutes=max_age)
        except OSError as e:
            logger.warning("Could not read review marker, allowing publish: %s", e)
            return GateDecision(allowed=True, changed_files=tuple(changed),
                                reason="review marker unreadable")

        if status == ReviewMarkerStatus.FRESH:
            return GateDecision(allowed=True, marker_status=status, changed_files=tuple(changed),
                                reason="review is fresh")

        return GateDecision(
            allowed=False,
            marker_status=status,
            changed_files=tuple(changed),
            reason=format_block_message(status, changed, max_age),
        )

    def enforce(self, command: str) -> GateDecision:
        """
        Like ``evaluate`` but raise when blocked.

        Raises:
            ReviewRequiredError: the command publishes unreviewed changes
        """
        decision = self.evaluate(command)
        if not decision.allowed:
            raise ReviewRequiredError(
                decision.reason,
                marker_status=decision.marker_status.value,
                changed_files=decision.listed_files,
                more_files=decision.more_files,
            )
        return decision


# =============================================================================
# Agent Hook
# =============================================================================

def make_review_gate_hook(gate_factory: Optional[Callable[[Path], ReviewGate]] = None):
    """
    Build a pre-tool-use hook around a gate factory.

    The factory receives the hook's working directory (``cwd`` from the hook
    input, else the process cwd).
    """
    if gate_factory is None:
        def gate_factory(project_dir: Path) -> ReviewGate:
            return ReviewGate(project_dir, ForgeConfig.load(project_dir))

    async def hook(input_data, tool_use_id=None, context=None):
        """
        Pre-tool-use hook that blocks publishing without a fresh review.

        Args:
            input_data: Dict containing tool_name, tool_input and optionally cwd
            tool_use_id: Optional tool use ID
            context: Optional context

        Returns:
            Empty dict to allow, or {"decision": "block", "reason": "..."} to block
        """
        if input_data.get("tool_name") != "Bash":
            return {}

        command = (input_data.get("tool_input") or {}).get("command", "")
        if not command:
            return {}

        project_dir = Path(input_data.get("cwd") or os.getcwd())
        try:
            gate = gate_factory(project_dir)
        except Exception as e:
            logger.warning("Review gate unavailable, allowing command: %s", e)
            return {}

        decision = gate.evaluate(command)
        if not decision.allowed:
            return {"decision": "block", "reason": decision.reason}
        return {}

    return hook


review_gate_hook = make_review_gate_hook()

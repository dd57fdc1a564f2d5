"""
Error Types
===========

Exceptions raised by ticketforge. Most components report environment absence
and transient failures through result objects; exceptions are reserved for
policy violations and caller-side bugs.
"""

from typing import List, Optional


class TicketforgeError(Exception):
    """Base class for all ticketforge errors."""


class ReviewRequiredError(TicketforgeError):
    """
    A publishing action was attempted without a fresh review marker.

    Carries enough for the caller to act: the marker status, the changed
    source files that triggered the block, and the remediation text.
    """

    def __init__(self, message: str, marker_status: str, changed_files: Optional[List[str]] = None,
                 more_files: int = 0):
        super().__init__(message)
        self.message = message
        self.marker_status = marker_status
        # First few files only; more_files counts the rest
        self.changed_files = list(changed_files or [])
        self.more_files = more_files


class DuplicateSequenceError(TicketforgeError):
    """Two events were appended with the same (session_id, sequence_id)."""

    def __init__(self, session_id: str, sequence_id: str):
        super().__init__(
            f"Event {sequence_id!r} already recorded for session {session_id!r}"
        )
        self.session_id = session_id
        self.sequence_id = sequence_id


class UnsupportedTerminalError(TicketforgeError):
    """Requested terminal emulator is not in the supported list."""


class DatabaseNotInitializedError(TicketforgeError, RuntimeError):
    """The session database was used before ``init_db`` was called."""


class DockerCommandError(TicketforgeError):
    """A docker CLI invocation failed, timed out, or could not be started."""

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class GitCommandError(TicketforgeError):
    """A git invocation used by the review gate failed."""

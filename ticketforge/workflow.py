"""
Workflow Phase Tracker
======================

Works out where a ticket is in its workflow from four independent inputs:

- the ticket's status (owned by the ticket store)
- the per-ticket session record: was any session observed, review iteration
- review finding counts grouped by severity and status
- the demo script, if one was generated

Phase precedence, highest first:
    done > human_review > ai_review > implementation > started

``implementation`` requires both an ``in_progress`` status and at least one
session that has recorded a ``start`` event. A legacy stored phase is only
trusted when a session has been observed for the ticket.

``derive_workflow_state`` is a pure function over those inputs; the
``WorkflowTracker`` gathers them from a ``WorkflowSources`` implementation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from ticketforge.db.connection import get_session_maker
from ticketforge.db.models import DemoScript, ReviewFinding, TicketWorkflowState
from ticketforge.event_log import EventLog
from ticketforge.session_state import fold_events

logger = logging.getLogger(__name__)


class WorkflowPhase(Enum):
    STARTED = "started"
    IMPLEMENTATION = "implementation"
    AI_REVIEW = "ai_review"
    HUMAN_REVIEW = "human_review"
    DONE = "done"


SEVERITIES = ("critical", "major", "minor", "suggestion")

# Ticket statuses that decide the phase on their own
_STATUS_PHASES = {
    "done": WorkflowPhase.DONE,
    "human_review": WorkflowPhase.HUMAN_REVIEW,
    "ai_review": WorkflowPhase.AI_REVIEW,
}


# =============================================================================
# Input Snapshots
# =============================================================================

@dataclass(frozen=True)
class SessionRecord:
    """What is known about sessions for a ticket."""
    session_observed: bool = False
    review_iteration: int = 0
    stored_phase: Optional[str] = None


@dataclass(frozen=True)
class FindingCount:
    """One ``GROUP BY severity, status`` row."""
    severity: str
    status: str
    count: int


@dataclass(frozen=True)
class DemoRecord:
    completed_at: Optional[Union[datetime, str]] = None
    passed: Optional[bool] = None


# =============================================================================
# Output
# =============================================================================

@dataclass(frozen=True)
class FindingsSummary:
    critical: int = 0
    major: int = 0
    minor: int = 0
    suggestion: int = 0
    fixed: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.major + self.minor + self.suggestion

    def to_dict(self) -> dict:
        return {
            "critical": self.critical,
            "major": self.major,
            "minor": self.minor,
            "suggestion": self.suggestion,
            "fixed": self.fixed,
            "total": self.total,
        }


@dataclass(frozen=True)
class WorkflowDisplayState:
    current_phase: WorkflowPhase
    review_iteration: int = 0
    demo_generated: bool = False
    demo_completed: bool = False
    demo_approved: Optional[bool] = None
    findings_summary: FindingsSummary = field(default_factory=FindingsSummary)

    def to_dict(self) -> dict:
        return {
            "current_phase": self.current_phase.value,
            "review_iteration": self.review_iteration,
            "demo_generated": self.demo_generated,
            "demo_completed": self.demo_completed,
            "demo_approved": self.demo_approved,
            "findings_summary": self.findings_summary.to_dict(),
        }


# =============================================================================
# Derivation
# =============================================================================

def summarize_findings(rows: Iterable[FindingCount]) -> FindingsSummary:
    """
    Collapse grouped finding counts into a summary.

    Rows with a severity outside the four known ones are ignored, so ``total``
    always equals the sum of the buckets and ``fixed`` never exceeds it.
    """
    counts = dict.fromkeys(SEVERITIES, 0)
    fixed = 0
    for row in rows:
        if row.severity not in counts or row.count <= 0:
            continue
        counts[row.severity] += row.count
        if row.status == "fixed":
            fixed += row.count
    return FindingsSummary(fixed=fixed, **counts)


def derive_phase(
    ticket_status: Optional[str],
    session_observed: bool,
    stored_phase: Optional[str] = None,
) -> WorkflowPhase:
    """Apply the phase precedence to a ticket status and session signal."""
    if ticket_status in _STATUS_PHASES:
        return _STATUS_PHASES[ticket_status]
    if ticket_status == "in_progress":
        return WorkflowPhase.IMPLEMENTATION if session_observed else WorkflowPhase.STARTED
    if session_observed and stored_phase:
        try:
            return WorkflowPhase(stored_phase)
        except ValueError:
            logger.warning("Ignoring unknown stored workflow phase %r", stored_phase)
    return WorkflowPhase.STARTED


def derive_workflow_state(
    ticket_status: Optional[str],
    session: Optional[SessionRecord],
    findings: Iterable[FindingCount],
    demo: Optional[DemoRecord],
) -> WorkflowDisplayState:
    """
    Compute the workflow display state from its four input snapshots.

    Pure and cheap: safe to call on every refresh.
    """
    session = session or SessionRecord()
    return WorkflowDisplayState(
        current_phase=derive_phase(ticket_status, session.session_observed, session.stored_phase),
        review_iteration=max(0, session.review_iteration or 0),
        demo_generated=demo is not None,
        demo_completed=bool(demo and demo.completed_at),
        demo_approved=demo.passed if demo is not None else None,
        findings_summary=summarize_findings(findings),
    )


# =============================================================================
# Sources
# =============================================================================

class WorkflowSources:
    """Where the tracker reads its four inputs from."""

    def ticket_status(self, ticket_id: str) -> Optional[str]:
        raise NotImplementedError

    def session_record(self, ticket_id: str) -> SessionRecord:
        raise NotImplementedError

    def finding_counts(self, ticket_id: str) -> List[FindingCount]:
        raise NotImplementedError

    def demo_record(self, ticket_id: str) -> Optional[DemoRecord]:
        raise NotImplementedError


class SqlWorkflowSources(WorkflowSources):
    """
    Reads workflow inputs from the project database and the event log.

    Ticket status belongs to the external ticket store and is supplied as a
    callable returning the status string, or None for an unknown ticket.
    """

    def __init__(
        self,
        ticket_status_reader: Callable[[str], Optional[str]],
        event_log: EventLog,
        session_maker: Optional[sessionmaker] = None,
    ):
        self._ticket_status_reader = ticket_status_reader
        self.event_log = event_log
        self._session_maker = session_maker

    @property
    def session_maker(self) -> sessionmaker:
        return self._session_maker or get_session_maker()

    def ticket_status(self, ticket_id: str) -> Optional[str]:
        return self._ticket_status_reader(ticket_id)

    def session_record(self, ticket_id: str) -> SessionRecord:
        observed = any(
            fold_events(self.event_log.events(session_id), session_id=session_id).started
            for session_id in self.event_log.sessions_for_ticket(ticket_id)
        )
        with self.session_maker() as session:
            row = session.get(TicketWorkflowState, ticket_id)
            if row is None:
                return SessionRecord(session_observed=observed)
            return SessionRecord(
                session_observed=observed,
                review_iteration=row.review_iteration or 0,
                stored_phase=row.current_phase,
            )

    def finding_counts(self, ticket_id: str) -> List[FindingCount]:
        stmt = (
            select(ReviewFinding.severity, ReviewFinding.status, func.count())
            .where(ReviewFinding.ticket_id == ticket_id)
            .group_by(ReviewFinding.severity, ReviewFinding.status)
        )
        with self.session_maker() as session:
            return [
                FindingCount(severity=severity, status=status, count=count)
                for severity, status, count in session.execute(stmt).all()
            ]

    def demo_record(self, ticket_id: str) -> Optional[DemoRecord]:
        with self.session_maker() as session:
            demo = session.scalars(
                select(DemoScript).where(DemoScript.ticket_id == ticket_id)
            ).first()
            if demo is None:
                return None
            return DemoRecord(completed_at=demo.completed_at, passed=demo.passed)


class WorkflowTracker:
    """
    Derives workflow state for tickets.

    Usage:
        tracker = WorkflowTracker(SqlWorkflowSources(read_status, SqlEventLog()))
        state = tracker.derive("ticket-1")
    """

    def __init__(self, sources: WorkflowSources):
        self.sources = sources

    def derive(self, ticket_id: str) -> Optional[WorkflowDisplayState]:
        """Workflow state for a ticket, or None if the ticket store does not know it."""
        status = self.sources.ticket_status(ticket_id)
        if status is None:
            return None
        return derive_workflow_state(
            ticket_status=status,
            session=self.sources.session_record(ticket_id),
            findings=self.sources.finding_counts(ticket_id),
            demo=self.sources.demo_record(ticket_id),
        )

    def publish(
        self,
        ticket_id: str,
        writer: Callable[[str, WorkflowPhase], None],
    ) -> Optional[WorkflowDisplayState]:
        """Derive and hand the phase to the ticket store's writer."""
        state = self.derive(ticket_id)
        if state is not None:
            writer(ticket_id, state.current_phase)
        return state

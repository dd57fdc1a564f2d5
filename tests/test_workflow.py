"""
Tests for the Workflow Phase Tracker
====================================

Tests for ticketforge/workflow.py
"""

import logging
from datetime import datetime, timezone

import pytest

from ticketforge.db.connection import dispose_db, init_db
from ticketforge.db.models import DemoScript, ReviewFinding, TicketWorkflowState
from ticketforge.event_log import InMemoryEventLog, SessionEvent, SqlEventLog
from ticketforge.workflow import (
    DemoRecord,
    FindingCount,
    FindingsSummary,
    SessionRecord,
    SqlWorkflowSources,
    WorkflowPhase,
    WorkflowSources,
    WorkflowTracker,
    derive_phase,
    derive_workflow_state,
    summarize_findings,
)


class TestDerivePhase:
    """Phase precedence."""

    @pytest.mark.parametrize("status,expected", [
        ("done", WorkflowPhase.DONE),
        ("human_review", WorkflowPhase.HUMAN_REVIEW),
        ("ai_review", WorkflowPhase.AI_REVIEW),
    ])
    def test_status_decides(self, status, expected):
        assert derive_phase(status, session_observed=True, stored_phase="implementation") == expected
        assert derive_phase(status, session_observed=False) == expected

    def test_in_progress_needs_a_session(self):
        assert derive_phase("in_progress", session_observed=True) == WorkflowPhase.IMPLEMENTATION
        assert derive_phase("in_progress", session_observed=False) == WorkflowPhase.STARTED

    def test_done_overrides_any_stored_phase(self):
        for phase in WorkflowPhase:
            assert derive_phase("done", True, phase.value) == WorkflowPhase.DONE

    def test_legacy_phase_ignored_without_session(self):
        assert derive_phase("todo", session_observed=False, stored_phase="ai_review") == WorkflowPhase.STARTED

    def test_legacy_phase_used_with_session(self):
        assert derive_phase("todo", session_observed=True, stored_phase="ai_review") == WorkflowPhase.AI_REVIEW

    def test_unknown_legacy_phase(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert derive_phase("todo", True, "qa") == WorkflowPhase.STARTED
        assert "qa" in caplog.text


class TestFindings:

    def test_total_is_sum_of_buckets(self):
        summary = summarize_findings([
            FindingCount("critical", "open", 1),
            FindingCount("major", "fixed", 2),
            FindingCount("major", "open", 1),
            FindingCount("minor", "wont_fix", 3),
            FindingCount("suggestion", "fixed", 4),
            FindingCount("cosmetic", "fixed", 9),
        ])

        assert summary == FindingsSummary(critical=1, major=3, minor=3, suggestion=4, fixed=6)
        assert summary.total == 11
        assert summary.total == summary.critical + summary.major + summary.minor + summary.suggestion
        assert summary.fixed <= summary.total

    def test_empty(self):
        summary = summarize_findings([])
        assert summary.total == 0
        assert summary.to_dict()["total"] == 0


class TestDeriveWorkflowState:

    def test_full_state(self):
        state = derive_workflow_state(
            ticket_status="ai_review",
            session=SessionRecord(session_observed=True, review_iteration=2),
            findings=[FindingCount("critical", "fixed", 1)],
            demo=DemoRecord(completed_at=datetime(2025, 1, 1, tzinfo=timezone.utc), passed=True),
        )

        assert state.current_phase == WorkflowPhase.AI_REVIEW
        assert state.review_iteration == 2
        assert state.demo_generated and state.demo_completed
        assert state.demo_approved is True
        assert state.findings_summary.fixed == 1

    def test_no_inputs(self):
        state = derive_workflow_state("todo", None, [], None)

        assert state.current_phase == WorkflowPhase.STARTED
        assert state.review_iteration == 0
        assert not state.demo_generated
        assert state.demo_approved is None

    def test_demo_generated_not_completed(self):
        state = derive_workflow_state("human_review", None, [], DemoRecord())
        assert state.demo_generated
        assert not state.demo_completed

    def test_to_dict(self):
        data = derive_workflow_state("done", None, [], None).to_dict()
        assert data["current_phase"] == "done"
        assert data["findings_summary"]["total"] == 0


class StaticSources(WorkflowSources):
    def __init__(self, status, session=None):
        self.status = status
        self.session = session or SessionRecord()

    def ticket_status(self, ticket_id):
        return self.status

    def session_record(self, ticket_id):
        return self.session

    def finding_counts(self, ticket_id):
        return []

    def demo_record(self, ticket_id):
        return None


class TestWorkflowTracker:

    def test_unknown_ticket(self):
        assert WorkflowTracker(StaticSources(None)).derive("T-404") is None

    def test_publish_writes_phase(self):
        written = []
        tracker = WorkflowTracker(StaticSources("in_progress", SessionRecord(session_observed=True)))

        state = tracker.publish("T-1", lambda ticket_id, phase: written.append((ticket_id, phase)))

        assert state.current_phase == WorkflowPhase.IMPLEMENTATION
        assert written == [("T-1", WorkflowPhase.IMPLEMENTATION)]

    def test_publish_unknown_ticket_writes_nothing(self):
        written = []
        assert WorkflowTracker(StaticSources(None)).publish("T-404", lambda *a: written.append(a)) is None
        assert written == []


class TestSqlWorkflowSources:
    """Reading the four inputs from the project database."""

    @pytest.fixture
    def maker(self, tmp_path):
        maker = init_db(tmp_path)
        yield maker
        dispose_db()

    def test_in_progress_with_started_session(self, maker):
        log = SqlEventLog(maker)
        log.bind_session("s1", "T-1")
        log.append(SessionEvent.start("s1", "1"))

        sources = SqlWorkflowSources(lambda ticket_id: "in_progress", log, maker)
        state = WorkflowTracker(sources).derive("T-1")

        assert state.current_phase == WorkflowPhase.IMPLEMENTATION

    def test_bound_session_without_start(self, maker):
        log = SqlEventLog(maker)
        log.bind_session("s1", "T-1")
        log.append(SessionEvent.state_change("s1", "1", "idle"))

        sources = SqlWorkflowSources(lambda ticket_id: "in_progress", log, maker)
        assert WorkflowTracker(sources).derive("T-1").current_phase == WorkflowPhase.STARTED

    def test_legacy_phase_without_session_ignored(self, maker):
        with maker() as session:
            session.add(TicketWorkflowState(ticket_id="T-1", current_phase="ai_review", review_iteration=3))
            session.commit()

        sources = SqlWorkflowSources(lambda ticket_id: "todo", SqlEventLog(maker), maker)
        state = WorkflowTracker(sources).derive("T-1")

        assert state.current_phase == WorkflowPhase.STARTED
        assert state.review_iteration == 3

    def test_findings_and_demo(self, maker):
        with maker() as session:
            session.add_all([
                ReviewFinding(ticket_id="T-1", severity="critical", status="fixed"),
                ReviewFinding(ticket_id="T-1", severity="major", status="open"),
                ReviewFinding(ticket_id="T-1", severity="major", status="open"),
                ReviewFinding(ticket_id="T-2", severity="minor", status="open"),
                DemoScript(ticket_id="T-1", steps=[{"step": "open cart"}], passed=False),
            ])
            session.commit()

        sources = SqlWorkflowSources(lambda ticket_id: "human_review", SqlEventLog(maker), maker)
        state = WorkflowTracker(sources).derive("T-1")

        assert state.current_phase == WorkflowPhase.HUMAN_REVIEW
        assert state.findings_summary == FindingsSummary(critical=1, major=2, fixed=1)
        assert state.demo_generated
        assert not state.demo_completed
        assert state.demo_approved is False

    def test_in_memory_log_with_sql_tables(self, maker):
        log = InMemoryEventLog()
        log.bind_session("s1", "T-1")
        log.append(SessionEvent.start("s1", "1"))

        sources = SqlWorkflowSources(lambda ticket_id: "in_progress", log, maker)
        assert WorkflowTracker(sources).derive("T-1").current_phase == WorkflowPhase.IMPLEMENTATION

"""
Tests for Session State Reconstruction
======================================

Tests for ticketforge/session_state.py
"""

import random
from datetime import datetime, timedelta, timezone

from ticketforge.containers import ContainerLogs
from ticketforge.event_log import EventType, InMemoryEventLog, SessionEvent, cancel_session
from ticketforge.session_state import (
    EventStats,
    SessionFold,
    SessionObservation,
    SessionStateReconstructor,
    fold_events,
    event_stats,
    reduce_event,
    state_history,
)


def session_events(session_id="s1"):
    return [
        SessionEvent.start(session_id, "1"),
        SessionEvent.state_change(session_id, "2", "analyzing"),
        SessionEvent(session_id, "3", EventType.TOOL_CALL, {"tool": "Read"}),
        SessionEvent(session_id, "4", EventType.TOOL_RESULT, {"ok": True}),
        SessionEvent.state_change(session_id, "5", "implementing"),
        SessionEvent(session_id, "6", EventType.TOOL_CALL, {"tool": "Edit"}),
        SessionEvent.state_change(session_id, "7", "testing"),
    ]


class FakeMonitor:
    def __init__(self, logs):
        self._logs = logs
        self.calls = []

    def logs(self, name, tail_lines=500):
        self.calls.append((name, tail_lines))
        return self._logs


class TestFold:
    """Pure folding of event lists."""

    def test_empty_is_unknown(self):
        fold = fold_events([], session_id="s1")
        assert fold == SessionFold(session_id="s1")
        assert fold.state == "unknown"
        assert not fold.active

    def test_last_state_change_wins(self):
        fold = fold_events(session_events())
        assert fold.state == "testing"
        assert fold.started and fold.active
        assert fold.tool_calls == 2
        assert fold.events_applied == 7
        assert fold.last_sequence_id == "7"
        assert fold.session_id == "s1"

    def test_order_independent(self):
        events = session_events()
        expected = fold_events(events)
        shuffled = list(events)
        for seed in range(5):
            random.Random(seed).shuffle(shuffled)
            assert fold_events(shuffled) == expected

    def test_numeric_ordering(self):
        events = [
            SessionEvent.state_change("s1", "10", "committing"),
            SessionEvent.state_change("s1", "9", "testing"),
        ]
        assert fold_events(events).state == "committing"

    def test_events_after_end_ignored(self):
        events = session_events() + [
            SessionEvent.end("s1", "8", reason="done"),
            SessionEvent.state_change("s1", "9", "idle"),
        ]
        fold = fold_events(events)

        assert fold.state == "testing"
        assert fold.ended
        assert fold.end_reason == "done"
        assert fold.last_sequence_id == "8"
        assert not fold.active

    def test_late_event_before_end_applies(self):
        events = [
            SessionEvent.start("s1", "1"),
            SessionEvent.end("s1", "3"),
            SessionEvent.state_change("s1", "2", "reviewing"),
        ]
        fold = fold_events(events)
        assert fold.state == "reviewing"
        assert fold.ended
        assert fold.end_reason is None

    def test_state_change_without_state_keeps_previous(self):
        fold = reduce_event(SessionFold(state="idle"),
                            SessionEvent("s1", "1", EventType.STATE_CHANGE, {}))
        assert fold.state == "idle"
        assert fold.events_applied == 1

    def test_idempotent(self):
        events = session_events()
        assert fold_events(events) == fold_events(events)

    def test_to_dict(self):
        data = fold_events(session_events()).to_dict()
        assert data["state"] == "testing"
        assert data["tool_calls"] == 2


class TestReconstructor:

    def test_fold_from_log(self):
        log = InMemoryEventLog()
        for event in reversed(session_events()):
            log.append(event)

        reconstructor = SessionStateReconstructor(log)
        assert reconstructor.fold("s1") == "testing"
        assert reconstructor.fold("s1") == "testing"
        assert reconstructor.fold("missing") == "unknown"

    def test_cancel_ends_session(self):
        log = InMemoryEventLog()
        for event in session_events():
            log.append(event)
        cancel_session(log, "s1", "8")

        snapshot = SessionStateReconstructor(log).snapshot("s1")
        assert snapshot.ended
        assert snapshot.end_reason == "cancelled"

    def test_observe_without_container(self):
        log = InMemoryEventLog()
        log.append(SessionEvent.start("s1", "1"))
        monitor = FakeMonitor(ContainerLogs())

        observation = SessionStateReconstructor(log, monitor).observe("s1")

        assert isinstance(observation, SessionObservation)
        assert observation.container_running is None
        assert monitor.calls == []

    def test_observe_sandbox_container(self):
        log = InMemoryEventLog()
        log.append(SessionEvent.state_change("s1", "1", "implementing"))
        monitor = FakeMonitor(ContainerLogs(text="Ralph Iteration 4 of 10", container_running=True))

        observation = SessionStateReconstructor(log, monitor).observe("s1", container_name="ralph-s1")

        assert observation.state == "implementing"
        assert observation.container_running is True
        assert (observation.iteration, observation.max_iterations) == (4, 10)
        assert monitor.calls == [("ralph-s1", 200)]

    def test_observe_runtime_unavailable(self):
        log = InMemoryEventLog()
        monitor = FakeMonitor(ContainerLogs(available=False))

        observation = SessionStateReconstructor(log, monitor).observe("s1", container_name="ralph-s1")

        assert observation.container_running is None
        assert observation.iteration is None


T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def at(minutes):
    return T0 + timedelta(minutes=minutes)


class TestFreeFormStates:

    def test_unlisted_state_is_kept(self):
        fold = fold_events([SessionEvent.state_change("s1", "1", "waiting_for_ci")])
        assert fold.state == "waiting_for_ci"


class TestEventStats:

    def test_counts_by_type(self):
        stats = event_stats(session_events(), "s1")

        assert stats.total == 7
        assert stats.by_type == {"start": 1, "state_change": 3, "tool_call": 2, "tool_result": 1}

    def test_first_and_last_follow_sequence_order(self):
        events = [
            SessionEvent("s1", "2", EventType.TOOL_CALL, {}, created_at=at(1)),
            SessionEvent("s1", "10", EventType.END, {}, created_at=at(5)),
            SessionEvent("s1", "1", EventType.START, {}, created_at=at(0)),
        ]

        stats = event_stats(events, "s1")

        assert stats.first_event_at == at(0)
        assert stats.last_event_at == at(5)

    def test_empty_session(self):
        stats = event_stats([], "missing")

        assert stats == EventStats(session_id="missing")
        assert stats.to_dict()["first_event_at"] is None

    def test_reconstructor_reads_log(self):
        log = InMemoryEventLog()
        for event in session_events():
            log.append(event)

        stats = SessionStateReconstructor(log).event_stats("s1")
        assert stats.total == 7
        assert stats.to_dict()["by_type"]["tool_call"] == 2


class TestStateHistory:

    def test_transitions_in_order(self):
        events = list(reversed(session_events()))
        assert [t.state for t in state_history(events)] == ["analyzing", "implementing", "testing"]

    def test_stops_at_end(self):
        events = [
            SessionEvent.start("s1", "1"),
            SessionEvent.state_change("s1", "2", "implementing"),
            SessionEvent.end("s1", "3"),
            SessionEvent.state_change("s1", "4", "testing"),
        ]
        assert [t.state for t in state_history(events)] == ["implementing"]


class TestActiveSession:
    """Which session is running for a ticket."""

    def make_log(self):
        log = InMemoryEventLog()
        log.bind_session("old", "T-1")
        log.append(SessionEvent("old", "1", EventType.START, {}, created_at=at(0)))
        log.append(SessionEvent("old", "2", EventType.STATE_CHANGE, {"state": "implementing"}, created_at=at(1)))

        log.bind_session("new", "T-1")
        log.append(SessionEvent("new", "1", EventType.START, {}, created_at=at(10)))
        log.append(SessionEvent("new", "2", EventType.STATE_CHANGE, {"state": "analyzing"}, created_at=at(11)))
        log.append(SessionEvent("new", "3", EventType.STATE_CHANGE, {"state": "testing"}, created_at=at(12)))
        return log

    def test_newest_started_session_wins(self):
        active = SessionStateReconstructor(self.make_log()).active_session("T-1")

        assert active.session_id == "new"
        assert active.state == "testing"
        assert active.started_at == at(10)
        assert [t.state for t in active.history] == ["analyzing", "testing"]

    def test_ended_sessions_skipped(self):
        log = self.make_log()
        cancel_session(log, "new", "4")

        active = SessionStateReconstructor(log).active_session("T-1")
        assert active.session_id == "old"

    def test_unstarted_session_is_not_active(self):
        log = InMemoryEventLog()
        log.bind_session("s1", "T-2")
        log.append(SessionEvent.state_change("s1", "1", "analyzing"))

        assert SessionStateReconstructor(log).active_session("T-2") is None

    def test_unknown_ticket(self):
        assert SessionStateReconstructor(self.make_log()).active_session("T-404") is None

    def test_to_dict(self):
        data = SessionStateReconstructor(self.make_log()).active_session("T-1").to_dict()

        assert data["ticket_id"] == "T-1"
        assert data["history"][0] == {"sequence_id": "2", "state": "analyzing", "at": at(11).isoformat()}

"""
Session State Reconstruction
============================

Derives a session's current state by folding its event log. Nothing here is
stored: every call replays the events, so the result is always consistent
with the log and calling it repeatedly without new events gives the same
answer.

Fold rules:
1. Events are applied in sequence order, whatever order they arrived in
2. ``state_change`` sets the state from its payload's ``state`` field
3. ``end`` is terminal; later events stay in the log but are ignored here
4. A session without any state change is in state ``unknown``

For sandbox sessions the reconstructor can also ask the container monitor
whether the session's container is still alive and how far its iteration
loop has got.

The same replay answers which session is currently running for a ticket
(the newest bound session that started and has not ended) and gives
per-session event counts.
"""

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import reduce
from typing import Dict, Iterable, List, Optional, Tuple

from ticketforge.event_log import (
    EventLog,
    EventType,
    SessionEvent,
    UNKNOWN_STATE,
    sequence_sort_key,
)

PROGRESS_LOG_TAIL = 200


@dataclass(frozen=True)
class SessionFold:
    """Result of folding one session's events."""
    session_id: Optional[str] = None
    state: str = UNKNOWN_STATE
    started: bool = False
    ended: bool = False
    end_reason: Optional[str] = None
    last_sequence_id: Optional[str] = None
    events_applied: int = 0
    tool_calls: int = 0

    @property
    def active(self) -> bool:
        return self.started and not self.ended

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "started": self.started,
            "ended": self.ended,
            "end_reason": self.end_reason,
            "last_sequence_id": self.last_sequence_id,
            "events_applied": self.events_applied,
            "tool_calls": self.tool_calls,
        }


def reduce_event(fold: SessionFold, event: SessionEvent) -> SessionFold:
    """Apply one event to a fold. Pure."""
    if fold.ended:
        return fold

    applied = replace(fold, last_sequence_id=event.sequence_id,
                      events_applied=fold.events_applied + 1)

    if event.type == EventType.START:
        return replace(applied, started=True)
    if event.type == EventType.STATE_CHANGE:
        state = event.payload.get("state")
        if isinstance(state, str) and state:
            return replace(applied, state=state)
        return applied
    if event.type == EventType.TOOL_CALL:
        return replace(applied, tool_calls=fold.tool_calls + 1)
    if event.type == EventType.END:
        return replace(applied, ended=True, end_reason=event.payload.get("reason"))
    # tool_result and prompt do not affect state
    return applied


def fold_events(events: Iterable[SessionEvent], session_id: Optional[str] = None) -> SessionFold:
    """
    Fold events into a SessionFold.

    Args:
        events: Events of a single session, in any order
        session_id: Recorded on the result (useful when ``events`` is empty)
    """
    ordered = sorted(events, key=lambda e: sequence_sort_key(e.sequence_id))
    if session_id is None and ordered:
        session_id = ordered[0].session_id
    return reduce(reduce_event, ordered, SessionFold(session_id=session_id))


@dataclass(frozen=True)
class EventStats:
    """Counts and time span of a session's events."""
    session_id: str
    total: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    first_event_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "total": self.total,
            "by_type": dict(self.by_type),
            "first_event_at": self.first_event_at.isoformat() if self.first_event_at else None,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
        }


def event_stats(events: Iterable[SessionEvent], session_id: str) -> EventStats:
    """
    Count a session's events by type. First and last are taken in sequence
    order, so they are the session's first and last events rather than the
    earliest and latest timestamps.
    """
    ordered = sorted(events, key=lambda e: sequence_sort_key(e.sequence_id))
    if not ordered:
        return EventStats(session_id=session_id)
    return EventStats(
        session_id=session_id,
        total=len(ordered),
        by_type=dict(Counter(event.type.value for event in ordered)),
        first_event_at=ordered[0].created_at,
        last_event_at=ordered[-1].created_at,
    )


@dataclass(frozen=True)
class StateTransition:
    sequence_id: str
    state: str
    at: datetime


def state_history(events: Iterable[SessionEvent]) -> List[StateTransition]:
    """State changes in sequence order, up to the session's end."""
    history = []
    for event in sorted(events, key=lambda e: sequence_sort_key(e.sequence_id)):
        if event.type == EventType.END:
            break
        state = event.payload.get("state") if event.type == EventType.STATE_CHANGE else None
        if isinstance(state, str) and state:
            history.append(StateTransition(event.sequence_id, state, event.created_at))
    return history


@dataclass(frozen=True)
class ActiveSession:
    """A ticket's running session: its fold and how it got there."""
    session_id: str
    ticket_id: str
    fold: SessionFold
    started_at: Optional[datetime] = None
    history: Tuple[StateTransition, ...] = ()

    @property
    def state(self) -> str:
        return self.fold.state

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "ticket_id": self.ticket_id,
            "state": self.state,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "history": [
                {"sequence_id": t.sequence_id, "state": t.state, "at": t.at.isoformat()}
                for t in self.history
            ],
        }


@dataclass(frozen=True)
class SessionObservation:
    """Folded state plus what the container layer says, for sandbox sessions."""
    fold: SessionFold
    container_running: Optional[bool] = None
    iteration: Optional[int] = None
    max_iterations: Optional[int] = None

    @property
    def state(self) -> str:
        return self.fold.state


class SessionStateReconstructor:
    """
    Reads session state from an event log.

    Usage:
        reconstructor = SessionStateReconstructor(SqlEventLog())
        reconstructor.fold("session-42")  # -> "implementing"
    """

    def __init__(self, event_log: EventLog, monitor=None):
        self.event_log = event_log
        self.monitor = monitor

    def fold(self, session_id: str) -> str:
        """Current state of a session, or ``unknown``."""
        return self.snapshot(session_id).state

    def snapshot(self, session_id: str) -> SessionFold:
        return fold_events(self.event_log.events(session_id), session_id=session_id)

    def observe(self, session_id: str, container_name: Optional[str] = None) -> SessionObservation:
        """
        Fold the session and, when a container name and monitor are available,
        add the container's liveness and iteration progress.

        A failed container query leaves those fields as None.
        """
        fold = self.snapshot(session_id)
        if self.monitor is None or not container_name:
            return SessionObservation(fold=fold)

        logs = self.monitor.logs(container_name, tail_lines=PROGRESS_LOG_TAIL)
        if not logs.available:
            return SessionObservation(fold=fold)

        progress = logs.progress
        return SessionObservation(
            fold=fold,
            container_running=logs.container_running,
            iteration=progress.current if progress else None,
            max_iterations=progress.total if progress else None,
        )

    def event_stats(self, session_id: str) -> EventStats:
        return event_stats(self.event_log.events(session_id), session_id)

    def active_session(self, ticket_id: str) -> Optional[ActiveSession]:
        """
        The most recently started session bound to a ticket that has started
        and not ended, with its state history. None when nothing is running.
        """
        newest = None
        for session_id in self.event_log.sessions_for_ticket(ticket_id):
            events = self.event_log.events(session_id)
            fold = fold_events(events, session_id=session_id)
            if not fold.active:
                continue
            started_at = next(
                (e.created_at for e in sorted(events, key=lambda e: sequence_sort_key(e.sequence_id))
                 if e.type == EventType.START),
                None,
            )
            candidate = ActiveSession(
                session_id=session_id,
                ticket_id=ticket_id,
                fold=fold,
                started_at=started_at,
                history=tuple(state_history(events)),
            )
            if newest is None or (started_at, session_id) > (newest.started_at, newest.session_id):
                newest = candidate
        return newest

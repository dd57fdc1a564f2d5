"""
Session Event Log
=================

Append-only record of what happened in each agent session. A session's
ordered event list is the only durable record of it; state is derived by
folding the list (see ``ticketforge.session_state``).

Events are identified by ``(session_id, sequence_id)`` and are never updated
or deleted. Sequence ids are assigned by a single authority per session (the
session process, via ``SequenceCounter``); two writers racing for the same id
is a caller bug and raises ``DuplicateSequenceError``.

Two stores are provided: ``InMemoryEventLog`` for tests and short-lived
tools, and ``SqlEventLog`` backed by the project database.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ticketforge.db.connection import get_session_maker
from ticketforge.db.models import RalphSession, SessionEventRecord
from ticketforge.errors import DuplicateSequenceError


class EventType(Enum):
    """Types of events a session can record."""
    START = "start"
    STATE_CHANGE = "state_change"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PROMPT = "prompt"
    END = "end"


# State before any state_change; reported states are free-form strings
UNKNOWN_STATE = "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sequence_sort_key(sequence_id: str) -> Tuple[int, int, str]:
    """
    Ordering key for sequence ids.

    Purely numeric ids compare numerically ("9" before "10"); anything else
    (ULIDs, zero-padded strings) compares lexicographically after them.
    """
    if sequence_id.isdigit():
        return (0, int(sequence_id), "")
    return (1, 0, sequence_id)


@dataclass(frozen=True)
class SessionEvent:
    """A single logged event."""
    session_id: str
    sequence_id: str
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "sequence_id": self.sequence_id,
            "type": self.type.value,
            "payload": dict(self.payload),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionEvent":
        """Create SessionEvent from dictionary."""
        created_at = data.get("created_at")
        return cls(
            session_id=data["session_id"],
            sequence_id=str(data["sequence_id"]),
            type=EventType(data["type"]),
            payload=data.get("payload") or {},
            created_at=datetime.fromisoformat(created_at) if created_at else _utcnow(),
        )

    # Convenience constructors

    @classmethod
    def start(cls, session_id: str, sequence_id: str, **payload) -> "SessionEvent":
        return cls(session_id, sequence_id, EventType.START, payload)

    @classmethod
    def state_change(cls, session_id: str, sequence_id: str, state: str, **metadata) -> "SessionEvent":
        return cls(session_id, sequence_id, EventType.STATE_CHANGE, {"state": state, **metadata})

    @classmethod
    def end(cls, session_id: str, sequence_id: str, reason: Optional[str] = None) -> "SessionEvent":
        payload = {"reason": reason} if reason else {}
        return cls(session_id, sequence_id, EventType.END, payload)


class SequenceCounter:
    """
    Hands out orderable sequence ids for one session.

    Ids are zero-padded decimal strings so they sort the same way both
    numerically and lexicographically. Not shared across processes: each
    session owns exactly one counter.
    """

    WIDTH = 12

    def __init__(self, last: int = 0):
        self._last = last
        self._lock = threading.Lock()

    @classmethod
    def resume_after(cls, last_sequence_id: Optional[str]) -> "SequenceCounter":
        """Continue numbering after an existing id (e.g. after a restart)."""
        if last_sequence_id and last_sequence_id.isdigit():
            return cls(int(last_sequence_id))
        return cls()

    def next_id(self) -> str:
        with self._lock:
            self._last += 1
            return f"{self._last:0{self.WIDTH}d}"


# =============================================================================
# Stores
# =============================================================================

class EventLog:
    """
    Interface for session event stores.

    ``append`` is the only mutation. ``events`` returns a session's events in
    sequence order regardless of the order they were appended in.
    """

    def append(self, event: SessionEvent) -> None:
        raise NotImplementedError

    def events(self, session_id: str) -> List[SessionEvent]:
        raise NotImplementedError

    def session_ids(self) -> List[str]:
        raise NotImplementedError

    def bind_session(self, session_id: str, ticket_id: str, mode: str = "terminal",
                     container_name: Optional[str] = None) -> None:
        """Record which ticket a session works on."""
        raise NotImplementedError

    def sessions_for_ticket(self, ticket_id: str) -> List[str]:
        raise NotImplementedError

    def last_sequence_id(self, session_id: str) -> Optional[str]:
        events = self.events(session_id)
        return events[-1].sequence_id if events else None


class InMemoryEventLog(EventLog):
    """Event log kept in process memory. Safe for concurrent writers."""

    def __init__(self):
        self._events: Dict[str, Dict[str, SessionEvent]] = {}
        self._bindings: Dict[str, Tuple[str, str, Optional[str]]] = {}
        self._lock = threading.Lock()

    def append(self, event: SessionEvent) -> None:
        with self._lock:
            session_events = self._events.setdefault(event.session_id, {})
            if event.sequence_id in session_events:
                raise DuplicateSequenceError(event.session_id, event.sequence_id)
            session_events[event.sequence_id] = event

    def events(self, session_id: str) -> List[SessionEvent]:
        with self._lock:
            stored = list(self._events.get(session_id, {}).values())
        return sorted(stored, key=lambda e: sequence_sort_key(e.sequence_id))

    def session_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._events)

    def bind_session(self, session_id: str, ticket_id: str, mode: str = "terminal",
                     container_name: Optional[str] = None) -> None:
        with self._lock:
            self._bindings[session_id] = (ticket_id, mode, container_name)

    def sessions_for_ticket(self, ticket_id: str) -> List[str]:
        with self._lock:
            return sorted(sid for sid, (tid, _, _) in self._bindings.items() if tid == ticket_id)


class SqlEventLog(EventLog):
    """
    Event log stored in the ``session_events`` table.

    Uses the session maker from ``init_db`` unless one is passed in.
    """

    def __init__(self, session_maker: Optional[sessionmaker] = None):
        self._session_maker = session_maker

    @property
    def session_maker(self) -> sessionmaker:
        return self._session_maker or get_session_maker()

    def append(self, event: SessionEvent) -> None:
        record = SessionEventRecord(
            session_id=event.session_id,
            sequence_id=event.sequence_id,
            type=event.type.value,
            payload=dict(event.payload),
            created_at=event.created_at,
        )
        with self.session_maker() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateSequenceError(event.session_id, event.sequence_id)

    def events(self, session_id: str) -> List[SessionEvent]:
        with self.session_maker() as session:
            rows = session.scalars(
                select(SessionEventRecord).where(SessionEventRecord.session_id == session_id)
            ).all()
            events = [
                SessionEvent(
                    session_id=row.session_id,
                    sequence_id=row.sequence_id,
                    type=EventType(row.type),
                    payload=row.payload or {},
                    created_at=row.created_at,
                )
                for row in rows
            ]
        return sorted(events, key=lambda e: sequence_sort_key(e.sequence_id))

    def session_ids(self) -> List[str]:
        with self.session_maker() as session:
            return list(session.scalars(
                select(SessionEventRecord.session_id).distinct().order_by(SessionEventRecord.session_id)
            ).all())

    def bind_session(self, session_id: str, ticket_id: str, mode: str = "terminal",
                     container_name: Optional[str] = None) -> None:
        with self.session_maker() as session:
            existing = session.get(RalphSession, session_id)
            if existing is None:
                session.add(RalphSession(id=session_id, ticket_id=ticket_id, mode=mode,
                                         container_name=container_name))
            else:
                existing.ticket_id = ticket_id
                existing.mode = mode
                existing.container_name = container_name
            session.commit()

    def sessions_for_ticket(self, ticket_id: str) -> List[str]:
        with self.session_maker() as session:
            return list(session.scalars(
                select(RalphSession.id).where(RalphSession.ticket_id == ticket_id).order_by(RalphSession.id)
            ).all())


def cancel_session(event_log: EventLog, session_id: str, sequence_id: str,
                   reason: str = "cancelled") -> SessionEvent:
    """
    Cancel a session by appending its ``end`` event.

    There is no other cancel channel; whatever drives the session watches for
    the end event.
    """
    event = SessionEvent.end(session_id, sequence_id, reason=reason)
    event_log.append(event)
    return event

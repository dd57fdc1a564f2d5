"""
Database Models for ticketforge
===============================

SQLAlchemy models for the session event log and the per-ticket workflow
records the phase tracker reads.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class RalphSession(Base):
    """Binds an agent session to the ticket it works on."""
    __tablename__ = "ralph_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ticket_id: Mapped[str] = mapped_column(String(64), index=True)
    mode: Mapped[str] = mapped_column(String(20), default="terminal")  # terminal, sandbox
    container_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SessionEventRecord(Base):
    """One entry of a session's append-only event log."""
    __tablename__ = "session_events"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence_id", name="uq_session_events_sequence"),
        Index("idx_session_events_session", "session_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64))
    sequence_id: Mapped[str] = mapped_column(String(64))
    type: Mapped[str] = mapped_column(String(32))  # start, state_change, tool_call, tool_result, prompt, end
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TicketWorkflowState(Base):
    """Workflow bookkeeping kept per ticket by the review loop."""
    __tablename__ = "ticket_workflow_state"

    ticket_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Legacy records may carry a phase written by older clients
    current_phase: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    review_iteration: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ReviewFinding(Base):
    """A single finding raised by an automated review pass."""
    __tablename__ = "review_findings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(String(64), index=True)
    iteration: Mapped[int] = mapped_column(Integer, default=1)
    agent: Mapped[str] = mapped_column(String(64), default="code-reviewer")
    severity: Mapped[str] = mapped_column(String(20))  # critical, major, minor, suggestion
    status: Mapped[str] = mapped_column(String(20), default="open")  # open, fixed, wont_fix
    summary: Mapped[str] = mapped_column(Text, default="")
    file_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)


class DemoScript(Base):
    """Manual verification script generated for a ticket."""
    __tablename__ = "demo_scripts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(String(64), unique=True)
    steps: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    passed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

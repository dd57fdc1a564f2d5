"""
Database Package
================

Exports key database components.
"""

from ticketforge.db.models import (
    Base,
    RalphSession,
    SessionEventRecord,
    TicketWorkflowState,
    ReviewFinding,
    DemoScript,
)
from ticketforge.db.connection import init_db, get_session_maker, get_db, dispose_db

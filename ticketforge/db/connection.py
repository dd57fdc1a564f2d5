"""
Database Connection Manager
===========================

Handles the connection to the project-specific SQLite database.
"""

from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ticketforge.db.models import Base
from ticketforge.errors import DatabaseNotInitializedError

DB_DIRNAME = ".ticketforge"
DB_FILENAME = "sessions.db"

_session_maker: Optional[sessionmaker] = None
_engine: Optional[Engine] = None


def database_url(project_path: Path) -> str:
    return f"sqlite:///{Path(project_path) / DB_DIRNAME / DB_FILENAME}"


def init_db(project_path: Path, url: Optional[str] = None) -> sessionmaker:
    """
    Initialize the database connection and create tables if they don't exist.
    The database file is stored in .ticketforge/sessions.db within the project root.

    Args:
        project_path: Project root
        url: Explicit SQLAlchemy URL (e.g. ``sqlite://`` for an in-memory database)
    """
    global _session_maker, _engine

    if url is None:
        db_dir = Path(project_path) / DB_DIRNAME
        db_dir.mkdir(parents=True, exist_ok=True)
        url = database_url(project_path)

    dispose_db()
    _engine = create_engine(url, echo=False)
    Base.metadata.create_all(_engine)

    _session_maker = sessionmaker(_engine, expire_on_commit=False)
    return _session_maker


def get_session_maker() -> sessionmaker:
    """Get the configured session maker."""
    if _session_maker is None:
        raise DatabaseNotInitializedError("Database not initialized. Call init_db() first.")
    return _session_maker


def get_db() -> Iterator[Session]:
    """Yield a database session from the configured maker."""
    maker = get_session_maker()
    with maker() as session:
        yield session


def dispose_db() -> None:
    """Close the engine and forget the session maker."""
    global _session_maker, _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_maker = None

"""Database operations for harness session state.

Uses SQLAlchemy Core/ORM constructs only, no raw SQL strings. Every
operation takes an optional ``engine``; without one it uses the engine
set up by init_database().
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from nanoclaw_harness.db.models import Base, SessionRecord, create_engine_for_path

logger = logging.getLogger(__name__)

_engine: Engine | None = None


def open_database(db_path: str) -> Engine:
    """Create an engine for *db_path* and create tables if needed.

    Args:
        db_path: Absolute path to the SQLite database file.
            Use ':memory:' for testing.

    Returns:
        A new engine bound to that database.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine_for_path(db_path)
    Base.metadata.create_all(engine)
    logger.info("Database initialized at %s", db_path)
    return engine


def init_database(db_path: str) -> None:
    """Initialize the module-level database used when no engine is passed."""
    global _engine
    _engine = open_database(db_path)


def get_engine() -> Engine:
    """Return the active database engine.

    Raises:
        RuntimeError: If init_database() has not been called.
    """
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


def _now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


# --- Session operations ---


def get_session(group_folder: str, engine: Engine | None = None) -> str | None:
    """Fetch the stored session id for a workspace folder.

    Args:
        group_folder: The workspace folder name.
        engine: Database to read. Defaults to get_engine().

    Returns:
        The session id, or None if no session is stored.
    """
    with Session(engine or get_engine()) as session:
        row = session.get(SessionRecord, group_folder)
        return row.session_id if row else None


def set_session(group_folder: str, session_id: str, engine: Engine | None = None) -> None:
    """Store or replace the session id for a workspace folder.

    Args:
        group_folder: The workspace folder name.
        session_id: The session id to persist.
        engine: Database to write. Defaults to get_engine().
    """
    with Session(engine or get_engine()) as session:
        stmt = sqlite_insert(SessionRecord).values(
            group_folder=group_folder, session_id=session_id, updated_at=_now_iso()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["group_folder"],
            set_={"session_id": stmt.excluded.session_id, "updated_at": stmt.excluded.updated_at},
        )
        session.execute(stmt)
        session.commit()


def delete_session(group_folder: str, engine: Engine | None = None) -> None:
    """Remove the stored session id for a workspace folder, if any."""
    with Session(engine or get_engine()) as session:
        session.execute(delete(SessionRecord).where(SessionRecord.group_folder == group_folder))
        session.commit()


def get_all_sessions(engine: Engine | None = None) -> dict[str, str]:
    """Fetch all stored session ids.

    Returns:
        Dict mapping group_folder -> session_id.
    """
    with Session(engine or get_engine()) as session:
        rows = session.scalars(select(SessionRecord)).all()
        return {r.group_folder: r.session_id for r in rows}

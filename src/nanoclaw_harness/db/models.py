"""SQLAlchemy ORM models for the harness database."""

from __future__ import annotations

from sqlalchemy import Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base for all tables."""


class SessionRecord(Base):
    """The agent session id for one workspace folder."""

    __tablename__ = "sessions"

    group_folder: Mapped[str] = mapped_column(Text, primary_key=True)
    session_id: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)


def create_engine_for_path(db_path: str) -> Engine:
    """Create a SQLite engine for *db_path*.

    ':memory:' gets a StaticPool so every session sees the same database.
    """
    if db_path == ":memory:":
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(f"sqlite:///{db_path}")

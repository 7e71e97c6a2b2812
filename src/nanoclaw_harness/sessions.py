"""Session continuity: one stored session id per workspace folder.

Callers receive a SessionStore rather than touching files directly, so
tests can substitute MemorySessionStore. Writes are last-writer-wins;
concurrent turns against the same folder must be serialized by the caller.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from nanoclaw_harness.db import operations as db_ops
from nanoclaw_harness.errors import StorageError

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session-id"
_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_folder(folder: str) -> str:
    """Return *folder* if it is a safe single path component.

    Raises:
        ValueError: If the name is empty or contains path separators.
    """
    if not _FOLDER_RE.match(folder):
        raise ValueError(f"Invalid workspace folder name: {folder!r}")
    return folder


class SessionStore(Protocol):
    """Persistence for per-folder session ids."""

    def load(self, folder: str) -> str | None:
        """Return the stored session id, or None if there is none."""
        ...

    def save(self, folder: str, session_id: str) -> None:
        """Store *session_id*, replacing any previous value."""
        ...

    def reset(self, folder: str) -> None:
        """Forget the session so the next load returns None."""
        ...


class MemorySessionStore:
    """In-process session store."""

    def __init__(self) -> None:
        self._sessions: dict[str, str] = {}

    def load(self, folder: str) -> str | None:
        return self._sessions.get(folder)

    def save(self, folder: str, session_id: str) -> None:
        self._sessions[folder] = session_id

    def reset(self, folder: str) -> None:
        self._sessions.pop(folder, None)


class FileSessionStore:
    """One plain-text file per folder at ``<root>/<folder>/session-id``.

    Args:
        root: Directory holding per-folder session directories.
    """

    def __init__(self, root: Path) -> None:
        """Initialize with the sessions root directory."""
        self.root = root

    def path_for(self, folder: str) -> Path:
        """Return the session file path for *folder*."""
        return self.root / validate_folder(folder) / SESSION_FILE_NAME

    def load(self, folder: str) -> str | None:
        path = self.path_for(folder)
        try:
            value = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Could not read session file {path}: {exc}") from exc
        return value or None

    def save(self, folder: str, session_id: str) -> None:
        path = self.path_for(folder)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a crash never leaves a half-written id.
            tmp = path.with_suffix(".tmp")
            tmp.write_text(session_id + "\n")
            tmp.replace(path)
        except OSError as exc:
            raise StorageError(f"Could not write session file {path}: {exc}") from exc
        logger.debug("Session for %s saved to %s", folder, path)

    def reset(self, folder: str) -> None:
        path = self.path_for(folder)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Could not remove session file {path}: {exc}") from exc
        logger.info("Session for %s reset", folder)


class SqlSessionStore:
    """Session ids in the SQLite ``sessions`` table.

    Each store owns its engine, so two stores on different paths never
    see each other's rows.

    Args:
        db_path: SQLite database path, or ':memory:'.
    """

    def __init__(self, db_path: str) -> None:
        """Open (and create if needed) the database."""
        self.db_path = db_path
        try:
            self.engine = db_ops.open_database(db_path)
        except (OSError, SQLAlchemyError) as exc:
            raise StorageError(f"Could not open session database {db_path}: {exc}") from exc

    def load(self, folder: str) -> str | None:
        folder = validate_folder(folder)
        try:
            return db_ops.get_session(folder, engine=self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not read session for {folder}: {exc}") from exc

    def save(self, folder: str, session_id: str) -> None:
        folder = validate_folder(folder)
        try:
            db_ops.set_session(folder, session_id, engine=self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not save session for {folder}: {exc}") from exc

    def reset(self, folder: str) -> None:
        folder = validate_folder(folder)
        try:
            db_ops.delete_session(folder, engine=self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not reset session for {folder}: {exc}") from exc
        logger.info("Session for %s reset", folder)


def open_session_store(backend: str, data_dir: Path) -> SessionStore:
    """Build the configured session store.

    Args:
        backend: 'file' or 'sqlite'.
        data_dir: Harness data directory.

    Returns:
        A SessionStore rooted in *data_dir*.
    """
    if backend == "sqlite":
        return SqlSessionStore(str(data_dir / "harness.db"))
    return FileSessionStore(data_dir / "sessions")

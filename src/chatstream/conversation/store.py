"""Session persistence.

This module defines the ``SessionStore`` contract the orchestrator depends on
and two implementations: an in-memory store and a file-based JSON store
with fcntl locking and atomic file replacement. Both hand out independent copies, so mutating a loaded
session never changes durable state until it is saved.
"""

import asyncio
import copy
import fcntl
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from ..exceptions import SessionNotFoundError, StoreError, ValidationError
from ..logging import get_logger
from .session import ChatSession

logger = get_logger(__name__)


class SessionStore(ABC):
    """Durable home of conversation sessions between completion calls.

    Implementations must raise ``SessionNotFoundError`` for an unknown id
    and ``StoreError`` for every other failure, never the other way round.
    """

    @abstractmethod
    async def find_by_id(self, session_id: str) -> ChatSession:
        """Load a session.

        Raises:
            SessionNotFoundError: If no session exists for ``session_id``
            StoreError: If the lookup fails (operation="lookup")
        """

    @abstractmethod
    async def create(self, session: ChatSession) -> None:
        """Persist a new session.

        Raises:
            StoreError: If the id is taken or the write fails (operation="create")
        """

    @abstractmethod
    async def save(self, session: ChatSession) -> None:
        """Persist an existing session, replacing its stored state.

        Raises:
            StoreError: If the write fails (operation="save")
        """


class InMemorySessionStore(SessionStore):
    """Process-local session store.

    Sessions are kept as serialized snapshots and are lost when the
    process exits.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def find_by_id(self, session_id: str) -> ChatSession:
        async with self._lock:
            data = self._sessions.get(session_id)
        if data is None:
            raise SessionNotFoundError(session_id)
        return ChatSession.from_dict(copy.deepcopy(data))

    async def create(self, session: ChatSession) -> None:
        async with self._lock:
            if session.id in self._sessions:
                raise StoreError(
                    f"Session already exists: {session.id}",
                    operation="create",
                    session_id=session.id
                )
            self._sessions[session.id] = session.to_dict()

    async def save(self, session: ChatSession) -> None:
        async with self._lock:
            self._sessions[session.id] = session.to_dict()

    def get_session_ids(self) -> List[str]:
        """Get list of all stored session IDs."""
        return list(self._sessions.keys())


class FileSessionStore(SessionStore):
    """File-based JSON session store.

    Each session lives in ``<storage_dir>/<session_id>.json``. Writes go to a
    temporary file that atomically replaces the session file, so a reader
    never sees a partial record and a failed write keeps the previous one.
    Writers serialize on an exclusive lock of ``<storage_dir>/.lock``.
    Blocking file I/O runs in a worker thread so the event loop keeps
    serving other calls.

    Attributes:
        storage_dir: Directory path for storing session files
    """

    def __init__(self, storage_dir: str = "data/chats"):
        """Initialize the file store.

        Args:
            storage_dir: Directory path for storing session files
        """
        self.storage_dir = Path(storage_dir)

        # Create storage directory if it doesn't exist
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    async def find_by_id(self, session_id: str) -> ChatSession:
        return await asyncio.to_thread(self._load_session, session_id)

    async def create(self, session: ChatSession) -> None:
        await asyncio.to_thread(self._write_session, session, "create")

    async def save(self, session: ChatSession) -> None:
        await asyncio.to_thread(self._write_session, session, "save")

    def get_session_ids(self) -> List[str]:
        """Get list of all session IDs from the session files."""
        return [session_file.stem for session_file in self.storage_dir.glob("*.json")]

    def _get_session_path(self, session_id: str) -> Path:
        """Get file path for session.

        Raises:
            StoreError: If the id could escape the storage directory
        """
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise StoreError(
                f"Invalid session id: {session_id!r}",
                operation="lookup",
                session_id=session_id
            )
        return self.storage_dir / f"{session_id}.json"

    def _load_session(self, session_id: str) -> ChatSession:
        session_path = self._get_session_path(session_id)
        if not session_path.exists():
            raise SessionNotFoundError(session_id)

        try:
            with open(session_path, "r", encoding="utf-8") as f:
                # Acquire shared lock for reading
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = json.load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            return ChatSession.from_dict(data)
        except FileNotFoundError:
            raise SessionNotFoundError(session_id) from None
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(
                f"Failed to load session {session_id}: {e}",
                extra={"extra_fields": {
                    "session_id": session_id,
                    "error_type": type(e).__name__,
                    "operation": "lookup"
                }}
            )
            raise StoreError(
                f"Failed to read session from disk: {e}",
                operation="lookup",
                session_id=session_id,
                details={"path": str(session_path), "error": str(e)}
            ) from e

    def _write_session(self, session: ChatSession, operation: str) -> None:
        """Write a session so readers only ever see a complete file.

        The record is serialized before the disk is touched, written to a
        temporary file in the storage directory and then published: ``create``
        links it to the final path, which fails if the id is taken, and
        ``save`` replaces the previous file. A failed write leaves the
        previously stored state in place.
        """
        session_path = self._get_session_path(session.id)

        try:
            payload = json.dumps(session.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise StoreError(
                f"Failed to serialize session: {e}",
                operation=operation,
                session_id=session.id,
                details={"path": str(session_path), "error": str(e)}
            ) from e

        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.storage_dir, prefix=f".{session.id}.", suffix=".tmp"
            )
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())

            with open(self.storage_dir / ".lock", "a") as lock_file:
                # Exclusive lock serializes writers of this directory
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    if operation == "create":
                        os.link(tmp_name, session_path)
                    else:
                        os.replace(tmp_name, session_path)
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except FileExistsError as e:
            raise StoreError(
                f"Session already exists: {session.id}",
                operation=operation,
                session_id=session.id,
                details={"path": str(session_path)}
            ) from e
        except OSError as e:
            raise StoreError(
                f"Failed to write session to disk: {e}",
                operation=operation,
                session_id=session.id,
                details={"path": str(session_path), "error": str(e)}
            ) from e
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

"""
Session Store - Persistent session state.

File layout:
  {base_path}/sessions/{session_id}/state.json
"""

import asyncio
import logging
import shutil
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from chatflow.errors import SessionNotFoundError
from chatflow.schemas.session_state import Session
from chatflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """
    Generate session ID in format: session_YYYYMMDD_HHMMSS_{uuid}.

    Returns:
        Session ID string (e.g., "session_20260206_143022_abc12345")
    """
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    short_uuid = uuid.uuid4().hex[:8]
    return f"session_{timestamp}_{short_uuid}"


class SessionStore(ABC):
    """Where sessions live between driving events."""

    @abstractmethod
    async def write_state(self, session: Session) -> None: ...

    @abstractmethod
    async def read_state(self, session_id: str) -> Session | None: ...

    @abstractmethod
    async def list_sessions(
        self,
        status: str | None = None,
        conversation_id: str | None = None,
        limit: int | None = 100,
    ) -> list[Session]: ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    async def load(self, session_id: str) -> Session:
        """Read a session that must exist."""
        session = await self.read_state(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return session

    async def session_exists(self, session_id: str) -> bool:
        return await self.read_state(session_id) is not None


def _filter_sessions(
    sessions: list[Session],
    status: str | None,
    conversation_id: str | None,
    limit: int | None,
) -> list[Session]:
    matching = [
        s
        for s in sessions
        if (not status or s.status == status)
        and (not conversation_id or s.conversation_id == conversation_id)
    ]
    # Most recently updated first
    matching.sort(key=lambda s: s.updated_at, reverse=True)
    return matching[:limit]


class FileSessionStore(SessionStore):
    """
    Sessions as JSON documents on disk.

      {base_path}/sessions/{session_id}/state.json   # Single source of truth
    """

    def __init__(self, base_path: Path):
        """
        Initialize session store.

        Args:
            base_path: Base path for storage (e.g., ~/.chatflow/storage)
        """
        self.base_path = Path(base_path)
        self.sessions_dir = self.base_path / "sessions"

    def get_session_path(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def get_state_path(self, session_id: str) -> Path:
        return self.get_session_path(session_id) / "state.json"

    async def write_state(self, session: Session) -> None:
        """
        Atomically write state.json for a session.

        Uses temp file + rename for crash safety.
        """

        def _write():
            state_path = self.get_state_path(session.id)
            state_path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(state_path) as f:
                f.write(session.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote state.json for session {session.id}")

    async def read_state(self, session_id: str) -> Session | None:
        def _read():
            state_path = self.get_state_path(session_id)
            if not state_path.exists():
                return None
            return Session.model_validate_json(state_path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_sessions(
        self,
        status: str | None = None,
        conversation_id: str | None = None,
        limit: int | None = 100,
    ) -> list[Session]:
        """
        List sessions, optionally filtered by status or conversation.

        Most recently updated first; ``limit=None`` returns every match.

        Unreadable state files are logged and skipped.
        """

        def _scan():
            sessions: list[Session] = []
            if not self.sessions_dir.exists():
                return sessions

            for session_dir in self.sessions_dir.iterdir():
                if not session_dir.is_dir():
                    continue
                state_path = session_dir / "state.json"
                if not state_path.exists():
                    continue
                try:
                    sessions.append(
                        Session.model_validate_json(state_path.read_text(encoding="utf-8"))
                    )
                except (OSError, ValidationError) as e:
                    logger.warning(f"Failed to load {state_path}: {e}")
            return sessions

        sessions = await asyncio.to_thread(_scan)
        return _filter_sessions(sessions, status, conversation_id, limit)

    async def delete_session(self, session_id: str) -> bool:
        def _delete():
            session_path = self.get_session_path(session_id)
            if not session_path.exists():
                return False
            shutil.rmtree(session_path)
            logger.info(f"Deleted session {session_id}")
            return True

        return await asyncio.to_thread(_delete)


class InMemorySessionStore(SessionStore):
    """Sessions kept as serialized JSON in a dict, so callers never share instances."""

    def __init__(self) -> None:
        self._states: dict[str, str] = {}

    async def write_state(self, session: Session) -> None:
        self._states[session.id] = session.model_dump_json()

    async def read_state(self, session_id: str) -> Session | None:
        raw = self._states.get(session_id)
        return Session.model_validate_json(raw) if raw is not None else None

    async def list_sessions(
        self,
        status: str | None = None,
        conversation_id: str | None = None,
        limit: int | None = 100,
    ) -> list[Session]:
        sessions = [Session.model_validate_json(raw) for raw in self._states.values()]
        return _filter_sessions(sessions, status, conversation_id, limit)

    async def delete_session(self, session_id: str) -> bool:
        return self._states.pop(session_id, None) is not None

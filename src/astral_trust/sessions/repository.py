"""
Astral Core Trust Sessions - Repository Layer.
Storage port for session records and its in-memory implementation.
"""
from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
import structlog

from astral_trust.sessions.entities import SessionRecord, SessionStatus

logger = structlog.get_logger(__name__)


class SessionRepository(ABC):
    """Abstract session store. Returned records are copies owned by the caller."""

    @abstractmethod
    async def get(self, session_id: str) -> SessionRecord | None:
        """Get session by id."""

    @abstractmethod
    async def put(self, session: SessionRecord) -> None:
        """Insert or replace a session."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session record entirely."""

    @abstractmethod
    async def list_by_user(self, user_id: str,
                           status: SessionStatus | None = None) -> list[SessionRecord]:
        """Sessions belonging to a user, optionally filtered by status."""

    @abstractmethod
    async def list_ids(self, status: SessionStatus | None = None) -> list[str]:
        """Ids of all sessions, optionally filtered by status."""

    @abstractmethod
    async def list_all(self) -> list[SessionRecord]:
        """Every stored session."""


class InMemorySessionRepository(SessionRepository):
    """In-memory implementation for development and testing."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> SessionRecord | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def put(self, session: SessionRecord) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session.model_copy(deep=True)

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def list_by_user(self, user_id: str,
                           status: SessionStatus | None = None) -> list[SessionRecord]:
        return [s.model_copy(deep=True) for s in self._sessions.values()
                if s.user_id == user_id and (status is None or s.status == status)]

    async def list_ids(self, status: SessionStatus | None = None) -> list[str]:
        return [sid for sid, s in self._sessions.items() if status is None or s.status == status]

    async def list_all(self) -> list[SessionRecord]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

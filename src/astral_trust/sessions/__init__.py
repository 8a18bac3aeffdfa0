"""Sessions package - typed sessions with security state and activity auditing."""
from .entities import (
    AccessLevel,
    SecurityFlags,
    SessionHandle,
    SessionOptions,
    SessionRecord,
    SessionStatus,
    SessionType,
    TerminationReason,
)
from .manager import SessionManager
from .repository import InMemorySessionRepository, SessionRepository

__all__ = [
    "AccessLevel",
    "SecurityFlags",
    "SessionHandle",
    "SessionOptions",
    "SessionRecord",
    "SessionStatus",
    "SessionType",
    "TerminationReason",
    "SessionManager",
    "InMemorySessionRepository",
    "SessionRepository",
]

"""
Astral Core Trust Sessions - Domain entities.
Typed session records, security flags and the bounded activity log.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SessionType(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    EMERGENCY = "emergency"
    PROFESSIONAL = "professional"


class SessionStatus(str, Enum):
    """Session lifecycle state. Only ACTIVE is non-terminal."""
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    SUSPENDED = "suspended"


class AccessLevel(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return {"read": 0, "write": 1, "admin": 2}[self.value]

    def allows(self, required: AccessLevel) -> bool:
        return self.rank >= required.rank


class TerminationReason(str, Enum):
    LOGOUT = "logout"
    EXPIRED = "expired"
    IDLE_TIMEOUT = "idle_timeout"
    ABSOLUTE_TIMEOUT = "absolute_timeout"
    SECURITY_VIOLATION = "security_violation"
    SESSION_LIMIT_EXCEEDED = "session_limit_exceeded"
    SUSPENDED = "suspended"
    ADMIN_ACTION = "admin_action"
    SYSTEM_SHUTDOWN = "system_shutdown"


EXPIRY_REASONS = frozenset({
    TerminationReason.EXPIRED, TerminationReason.IDLE_TIMEOUT, TerminationReason.ABSOLUTE_TIMEOUT,
})
SECURITY_REASONS = frozenset({
    TerminationReason.SECURITY_VIOLATION, TerminationReason.SESSION_LIMIT_EXCEEDED,
})


class SecurityFlags(BaseModel):
    mfa_verified: bool = False
    biometric_verified: bool = False
    device_trusted: bool = False
    risk_score: int = Field(default=0, ge=0, le=100)


class ActivityEntry(BaseModel):
    timestamp: datetime
    action: str
    ip_address: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    """Session owned by the session manager."""
    session_id: str
    user_id: str | None = None
    user_role: str | None = None
    session_type: SessionType
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    max_idle_minutes: int = Field(..., ge=1)
    ip_address: str
    user_agent: str
    device_fingerprint: str | None = None
    patient_context: str | None = None
    access_level: AccessLevel = AccessLevel.READ
    consent_given: bool = False
    security_flags: SecurityFlags = Field(default_factory=SecurityFlags)
    activity_log: list[ActivityEntry] = Field(default_factory=list)
    termination_reason: TerminationReason | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def log_activity(self, entry: ActivityEntry, limit: int) -> None:
        """Append an entry, evicting the oldest beyond ``limit``."""
        self.activity_log.append(entry)
        if len(self.activity_log) > limit:
            del self.activity_log[:len(self.activity_log) - limit]


class SessionOptions(BaseModel):
    """Parameters for creating a session."""
    user_id: str | None = None
    user_role: str | None = None
    session_type: SessionType = SessionType.AUTHENTICATED
    ip_address: str = "0.0.0.0"
    user_agent: str = "Unknown"
    device_fingerprint: str | None = None
    access_level: AccessLevel = AccessLevel.READ
    consent_given: bool = False
    max_idle_minutes: int | None = Field(default=None, ge=1)
    security_flags: SecurityFlags = Field(default_factory=SecurityFlags)


class SessionHandle(BaseModel):
    session_id: str
    token: str
    expires_at: datetime

"""Astral Core Trust - Append-only, hash-chained audit trail."""
from __future__ import annotations
import asyncio
import hashlib
import hmac as hmac_mod
import json
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4
from pydantic import BaseModel, Field
import structlog

from astral_trust.config import AuditConfig
from astral_trust.utils import Clock, DateTimeUtils

logger = structlog.get_logger(__name__)


class AuditEventType(str, Enum):
    """Types of auditable events."""
    LOGIN = "login"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    SESSION_TIMEOUT = "session_timeout"
    SECURITY_EVENT = "security_event"
    EMERGENCY_ACCESS = "emergency_access"
    PHI_ACCESS = "phi_access"
    CONSENT_CHANGE = "consent_change"
    RETENTION_ACTION = "retention_action"
    CONFIGURATION_CHANGE = "configuration_change"
    CRISIS_ALERT = "crisis_alert"
    SYSTEM_EVENT = "system_event"


class AuditOutcome(str, Enum):
    """Outcome of audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
    ERROR = "error"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditResource(BaseModel):
    """Record the audited action touched."""
    resource_type: str
    resource_id: str
    contains_phi: bool = Field(default=False)


class AuditEvent(BaseModel):
    """Immutable audit log entry."""
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime
    event_type: AuditEventType
    action: str
    outcome: AuditOutcome = Field(default=AuditOutcome.SUCCESS)
    severity: AuditSeverity = Field(default=AuditSeverity.LOW)
    user_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    resource: AuditResource | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str | None = None
    event_hash: str | None = None
    model_config = {"frozen": True}

    def compute_hash(self, hmac_key: str = "") -> str:
        """Hash the event's identifying fields, chained to the previous hash.

        HMAC-SHA256 when a key is configured, plain SHA-256 otherwise.
        """
        data = {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "action": self.action,
            "outcome": self.outcome.value,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "resource_id": self.resource.resource_id if self.resource else None,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        if hmac_key:
            return hmac_mod.new(hmac_key.encode(), canonical.encode(), hashlib.sha256).hexdigest()
        return hashlib.sha256(canonical.encode()).hexdigest()

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "action": self.action,
            "outcome": self.outcome.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "resource_type": self.resource.resource_type if self.resource else None,
            "resource_id": self.resource.resource_id if self.resource else None,
            "contains_phi": self.resource.contains_phi if self.resource else False,
            "event_hash": self.event_hash,
        }


class AuditStore(ABC):
    """Abstract base for append-only audit storage backends."""

    @abstractmethod
    async def append(self, event: AuditEvent) -> None:
        """Append audit event."""

    @abstractmethod
    async def query(self, *, event_type: AuditEventType | None = None,
                    user_id: str | None = None, action: str | None = None,
                    start_time: datetime | None = None,
                    end_time: datetime | None = None, limit: int = 1000) -> list[AuditEvent]:
        """Query audit events in append order."""

    @abstractmethod
    async def all_events(self) -> list[AuditEvent]:
        """Return every stored event in append order."""


class InMemoryAuditStore(AuditStore):
    """In-memory audit store for testing and development."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()

    async def append(self, event: AuditEvent) -> None:
        async with self._lock:
            self._events.append(event)

    async def query(self, *, event_type: AuditEventType | None = None,
                    user_id: str | None = None, action: str | None = None,
                    start_time: datetime | None = None,
                    end_time: datetime | None = None, limit: int = 1000) -> list[AuditEvent]:
        async with self._lock:
            results = self._events
            if event_type is not None:
                results = [e for e in results if e.event_type == event_type]
            if user_id is not None:
                results = [e for e in results if e.user_id == user_id]
            if action is not None:
                results = [e for e in results if e.action == action]
            if start_time is not None:
                results = [e for e in results if e.timestamp >= start_time]
            if end_time is not None:
                results = [e for e in results if e.timestamp <= end_time]
            return list(results[:limit])

    async def all_events(self) -> list[AuditEvent]:
        async with self._lock:
            return list(self._events)


class AuditLogger:
    """Audit logger that chains every event to its predecessor.

    Calls are awaited by the services so that security-relevant events are
    durable before the triggering operation reports success.
    """

    def __init__(self, store: AuditStore | None = None, config: AuditConfig | None = None,
                 clock: Clock | None = None) -> None:
        self._store = store or InMemoryAuditStore()
        self._config = config or AuditConfig()
        self._clock = clock or DateTimeUtils.utc_now
        self._hmac_key = (self._config.signing_key.get_secret_value()
                          if self._config.signing_key else "")
        self._last_hash: str | None = None
        self._lock = asyncio.Lock()

    @property
    def store(self) -> AuditStore:
        return self._store

    async def log_event(self, event_type: AuditEventType, action: str, *,
                        user_id: str | None = None, session_id: str | None = None,
                        ip_address: str | None = None,
                        severity: AuditSeverity = AuditSeverity.LOW,
                        outcome: AuditOutcome = AuditOutcome.SUCCESS,
                        resource: AuditResource | None = None,
                        details: dict[str, Any] | None = None) -> AuditEvent:
        async with self._lock:
            event = AuditEvent(
                timestamp=self._clock(), event_type=event_type, action=action,
                outcome=outcome, severity=severity, user_id=user_id,
                session_id=session_id, ip_address=ip_address, resource=resource,
                details=details or {},
                previous_hash=self._last_hash if self._config.enable_hash_chain else None,
            )
            if self._config.enable_hash_chain:
                event = event.model_copy(update={"event_hash": event.compute_hash(self._hmac_key)})
            await self._store.append(event)
            if self._config.enable_hash_chain:
                self._last_hash = event.event_hash
        if severity in (AuditSeverity.HIGH, AuditSeverity.CRITICAL):
            logger.warning("audit_event", **event.to_log_dict())
        else:
            logger.info("audit_event", **event.to_log_dict())
        return event

    async def log_phi_access(self, user_id: str | None, session_id: str, patient_id: str,
                             *, consent_given: bool, ip_address: str | None = None) -> AuditEvent:
        """Record access to a patient's protected health information."""
        return await self.log_event(
            AuditEventType.PHI_ACCESS, "patient_context_attached",
            user_id=user_id, session_id=session_id, ip_address=ip_address,
            severity=AuditSeverity.MEDIUM if consent_given else AuditSeverity.HIGH,
            outcome=AuditOutcome.SUCCESS if consent_given else AuditOutcome.DENIED,
            resource=AuditResource(resource_type="patient", resource_id=patient_id,
                                   contains_phi=True),
            details={"consent_given": consent_given},
        )

    async def verify_chain(self) -> bool:
        """Recompute every hash and check each link to its predecessor."""
        if not self._config.enable_hash_chain:
            return True
        previous: str | None = None
        for event in await self._store.all_events():
            if event.previous_hash != previous:
                return False
            if event.compute_hash(self._hmac_key) != event.event_hash:
                return False
            previous = event.event_hash
        return True

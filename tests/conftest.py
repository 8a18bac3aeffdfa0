"""
Pytest configuration and fixtures for Astral Core Trust testing
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from astral_trust.audit import AuditLogger, InMemoryAuditStore
from astral_trust.config import (
    AuditConfig,
    ConsentConfig,
    CrisisConfig,
    EscalationConfig,
    NotificationConfig,
    RetentionConfig,
    SessionConfig,
)
from astral_trust.consent.service import ConsentService
from astral_trust.crisis.engine import CrisisInterventionEngine
from astral_trust.crisis.history import CrisisHistoryStore
from astral_trust.infrastructure.memory import InMemoryPersonalDataStore, InMemoryResponderRegistry
from astral_trust.infrastructure.notifications import InMemoryNotificationSink
from astral_trust.sessions.manager import SessionManager

EPOCH = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock injected wherever services read the current time."""

    def __init__(self, now: datetime = EPOCH) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Fresh fake clock pinned to a fixed instant."""
    return FakeClock()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit(audit_store: InMemoryAuditStore, clock: FakeClock) -> AuditLogger:
    """Hash-chained audit logger writing to the in-memory store."""
    return AuditLogger(audit_store, AuditConfig(signing_key="test-signing-key"), clock=clock)


@pytest.fixture
def crisis_config() -> CrisisConfig:
    return CrisisConfig(fingerprint_key="test-fingerprint-key")


@pytest.fixture
def history(crisis_config: CrisisConfig, clock: FakeClock) -> CrisisHistoryStore:
    return CrisisHistoryStore(config=crisis_config, clock=clock)


@pytest.fixture
def notifier() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def responders() -> InMemoryResponderRegistry:
    return InMemoryResponderRegistry(on_call=["responder_1", "responder_2"],
                                     counselors=["counselor_1"])


@pytest.fixture
def engine(history: CrisisHistoryStore, audit: AuditLogger, notifier: InMemoryNotificationSink,
           responders: InMemoryResponderRegistry, crisis_config: CrisisConfig,
           clock: FakeClock) -> CrisisInterventionEngine:
    """Crisis engine wired to in-memory collaborators."""
    return CrisisInterventionEngine(
        history, audit, notifier=notifier, responders=responders,
        config=crisis_config, escalation=EscalationConfig(), clock=clock,
    )


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        max_concurrent_sessions=3, default_idle_minutes=30, absolute_timeout_hours=8,
        token_secret="test-session-secret-with-enough-length-0123",
    )


@pytest.fixture
def session_manager(audit: AuditLogger, session_config: SessionConfig,
                    clock: FakeClock) -> SessionManager:
    """Session manager over an in-memory repository."""
    return SessionManager(audit, config=session_config, clock=clock)


@pytest.fixture
def data_store() -> InMemoryPersonalDataStore:
    return InMemoryPersonalDataStore()


@pytest.fixture
def consent_service(audit: AuditLogger, data_store: InMemoryPersonalDataStore,
                    clock: FakeClock) -> ConsentService:
    """Consent service with default settings and no installed policies."""
    return ConsentService(audit, data_store, config=ConsentConfig(),
                          retention_config=RetentionConfig(), clock=clock)


@pytest.fixture
def notification_config() -> NotificationConfig:
    return NotificationConfig(service_url="http://notifications.test", max_retries=2,
                              retry_backoff_seconds=0.0)

"""
Astral Core Trust - Service composition.
Wires the audit logger, crisis engine, session manager and consent service
from one configuration, and owns their start/stop lifecycle.
"""
from __future__ import annotations

from dataclasses import dataclass

import structlog

from astral_trust.audit import AuditEventType, AuditLogger, AuditStore
from astral_trust.config import TrustConfig
from astral_trust.consent.service import ConsentService
from astral_trust.crisis.engine import CrisisInterventionEngine
from astral_trust.crisis.history import CrisisHistoryStore
from astral_trust.infrastructure.memory import InMemoryPersonalDataStore, InMemoryResponderRegistry
from astral_trust.infrastructure.notifications import HttpNotificationSink
from astral_trust.ports import ExternalClassifier, NotificationSink, PersonalDataStore, ResponderRegistry
from astral_trust.sessions.manager import SessionManager
from astral_trust.utils import Clock

logger = structlog.get_logger(__name__)


@dataclass
class TrustCore:
    """Explicitly constructed trust services, passed by reference to request handlers."""
    config: TrustConfig
    audit: AuditLogger
    crisis: CrisisInterventionEngine
    sessions: SessionManager
    consent: ConsentService
    notifier: NotificationSink | None = None
    _started: bool = False

    @classmethod
    def build(cls, config: TrustConfig | None = None, *,
              audit_store: AuditStore | None = None,
              data_store: PersonalDataStore | None = None,
              notifier: NotificationSink | None = None,
              responders: ResponderRegistry | None = None,
              external_classifier: ExternalClassifier | None = None,
              clock: Clock | None = None) -> TrustCore:
        config = config or TrustConfig.load()
        audit = AuditLogger(audit_store, config.audit, clock=clock)
        notifier = notifier or HttpNotificationSink(config.notification)
        crisis = CrisisInterventionEngine(
            CrisisHistoryStore(config=config.crisis, clock=clock), audit,
            notifier=notifier,
            responders=responders or InMemoryResponderRegistry(),
            external_classifier=external_classifier,
            config=config.crisis, escalation=config.escalation, clock=clock,
        )
        sessions = SessionManager(audit, config=config.session, clock=clock)
        consent = ConsentService(audit, data_store or InMemoryPersonalDataStore(),
                                 config=config.consent, retention_config=config.retention,
                                 clock=clock)
        return cls(config=config, audit=audit, crisis=crisis, sessions=sessions, consent=consent,
                   notifier=notifier)

    async def start(self) -> None:
        if self._started:
            return
        await self.sessions.start()
        await self.consent.start()
        self._started = True
        await self.audit.log_event(AuditEventType.SYSTEM_EVENT, "trust_core_started")
        logger.info("trust_core_started", environment=self.config.service.environment)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.consent.stop()
        await self.sessions.stop(terminate_sessions=True)
        if isinstance(self.notifier, HttpNotificationSink):
            await self.notifier.close()
        self._started = False
        await self.audit.log_event(AuditEventType.SYSTEM_EVENT, "trust_core_stopped")
        logger.info("trust_core_stopped", crisis_stats=self.crisis.stats)

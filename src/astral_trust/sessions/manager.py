"""
Astral Core Trust Sessions - Session manager.

Creates, validates and terminates typed sessions. Enforces the per-user
concurrency limit, IP binding, sliding idle expiry and an absolute lifetime,
and sweeps stale sessions in the background.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import jwt
import structlog

from astral_trust.audit import AuditEventType, AuditLogger, AuditOutcome, AuditResource, AuditSeverity
from astral_trust.config import SessionConfig
from astral_trust.exceptions import SecurityViolationError, SessionUnauthorizedError, ValidationError
from astral_trust.scheduler import PeriodicTask
from astral_trust.sessions.entities import (
    EXPIRY_REASONS,
    SECURITY_REASONS,
    AccessLevel,
    ActivityEntry,
    SecurityFlags,
    SessionHandle,
    SessionOptions,
    SessionRecord,
    SessionStatus,
    SessionType,
    TerminationReason,
)
from astral_trust.sessions.repository import InMemorySessionRepository, SessionRepository
from astral_trust.utils import Clock, CryptoUtils, DateTimeUtils, KeyedLock

logger = structlog.get_logger(__name__)

_FLAG_FIELDS = frozenset(SecurityFlags.model_fields)


class SessionManager:
    """
    Manages session lifecycle with per-record locking.

    Mutations of one session are serialized on that session's lock; creation
    and limit enforcement are serialized per user. Nothing locks the whole table.
    """

    def __init__(self, audit: AuditLogger, repository: SessionRepository | None = None,
                 config: SessionConfig | None = None, clock: Clock | None = None) -> None:
        self._audit = audit
        self._repo = repository or InMemorySessionRepository()
        self._config = config or SessionConfig()
        self._clock = clock or DateTimeUtils.utc_now
        self._session_locks = KeyedLock()
        self._user_locks = KeyedLock()
        self._secret = self._config.token_secret.get_secret_value()
        self._sweeper = PeriodicTask("session_cleanup", self.cleanup_expired_sessions,
                                     self._config.cleanup_interval_seconds)
        self._stats = {"sessions_created": 0, "sessions_terminated": 0,
                       "sessions_expired": 0, "security_violations": 0}

    async def start(self) -> None:
        self._sweeper.start()
        logger.info("session_manager_started",
                    cleanup_interval_seconds=self._config.cleanup_interval_seconds)

    async def stop(self, terminate_sessions: bool = True) -> None:
        await self._sweeper.stop()
        if terminate_sessions:
            for session_id in await self._repo.list_ids(status=SessionStatus.ACTIVE):
                await self.terminate_session(session_id, TerminationReason.SYSTEM_SHUTDOWN)
        logger.info("session_manager_stopped", stats=self._stats)

    async def create_session(self, options: SessionOptions) -> SessionHandle:
        """Create an active session, evicting the user's least recently used ones first."""
        if options.session_type in (SessionType.AUTHENTICATED, SessionType.PROFESSIONAL) \
                and not options.user_id:
            raise ValidationError(f"{options.session_type.value} sessions require a user id",
                                  field="user_id")
        try:
            if options.user_id:
                async with self._user_locks(options.user_id):
                    await self._enforce_limits_locked(options.user_id)
                    session = await self._insert_session(options)
            else:
                session = await self._insert_session(options)
        except Exception as e:
            await self._audit.log_event(
                AuditEventType.LOGIN, "session_creation_failed", user_id=options.user_id,
                ip_address=options.ip_address, severity=AuditSeverity.HIGH,
                outcome=AuditOutcome.ERROR, details={"error": str(e),
                                                     "session_type": options.session_type.value},
            )
            raise

        emergency = session.session_type == SessionType.EMERGENCY
        await self._audit.log_event(
            AuditEventType.EMERGENCY_ACCESS if emergency else AuditEventType.LOGIN,
            "session_created", user_id=session.user_id, session_id=session.session_id,
            ip_address=session.ip_address,
            severity=AuditSeverity.HIGH if emergency else AuditSeverity.LOW,
            details={"session_type": session.session_type.value,
                     "access_level": session.access_level.value},
        )
        self._stats["sessions_created"] += 1
        logger.info("session_created", session_id=session.session_id, user_id=session.user_id,
                    session_type=session.session_type.value)
        return SessionHandle(session_id=session.session_id, token=self._issue_token(session),
                             expires_at=session.expires_at)

    async def create_anonymous_session(self, ip_address: str = "0.0.0.0",
                                       user_agent: str = "Unknown") -> SessionHandle:
        return await self.create_session(SessionOptions(
            session_type=SessionType.ANONYMOUS, ip_address=ip_address, user_agent=user_agent,
            max_idle_minutes=self._config.default_idle_minutes,
        ))

    async def create_emergency_session(self, user_id: str | None = None,
                                       ip_address: str = "0.0.0.0",
                                       user_agent: str = "Unknown") -> SessionHandle:
        """Crisis access session with an extended idle window."""
        return await self.create_session(SessionOptions(
            user_id=user_id, session_type=SessionType.EMERGENCY, ip_address=ip_address,
            user_agent=user_agent, access_level=AccessLevel.READ,
            max_idle_minutes=self._config.emergency_idle_minutes,
        ))

    async def get_session(self, session_id: str) -> SessionRecord | None:
        session = await self._repo.get(session_id)
        if session is None or not session.is_active:
            return None
        if self._expiry_reason(session, self._clock()) is None:
            return session
        async with self._session_locks(session_id):
            session = await self._repo.get(session_id)
            if session is None or not session.is_active:
                return None
            reason = self._expiry_reason(session, self._clock())
            if reason is None:
                return session
            await self._terminate_locked(session, reason)
            return None

    async def update_activity(self, session_id: str, action: str,
                              context: dict[str, Any] | None = None) -> bool:
        """Record an action on an active session and slide its expiry forward."""
        context = dict(context or {})
        async with self._session_locks(session_id):
            session = await self._repo.get(session_id)
            if session is None or not session.is_active:
                return False
            now = self._clock()
            reason = self._expiry_reason(session, now)
            if reason is not None:
                await self._terminate_locked(session, reason)
                return False
            ip_address = context.pop("ip_address", None)
            if ip_address and ip_address != session.ip_address:
                if self._config.enforce_ip_binding:
                    await self._terminate_locked(
                        session, TerminationReason.SECURITY_VIOLATION,
                        details={"violation": "ip_address_mismatch",
                                 "bound_ip": session.ip_address, "request_ip": ip_address},
                    )
                    return False
                # The session stays bound to its original address.
                session.log_activity(ActivityEntry(
                    timestamp=now, action="ip_address_changed", ip_address=ip_address,
                    details={"bound_ip": session.ip_address},
                ), self._config.activity_log_limit)
            session.last_activity = now
            session.expires_at = now + timedelta(minutes=session.max_idle_minutes)
            session.log_activity(ActivityEntry(timestamp=now, action=action,
                                               ip_address=ip_address or session.ip_address,
                                               details=context),
                                 self._config.activity_log_limit)
            await self._repo.put(session)
            return True

    async def terminate_session(self, session_id: str,
                                reason: TerminationReason | str = TerminationReason.LOGOUT) -> bool:
        """End an active session. Returns False if it was already ended or unknown."""
        try:
            reason = TerminationReason(reason)
        except ValueError as e:
            raise ValidationError(f"Unknown termination reason: {reason}", field="reason",
                                  value=reason, cause=e) from e
        async with self._session_locks(session_id):
            session = await self._repo.get(session_id)
            if session is None or not session.is_active:
                return False
            await self._terminate_locked(session, reason)
            return True

    async def suspend_session(self, session_id: str, reason: str = "") -> bool:
        # Suspended is terminal: there is no reinstatement path, a new session
        # must be created instead.
        async with self._session_locks(session_id):
            session = await self._repo.get(session_id)
            if session is None or not session.is_active:
                return False
            now = self._clock()
            session.status = SessionStatus.SUSPENDED
            session.termination_reason = TerminationReason.SUSPENDED
            session.log_activity(ActivityEntry(timestamp=now, action="session_suspended",
                                               details={"reason": reason}),
                                 self._config.activity_log_limit)
            await self._repo.put(session)
            await self._audit.log_event(
                AuditEventType.SECURITY_EVENT, "session_suspended", user_id=session.user_id,
                session_id=session_id, ip_address=session.ip_address,
                severity=AuditSeverity.HIGH, details={"reason": reason},
            )
        logger.warning("session_suspended", session_id=session_id, reason=reason)
        return True

    async def enforce_session_limits(self, user_id: str) -> int:
        """Evict least recently active sessions until a new one fits under the limit."""
        async with self._user_locks(user_id):
            return await self._enforce_limits_locked(user_id)

    async def cleanup_expired_sessions(self) -> int:
        """Expire stale sessions. Candidates are snapshotted, then locked one at a time."""
        candidates = await self._repo.list_ids(status=SessionStatus.ACTIVE)
        expired = 0
        for session_id in candidates:
            try:
                async with self._session_locks(session_id):
                    session = await self._repo.get(session_id)
                    if session is None or not session.is_active:
                        continue
                    reason = self._expiry_reason(session, self._clock())
                    if reason is None:
                        continue
                    await self._terminate_locked(session, reason)
                    expired += 1
            except Exception as e:
                logger.error("session_cleanup_failed", session_id=session_id, error=str(e))
        if expired:
            logger.info("expired_sessions_cleaned", count=expired, scanned=len(candidates))
        return expired

    async def update_security_flags(self, session_id: str, **flags: Any) -> bool:
        """Partially merge security flags into an active session."""
        unknown = set(flags) - _FLAG_FIELDS
        if unknown:
            raise ValidationError(f"Unknown security flags: {sorted(unknown)}",
                                  field=sorted(unknown)[0])
        if "risk_score" in flags:
            score = flags["risk_score"]
            if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
                raise ValidationError("risk_score must be an integer between 0 and 100",
                                      field="risk_score", value=score)
        for name in _FLAG_FIELDS - {"risk_score"}:
            if name in flags and not isinstance(flags[name], bool):
                raise ValidationError(f"{name} must be a boolean", field=name, value=flags[name])

        async with self._session_locks(session_id):
            session = await self._repo.get(session_id)
            if session is None or not session.is_active:
                return False
            session.security_flags = session.security_flags.model_copy(update=flags)
            session.log_activity(ActivityEntry(
                timestamp=self._clock(), action="security_flags_updated", details=dict(flags),
            ), self._config.activity_log_limit)
            await self._repo.put(session)
        logger.info("security_flags_updated", session_id=session_id, flags=sorted(flags))
        return True

    async def set_patient_context(self, session_id: str, patient_id: str,
                                  consent_given: bool) -> bool:
        """Attach a patient to the session; the access attempt is always audited.

        Returns True only if the context was attached, which requires an active
        session and ``consent_given``.
        """
        if not isinstance(consent_given, bool):
            raise ValidationError("consent_given must be an explicit boolean",
                                  field="consent_given", value=consent_given)
        if not patient_id:
            raise ValidationError("patient_id is required", field="patient_id")
        async with self._session_locks(session_id):
            session = await self._repo.get(session_id)
            active = session is not None and session.is_active
            attached = active and consent_given
            if active:
                session.consent_given = consent_given
                if attached:
                    session.patient_context = patient_id
                session.log_activity(ActivityEntry(
                    timestamp=self._clock(), action="patient_context_requested",
                    details={"patient_id": patient_id, "consent_given": consent_given},
                ), self._config.activity_log_limit)
                await self._repo.put(session)
            await self._audit.log_phi_access(
                session.user_id if session else None, session_id, patient_id,
                consent_given=attached, ip_address=session.ip_address if session else None,
            )
        return attached

    async def authorize(self, session_id: str, ip_address: str | None = None,
                        required_access: AccessLevel = AccessLevel.READ) -> SessionRecord:
        """Validate a session for a request. Failures never reveal which check failed."""
        session = await self.get_session(session_id)
        if session is None:
            raise SessionUnauthorizedError("Session not active")
        if ip_address and ip_address != session.ip_address and self._config.enforce_ip_binding:
            await self.update_activity(session_id, "authorize", {"ip_address": ip_address})
            raise SecurityViolationError("Request IP does not match bound session IP",
                                         violation="ip_address_mismatch")
        if not session.access_level.allows(required_access):
            raise SessionUnauthorizedError("Insufficient access level")
        if not await self.update_activity(session_id, f"authorized:{required_access.value}",
                                          {"ip_address": ip_address}):
            raise SessionUnauthorizedError("Session ended during authorization")
        return await self.get_session(session_id) or session

    async def validate_session_token(self, token: str) -> SessionRecord | None:
        try:
            payload = jwt.decode(
                token, self._secret, algorithms=[self._config.token_algorithm],
                issuer=self._config.token_issuer,
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "sid"]},
            )
        except jwt.InvalidTokenError as e:
            logger.warning("session_token_invalid", error=str(e))
            return None
        if payload["exp"] < self._clock().timestamp():
            logger.info("session_token_expired", session_id=payload["sid"])
            return None
        return await self.get_session(payload["sid"])

    async def get_user_sessions(self, user_id: str, active_only: bool = True) -> list[SessionRecord]:
        status = SessionStatus.ACTIVE if active_only else None
        sessions = await self._repo.list_by_user(user_id, status=status)
        return sorted(sessions, key=lambda s: s.created_at)

    async def terminate_user_sessions(self, user_id: str,
                                      reason: TerminationReason | str = TerminationReason.LOGOUT,
                                      exclude_session_id: str | None = None) -> int:
        terminated = 0
        for session in await self._repo.list_by_user(user_id, status=SessionStatus.ACTIVE):
            if session.session_id == exclude_session_id:
                continue
            if await self.terminate_session(session.session_id, reason):
                terminated += 1
        return terminated

    async def get_session_stats(self) -> dict[str, Any]:
        sessions = await self._repo.list_all()
        by_type: dict[str, int] = {}
        by_status: dict[str, int] = {}
        for s in sessions:
            by_status[s.status.value] = by_status.get(s.status.value, 0) + 1
            if s.is_active:
                by_type[s.session_type.value] = by_type.get(s.session_type.value, 0) + 1
        return {"total_sessions": len(sessions),
                "active_sessions": by_status.get(SessionStatus.ACTIVE.value, 0),
                "active_by_type": by_type, "by_status": by_status, **self._stats}

    async def _enforce_limits_locked(self, user_id: str) -> int:
        evicted = 0
        while True:
            active = await self._repo.list_by_user(user_id, status=SessionStatus.ACTIVE)
            if len(active) < self._config.max_concurrent_sessions:
                return evicted
            oldest = min(active, key=lambda s: s.last_activity)
            if await self.terminate_session(oldest.session_id,
                                            TerminationReason.SESSION_LIMIT_EXCEEDED):
                evicted += 1

    async def _insert_session(self, options: SessionOptions) -> SessionRecord:
        now = self._clock()
        idle = options.max_idle_minutes or self._config.default_idle_minutes
        session = SessionRecord(
            session_id=f"sess_{CryptoUtils.generate_token(32)}",
            user_id=options.user_id, user_role=options.user_role,
            session_type=options.session_type, created_at=now, last_activity=now,
            expires_at=now + timedelta(minutes=idle), max_idle_minutes=idle,
            ip_address=options.ip_address, user_agent=options.user_agent,
            device_fingerprint=options.device_fingerprint, access_level=options.access_level,
            consent_given=options.consent_given,
            security_flags=options.security_flags.model_copy(),
        )
        session.log_activity(ActivityEntry(timestamp=now, action="session_created",
                                           ip_address=options.ip_address),
                             self._config.activity_log_limit)
        await self._repo.put(session)
        return session

    def _issue_token(self, session: SessionRecord) -> str:
        absolute = session.created_at + timedelta(hours=self._config.absolute_timeout_hours)
        payload = {
            "sid": session.session_id,
            "sub": session.user_id or "anonymous",
            "typ": session.session_type.value,
            "iat": int(session.created_at.timestamp()),
            "exp": int(absolute.timestamp()),
            "iss": self._config.token_issuer,
        }
        return jwt.encode(payload, self._secret, algorithm=self._config.token_algorithm)

    def _expiry_reason(self, session: SessionRecord, now: datetime) -> TerminationReason | None:
        # Sliding expiry and idle threshold use different base timestamps; both are checked.
        if now - session.created_at > timedelta(hours=self._config.absolute_timeout_hours):
            return TerminationReason.ABSOLUTE_TIMEOUT
        if now > session.expires_at:
            return TerminationReason.EXPIRED
        if now - session.last_activity > timedelta(minutes=session.max_idle_minutes):
            return TerminationReason.IDLE_TIMEOUT
        return None

    async def _terminate_locked(self, session: SessionRecord, reason: TerminationReason,
                                details: dict[str, Any] | None = None) -> None:
        now = self._clock()
        expired = reason in EXPIRY_REASONS
        session.status = SessionStatus.EXPIRED if expired else SessionStatus.TERMINATED
        session.termination_reason = reason
        session.log_activity(ActivityEntry(timestamp=now, action="session_terminated",
                                           details={"reason": reason.value, **(details or {})}),
                             self._config.activity_log_limit)
        await self._repo.put(session)

        if expired:
            self._stats["sessions_expired"] += 1
            event_type, severity = AuditEventType.SESSION_TIMEOUT, AuditSeverity.LOW
        elif reason == TerminationReason.SECURITY_VIOLATION:
            self._stats["security_violations"] += 1
            event_type, severity = AuditEventType.SECURITY_EVENT, AuditSeverity.HIGH
        else:
            event_type = AuditEventType.SESSION_END
            severity = AuditSeverity.HIGH if reason in SECURITY_REASONS else AuditSeverity.LOW
        if not expired:
            self._stats["sessions_terminated"] += 1
        await self._audit.log_event(
            event_type, "session_terminated", user_id=session.user_id,
            session_id=session.session_id, ip_address=session.ip_address, severity=severity,
            resource=AuditResource(resource_type="session", resource_id=session.session_id),
            details={"reason": reason.value, **(details or {})},
        )
        log = logger.warning if reason in SECURITY_REASONS else logger.info
        log("session_terminated", session_id=session.session_id, user_id=session.user_id,
            reason=reason.value, status=session.status.value)

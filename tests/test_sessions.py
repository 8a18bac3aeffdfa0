"""
Tests for the session manager.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import jwt
import pytest

from astral_trust.audit import AuditEventType, AuditLogger, AuditOutcome, AuditSeverity, InMemoryAuditStore
from astral_trust.config import SessionConfig
from astral_trust.exceptions import SecurityViolationError, SessionUnauthorizedError, ValidationError
from astral_trust.sessions.entities import (
    AccessLevel,
    SessionOptions,
    SessionStatus,
    SessionType,
    TerminationReason,
)
from astral_trust.sessions.manager import SessionManager

from tests.conftest import FakeClock


def options(user_id: str = "user_1", **kwargs) -> SessionOptions:
    return SessionOptions(user_id=user_id, ip_address="10.0.0.1", user_agent="pytest", **kwargs)


class TestCreateSession:
    """Tests for session creation."""

    @pytest.mark.asyncio
    async def test_create_session(self, session_manager: SessionManager, clock: FakeClock,
                                  audit_store: InMemoryAuditStore):
        handle = await session_manager.create_session(options(max_idle_minutes=30))
        assert handle.session_id.startswith("sess_")
        assert handle.expires_at == clock() + timedelta(minutes=30)
        session = await session_manager.get_session(handle.session_id)
        assert session is not None
        assert session.status == SessionStatus.ACTIVE
        assert session.user_id == "user_1"
        assert session.activity_log[0].action == "session_created"
        events = await audit_store.query(event_type=AuditEventType.LOGIN)
        assert [e.action for e in events] == ["session_created"]

    @pytest.mark.asyncio
    async def test_authenticated_requires_user(self, session_manager: SessionManager):
        with pytest.raises(ValidationError):
            await session_manager.create_session(SessionOptions(
                session_type=SessionType.AUTHENTICATED))

    @pytest.mark.asyncio
    async def test_anonymous_session(self, session_manager: SessionManager):
        handle = await session_manager.create_anonymous_session(ip_address="10.0.0.9")
        session = await session_manager.get_session(handle.session_id)
        assert session.session_type == SessionType.ANONYMOUS
        assert session.user_id is None
        assert session.max_idle_minutes == 30

    @pytest.mark.asyncio
    async def test_emergency_session(self, session_manager: SessionManager,
                                     audit_store: InMemoryAuditStore):
        handle = await session_manager.create_emergency_session(user_id="user_1")
        session = await session_manager.get_session(handle.session_id)
        assert session.session_type == SessionType.EMERGENCY
        assert session.max_idle_minutes == 120
        events = await audit_store.query(event_type=AuditEventType.EMERGENCY_ACCESS)
        assert len(events) == 1
        assert events[0].severity == AuditSeverity.HIGH

    @pytest.mark.asyncio
    async def test_creation_failure_is_audited(self, audit: AuditLogger,
                                               session_config: SessionConfig, clock: FakeClock,
                                               audit_store: InMemoryAuditStore):
        manager = SessionManager(audit, config=session_config, clock=clock)

        async def broken_put(session):
            raise RuntimeError("store unavailable")

        manager._repo.put = broken_put
        with pytest.raises(RuntimeError):
            await manager.create_session(options())
        events = await audit_store.query(action="session_creation_failed")
        assert len(events) == 1
        assert events[0].severity == AuditSeverity.HIGH
        assert events[0].outcome == AuditOutcome.ERROR


class TestExpiry:
    """Sliding idle expiry and absolute lifetime."""

    @pytest.mark.asyncio
    async def test_idle_session_expires(self, session_manager: SessionManager, clock: FakeClock):
        handle = await session_manager.create_session(options(max_idle_minutes=30))
        clock.advance(minutes=31)
        assert await session_manager.get_session(handle.session_id) is None
        sessions = await session_manager.get_user_sessions("user_1", active_only=False)
        assert sessions[0].status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_activity_slides_expiry(self, session_manager: SessionManager, clock: FakeClock):
        handle = await session_manager.create_session(options(max_idle_minutes=30))
        for _ in range(4):
            clock.advance(minutes=20)
            assert await session_manager.update_activity(handle.session_id, "message_sent")
        session = await session_manager.get_session(handle.session_id)
        assert session is not None
        assert session.last_activity == clock()
        assert session.expires_at > clock()

    @pytest.mark.asyncio
    async def test_absolute_timeout(self, session_manager: SessionManager, clock: FakeClock):
        handle = await session_manager.create_session(options(max_idle_minutes=60))
        for _ in range(9):
            clock.advance(minutes=55)
            await session_manager.update_activity(handle.session_id, "ping")
        assert await session_manager.get_session(handle.session_id) is None
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.termination_reason == TerminationReason.ABSOLUTE_TIMEOUT

    @pytest.mark.asyncio
    async def test_update_activity_on_expired_session(self, session_manager: SessionManager,
                                                      clock: FakeClock):
        handle = await session_manager.create_session(options())
        clock.advance(minutes=45)
        assert not await session_manager.update_activity(handle.session_id, "late")

    @pytest.mark.asyncio
    async def test_cleanup_expired_sessions(self, session_manager: SessionManager,
                                            clock: FakeClock, audit_store: InMemoryAuditStore):
        stale = await session_manager.create_session(options(user_id="user_1"))
        clock.advance(minutes=20)
        fresh = await session_manager.create_session(options(user_id="user_2"))
        clock.advance(minutes=15)
        assert await session_manager.cleanup_expired_sessions() == 1
        assert await session_manager.get_session(stale.session_id) is None
        assert await session_manager.get_session(fresh.session_id) is not None
        timeouts = await audit_store.query(event_type=AuditEventType.SESSION_TIMEOUT)
        assert len(timeouts) == 1

    @pytest.mark.asyncio
    async def test_activity_log_is_bounded(self, audit: AuditLogger, clock: FakeClock):
        manager = SessionManager(audit, config=SessionConfig(activity_log_limit=5), clock=clock)
        handle = await manager.create_session(options())
        for i in range(10):
            await manager.update_activity(handle.session_id, f"action_{i}")
        session = await manager.get_session(handle.session_id)
        assert len(session.activity_log) == 5
        assert session.activity_log[-1].action == "action_9"
        assert session.activity_log[0].action == "action_5"


class TestTermination:
    """Termination is idempotent and terminal."""

    @pytest.mark.asyncio
    async def test_terminate_twice(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        assert await session_manager.terminate_session(handle.session_id) is True
        assert await session_manager.terminate_session(handle.session_id) is False
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.status == SessionStatus.TERMINATED
        assert session.activity_log[-1].action == "session_terminated"

    @pytest.mark.asyncio
    async def test_terminate_unknown(self, session_manager: SessionManager):
        assert await session_manager.terminate_session("sess_missing") is False

    @pytest.mark.asyncio
    async def test_terminate_with_expiry_reason(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        await session_manager.terminate_session(handle.session_id, "idle_timeout")
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_invalid_reason(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        with pytest.raises(ValidationError):
            await session_manager.terminate_session(handle.session_id, "bored")
        assert await session_manager.get_session(handle.session_id) is not None

    @pytest.mark.asyncio
    async def test_suspended_is_terminal(self, session_manager: SessionManager,
                                         audit_store: InMemoryAuditStore):
        handle = await session_manager.create_session(options())
        assert await session_manager.suspend_session(handle.session_id, "risk review")
        assert await session_manager.get_session(handle.session_id) is None
        assert not await session_manager.update_activity(handle.session_id, "resume")
        assert not await session_manager.terminate_session(handle.session_id)
        assert not await session_manager.suspend_session(handle.session_id)
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.status == SessionStatus.SUSPENDED
        events = await audit_store.query(action="session_suspended")
        assert events[0].event_type == AuditEventType.SECURITY_EVENT

    @pytest.mark.asyncio
    async def test_concurrent_terminations(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        results = await asyncio.gather(*[
            session_manager.terminate_session(handle.session_id) for _ in range(5)])
        assert sorted(results) == [False, False, False, False, True]

    @pytest.mark.asyncio
    async def test_termination_wins_over_queued_mutations(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        terminated, activity, flags = await asyncio.gather(
            session_manager.terminate_session(handle.session_id),
            session_manager.update_activity(handle.session_id, "message"),
            session_manager.update_security_flags(handle.session_id, mfa_verified=True),
        )
        assert (terminated, activity, flags) == (True, False, False)
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.status == SessionStatus.TERMINATED
        assert session.activity_log[-1].action == "session_terminated"
        assert not session.security_flags.mfa_verified

    @pytest.mark.asyncio
    async def test_mutation_before_termination_is_kept(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        activity, terminated, late = await asyncio.gather(
            session_manager.update_activity(handle.session_id, "message"),
            session_manager.terminate_session(handle.session_id),
            session_manager.update_activity(handle.session_id, "late_message"),
        )
        assert (activity, terminated, late) == (True, True, False)
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.status == SessionStatus.TERMINATED
        assert [e.action for e in session.activity_log][-2:] == ["message", "session_terminated"]

    @pytest.mark.asyncio
    async def test_terminate_user_sessions(self, session_manager: SessionManager):
        keep = await session_manager.create_session(options())
        await session_manager.create_session(options())
        await session_manager.create_session(options())
        count = await session_manager.terminate_user_sessions(
            "user_1", exclude_session_id=keep.session_id)
        assert count == 2
        active = await session_manager.get_user_sessions("user_1")
        assert [s.session_id for s in active] == [keep.session_id]

    @pytest.mark.asyncio
    async def test_stop_terminates_with_system_shutdown(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        await session_manager.start()
        await session_manager.stop()
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.termination_reason == TerminationReason.SYSTEM_SHUTDOWN
        assert session.session_id == handle.session_id


class TestSessionLimits:
    """Per-user concurrency limit with least-recently-active eviction."""

    @pytest.mark.asyncio
    async def test_oldest_activity_evicted(self, session_manager: SessionManager,
                                           clock: FakeClock):
        first = await session_manager.create_session(options())
        clock.advance(minutes=1)
        second = await session_manager.create_session(options())
        clock.advance(minutes=1)
        third = await session_manager.create_session(options())
        clock.advance(minutes=1)
        await session_manager.update_activity(first.session_id, "still_here")
        clock.advance(minutes=1)
        fourth = await session_manager.create_session(options())

        active = {s.session_id for s in await session_manager.get_user_sessions("user_1")}
        assert active == {first.session_id, third.session_id, fourth.session_id}
        evicted = [s for s in await session_manager.get_user_sessions("user_1", active_only=False)
                   if s.session_id == second.session_id][0]
        assert evicted.termination_reason == TerminationReason.SESSION_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_never_more_than_limit(self, session_manager: SessionManager):
        await asyncio.gather(*[session_manager.create_session(options()) for _ in range(10)])
        assert len(await session_manager.get_user_sessions("user_1")) == 3

    @pytest.mark.asyncio
    async def test_enforce_session_limits(self, session_manager: SessionManager):
        for _ in range(3):
            await session_manager.create_session(options())
        evicted = await session_manager.enforce_session_limits("user_1")
        assert evicted == 1
        assert len(await session_manager.get_user_sessions("user_1")) == 2

    @pytest.mark.asyncio
    async def test_limits_are_per_user(self, session_manager: SessionManager):
        for _ in range(3):
            await session_manager.create_session(options(user_id="user_1"))
        await session_manager.create_session(options(user_id="user_2"))
        assert len(await session_manager.get_user_sessions("user_1")) == 3


class TestIpBinding:
    """IP address binding on activity and authorization."""

    @pytest.mark.asyncio
    async def test_ip_change_terminates(self, session_manager: SessionManager,
                                        audit_store: InMemoryAuditStore):
        handle = await session_manager.create_session(options())
        assert not await session_manager.update_activity(
            handle.session_id, "message", {"ip_address": "203.0.113.7"})
        session = (await session_manager.get_user_sessions("user_1", active_only=False))[0]
        assert session.status == SessionStatus.TERMINATED
        assert session.termination_reason == TerminationReason.SECURITY_VIOLATION
        events = await audit_store.query(event_type=AuditEventType.SECURITY_EVENT)
        assert events[-1].severity == AuditSeverity.HIGH

    @pytest.mark.asyncio
    async def test_ip_change_without_binding(self, audit: AuditLogger, clock: FakeClock):
        manager = SessionManager(audit, config=SessionConfig(enforce_ip_binding=False), clock=clock)
        handle = await manager.create_session(options())
        assert await manager.update_activity(handle.session_id, "message",
                                             {"ip_address": "203.0.113.7"})
        assert await manager.update_activity(handle.session_id, "message",
                                             {"ip_address": "198.51.100.4"})
        session = await manager.get_session(handle.session_id)
        assert session.ip_address == "10.0.0.1"
        changes = [e for e in session.activity_log if e.action == "ip_address_changed"]
        assert [e.ip_address for e in changes] == ["203.0.113.7", "198.51.100.4"]
        assert all(e.details["bound_ip"] == "10.0.0.1" for e in changes)
        assert session.activity_log[-1].action == "message"
        assert session.activity_log[-1].ip_address == "198.51.100.4"

    @pytest.mark.asyncio
    async def test_same_ip_is_fine(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        assert await session_manager.update_activity(handle.session_id, "message",
                                                     {"ip_address": "10.0.0.1"})


class TestSecurityFlagsAndPatientContext:
    """Security flag merging and PHI-gated patient context."""

    @pytest.mark.asyncio
    async def test_partial_flag_merge(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        assert await session_manager.update_security_flags(handle.session_id, mfa_verified=True)
        assert await session_manager.update_security_flags(handle.session_id, risk_score=40)
        session = await session_manager.get_session(handle.session_id)
        assert session.security_flags.mfa_verified
        assert session.security_flags.risk_score == 40
        assert not session.security_flags.device_trusted

    @pytest.mark.parametrize("flags", [
        {"risk_score": 101}, {"risk_score": -1}, {"risk_score": "high"},
        {"mfa_verified": "yes"}, {"unknown_flag": True},
    ])
    @pytest.mark.asyncio
    async def test_invalid_flags(self, session_manager: SessionManager, flags):
        handle = await session_manager.create_session(options())
        with pytest.raises(ValidationError):
            await session_manager.update_security_flags(handle.session_id, **flags)

    @pytest.mark.asyncio
    async def test_flags_on_ended_session(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        await session_manager.terminate_session(handle.session_id)
        assert not await session_manager.update_security_flags(handle.session_id,
                                                               device_trusted=True)

    @pytest.mark.asyncio
    async def test_patient_context_with_consent(self, session_manager: SessionManager,
                                                audit_store: InMemoryAuditStore):
        handle = await session_manager.create_session(options(user_role="therapist"))
        assert await session_manager.set_patient_context(handle.session_id, "patient_9", True)
        session = await session_manager.get_session(handle.session_id)
        assert session.patient_context == "patient_9"
        events = await audit_store.query(event_type=AuditEventType.PHI_ACCESS)
        assert len(events) == 1
        assert events[0].outcome == AuditOutcome.SUCCESS
        assert events[0].resource.contains_phi

    @pytest.mark.asyncio
    async def test_patient_context_without_consent(self, session_manager: SessionManager,
                                                   audit_store: InMemoryAuditStore):
        handle = await session_manager.create_session(options())
        assert not await session_manager.set_patient_context(handle.session_id, "patient_9", False)
        session = await session_manager.get_session(handle.session_id)
        assert session.patient_context is None
        events = await audit_store.query(event_type=AuditEventType.PHI_ACCESS)
        assert events[0].outcome == AuditOutcome.DENIED

    @pytest.mark.asyncio
    async def test_patient_context_requires_boolean(self, session_manager: SessionManager,
                                                    audit_store: InMemoryAuditStore):
        handle = await session_manager.create_session(options())
        with pytest.raises(ValidationError):
            await session_manager.set_patient_context(handle.session_id, "patient_9", "yes")
        assert await audit_store.query(event_type=AuditEventType.PHI_ACCESS) == []

    @pytest.mark.asyncio
    async def test_patient_context_on_unknown_session(self, session_manager: SessionManager,
                                                      audit_store: InMemoryAuditStore):
        assert not await session_manager.set_patient_context("sess_missing", "patient_9", True)
        events = await audit_store.query(event_type=AuditEventType.PHI_ACCESS)
        assert events[0].outcome == AuditOutcome.DENIED


class TestTokensAndAuthorization:
    """Signed session tokens and request authorization."""

    @pytest.mark.asyncio
    async def test_validate_token(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        session = await session_manager.validate_session_token(handle.token)
        assert session.session_id == handle.session_id

    @pytest.mark.asyncio
    async def test_token_claims(self, session_manager: SessionManager,
                                session_config: SessionConfig):
        handle = await session_manager.create_session(options())
        payload = jwt.decode(handle.token, session_config.token_secret.get_secret_value(),
                             algorithms=["HS256"], options={"verify_exp": False, "verify_iat": False},
                             issuer="astral-core")
        assert payload["sid"] == handle.session_id
        assert payload["sub"] == "user_1"

    @pytest.mark.asyncio
    async def test_tampered_token(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        forged = jwt.encode({"sid": handle.session_id, "exp": 9999999999, "iss": "astral-core"},
                            "wrong-secret-that-is-long-enough-123456", algorithm="HS256")
        assert await session_manager.validate_session_token(forged) is None
        assert await session_manager.validate_session_token("not-a-token") is None

    @pytest.mark.asyncio
    async def test_token_for_terminated_session(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        await session_manager.terminate_session(handle.session_id)
        assert await session_manager.validate_session_token(handle.token) is None

    @pytest.mark.asyncio
    async def test_token_past_absolute_lifetime(self, session_manager: SessionManager,
                                                clock: FakeClock):
        handle = await session_manager.create_session(options())
        clock.advance(hours=9)
        assert await session_manager.validate_session_token(handle.token) is None

    @pytest.mark.asyncio
    async def test_authorize(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options(access_level=AccessLevel.WRITE))
        session = await session_manager.authorize(handle.session_id, "10.0.0.1",
                                                  AccessLevel.WRITE)
        assert session.session_id == handle.session_id

    @pytest.mark.asyncio
    async def test_authorize_insufficient_access(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        with pytest.raises(SessionUnauthorizedError) as exc_info:
            await session_manager.authorize(handle.session_id, "10.0.0.1", AccessLevel.ADMIN)
        assert exc_info.value.to_dict()["error"]["message"] == "Unauthorized"

    @pytest.mark.asyncio
    async def test_authorize_unknown_session(self, session_manager: SessionManager):
        with pytest.raises(SessionUnauthorizedError):
            await session_manager.authorize("sess_missing")

    @pytest.mark.asyncio
    async def test_authorize_ip_mismatch(self, session_manager: SessionManager):
        handle = await session_manager.create_session(options())
        with pytest.raises(SecurityViolationError):
            await session_manager.authorize(handle.session_id, "198.51.100.2")
        assert await session_manager.get_session(handle.session_id) is None


class TestSessionStats:
    """Aggregate statistics."""

    @pytest.mark.asyncio
    async def test_stats(self, session_manager: SessionManager):
        await session_manager.create_anonymous_session()
        handle = await session_manager.create_session(options())
        await session_manager.terminate_session(handle.session_id)
        stats = await session_manager.get_session_stats()
        assert stats["total_sessions"] == 2
        assert stats["active_sessions"] == 1
        assert stats["active_by_type"] == {"anonymous": 1}
        assert stats["sessions_created"] == 2
        assert stats["sessions_terminated"] == 1

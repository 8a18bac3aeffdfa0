"""
Astral Core Trust Consent - Consent management domain service.

Tracks consent per user and purpose, enforces legal-basis rules and the
consent state machine, and drives data retention on withdrawal and on a
daily schedule.

Lifecycle: pending -> granted | denied | expired; granted -> withdrawn | expired.
Each transition appends exactly one history entry and emits exactly one audit event.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

import pydantic
import structlog

from astral_trust.audit import AuditEventType, AuditLogger, AuditResource, AuditSeverity
from astral_trust.config import ConsentConfig, RetentionConfig
from astral_trust.consent.entities import (
    ComplianceStatus,
    ConsentAction,
    ConsentBundle,
    ConsentHistoryEntry,
    ConsentMethod,
    ConsentRecord,
    ConsentReport,
    ConsentStatus,
    ConsentType,
    ConsentWithdrawal,
    LegalBasis,
    RetentionException,
    RetentionExecutionResult,
    RetentionPolicy,
    RetentionTrigger,
)
from astral_trust.consent.repository import (
    ConsentRepository,
    InMemoryConsentRepository,
    InMemoryRetentionPolicyRepository,
    RetentionPolicyRepository,
)
from astral_trust.consent.retention import (
    RetentionConditions,
    RetentionExecutor,
    default_retention_policies,
)
from astral_trust.enums import DataCategory
from astral_trust.exceptions import ConflictError, DependencyError, NotFoundError, TrustError, ValidationError
from astral_trust.ports import PersonalDataStore
from astral_trust.scheduler import PeriodicTask
from astral_trust.utils import Clock, DateTimeUtils, KeyedLock

logger = structlog.get_logger(__name__)

# Processing for these purposes is only lawful with the data subject's consent.
CONSENT_ONLY_TYPES = frozenset({
    ConsentType.MARKETING, ConsentType.COOKIES, ConsentType.ANALYTICS,
    ConsentType.RESEARCH, ConsentType.THIRD_PARTY_SHARING, ConsentType.THERAPY_RECORDING,
})

_DEFAULT_PURPOSES: dict[ConsentType, str] = {
    ConsentType.DATA_PROCESSING: "Essential service functionality",
    ConsentType.TREATMENT: "Providing mental health treatment and care",
    ConsentType.MARKETING: "Marketing communications and promotions",
    ConsentType.ANALYTICS: "Service improvement and analytics",
    ConsentType.RESEARCH: "Anonymous research and studies",
    ConsentType.CRISIS_CONTACT: "Contacting you or your designated contacts during a crisis",
}

_DEFAULT_CATEGORIES: dict[ConsentType, tuple[DataCategory, ...]] = {
    ConsentType.DATA_PROCESSING: (DataCategory.PROFILE, DataCategory.USAGE),
    ConsentType.TREATMENT: (DataCategory.MEDICAL, DataCategory.THERAPEUTIC),
    ConsentType.MARKETING: (DataCategory.PROFILE, DataCategory.COMMUNICATION),
    ConsentType.ANALYTICS: (DataCategory.USAGE, DataCategory.BEHAVIORAL),
    ConsentType.RESEARCH: (DataCategory.THERAPEUTIC, DataCategory.BEHAVIORAL),
    ConsentType.CRISIS_CONTACT: (DataCategory.PROFILE, DataCategory.CRISIS),
}


def generate_consent_text(consent_type: ConsentType, purpose: str,
                          categories: Iterable[DataCategory]) -> str:
    """Deterministic consent wording; categories are listed in sorted order."""
    names = ", ".join(sorted(c.value for c in categories))
    return (f"I consent to the processing of my {names} data for {purpose}. "
            f"This consent is for {consent_type.value} purposes and can be withdrawn at any time.")


def default_purpose(consent_type: ConsentType) -> str:
    return _DEFAULT_PURPOSES.get(consent_type, "Data processing")


def default_categories(consent_type: ConsentType) -> frozenset[DataCategory]:
    return frozenset(_DEFAULT_CATEGORIES.get(consent_type, (DataCategory.PROFILE,)))


class ConsentService:
    """Consent and retention engine."""

    def __init__(self, audit: AuditLogger, data_store: PersonalDataStore, *,
                 consents: ConsentRepository | None = None,
                 policies: RetentionPolicyRepository | None = None,
                 conditions: RetentionConditions | None = None,
                 config: ConsentConfig | None = None,
                 retention_config: RetentionConfig | None = None,
                 clock: Clock | None = None) -> None:
        self._audit = audit
        self._consents = consents or InMemoryConsentRepository()
        self._policies = policies or InMemoryRetentionPolicyRepository()
        self._config = config or ConsentConfig()
        self._retention_config = retention_config or RetentionConfig()
        self._clock = clock or DateTimeUtils.utc_now
        self._retention = RetentionExecutor(self._policies, data_store, audit,
                                            conditions=conditions, clock=self._clock)
        self._locks = KeyedLock()
        self._sweeper = PeriodicTask("retention_sweep", self.run_scheduled_retention,
                                     self._retention_config.sweep_interval_seconds)

    @property
    def conditions(self) -> RetentionConditions:
        return self._retention.conditions

    async def initialize(self) -> None:
        """Install the default retention policies into an empty policy store."""
        if not self._retention_config.install_default_policies:
            return
        if await self._policies.list_all():
            return
        for policy in default_retention_policies(self._clock()):
            await self._policies.put(policy)
        logger.info("default_retention_policies_installed")

    async def start(self) -> None:
        await self.initialize()
        self._sweeper.start()
        logger.info("consent_service_started")

    async def stop(self) -> None:
        await self._sweeper.stop()
        logger.info("consent_service_stopped")

    async def request_consent(self, user_id: str, consent_type: ConsentType, purpose: str,
                              data_categories: Iterable[DataCategory], *,
                              legal_basis: LegalBasis = LegalBasis.CONSENT,
                              third_parties: list[str] | None = None,
                              expiration_days: int | None = None,
                              consent_text: str | None = None,
                              ip_address: str | None = None,
                              user_agent: str | None = None) -> ConsentRecord:
        """Create a pending consent with a snapshot of the text shown to the user."""
        categories = frozenset(data_categories)
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        if not purpose or not purpose.strip():
            raise ValidationError("Consent purpose must not be empty", field="purpose")
        if not categories:
            raise ValidationError("At least one data category is required",
                                  field="data_categories")
        if consent_type in CONSENT_ONLY_TYPES and legal_basis != LegalBasis.CONSENT:
            raise ValidationError(
                f"{consent_type.value} processing requires legal basis 'consent'",
                field="legal_basis", value=legal_basis.value,
            )
        if consent_text is not None and not consent_text.strip():
            raise ValidationError("Consent text must not be empty", field="consent_text")
        if expiration_days is None:
            expiration_days = self._config.default_expiry_days
        if expiration_days is not None and expiration_days <= 0:
            raise ValidationError("expiration_days must be positive", field="expiration_days")

        now = self._clock()
        record = ConsentRecord(
            user_id=user_id, consent_type=consent_type, legal_basis=legal_basis,
            purpose=purpose, data_categories=categories, third_parties=third_parties or [],
            requested_at=now,
            expires_at=now + timedelta(days=expiration_days) if expiration_days else None,
            ip_address=ip_address, user_agent=user_agent,
            consent_text=consent_text or generate_consent_text(consent_type, purpose, categories),
            version=self._config.consent_version,
            history=[ConsentHistoryEntry(timestamp=now, action=ConsentAction.REQUESTED,
                                         ip_address=ip_address, user_agent=user_agent)],
        )
        async with self._locks(record.consent_id):
            await self._save(record)
            await self._audit_transition(record, ConsentAction.REQUESTED, ip_address,
                                         {"purpose": purpose, "legal_basis": legal_basis.value,
                                          "data_categories": sorted(c.value for c in categories)})
        logger.info("consent_requested", consent_id=record.consent_id, user_id=user_id,
                    consent_type=consent_type.value)
        return record

    async def grant_consent(self, consent_id: str, *, presented_text: str | None = None,
                            granular_settings: dict[str, bool] | None = None,
                            consent_method: ConsentMethod = ConsentMethod.EXPLICIT,
                            ip_address: str | None = None,
                            user_agent: str | None = None) -> ConsentRecord:
        """Grant a pending consent. ``presented_text`` must match the stored snapshot exactly."""

        def check(record: ConsentRecord) -> None:
            if presented_text is not None and presented_text != record.consent_text:
                raise ValidationError("Presented consent text does not match the recorded text",
                                      field="presented_text")

        def apply(record: ConsentRecord, now: datetime) -> dict[str, Any]:
            record.granted_at = now
            record.consent_method = consent_method
            record.granular_settings = dict(granular_settings or {})
            return {"consent_method": consent_method.value,
                    "granular_settings": record.granular_settings}

        return await self._transition(consent_id, ConsentStatus.PENDING, ConsentStatus.GRANTED,
                                      ConsentAction.GRANTED, apply, check=check,
                                      ip_address=ip_address, user_agent=user_agent)

    async def deny_consent(self, consent_id: str, *, reason: str | None = None,
                           ip_address: str | None = None,
                           user_agent: str | None = None) -> ConsentRecord:
        return await self._transition(consent_id, ConsentStatus.PENDING, ConsentStatus.DENIED,
                                      ConsentAction.DENIED, reason=reason,
                                      ip_address=ip_address, user_agent=user_agent)

    async def withdraw_consent(self, consent_id: str, *, reason: str | None = None,
                               ip_address: str | None = None,
                               user_agent: str | None = None) -> ConsentWithdrawal:
        """Withdraw a granted consent, then run retention for the user before returning."""

        def apply(record: ConsentRecord, now: datetime) -> dict[str, Any]:
            record.withdrawn_at = now
            return {"withdrawn_at": now.isoformat()}

        record = await self._transition(consent_id, ConsentStatus.GRANTED, ConsentStatus.WITHDRAWN,
                                        ConsentAction.WITHDRAWN, apply, reason=reason,
                                        ip_address=ip_address, user_agent=user_agent)
        retention = await self.execute_data_retention(record.user_id)
        return ConsentWithdrawal(consent=record, retention=retention)

    async def has_valid_consent(self, user_id: str, consent_type: ConsentType,
                                category: DataCategory | None = None) -> bool:
        now = self._clock()
        return any(
            record.is_valid_at(now) and (category is None or category in record.data_categories)
            for record in await self._consents.list_by_user(user_id, consent_type)
        )

    async def get_user_consents(self, user_id: str,
                                consent_type: ConsentType | None = None) -> list[ConsentRecord]:
        return await self._consents.list_by_user(user_id, consent_type)

    async def get_consent(self, consent_id: str) -> ConsentRecord:
        record = await self._consents.get(consent_id)
        if record is None:
            raise NotFoundError("Consent", consent_id)
        return record

    async def expire_due_consents(self) -> int:
        """Move pending or granted consents past their expiry to expired."""
        candidates = await self._consents.list_ids({ConsentStatus.PENDING, ConsentStatus.GRANTED})
        expired = 0
        for consent_id in candidates:
            async with self._locks(consent_id):
                record = await self._consents.get(consent_id)
                now = self._clock()
                if record is None or record.status not in (ConsentStatus.PENDING,
                                                            ConsentStatus.GRANTED):
                    continue
                if record.expires_at is None or record.expires_at > now:
                    continue
                await self._expire_locked(record, now)
                expired += 1
        if expired:
            logger.info("consents_expired", count=expired)
        return expired

    async def process_consent_bundle(self, bundle: ConsentBundle) -> list[ConsentRecord]:
        """Request and immediately grant or deny several consents with default wording."""
        results = []
        for item in bundle.consents:
            try:
                record = await self.request_consent(
                    bundle.user_id, item.consent_type, default_purpose(item.consent_type),
                    default_categories(item.consent_type),
                    ip_address=bundle.ip_address, user_agent=bundle.user_agent,
                )
                if item.granted:
                    record = await self.grant_consent(
                        record.consent_id, granular_settings=item.granular_settings,
                        consent_method=bundle.consent_method,
                        ip_address=bundle.ip_address, user_agent=bundle.user_agent,
                    )
                else:
                    record = await self.deny_consent(record.consent_id,
                                                     ip_address=bundle.ip_address,
                                                     user_agent=bundle.user_agent)
                results.append(record)
            except TrustError as e:
                logger.error("consent_bundle_item_failed", user_id=bundle.user_id,
                             consent_type=item.consent_type.value, error=e.message)
        return results

    async def generate_consent_report(self, user_id: str) -> ConsentReport:
        records = await self._consents.list_by_user(user_id)
        now = self._clock()
        expired = [r for r in records if r.status == ConsentStatus.EXPIRED
                   or (r.status == ConsentStatus.GRANTED and r.expires_at is not None
                       and r.expires_at <= now)]
        by_type: dict[str, int] = {}
        for record in records:
            by_type[record.consent_type.value] = by_type.get(record.consent_type.value, 0) + 1

        status = ComplianceStatus.COMPLIANT
        recommendations = []
        required = [ConsentType(t) for t in self._config.required_consent_types]
        missing = [t for t in required if not any(
            r.consent_type == t and r.is_valid_at(now) for r in records)]
        if missing:
            status = ComplianceStatus.NON_COMPLIANT
            recommendations.append(
                f"Missing required consents: {', '.join(t.value for t in missing)}")
        if expired:
            if status == ComplianceStatus.COMPLIANT:
                status = ComplianceStatus.PARTIAL
            recommendations.append("Some consents have expired and should be renewed")
        return ConsentReport(
            user_id=user_id, total_consents=len(records),
            active_consents=sum(1 for r in records if r.is_valid_at(now)),
            withdrawn_consents=sum(1 for r in records if r.status == ConsentStatus.WITHDRAWN),
            expired_consents=len(expired), consents_by_type=by_type,
            compliance_status=status, recommendations=recommendations,
        )

    async def execute_data_retention(self, user_id: str) -> RetentionExecutionResult:
        consents = await self._consents.list_by_user(user_id)
        return await self._retention.execute(user_id, consents)

    async def run_scheduled_retention(self) -> dict[str, int]:
        """Daily sweep: expire due consents, then run retention for every known user."""
        expired = await self.expire_due_consents()
        processed = failed = actions = 0
        for user_id in await self._consents.list_user_ids():
            try:
                result = await self.execute_data_retention(user_id)
            except Exception as e:
                failed += 1
                logger.error("scheduled_retention_failed", user_id=user_id, error=str(e))
                continue
            processed += 1
            actions += result.actions_taken
        summary = {"consents_expired": expired, "users_processed": processed,
                   "users_failed": failed, "actions_taken": actions}
        logger.info("scheduled_retention_completed", **summary)
        return summary

    async def create_retention_policy(self, name: str, data_category: DataCategory,
                                      retention_period_days: int, legal_basis: LegalBasis,
                                      triggers: list[RetentionTrigger], *,
                                      exceptions: list[RetentionException] | None = None,
                                      regulations: list[str] | None = None,
                                      jurisdiction: str = "GLOBAL",
                                      created_by: str | None = None) -> RetentionPolicy:
        if retention_period_days < -1:
            raise ValidationError("retention_period_days must be -1, 0 or positive",
                                  field="retention_period_days", value=retention_period_days)
        if not triggers and retention_period_days != -1:
            raise ValidationError("A retention policy needs at least one trigger",
                                  field="triggers")
        now = self._clock()
        try:
            policy = RetentionPolicy(
                name=name, data_category=data_category,
                retention_period_days=retention_period_days, legal_basis=legal_basis,
                triggers=list(triggers), exceptions=list(exceptions or []),
                regulations=list(regulations or []), jurisdiction=jurisdiction,
                created_at=now, updated_at=now,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid retention policy: {e.error_count()} error(s)",
                                  field="policy", cause=e) from e
        await self._policies.put(policy)
        await self._audit.log_event(
            AuditEventType.CONFIGURATION_CHANGE, "retention_policy_created", user_id=created_by,
            severity=AuditSeverity.MEDIUM,
            resource=AuditResource(resource_type="retention_policy", resource_id=policy.policy_id),
            details={"data_category": data_category.value,
                     "retention_period_days": retention_period_days},
        )
        logger.info("retention_policy_created", policy_id=policy.policy_id,
                    data_category=data_category.value)
        return policy

    async def deactivate_retention_policy(self, policy_id: str,
                                          deactivated_by: str | None = None) -> RetentionPolicy:
        policy = await self._policies.get(policy_id)
        if policy is None:
            raise NotFoundError("RetentionPolicy", policy_id)
        policy = policy.model_copy(update={"is_active": False, "updated_at": self._clock()})
        await self._policies.put(policy)
        await self._audit.log_event(
            AuditEventType.CONFIGURATION_CHANGE, "retention_policy_deactivated",
            user_id=deactivated_by, severity=AuditSeverity.MEDIUM,
            resource=AuditResource(resource_type="retention_policy", resource_id=policy_id),
        )
        return policy

    async def list_retention_policies(self, active_only: bool = False) -> list[RetentionPolicy]:
        return await self._policies.list_all(active_only=active_only)

    async def _transition(self, consent_id: str, expected: ConsentStatus, target: ConsentStatus,
                          action: ConsentAction,
                          apply: Callable[[ConsentRecord, datetime], dict[str, Any]] | None = None,
                          *, check: Callable[[ConsentRecord], None] | None = None,
                          reason: str | None = None, ip_address: str | None = None,
                          user_agent: str | None = None) -> ConsentRecord:
        async with self._locks(consent_id):
            record = await self._consents.get(consent_id)
            if record is None:
                raise NotFoundError("Consent", consent_id)
            now = self._clock()
            if record.status in (ConsentStatus.PENDING, ConsentStatus.GRANTED) \
                    and record.expires_at is not None and record.expires_at <= now:
                await self._expire_locked(record, now)
            if record.status != expected:
                raise ConflictError(
                    f"Consent cannot move from {record.status.value} to {target.value}",
                    entity_type="Consent", entity_id=consent_id,
                    current_status=record.status.value,
                )
            if check is not None:
                check(record)
            changes = apply(record, now) if apply else {}
            changes["status"] = {"from": record.status.value, "to": target.value}
            record.status = target
            record.history.append(ConsentHistoryEntry(
                timestamp=now, action=action, reason=reason, ip_address=ip_address,
                user_agent=user_agent, changes=changes,
            ))
            await self._save(record)
            await self._audit_transition(record, action, ip_address,
                                         {"reason": reason} if reason else {})
        logger.info("consent_transitioned", consent_id=consent_id, user_id=record.user_id,
                    status=target.value)
        return record

    async def _expire_locked(self, record: ConsentRecord, now: datetime) -> None:
        previous = record.status
        record.status = ConsentStatus.EXPIRED
        record.history.append(ConsentHistoryEntry(
            timestamp=now, action=ConsentAction.EXPIRED, reason="expiry_reached",
            changes={"status": {"from": previous.value, "to": ConsentStatus.EXPIRED.value}},
        ))
        await self._save(record)
        await self._audit_transition(record, ConsentAction.EXPIRED, None,
                                     {"previous_status": previous.value})

    async def _save(self, record: ConsentRecord) -> None:
        try:
            await self._consents.put(record)
        except Exception as e:
            raise DependencyError("consent_store", "Failed to persist consent record",
                                  cause=e, details={"consent_id": record.consent_id}) from e

    async def _audit_transition(self, record: ConsentRecord, action: ConsentAction,
                                ip_address: str | None, details: dict[str, Any]) -> None:
        severity = AuditSeverity.MEDIUM if action in (ConsentAction.WITHDRAWN,
                                                      ConsentAction.EXPIRED) else AuditSeverity.LOW
        await self._audit.log_event(
            AuditEventType.CONSENT_CHANGE, f"consent_{action.value}", user_id=record.user_id,
            ip_address=ip_address, severity=severity,
            resource=AuditResource(resource_type="consent", resource_id=record.consent_id),
            details={"consent_type": record.consent_type.value, "status": record.status.value,
                     **details},
        )

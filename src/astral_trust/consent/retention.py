"""
Astral Core Trust Consent - Data retention execution.

Evaluates each active retention policy for a user and applies the configured
action (delete, anonymize, archive or review) to the personal data store.
Failures are collected per category so one bad category never blocks the rest.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable

import structlog

from astral_trust.audit import AuditEventType, AuditLogger, AuditResource, AuditSeverity
from astral_trust.consent.entities import (
    ConsentRecord,
    ConsentStatus,
    LegalBasis,
    RetentionActionType,
    RetentionException,
    RetentionExceptionType,
    RetentionExecutionResult,
    RetentionPolicy,
    RetentionTrigger,
    RetentionTriggerType,
)
from astral_trust.consent.repository import RetentionPolicyRepository
from astral_trust.enums import DataCategory
from astral_trust.ports import PersonalDataStore
from astral_trust.utils import Clock, DateTimeUtils

logger = structlog.get_logger(__name__)

ConditionPredicate = Callable[[str, DataCategory], Awaitable[bool]]


class RetentionConditions:
    """Named async predicates for event-based triggers and policy exceptions.

    Unregistered conditions never hold.
    """

    def __init__(self) -> None:
        self._predicates: dict[str, ConditionPredicate] = {}

    def register(self, name: str, predicate: ConditionPredicate) -> None:
        self._predicates[name] = predicate

    def unregister(self, name: str) -> None:
        self._predicates.pop(name, None)

    async def holds(self, name: str, user_id: str, category: DataCategory) -> bool:
        predicate = self._predicates.get(name)
        if predicate is None:
            logger.debug("retention_condition_unregistered", condition=name)
            return False
        return bool(await predicate(user_id, category))


def default_retention_policies(now: datetime) -> list[RetentionPolicy]:
    return [
        RetentionPolicy(
            policy_id="gdpr_default", name="GDPR Default Retention",
            data_category=DataCategory.PROFILE, retention_period_days=1095,
            legal_basis=LegalBasis.CONSENT,
            triggers=[RetentionTrigger(trigger_type=RetentionTriggerType.CONSENT_WITHDRAWN,
                                       condition="consent_withdrawn",
                                       action=RetentionActionType.DELETE)],
            exceptions=[RetentionException(exception_type=RetentionExceptionType.LEGAL_HOLD,
                                           condition="ongoing_legal_case",
                                           extended_retention_days=365,
                                           justification="Legal proceedings require data retention")],
            regulations=["GDPR"], jurisdiction="EU", created_at=now, updated_at=now,
        ),
        RetentionPolicy(
            policy_id="hipaa_medical", name="HIPAA Medical Records",
            data_category=DataCategory.MEDICAL, retention_period_days=2555,
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
            triggers=[RetentionTrigger(trigger_type=RetentionTriggerType.TIME_BASED,
                                       condition="retention_period_exceeded",
                                       action=RetentionActionType.ARCHIVE)],
            exceptions=[RetentionException(exception_type=RetentionExceptionType.ACTIVE_TREATMENT,
                                           condition="patient_under_care",
                                           extended_retention_days=365,
                                           justification="Ongoing patient care requires access to records")],
            regulations=["HIPAA"], jurisdiction="US", created_at=now, updated_at=now,
        ),
    ]


class RetentionExecutor:
    """Applies retention policies for one user at a time."""

    def __init__(self, policies: RetentionPolicyRepository, data_store: PersonalDataStore,
                 audit: AuditLogger, conditions: RetentionConditions | None = None,
                 clock: Clock | None = None) -> None:
        self._policies = policies
        self._data_store = data_store
        self._audit = audit
        self._conditions = conditions or RetentionConditions()
        self._clock = clock or DateTimeUtils.utc_now

    @property
    def conditions(self) -> RetentionConditions:
        return self._conditions

    async def execute(self, user_id: str, consents: list[ConsentRecord]) -> RetentionExecutionResult:
        result = RetentionExecutionResult(user_id=user_id)
        applied: set[tuple[DataCategory, RetentionActionType]] = set()
        for policy in await self._policies.list_all(active_only=True):
            category = policy.data_category
            try:
                exception = await self._active_exception(user_id, policy)
                if exception is not None:
                    result.deferred_policies.append(policy.policy_id)
                    logger.info("retention_deferred", user_id=user_id, policy_id=policy.policy_id,
                                exception=exception.exception_type.value,
                                extended_days=exception.extended_retention_days)
                    continue
                actions = await self._due_actions(user_id, policy, consents)
            except Exception as e:
                result.errors.append(f"{category.value}: evaluation failed: {e}")
                logger.error("retention_evaluation_failed", user_id=user_id,
                             policy_id=policy.policy_id, error=str(e))
                continue
            for action in actions:
                if (category, action) in applied:
                    continue
                applied.add((category, action))
                await self._apply(user_id, policy, action, result)
        logger.info("retention_executed", user_id=user_id, actions=result.actions_taken,
                    deferred=len(result.deferred_policies), errors=len(result.errors))
        return result

    async def _active_exception(self, user_id: str,
                                policy: RetentionPolicy) -> RetentionException | None:
        for exception in policy.exceptions:
            if await self._conditions.holds(exception.condition, user_id, policy.data_category):
                return exception
        return None

    async def _due_actions(self, user_id: str, policy: RetentionPolicy,
                           consents: list[ConsentRecord]) -> list[RetentionActionType]:
        if policy.is_immediate:
            return [RetentionActionType.DELETE]
        due = []
        for trigger in policy.triggers:
            if await self._trigger_holds(user_id, policy, trigger, consents):
                due.append(trigger.action)
        return due

    async def _trigger_holds(self, user_id: str, policy: RetentionPolicy,
                             trigger: RetentionTrigger, consents: list[ConsentRecord]) -> bool:
        category = policy.data_category
        if trigger.trigger_type == RetentionTriggerType.TIME_BASED:
            if policy.retention_period_days <= 0:
                return False
            oldest = await self._data_store.oldest_record_at(user_id, category)
            if oldest is None:
                return False
            return self._clock() - DateTimeUtils.ensure_utc(oldest) > \
                timedelta(days=policy.retention_period_days)
        if trigger.trigger_type == RetentionTriggerType.CONSENT_WITHDRAWN:
            return any(c.user_id == user_id and c.status == ConsentStatus.WITHDRAWN
                       and category in c.data_categories for c in consents)
        if trigger.trigger_type == RetentionTriggerType.ACCOUNT_DELETED:
            return await self._data_store.is_account_deleted(user_id)
        return await self._conditions.holds(trigger.condition, user_id, category)

    async def _apply(self, user_id: str, policy: RetentionPolicy, action: RetentionActionType,
                     result: RetentionExecutionResult) -> None:
        category = policy.data_category
        try:
            affected: int | None = None
            if action == RetentionActionType.DELETE:
                affected = await self._data_store.delete(user_id, category)
                result.deleted_categories.append(category)
            elif action == RetentionActionType.ANONYMIZE:
                affected = await self._data_store.anonymize(user_id, category)
                result.anonymized_categories.append(category)
            elif action == RetentionActionType.ARCHIVE:
                affected = await self._data_store.archive(user_id, category)
                result.archived_categories.append(category)
            else:
                await self._data_store.schedule_review(user_id, category, policy.name)
                result.review_categories.append(category)
        except Exception as e:
            result.errors.append(f"{category.value}: {action.value} failed: {e}")
            logger.error("retention_action_failed", user_id=user_id, category=category.value,
                         action=action.value, error=str(e))
            return
        try:
            await self._audit.log_event(
                AuditEventType.RETENTION_ACTION, f"data_{action.value}", user_id=user_id,
                severity=AuditSeverity.MEDIUM,
                resource=AuditResource(resource_type="data_category", resource_id=category.value,
                                       contains_phi=category in (DataCategory.MEDICAL,
                                                                 DataCategory.THERAPEUTIC)),
                details={"policy_id": policy.policy_id, "records_affected": affected,
                         "regulations": policy.regulations},
            )
        except Exception as e:
            result.errors.append(f"{category.value}: audit failed: {e}")
            logger.error("retention_audit_failed", user_id=user_id, category=category.value,
                         action=action.value, error=str(e))

"""
Astral Core Trust Crisis - Intervention engine.
Combines classification, alert history and the resource directory into a
detection result with a response protocol, and runs immediate actions for
critical cases.
"""
from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Any

import structlog

from astral_trust.audit import AuditEventType, AuditLogger, AuditResource, AuditSeverity
from astral_trust.config import CrisisConfig, EscalationConfig
from astral_trust.crisis.classifier import PatternClassifier, normalize_text
from astral_trust.crisis.entities import (
    ActionOutcome,
    ActionOutcomeStatus,
    ActionPriority,
    ActionType,
    AlertType,
    Classification,
    CrisisAction,
    CrisisAssessment,
    CrisisHistory,
    CrisisProtocol,
    CrisisStats,
    DetectionResult,
    EscalationStep,
    ResourceRef,
    SafetyAlert,
)
from astral_trust.crisis.history import CrisisHistoryStore
from astral_trust.crisis.resources import ResourceDirectory, country_for_timezone
from astral_trust.enums import CrisisSeverity
from astral_trust.exceptions import ConflictError, DependencyError, NotFoundError
from astral_trust.ports import ExternalClassifier, NotificationSink, ResponderRegistry
from astral_trust.utils import Clock, CryptoUtils, DateTimeUtils, KeyedLock

logger = structlog.get_logger(__name__)

REPEATED_PATTERN_INDICATOR = "repeated_crisis_pattern"

_AUDIT_SEVERITY: dict[CrisisSeverity, AuditSeverity] = {
    CrisisSeverity.LOW: AuditSeverity.LOW,
    CrisisSeverity.MEDIUM: AuditSeverity.MEDIUM,
    CrisisSeverity.HIGH: AuditSeverity.HIGH,
    CrisisSeverity.CRITICAL: AuditSeverity.CRITICAL,
}


def _action(action_type: ActionType, priority: ActionPriority, description: str,
            automated: bool = False) -> CrisisAction:
    return CrisisAction(action_type=action_type, priority=priority,
                        description=description, automated=automated)


_PROTOCOL_ACTIONS: dict[CrisisSeverity, tuple[list[CrisisAction], list[CrisisAction]]] = {
    CrisisSeverity.CRITICAL: (
        [
            _action(ActionType.NOTIFY_RESPONDERS, ActionPriority.IMMEDIATE,
                    "Alert on-call crisis responders", automated=True),
            _action(ActionType.PROVIDE_RESOURCES, ActionPriority.IMMEDIATE,
                    "Show emergency crisis resources", automated=True),
            _action(ActionType.CONNECT_RESPONDER, ActionPriority.IMMEDIATE,
                    "Attempt to connect the user with an available counselor", automated=True),
        ],
        [
            _action(ActionType.SCHEDULE_PROFESSIONAL_FOLLOWUP, ActionPriority.URGENT,
                    "Schedule a professional follow-up"),
        ],
    ),
    CrisisSeverity.HIGH: (
        [
            _action(ActionType.PROVIDE_RESOURCES, ActionPriority.URGENT,
                    "Show crisis resources", automated=True),
            _action(ActionType.FLAG_FOR_REVIEW, ActionPriority.URGENT,
                    "Flag the conversation for human review", automated=True),
        ],
        [
            _action(ActionType.OFFER_PEER_CONNECTION, ActionPriority.STANDARD,
                    "Offer a connection to peer support"),
        ],
    ),
    CrisisSeverity.MEDIUM: (
        [
            _action(ActionType.PROVIDE_RESOURCES, ActionPriority.STANDARD,
                    "Show support resources", automated=True),
        ],
        [],
    ),
}


class CrisisInterventionEngine:
    """
    Crisis detection orchestrator.

    Detection never fails visibly: lookups that can degrade do so, and the only
    error propagated is failure to persist the SafetyAlert.
    """

    def __init__(self, history: CrisisHistoryStore, audit: AuditLogger, *,
                 classifier: PatternClassifier | None = None,
                 directory: ResourceDirectory | None = None,
                 notifier: NotificationSink | None = None,
                 responders: ResponderRegistry | None = None,
                 external_classifier: ExternalClassifier | None = None,
                 config: CrisisConfig | None = None,
                 escalation: EscalationConfig | None = None,
                 clock: Clock | None = None) -> None:
        self._history = history
        self._audit = audit
        self._config = config or CrisisConfig()
        self._escalation = escalation or EscalationConfig()
        self._classifier = classifier or PatternClassifier()
        self._directory = directory or ResourceDirectory(max_results=self._config.max_resources)
        self._notifier = notifier
        self._responders = responders
        self._external = external_classifier if self._config.enable_external_classifier else None
        self._clock = clock or DateTimeUtils.utc_now
        self._alert_locks = KeyedLock()
        self._fingerprint_key = self._config.fingerprint_key.get_secret_value()
        self._stats = {"detections": 0, "crises_detected": 0, "critical_detections": 0,
                       "degraded_detections": 0, "notifications_suppressed": 0,
                       "action_failures": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def detect(self, text: Any, user_id: str,
                     context: dict[str, Any] | None = None) -> DetectionResult:
        """Classify text for a user and respond according to severity.

        Recognised context keys: ``locale``, ``country_code``, ``timezone``,
        ``behaviors`` and ``source``.
        """
        context = dict(context or {})
        self._stats["detections"] += 1
        try:
            classification = self._classifier.classify(text, context.get("behaviors", ()))
        except Exception as e:
            self._stats["degraded_detections"] += 1
            logger.error("crisis_classification_failed", user_id=user_id, error=str(e))
            return DetectionResult(degraded=True, resources=self._directory.fallback_resources())

        classification = await self._merge_external(text, classification, user_id)
        history = await self._load_history(user_id)
        severity, indicators = self._apply_history(classification, history)

        assessment = CrisisAssessment(
            user_id=user_id, text_fingerprint=self._fingerprint(text), severity=severity,
            indicators=tuple(indicators), created_at=self._clock(),
        )
        try:
            await self._history.record_assessment(assessment)
        except Exception as e:
            logger.warning("crisis_assessment_not_recorded", user_id=user_id, error=str(e))

        if severity == CrisisSeverity.LOW:
            return DetectionResult(indicators=indicators, assessment_id=assessment.assessment_id)

        self._stats["crises_detected"] += 1
        resources = self._lookup_resources(severity, context)
        protocol = self.build_protocol(severity, indicators, resources)
        cooldown = await self._check_cooldown(user_id)

        alert = SafetyAlert(
            user_id=user_id,
            alert_type=AlertType.CRISIS if severity == CrisisSeverity.CRITICAL else AlertType.SELF_HARM,
            severity=severity, indicators=indicators,
            context={k: v for k, v in context.items() if k != "behaviors"},
            actions=[a.action_type.value for a in protocol.immediate_actions],
            detected_at=self._clock(),
        )
        try:
            await self._history.record_alert(alert)
        except Exception as e:
            raise DependencyError("safety_alert_store", "Failed to persist safety alert",
                                  cause=e, details={"user_id": user_id}) from e
        await self._audit_alert(alert, cooldown)

        outcomes: list[ActionOutcome] = []
        if severity == CrisisSeverity.CRITICAL:
            self._stats["critical_detections"] += 1
            outcomes = await self._execute_immediate_actions(protocol, alert, cooldown)

        logger.info("crisis_detected", user_id=user_id, severity=severity.value,
                    indicator_count=len(indicators), alert_id=alert.alert_id,
                    cooldown_active=cooldown)
        return DetectionResult(
            is_crisis=True, severity=severity, indicators=indicators, resources=resources,
            protocol=protocol, alert_id=alert.alert_id, assessment_id=assessment.assessment_id,
            cooldown_active=cooldown, action_outcomes=outcomes,
        )

    def build_protocol(self, severity: CrisisSeverity, indicators: list[str],
                       resources: list[ResourceRef]) -> CrisisProtocol:
        immediate, follow_up = _PROTOCOL_ACTIONS.get(severity, ([], []))
        return CrisisProtocol(
            indicators=list(indicators), immediate_actions=list(immediate),
            follow_up_actions=list(follow_up), resources=list(resources),
            escalation_path=self._escalation_path(), created_at=self._clock(),
        )

    def _escalation_path(self) -> list[EscalationStep]:
        return [
            EscalationStep(level=1, condition="No human response within "
                           f"{self._escalation.first_response_minutes} minutes",
                           action="escalate_to_senior_reviewer",
                           notify_list=list(self._escalation.level_1_notify),
                           timeframe_minutes=self._escalation.first_response_minutes),
            EscalationStep(level=2, condition="Crisis indicators persist",
                           action="notify_crisis_team",
                           notify_list=list(self._escalation.level_2_notify),
                           timeframe_minutes=self._escalation.persistent_crisis_minutes),
        ]

    async def is_in_cooldown(self, user_id: str) -> bool:
        return await self._history.is_in_cooldown(user_id)

    async def handle_alert(self, alert_id: str, handled_by: str,
                           notes: str | None = None) -> SafetyAlert:
        """Mark an alert handled by a responder. Handling is one-shot."""
        async with self._alert_locks(alert_id):
            alert = await self._history.alerts.get_by_id(alert_id)
            if alert is None:
                raise NotFoundError("SafetyAlert", alert_id)
            if alert.handled:
                raise ConflictError("Safety alert already handled", entity_type="SafetyAlert",
                                    entity_id=alert_id, current_status="handled")
            alert = alert.model_copy(update={"handled": True, "handled_at": self._clock(),
                                             "handled_by": handled_by, "notes": notes})
            await self._history.alerts.save(alert)
        await self._audit.log_event(
            AuditEventType.CRISIS_ALERT, "crisis_alert_handled", user_id=alert.user_id,
            severity=_AUDIT_SEVERITY[alert.severity],
            resource=AuditResource(resource_type="safety_alert", resource_id=alert_id),
            details={"handled_by": handled_by},
        )
        logger.info("crisis_alert_handled", alert_id=alert_id, handled_by=handled_by)
        return alert

    async def get_crisis_stats(self) -> CrisisStats:
        alerts = await self._history.alerts.list_all()
        now = self._clock()
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo or timezone.utc)
        handled = [a for a in alerts if a.handled and a.handled_at is not None]
        response_minutes = [DateTimeUtils.minutes_between(a.detected_at, a.handled_at)
                            for a in handled]
        return CrisisStats(
            total_alerts=len(alerts),
            active_alerts=sum(1 for a in alerts if not a.handled),
            handled_today=sum(1 for a in handled if a.handled_at >= start_of_day),
            average_response_minutes=round(sum(response_minutes) / len(response_minutes), 2)
            if response_minutes else 0.0,
        )

    def _fingerprint(self, text: Any) -> str:
        return CryptoUtils.hmac_sign(normalize_text(text) if isinstance(text, str) else "",
                                     self._fingerprint_key)

    async def _merge_external(self, text: Any, classification: Classification,
                              user_id: str) -> Classification:
        if self._external is None or not isinstance(text, str):
            return classification
        try:
            external = await self._external.classify_text(text)
        except Exception as e:
            logger.warning("external_classifier_failed", user_id=user_id, error=str(e))
            return classification
        if not external.detected:
            return classification
        indicators = classification.indicators + [f"external:{i}" for i in external.indicators]
        return Classification(
            severity=CrisisSeverity.highest(classification.severity, external.severity),
            indicators=list(dict.fromkeys(indicators)),
        )

    async def _load_history(self, user_id: str) -> CrisisHistory:
        try:
            return await self._history.recent_history(user_id)
        except Exception as e:
            logger.warning("crisis_history_unavailable", user_id=user_id, error=str(e))
            return CrisisHistory()

    def _apply_history(self, classification: Classification,
                       history: CrisisHistory) -> tuple[CrisisSeverity, list[str]]:
        severity = classification.severity
        indicators = list(classification.indicators)
        if severity != CrisisSeverity.LOW and \
                history.recent_alert_count > self._config.repeat_alert_threshold:
            if REPEATED_PATTERN_INDICATOR not in indicators:
                indicators.append(REPEATED_PATTERN_INDICATOR)
            if severity == CrisisSeverity.MEDIUM:
                severity = CrisisSeverity.HIGH
        return severity, indicators

    def _lookup_resources(self, severity: CrisisSeverity,
                          context: dict[str, Any]) -> list[ResourceRef]:
        locale = context.get("locale") or self._config.default_locale
        country = context.get("country_code")
        if not country:
            country = (country_for_timezone(context["timezone"]) if context.get("timezone")
                       else self._config.default_country)
        try:
            resources = self._directory.resources_for(severity, locale, country)
        except Exception as e:
            logger.warning("crisis_resource_lookup_failed", error=str(e))
            resources = []
        return resources or self._directory.fallback_resources()

    async def _check_cooldown(self, user_id: str) -> bool:
        try:
            return await self._history.is_in_cooldown(user_id)
        except Exception as e:
            logger.warning("crisis_cooldown_check_failed", user_id=user_id, error=str(e))
            return False

    async def _audit_alert(self, alert: SafetyAlert, cooldown: bool) -> None:
        try:
            await self._audit.log_event(
                AuditEventType.CRISIS_ALERT, "crisis_alert_created", user_id=alert.user_id,
                severity=_AUDIT_SEVERITY[alert.severity],
                resource=AuditResource(resource_type="safety_alert", resource_id=alert.alert_id),
                details={"indicators": alert.indicators, "cooldown_active": cooldown},
            )
        except Exception as e:
            logger.error("crisis_alert_audit_failed", alert_id=alert.alert_id, error=str(e))

    async def _execute_immediate_actions(self, protocol: CrisisProtocol, alert: SafetyAlert,
                                         cooldown: bool) -> list[ActionOutcome]:
        outcomes = []
        for action in protocol.immediate_actions:
            if not action.automated:
                continue
            outcome = await self._execute_action(action, alert, cooldown)
            if outcome.status == ActionOutcomeStatus.FAILED:
                self._stats["action_failures"] += 1
            elif outcome.status == ActionOutcomeStatus.SUPPRESSED:
                self._stats["notifications_suppressed"] += 1
            outcomes.append(outcome)
        return outcomes

    async def _execute_action(self, action: CrisisAction, alert: SafetyAlert,
                              cooldown: bool) -> ActionOutcome:
        if action.action_type == ActionType.PROVIDE_RESOURCES:
            return ActionOutcome(action_type=action.action_type,
                                 status=ActionOutcomeStatus.COMPLETED)
        if action.action_type not in (ActionType.NOTIFY_RESPONDERS, ActionType.CONNECT_RESPONDER):
            return ActionOutcome(action_type=action.action_type, status=ActionOutcomeStatus.SKIPPED)
        if cooldown:
            logger.info("crisis_notification_suppressed", alert_id=alert.alert_id,
                        action=action.action_type.value)
            return ActionOutcome(action_type=action.action_type,
                                 status=ActionOutcomeStatus.SUPPRESSED)
        if self._notifier is None or self._responders is None:
            return ActionOutcome(action_type=action.action_type, status=ActionOutcomeStatus.SKIPPED,
                                 error="notification channel not configured")
        try:
            if action.action_type == ActionType.NOTIFY_RESPONDERS:
                targets = await self._responders.on_call_responders()
                event_type = "crisis_alert"
            else:
                targets = await self._responders.available_counselors()
                event_type = "crisis_support_request"
            if not targets:
                return ActionOutcome(action_type=action.action_type,
                                     status=ActionOutcomeStatus.FAILED,
                                     error="no responders available")
            await self._notifier.notify(targets, event_type, {
                "alert_id": alert.alert_id, "user_id": alert.user_id,
                "severity": alert.severity.value, "indicators": alert.indicators,
                "priority": ActionPriority.IMMEDIATE.value,
            })
        except Exception as e:
            logger.error("crisis_action_failed", alert_id=alert.alert_id,
                         action=action.action_type.value, error=str(e))
            return ActionOutcome(action_type=action.action_type,
                                 status=ActionOutcomeStatus.FAILED, error=str(e))
        return ActionOutcome(action_type=action.action_type,
                             status=ActionOutcomeStatus.COMPLETED, notified=list(targets))

"""
Astral Core Trust Crisis - Alert history.
Rolling per-user window of past alerts; reads derive a pattern, writes are explicit.
"""
from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from astral_trust.config import CrisisConfig
from astral_trust.crisis.entities import CrisisAssessment, CrisisHistory, SafetyAlert
from astral_trust.crisis.repository import (
    CrisisAssessmentRepository,
    InMemoryCrisisAssessmentRepository,
    InMemorySafetyAlertRepository,
    SafetyAlertRepository,
)
from astral_trust.enums import CrisisSeverity
from astral_trust.utils import Clock, DateTimeUtils

logger = structlog.get_logger(__name__)


class CrisisHistoryStore:
    """Crisis history over the alert and assessment repositories."""

    def __init__(self, alerts: SafetyAlertRepository | None = None,
                 assessments: CrisisAssessmentRepository | None = None,
                 config: CrisisConfig | None = None, clock: Clock | None = None) -> None:
        self._alerts = alerts or InMemorySafetyAlertRepository()
        self._assessments = assessments or InMemoryCrisisAssessmentRepository()
        self._config = config or CrisisConfig()
        self._clock = clock or DateTimeUtils.utc_now

    @property
    def alerts(self) -> SafetyAlertRepository:
        return self._alerts

    async def recent_history(self, user_id: str) -> CrisisHistory:
        now = self._clock()
        since = now - timedelta(days=self._config.history_window_days)
        recent = await self._alerts.list_by_user(user_id, since=since)
        count = len(recent)
        last_alert_at = max((a.detected_at for a in recent), default=None)
        return CrisisHistory(recent_alert_count=count, last_alert_at=last_alert_at,
                             pattern=self._derive_pattern(count, last_alert_at, now))

    def _derive_pattern(self, count: int, last_alert_at: datetime | None,
                        now: datetime) -> str | None:
        if count > self._config.frequent_alert_threshold:
            return "frequent"
        if count > self._config.escalating_alert_threshold:
            return "escalating"
        if count > 0 and last_alert_at is not None and \
                now - last_alert_at < timedelta(days=self._config.recent_pattern_days):
            return "recent"
        return None

    async def record_alert(self, alert: SafetyAlert) -> SafetyAlert:
        saved = await self._alerts.save(alert)
        logger.info("crisis_alert_recorded", alert_id=alert.alert_id, user_id=alert.user_id,
                    severity=alert.severity.value)
        return saved

    async def record_assessment(self, assessment: CrisisAssessment) -> None:
        await self._assessments.append(assessment)

    async def is_in_cooldown(self, user_id: str) -> bool:
        """True if a critical alert was recorded for the user within the cooldown window."""
        since = self._clock() - timedelta(minutes=self._config.cooldown_minutes)
        recent = await self._alerts.list_by_user(user_id, since=since)
        return any(a.severity == CrisisSeverity.CRITICAL for a in recent)

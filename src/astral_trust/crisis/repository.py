"""
Astral Core Trust Crisis - Repository Layer.
Persistence ports and in-memory implementations for alerts and assessments.
"""
from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
import structlog

from astral_trust.crisis.entities import CrisisAssessment, SafetyAlert

logger = structlog.get_logger(__name__)


class SafetyAlertRepository(ABC):
    """Abstract repository for safety alerts."""

    @abstractmethod
    async def save(self, alert: SafetyAlert) -> SafetyAlert:
        """Insert or replace an alert."""

    @abstractmethod
    async def get_by_id(self, alert_id: str) -> SafetyAlert | None:
        """Get alert by id."""

    @abstractmethod
    async def list_by_user(self, user_id: str, since: datetime | None = None) -> list[SafetyAlert]:
        """Alerts for a user, oldest first, optionally bounded below by detection time."""

    @abstractmethod
    async def list_all(self) -> list[SafetyAlert]:
        """Every stored alert."""


class CrisisAssessmentRepository(ABC):
    """Abstract append-only repository for assessments."""

    @abstractmethod
    async def append(self, assessment: CrisisAssessment) -> None:
        """Append an assessment."""

    @abstractmethod
    async def list_by_user(self, user_id: str, limit: int = 100) -> list[CrisisAssessment]:
        """Most recent assessments for a user, newest first."""


class InMemorySafetyAlertRepository(SafetyAlertRepository):
    """In-memory implementation for development and testing."""

    def __init__(self) -> None:
        self._alerts: dict[str, SafetyAlert] = {}
        self._lock = asyncio.Lock()

    async def save(self, alert: SafetyAlert) -> SafetyAlert:
        async with self._lock:
            self._alerts[alert.alert_id] = alert.model_copy(deep=True)
            logger.debug("alert_saved", alert_id=alert.alert_id)
            return alert

    async def get_by_id(self, alert_id: str) -> SafetyAlert | None:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert else None

    async def list_by_user(self, user_id: str, since: datetime | None = None) -> list[SafetyAlert]:
        alerts = [a.model_copy(deep=True) for a in self._alerts.values()
                  if a.user_id == user_id and (since is None or a.detected_at >= since)]
        alerts.sort(key=lambda a: a.detected_at)
        return alerts

    async def list_all(self) -> list[SafetyAlert]:
        return [a.model_copy(deep=True) for a in self._alerts.values()]


class InMemoryCrisisAssessmentRepository(CrisisAssessmentRepository):
    """In-memory implementation for development and testing."""

    def __init__(self) -> None:
        self._assessments: list[CrisisAssessment] = []
        self._lock = asyncio.Lock()

    async def append(self, assessment: CrisisAssessment) -> None:
        async with self._lock:
            self._assessments.append(assessment)

    async def list_by_user(self, user_id: str, limit: int = 100) -> list[CrisisAssessment]:
        matching = [a for a in self._assessments if a.user_id == user_id]
        return list(reversed(matching))[:limit]

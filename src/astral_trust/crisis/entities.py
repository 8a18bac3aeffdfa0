"""
Astral Core Trust Crisis - Domain entities.
Assessments, alerts, protocols and support resources.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from astral_trust.enums import CrisisSeverity
from astral_trust.utils import CryptoUtils


class ResourceType(str, Enum):
    """Support resource channel, in priority order for urgent cases."""
    HOTLINE = "hotline"
    CHAT = "chat"
    WEBSITE = "website"
    APP = "app"
    LOCAL_SERVICE = "local_service"


class AlertType(str, Enum):
    CRISIS = "crisis"
    SELF_HARM = "self_harm"


class ActionType(str, Enum):
    NOTIFY_RESPONDERS = "notify_responders"
    PROVIDE_RESOURCES = "provide_resources"
    CONNECT_RESPONDER = "connect_responder"
    FLAG_FOR_REVIEW = "flag_for_review"
    SCHEDULE_PROFESSIONAL_FOLLOWUP = "schedule_professional_followup"
    OFFER_PEER_CONNECTION = "offer_peer_connection"


class ActionPriority(str, Enum):
    IMMEDIATE = "immediate"
    URGENT = "urgent"
    STANDARD = "standard"


class ActionOutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    SKIPPED = "skipped"


class ResourceRef(BaseModel):
    """Entry in the resource directory."""
    resource_id: str
    name: str
    resource_type: ResourceType
    contact: str
    description: str = ""
    available: str = "24/7"
    languages: tuple[str, ...] = ("en",)
    countries: tuple[str, ...] = ("INTL",)
    model_config = {"frozen": True}


class Classification(BaseModel):
    """Severity plus the ordered, de-duplicated rule ids that produced it."""
    severity: CrisisSeverity = CrisisSeverity.LOW
    indicators: list[str] = Field(default_factory=list)


class CrisisAssessment(BaseModel):
    """Immutable record of one classification call; raw text is never kept."""
    assessment_id: str = Field(default_factory=lambda: CryptoUtils.generate_id("asmt"))
    user_id: str
    text_fingerprint: str
    severity: CrisisSeverity
    indicators: tuple[str, ...] = ()
    created_at: datetime
    model_config = {"frozen": True}


class CrisisAction(BaseModel):
    action_type: ActionType
    priority: ActionPriority
    description: str
    automated: bool = False
    model_config = {"frozen": True}


class EscalationStep(BaseModel):
    """Declarative timer for an external responder-facing scheduler."""
    level: int = Field(..., ge=1)
    condition: str
    action: str
    notify_list: list[str] = Field(default_factory=list)
    timeframe_minutes: int = Field(..., ge=1)


class CrisisProtocol(BaseModel):
    protocol_id: str = Field(default_factory=lambda: CryptoUtils.generate_id("proto"))
    trigger_type: str = "keyword"
    indicators: list[str] = Field(default_factory=list)
    immediate_actions: list[CrisisAction] = Field(default_factory=list)
    follow_up_actions: list[CrisisAction] = Field(default_factory=list)
    resources: list[ResourceRef] = Field(default_factory=list)
    escalation_path: list[EscalationStep] = Field(default_factory=list)
    created_at: datetime


class SafetyAlert(BaseModel):
    """Persisted crisis alert; only handling mutates it."""
    alert_id: str = Field(default_factory=lambda: CryptoUtils.generate_id("alert"))
    user_id: str
    alert_type: AlertType
    severity: CrisisSeverity
    indicators: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    actions: list[str] = Field(default_factory=list)
    handled: bool = False
    handled_at: datetime | None = None
    handled_by: str | None = None
    notes: str | None = None
    detected_at: datetime


class CrisisHistory(BaseModel):
    recent_alert_count: int = 0
    last_alert_at: datetime | None = None
    pattern: str | None = None


class ActionOutcome(BaseModel):
    action_type: ActionType
    status: ActionOutcomeStatus
    notified: list[str] = Field(default_factory=list)
    error: str | None = None


class DetectionResult(BaseModel):
    """Result of a crisis detection call."""
    is_crisis: bool = False
    severity: CrisisSeverity = CrisisSeverity.LOW
    indicators: list[str] = Field(default_factory=list)
    resources: list[ResourceRef] = Field(default_factory=list)
    protocol: CrisisProtocol | None = None
    alert_id: str | None = None
    assessment_id: str | None = None
    cooldown_active: bool = False
    action_outcomes: list[ActionOutcome] = Field(default_factory=list)
    degraded: bool = False


class CrisisStats(BaseModel):
    total_alerts: int = 0
    active_alerts: int = 0
    handled_today: int = 0
    average_response_minutes: float = 0.0

"""
Astral Core Trust Consent - Domain entities.
Consent records with append-only history, and data retention policies.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from astral_trust.enums import DataCategory
from astral_trust.utils import CryptoUtils


class ConsentType(str, Enum):
    DATA_PROCESSING = "data_processing"
    MARKETING = "marketing"
    COOKIES = "cookies"
    ANALYTICS = "analytics"
    THIRD_PARTY_SHARING = "third_party_sharing"
    TREATMENT = "treatment"
    PAYMENT = "payment"
    HEALTHCARE_OPERATIONS = "healthcare_operations"
    RESEARCH = "research"
    DISCLOSURE = "disclosure"
    CRISIS_CONTACT = "crisis_contact"
    EMERGENCY_CONTACT = "emergency_contact"
    FAMILY_NOTIFICATION = "family_notification"
    THERAPY_RECORDING = "therapy_recording"


class ConsentStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


class LegalBasis(str, Enum):
    """GDPR Article 6 lawful bases for processing."""
    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTERESTS = "vital_interests"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTERESTS = "legitimate_interests"


class ConsentMethod(str, Enum):
    EXPLICIT = "explicit"
    IMPLIED = "implied"
    OPT_IN = "opt_in"
    OPT_OUT = "opt_out"


class ConsentAction(str, Enum):
    REQUESTED = "requested"
    GRANTED = "granted"
    DENIED = "denied"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


class ComplianceStatus(str, Enum):
    COMPLIANT = "compliant"
    PARTIAL = "partial"
    NON_COMPLIANT = "non_compliant"


class RetentionTriggerType(str, Enum):
    TIME_BASED = "time_based"
    EVENT_BASED = "event_based"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    ACCOUNT_DELETED = "account_deleted"


class RetentionActionType(str, Enum):
    DELETE = "delete"
    ANONYMIZE = "anonymize"
    ARCHIVE = "archive"
    REVIEW = "review"


class RetentionExceptionType(str, Enum):
    LEGAL_HOLD = "legal_hold"
    ONGOING_CASE = "ongoing_case"
    ACTIVE_TREATMENT = "active_treatment"
    REGULATORY_REQUIREMENT = "regulatory_requirement"


INDEFINITE_RETENTION = 0
IMMEDIATE_DELETION = -1


class ConsentHistoryEntry(BaseModel):
    timestamp: datetime
    action: ConsentAction
    reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    changes: dict[str, Any] | None = None
    model_config = {"frozen": True}


class ConsentRecord(BaseModel):
    """Consent owned by the consent service. ``consent_text`` never changes after request."""
    consent_id: str = Field(default_factory=lambda: CryptoUtils.generate_id("consent"))
    user_id: str
    consent_type: ConsentType
    status: ConsentStatus = ConsentStatus.PENDING
    legal_basis: LegalBasis = LegalBasis.CONSENT
    purpose: str
    data_categories: frozenset[DataCategory]
    third_parties: list[str] = Field(default_factory=list)
    requested_at: datetime
    granted_at: datetime | None = None
    expires_at: datetime | None = None
    withdrawn_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    consent_method: ConsentMethod = ConsentMethod.EXPLICIT
    consent_text: str
    granular_settings: dict[str, bool] = Field(default_factory=dict)
    version: str = "1.0"
    history: list[ConsentHistoryEntry] = Field(default_factory=list)

    def is_valid_at(self, now: datetime) -> bool:
        return self.status == ConsentStatus.GRANTED and \
            (self.expires_at is None or self.expires_at > now)


class RetentionTrigger(BaseModel):
    trigger_type: RetentionTriggerType
    condition: str = ""
    action: RetentionActionType


class RetentionException(BaseModel):
    exception_type: RetentionExceptionType
    condition: str
    extended_retention_days: int = Field(default=0)
    justification: str = ""

    @field_validator("extended_retention_days")
    @classmethod
    def validate_extension(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Retention exceptions may only extend retention")
        return v


class RetentionPolicy(BaseModel):
    """Maps a data category to a retention period, triggers and exceptions."""
    policy_id: str = Field(default_factory=lambda: CryptoUtils.generate_id("policy"))
    name: str
    data_category: DataCategory
    retention_period_days: int = Field(..., ge=IMMEDIATE_DELETION)
    legal_basis: LegalBasis
    triggers: list[RetentionTrigger] = Field(default_factory=list)
    exceptions: list[RetentionException] = Field(default_factory=list)
    regulations: list[str] = Field(default_factory=list)
    jurisdiction: str = "GLOBAL"
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    @property
    def is_immediate(self) -> bool:
        return self.retention_period_days == IMMEDIATE_DELETION

    @property
    def is_indefinite(self) -> bool:
        return self.retention_period_days == INDEFINITE_RETENTION

    @property
    def max_extension_days(self) -> int:
        return max((e.extended_retention_days for e in self.exceptions), default=0)


class ConsentReport(BaseModel):
    user_id: str
    total_consents: int = 0
    active_consents: int = 0
    withdrawn_consents: int = 0
    expired_consents: int = 0
    consents_by_type: dict[str, int] = Field(default_factory=dict)
    compliance_status: ComplianceStatus = ComplianceStatus.COMPLIANT
    recommendations: list[str] = Field(default_factory=list)


class RetentionExecutionResult(BaseModel):
    """Outcome of one retention pass for a user."""
    user_id: str
    deleted_categories: list[DataCategory] = Field(default_factory=list)
    anonymized_categories: list[DataCategory] = Field(default_factory=list)
    archived_categories: list[DataCategory] = Field(default_factory=list)
    review_categories: list[DataCategory] = Field(default_factory=list)
    deferred_policies: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def actions_taken(self) -> int:
        return (len(self.deleted_categories) + len(self.anonymized_categories)
                + len(self.archived_categories) + len(self.review_categories))


class ConsentWithdrawal(BaseModel):
    consent: ConsentRecord
    retention: RetentionExecutionResult


class ConsentBundleItem(BaseModel):
    consent_type: ConsentType
    granted: bool
    granular_settings: dict[str, bool] = Field(default_factory=dict)


class ConsentBundle(BaseModel):
    user_id: str
    consents: list[ConsentBundleItem]
    consent_method: ConsentMethod = ConsentMethod.EXPLICIT
    ip_address: str | None = None
    user_agent: str | None = None

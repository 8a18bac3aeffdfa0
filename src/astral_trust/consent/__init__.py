"""Consent package - consent lifecycle, legal-basis rules and data retention."""
from .entities import (
    ConsentRecord,
    ConsentStatus,
    ConsentType,
    LegalBasis,
    RetentionExecutionResult,
    RetentionPolicy,
)
from .retention import RetentionConditions, RetentionExecutor
from .service import ConsentService, generate_consent_text

__all__ = [
    "ConsentRecord",
    "ConsentStatus",
    "ConsentType",
    "LegalBasis",
    "RetentionExecutionResult",
    "RetentionPolicy",
    "RetentionConditions",
    "RetentionExecutor",
    "ConsentService",
    "generate_consent_text",
]

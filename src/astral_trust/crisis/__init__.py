"""Crisis package - keyword classification, alert history, resources and intervention."""
from .classifier import PatternClassifier, PatternTier, normalize_text
from .engine import CrisisInterventionEngine
from .entities import (
    ActionOutcome,
    ActionType,
    CrisisAssessment,
    CrisisProtocol,
    DetectionResult,
    ResourceRef,
    SafetyAlert,
)
from .history import CrisisHistoryStore
from .resources import ResourceDirectory, country_for_timezone

__all__ = [
    "PatternClassifier",
    "PatternTier",
    "normalize_text",
    "CrisisInterventionEngine",
    "ActionOutcome",
    "ActionType",
    "CrisisAssessment",
    "CrisisProtocol",
    "DetectionResult",
    "ResourceRef",
    "SafetyAlert",
    "CrisisHistoryStore",
    "ResourceDirectory",
    "country_for_timezone",
]

"""
Astral Core Trust.

Crisis detection, secure session management and consent/retention
enforcement for the Astral Core mental health platform:
- Keyword crisis classifier with alert history and escalation protocols
- Typed sessions with security flags, IP binding and sliding expiry
- Consent lifecycle with legal-basis rules and data retention policies
- Hash-chained audit trail shared by all of the above
"""

from .audit import AuditEvent, AuditEventType, AuditLogger, AuditSeverity, InMemoryAuditStore
from .config import TrustConfig, get_trust_config, reset_config
from .core import TrustCore
from .enums import CrisisSeverity, DataCategory
from .exceptions import (
    ConflictError,
    ConfigurationError,
    DependencyError,
    NotFoundError,
    SecurityViolationError,
    SessionUnauthorizedError,
    TrustError,
    ValidationError,
)
from .observability import configure_logging

__version__ = "1.0.0"

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "AuditSeverity",
    "InMemoryAuditStore",
    "TrustConfig",
    "get_trust_config",
    "reset_config",
    "TrustCore",
    "CrisisSeverity",
    "DataCategory",
    "ConflictError",
    "ConfigurationError",
    "DependencyError",
    "NotFoundError",
    "SecurityViolationError",
    "SessionUnauthorizedError",
    "TrustError",
    "ValidationError",
    "configure_logging",
]

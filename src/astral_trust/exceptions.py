"""
Astral Core Trust - Exception Hierarchy.
Structured errors for the crisis, session and consent services with correlation tracking.
"""
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field
import structlog

logger = structlog.get_logger(__name__)


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SECURITY = "security"
    AUTHENTICATION = "authentication"
    DEPENDENCY = "dependency"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class ErrorContext(BaseModel):
    """Correlation data attached to every raised error."""
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    operation: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    model_config = {"frozen": True}


class TrustError(Exception):
    """Base exception for the trust core; logs itself on construction."""
    error_code: str = "TRUST_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, *, user_message: str | None = None,
                 context: ErrorContext | None = None, cause: Exception | None = None,
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or "An error occurred. Please try again."
        self.context = context or ErrorContext()
        self.cause = cause
        self.details = details or {}
        self._log_error()

    def _log_error(self) -> None:
        log_data = {
            "error_code": self.error_code, "category": self.category.value,
            "severity": self.severity.value, "correlation_id": self.context.correlation_id,
            "operation": self.context.operation, "details": self.details,
        }
        if self.context.user_id:
            log_data["user_id"] = self.context.user_id
        if self.cause:
            log_data["cause_type"] = type(self.cause).__name__
            log_data["cause_message"] = str(self.cause)
        if self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.error(self.message, **log_data)
        else:
            logger.warning(self.message, **log_data)

    def to_dict(self) -> dict[str, Any]:
        """Caller-safe representation: user message and correlation id only."""
        return {"error": {"code": self.error_code, "message": self.user_message,
                          "correlation_id": self.context.correlation_id,
                          "timestamp": self.context.timestamp.isoformat()}}


class ValidationError(TrustError):
    """Bad input shape or value; raised before any state is mutated."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, *, field: str | None = None, value: Any = None,
                 **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        user_message = f"Invalid value for {field}" if field else "Validation failed"
        super().__init__(message, user_message=user_message, details=details, **kwargs)
        self.field, self.value = field, value


class NotFoundError(TrustError):
    error_code = "NOT_FOUND"
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW

    def __init__(self, entity_type: str, entity_id: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details.update({"entity_type": entity_type, "entity_id": entity_id})
        super().__init__(f"{entity_type} with ID '{entity_id}' not found",
                         user_message=f"The requested {entity_type.lower()} was not found",
                         details=details, **kwargs)
        self.entity_type, self.entity_id = entity_type, entity_id


class ConflictError(TrustError):
    """Invalid state transition; the record is left untouched."""
    error_code = "STATE_CONFLICT"
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, *, entity_type: str | None = None,
                 entity_id: str | None = None, current_status: str | None = None,
                 **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if entity_type:
            details["entity_type"] = entity_type
        if entity_id:
            details["entity_id"] = entity_id
        if current_status:
            details["current_status"] = current_status
        super().__init__(message, user_message="This action is not allowed in the current state",
                         details=details, **kwargs)
        self.entity_id, self.current_status = entity_id, current_status


class SecurityViolationError(TrustError):
    error_code = "SECURITY_VIOLATION"
    category = ErrorCategory.SECURITY
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, *, violation: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["violation"] = violation
        super().__init__(message, user_message="Unauthorized", details=details, **kwargs)
        self.violation = violation


class SessionUnauthorizedError(TrustError):
    """Generic session rejection; never reveals which check failed."""
    error_code = "UNAUTHORIZED"
    category = ErrorCategory.AUTHENTICATION
    severity = ErrorSeverity.LOW

    def __init__(self, message: str = "Session rejected", **kwargs: Any) -> None:
        super().__init__(message, user_message="Unauthorized", **kwargs)


class DependencyError(TrustError):
    """A store, notifier or classifier was unavailable where correctness requires it."""
    error_code = "DEPENDENCY_ERROR"
    category = ErrorCategory.DEPENDENCY
    severity = ErrorSeverity.HIGH

    def __init__(self, dependency: str, message: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["dependency"] = dependency
        super().__init__(message, user_message="A required service is temporarily unavailable",
                         details=details, **kwargs)
        self.dependency = dependency


class ConfigurationError(TrustError):
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL

    def __init__(self, message: str, *, config_key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, user_message="Service configuration error",
                         details=details, **kwargs)

"""
Astral Core Trust - Centralized Configuration.
Settings for crisis detection, escalation, sessions, consent and retention, loaded from the environment.
"""
from __future__ import annotations
from typing import Any
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)


class TrustServiceConfig(BaseSettings):
    """Process-level settings for the trust core."""
    service_name: str = Field(default="astral-trust-core")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    model_config = SettingsConfigDict(
        env_prefix="TRUST_", env_file=".env", extra="ignore", case_sensitive=False
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"Invalid log level: {v}")
        return upper


class CrisisConfig(BaseSettings):
    """Crisis detection and alert history configuration."""
    history_window_days: int = Field(default=30, ge=1, le=365)
    recent_pattern_days: int = Field(default=7, ge=1, le=90)
    frequent_alert_threshold: int = Field(default=10, ge=1)
    escalating_alert_threshold: int = Field(default=5, ge=1)
    repeat_alert_threshold: int = Field(default=3, ge=1)
    cooldown_minutes: int = Field(default=60, ge=1, le=1440)
    max_resources: int = Field(default=5, ge=1, le=20)
    default_locale: str = Field(default="en")
    default_country: str = Field(default="US")
    fingerprint_key: SecretStr = Field(default=SecretStr("astral-crisis-fingerprint"))
    enable_external_classifier: bool = Field(default=True)
    model_config = SettingsConfigDict(
        env_prefix="CRISIS_", env_file=".env", extra="ignore"
    )

    @model_validator(mode="after")
    def validate_thresholds(self) -> CrisisConfig:
        if self.escalating_alert_threshold > self.frequent_alert_threshold:
            raise ValueError("escalating_alert_threshold must not exceed frequent_alert_threshold")
        return self


class EscalationConfig(BaseSettings):
    """Declarative escalation timers attached to every crisis protocol."""
    first_response_minutes: int = Field(default=5, ge=1, le=60)
    persistent_crisis_minutes: int = Field(default=15, ge=1, le=240)
    level_1_notify: list[str] = Field(default_factory=lambda: ["senior_reviewer"])
    level_2_notify: list[str] = Field(default_factory=lambda: ["crisis_team", "admin"])
    model_config = SettingsConfigDict(
        env_prefix="ESCALATION_", env_file=".env", extra="ignore"
    )


class SessionConfig(BaseSettings):
    """Session lifecycle, binding and token configuration."""
    max_concurrent_sessions: int = Field(default=3, ge=1, le=50)
    default_idle_minutes: int = Field(default=30, ge=1, le=1440)
    emergency_idle_minutes: int = Field(default=120, ge=1, le=1440)
    absolute_timeout_hours: int = Field(default=8, ge=1, le=168)
    cleanup_interval_seconds: int = Field(default=300, ge=1, le=3600)
    activity_log_limit: int = Field(default=100, ge=1, le=10000)
    enforce_ip_binding: bool = Field(default=True)
    token_secret: SecretStr = Field(default=SecretStr("change-me-session-secret-0123456789"))
    token_algorithm: str = Field(default="HS256")
    token_issuer: str = Field(default="astral-core")
    model_config = SettingsConfigDict(
        env_prefix="SESSION_", env_file=".env", extra="ignore"
    )

    @field_validator("token_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        if v not in {"HS256", "HS384", "HS512"}:
            raise ValueError(f"Unsupported session token algorithm: {v}")
        return v


class ConsentConfig(BaseSettings):
    """Consent lifecycle configuration."""
    consent_version: str = Field(default="1.0")
    default_expiry_days: int | None = Field(default=None, ge=1)
    required_consent_types: list[str] = Field(
        default_factory=lambda: ["data_processing", "treatment"]
    )
    model_config = SettingsConfigDict(
        env_prefix="CONSENT_", env_file=".env", extra="ignore"
    )


class RetentionConfig(BaseSettings):
    """Retention policy execution configuration."""
    sweep_interval_seconds: int = Field(default=86400, ge=60)
    install_default_policies: bool = Field(default=True)
    model_config = SettingsConfigDict(
        env_prefix="RETENTION_", env_file=".env", extra="ignore"
    )


class AuditConfig(BaseSettings):
    """Audit trail configuration."""
    enable_hash_chain: bool = Field(default=True)
    signing_key: SecretStr | None = Field(default=None)
    model_config = SettingsConfigDict(
        env_prefix="AUDIT_", env_file=".env", extra="ignore"
    )


class NotificationConfig(BaseSettings):
    """Outbound notification service client configuration."""
    service_url: str = Field(default="http://localhost:8003")
    timeout_seconds: float = Field(default=10.0, ge=0.1, le=120.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=30.0)
    model_config = SettingsConfigDict(
        env_prefix="NOTIFY_", env_file=".env", extra="ignore"
    )


class TrustConfig(BaseModel):
    """Aggregate configuration for the trust core."""
    service: TrustServiceConfig = Field(default_factory=TrustServiceConfig)
    crisis: CrisisConfig = Field(default_factory=CrisisConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)

    @classmethod
    def load(cls) -> TrustConfig:
        """Load configuration from environment."""
        config = cls()
        logger.info(
            "trust_config_loaded",
            environment=config.service.environment,
            max_concurrent_sessions=config.session.max_concurrent_sessions,
            ip_binding=config.session.enforce_ip_binding,
            cooldown_minutes=config.crisis.cooldown_minutes,
        )
        return config

    def to_dict(self, hide_secrets: bool = True) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        data = {
            "service": self.service.model_dump(),
            "crisis": self.crisis.model_dump(),
            "escalation": self.escalation.model_dump(),
            "session": self.session.model_dump(),
            "consent": self.consent.model_dump(),
            "retention": self.retention.model_dump(),
            "audit": self.audit.model_dump(),
            "notification": self.notification.model_dump(),
        }
        if hide_secrets:
            data["crisis"]["fingerprint_key"] = "***"
            data["session"]["token_secret"] = "***"
            if self.audit.signing_key:
                data["audit"]["signing_key"] = "***"
        else:
            data["crisis"]["fingerprint_key"] = self.crisis.fingerprint_key.get_secret_value()
            data["session"]["token_secret"] = self.session.token_secret.get_secret_value()
            if self.audit.signing_key:
                data["audit"]["signing_key"] = self.audit.signing_key.get_secret_value()
        return data


_config: TrustConfig | None = None


def get_trust_config() -> TrustConfig:
    """Get cached trust configuration."""
    global _config
    if _config is None:
        _config = TrustConfig.load()
    return _config


def reset_config() -> None:
    """Reset cached configuration (for testing)."""
    global _config
    _config = None

"""
Astral Core Trust - Collaborator ports.

Contracts for the external systems the trust core depends on. Concrete
adapters live in ``astral_trust.infrastructure``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field

from astral_trust.enums import CrisisSeverity, DataCategory


class ExternalClassification(BaseModel):
    """Output contract shared with the keyword classifier."""
    detected: bool = False
    severity: CrisisSeverity = CrisisSeverity.LOW
    indicators: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ExternalClassifier(Protocol):
    """Port for an optional model-backed text classifier."""
    async def classify_text(self, text: str) -> ExternalClassification: ...


class NotificationSink(Protocol):
    """Port for delivering notifications to responders."""
    async def notify(self, target_user_ids: list[str], event_type: str,
                     payload: dict[str, Any]) -> None: ...


class ResponderRegistry(Protocol):
    """Port for looking up human responders."""
    async def on_call_responders(self) -> list[str]: ...
    async def available_counselors(self) -> list[str]: ...


class PersonalDataStore(Protocol):
    """Port for the store holding a user's personal data, by category."""
    async def oldest_record_at(self, user_id: str, category: DataCategory) -> datetime | None: ...
    async def is_account_deleted(self, user_id: str) -> bool: ...
    async def delete(self, user_id: str, category: DataCategory) -> int: ...
    async def anonymize(self, user_id: str, category: DataCategory) -> int: ...
    async def archive(self, user_id: str, category: DataCategory) -> int: ...
    async def schedule_review(self, user_id: str, category: DataCategory, reason: str) -> None: ...

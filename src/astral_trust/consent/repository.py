"""
Astral Core Trust Consent - Repository Layer.
Storage ports for consent records and retention policies, with in-memory implementations.
"""
from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
import structlog

from astral_trust.consent.entities import ConsentRecord, ConsentStatus, ConsentType, RetentionPolicy

logger = structlog.get_logger(__name__)


class ConsentRepository(ABC):
    """Abstract consent store. Returned records are copies owned by the caller."""

    @abstractmethod
    async def get(self, consent_id: str) -> ConsentRecord | None:
        """Get consent by id."""

    @abstractmethod
    async def put(self, record: ConsentRecord) -> None:
        """Insert or replace a consent record."""

    @abstractmethod
    async def list_by_user(self, user_id: str,
                           consent_type: ConsentType | None = None) -> list[ConsentRecord]:
        """Consents of a user in request order, optionally of one type."""

    @abstractmethod
    async def list_ids(self, statuses: set[ConsentStatus] | None = None) -> list[str]:
        """Ids of all consents, optionally filtered by status."""

    @abstractmethod
    async def list_user_ids(self) -> list[str]:
        """Every user with at least one consent record."""


class RetentionPolicyRepository(ABC):
    """Abstract retention policy store."""

    @abstractmethod
    async def get(self, policy_id: str) -> RetentionPolicy | None:
        """Get policy by id."""

    @abstractmethod
    async def put(self, policy: RetentionPolicy) -> None:
        """Insert or replace a policy."""

    @abstractmethod
    async def list_all(self, active_only: bool = False) -> list[RetentionPolicy]:
        """Policies in creation order."""


class InMemoryConsentRepository(ConsentRepository):
    """In-memory implementation for development and testing."""

    def __init__(self) -> None:
        self._records: dict[str, ConsentRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, consent_id: str) -> ConsentRecord | None:
        record = self._records.get(consent_id)
        return record.model_copy(deep=True) if record else None

    async def put(self, record: ConsentRecord) -> None:
        async with self._lock:
            self._records[record.consent_id] = record.model_copy(deep=True)
            logger.debug("consent_saved", consent_id=record.consent_id, status=record.status.value)

    async def list_by_user(self, user_id: str,
                           consent_type: ConsentType | None = None) -> list[ConsentRecord]:
        records = [r.model_copy(deep=True) for r in self._records.values()
                   if r.user_id == user_id
                   and (consent_type is None or r.consent_type == consent_type)]
        records.sort(key=lambda r: r.requested_at)
        return records

    async def list_ids(self, statuses: set[ConsentStatus] | None = None) -> list[str]:
        return [cid for cid, r in self._records.items() if statuses is None or r.status in statuses]

    async def list_user_ids(self) -> list[str]:
        return list(dict.fromkeys(r.user_id for r in self._records.values()))


class InMemoryRetentionPolicyRepository(RetentionPolicyRepository):
    """In-memory implementation for development and testing."""

    def __init__(self) -> None:
        self._policies: dict[str, RetentionPolicy] = {}
        self._lock = asyncio.Lock()

    async def get(self, policy_id: str) -> RetentionPolicy | None:
        policy = self._policies.get(policy_id)
        return policy.model_copy(deep=True) if policy else None

    async def put(self, policy: RetentionPolicy) -> None:
        async with self._lock:
            self._policies[policy.policy_id] = policy.model_copy(deep=True)

    async def list_all(self, active_only: bool = False) -> list[RetentionPolicy]:
        return [p.model_copy(deep=True) for p in self._policies.values()
                if p.is_active or not active_only]

"""
Astral Core Trust - In-memory collaborators.

Responder registry and personal-data store used for development and tests.
"""
from __future__ import annotations

import asyncio
from datetime import datetime

import structlog

from astral_trust.enums import DataCategory

logger = structlog.get_logger(__name__)


class InMemoryResponderRegistry:
    """Static lists of on-call responders and available counselors."""

    def __init__(self, on_call: list[str] | None = None,
                 counselors: list[str] | None = None) -> None:
        self._on_call = list(on_call or [])
        self._counselors = list(counselors or [])

    async def on_call_responders(self) -> list[str]:
        return list(self._on_call)

    async def available_counselors(self) -> list[str]:
        return list(self._counselors)

    def set_on_call(self, responder_ids: list[str]) -> None:
        self._on_call = list(responder_ids)

    def set_counselors(self, counselor_ids: list[str]) -> None:
        self._counselors = list(counselor_ids)


class InMemoryPersonalDataStore:
    """Per-user, per-category item timestamps with retention actions applied in place."""

    def __init__(self) -> None:
        self._items: dict[tuple[str, DataCategory], list[datetime]] = {}
        self._archived: dict[tuple[str, DataCategory], list[datetime]] = {}
        self._anonymized: set[tuple[str, DataCategory]] = set()
        self._deleted_accounts: set[str] = set()
        self.reviews: list[tuple[str, DataCategory, str]] = []
        self._lock = asyncio.Lock()

    async def add_item(self, user_id: str, category: DataCategory, created_at: datetime) -> None:
        async with self._lock:
            self._items.setdefault((user_id, category), []).append(created_at)

    async def mark_account_deleted(self, user_id: str) -> None:
        async with self._lock:
            self._deleted_accounts.add(user_id)

    async def item_count(self, user_id: str, category: DataCategory) -> int:
        async with self._lock:
            return len(self._items.get((user_id, category), []))

    async def archived_count(self, user_id: str, category: DataCategory) -> int:
        async with self._lock:
            return len(self._archived.get((user_id, category), []))

    def is_anonymized(self, user_id: str, category: DataCategory) -> bool:
        return (user_id, category) in self._anonymized

    async def oldest_record_at(self, user_id: str, category: DataCategory) -> datetime | None:
        async with self._lock:
            items = self._items.get((user_id, category))
            return min(items) if items else None

    async def is_account_deleted(self, user_id: str) -> bool:
        return user_id in self._deleted_accounts

    async def delete(self, user_id: str, category: DataCategory) -> int:
        async with self._lock:
            removed = self._items.pop((user_id, category), [])
            self._archived.pop((user_id, category), None)
            return len(removed)

    async def anonymize(self, user_id: str, category: DataCategory) -> int:
        async with self._lock:
            self._anonymized.add((user_id, category))
            return len(self._items.get((user_id, category), []))

    async def archive(self, user_id: str, category: DataCategory) -> int:
        async with self._lock:
            moved = self._items.pop((user_id, category), [])
            self._archived.setdefault((user_id, category), []).extend(moved)
            return len(moved)

    async def schedule_review(self, user_id: str, category: DataCategory, reason: str) -> None:
        async with self._lock:
            self.reviews.append((user_id, category, reason))
        logger.info("retention_review_scheduled", user_id=user_id,
                    category=category.value, reason=reason)

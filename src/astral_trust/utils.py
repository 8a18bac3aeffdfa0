"""Astral Core Trust Utilities - Clock, Crypto, Per-Key Locking."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import uuid
import weakref
from datetime import datetime, timezone
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


class DateTimeUtils:
    """Timezone-aware datetime utilities."""

    @staticmethod
    def utc_now() -> datetime:
        """Get current UTC datetime with timezone info."""
        return datetime.now(timezone.utc)

    @staticmethod
    def ensure_utc(dt: datetime) -> datetime:
        """Ensure datetime is UTC. Convert if necessary."""
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def minutes_between(start: datetime, end: datetime) -> float:
        return (DateTimeUtils.ensure_utc(end) - DateTimeUtils.ensure_utc(start)).total_seconds() / 60


class CryptoUtils:
    """Hashing and token helpers."""

    @staticmethod
    def hash_value(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @staticmethod
    def hmac_sign(value: str, key: str) -> str:
        """HMAC-SHA256 hex digest of value under key."""
        return hmac.new(key.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def generate_token(nbytes: int = 32) -> str:
        return secrets.token_urlsafe(nbytes)

    @staticmethod
    def generate_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex}"


class KeyedLock:
    """Registry of asyncio locks, one per key.

    Locks are held weakly and disappear once no coroutine holds or awaits them,
    so the registry never grows with the number of records ever touched.
    Operations on different keys never contend.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)

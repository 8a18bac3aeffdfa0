"""
Astral Core Trust - Notification sinks.

HTTP client for the platform notification service plus an in-memory sink
used in tests and local development.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from astral_trust.config import NotificationConfig
from astral_trust.exceptions import DependencyError

logger = structlog.get_logger(__name__)

_SUCCESS_CODES = (200, 201, 202)


class HttpNotificationSink:
    """
    Delivers responder notifications through the notification service.

    Retries with exponential backoff; raises DependencyError once every attempt
    has failed so callers can report the outcome.
    """

    def __init__(self, config: NotificationConfig | None = None) -> None:
        self._config = config or NotificationConfig()
        self._base_url = self._config.service_url.rstrip("/")
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Lazily initialize HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._config.timeout_seconds),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def notify(self, target_user_ids: list[str], event_type: str,
                     payload: dict[str, Any]) -> None:
        if not target_user_ids:
            return
        client = await self._ensure_client()
        body = {
            "template_type": event_type,
            "recipients": [{"user_id": uid, "resolve_from_registry": True}
                           for uid in target_user_ids],
            "variables": payload,
            "priority": payload.get("priority", "high"),
            "correlation_id": payload.get("alert_id"),
        }
        last_error: str | None = None
        for attempt in range(self._config.max_retries + 1):
            try:
                response = await client.post("/api/v1/notifications/send", json=body)
                if response.status_code in _SUCCESS_CODES:
                    logger.info("notification_sent", event_type=event_type,
                                recipients=len(target_user_ids), attempt=attempt + 1)
                    return
                last_error = f"HTTP {response.status_code}"
                logger.warning("notification_failed", event_type=event_type,
                               status_code=response.status_code, attempt=attempt + 1)
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error("notification_error", event_type=event_type,
                             error=str(e), attempt=attempt + 1)
            if attempt < self._config.max_retries:
                await asyncio.sleep(min(self._config.retry_backoff_seconds * 2 ** attempt, 10))
        logger.critical("notification_all_retries_exhausted", event_type=event_type,
                        recipients=len(target_user_ids), last_error=last_error)
        raise DependencyError("notification_service",
                              f"Notification '{event_type}' not delivered: {last_error}")


@dataclass
class SentNotification:
    target_user_ids: list[str]
    event_type: str
    payload: dict[str, Any]


@dataclass
class InMemoryNotificationSink:
    """Records notifications instead of sending them."""
    sent: list[SentNotification] = field(default_factory=list)

    async def notify(self, target_user_ids: list[str], event_type: str,
                     payload: dict[str, Any]) -> None:
        self.sent.append(SentNotification(list(target_user_ids), event_type, dict(payload)))
        logger.debug("notification_recorded", event_type=event_type,
                     recipients=len(target_user_ids))

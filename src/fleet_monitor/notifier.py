"""
Notification dispatch.

The alert emitter hands every persisted alert to a Notifier. Delivery and
formatting belong to the dispatcher; the engine only builds the payload.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from ._types import Alert, Device

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================

class NotificationPayload(BaseModel):
    """Payload sent to the notification dispatcher."""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    device_id: str = Field(alias="deviceId")
    device_name: str = Field(alias="deviceName")
    target_host: str = Field(alias="targetHost")
    target_name: Optional[str] = Field(default=None, alias="targetName")
    type: str
    severity: str
    message: str
    timestamp: datetime

    @classmethod
    def from_alert(
        cls,
        device: Device,
        alert: Alert,
        target_name: Optional[str] = None,
    ) -> "NotificationPayload":
        return cls(
            device_id=device.id,
            device_name=device.display_name,
            target_host=alert.target,
            target_name=target_name,
            type=alert.type.value,
            severity=alert.severity.value,
            message=alert.message,
            timestamp=alert.created_at,
        )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Notifier(ABC):
    """Notification dispatcher collaborator."""

    @abstractmethod
    async def notify(self, payload: NotificationPayload) -> None:
        """Deliver one notification. May raise; the emitter swallows failures."""
        pass

    async def close(self) -> None:
        pass


class LogNotifier(Notifier):
    """Writes notifications to the log only."""

    async def notify(self, payload: NotificationPayload) -> None:
        logger.info(
            f"ALERT [{payload.severity}] {payload.device_name}: {payload.message}"
        )


class WebhookNotifier(Notifier):
    """POSTs the JSON payload to a webhook."""

    def __init__(self, url: str, token: Optional[str] = None, timeout_seconds: float = 10.0):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def notify(self, payload: NotificationPayload) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        session = await self._get_session()
        async with session.post(self.url, headers=headers, json=payload.to_wire()) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise RuntimeError(f"Notifier returned {resp.status}: {body[:200]}")
        logger.debug(f"Notification delivered for {payload.device_id} ({payload.type})")


def build_notifier(url: Optional[str], token: Optional[str] = None, timeout_seconds: float = 10.0) -> Notifier:
    """Webhook notifier when a URL is configured, else log-only."""
    if url:
        return WebhookNotifier(url, token=token, timeout_seconds=timeout_seconds)
    return LogNotifier()

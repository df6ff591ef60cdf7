"""
Session tracker.

Diffs the device's active remote sessions against the persisted per-device
set, keyed by username. The persisted set is then replaced to match the
current snapshot exactly and one alert is raised per transition.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ._types import ActiveSession, Device, RemoteSession, SessionDiff, now_utc
from .alerts import AlertEmitter
from .errors import PersistenceError
from .store import TelemetryStore

logger = logging.getLogger(__name__)


class SessionTracker:
    """Tracks connect/disconnect events per device."""

    def __init__(
        self,
        store: TelemetryStore,
        alerts: Optional[AlertEmitter] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.store = store
        self.alerts = alerts
        self.clock = clock

    async def track(self, device: Device, current_sessions: list[RemoteSession]) -> SessionDiff:
        """
        Compare current sessions to the stored set and persist the new set.

        connected = current - previous, disconnected = previous - current.
        """
        now = self.clock()
        previous = {s.session_key: s for s in self.store.get_active_sessions(device.id)}
        current = {s.name: s for s in current_sessions}

        diff = SessionDiff(
            connected=sorted(current.keys() - previous.keys()),
            disconnected=sorted(previous.keys() - current.keys()),
        )

        tracked = []
        for key, remote in current.items():
            prior = previous.get(key)
            tracked.append(ActiveSession(
                device_id=device.id,
                session_key=key,
                address=remote.address,
                service=remote.service,
                caller_id=remote.caller_id,
                uptime=remote.uptime,
                connected_at=prior.connected_at if prior else now,
                last_seen=now,
            ))
        self.store.replace_active_sessions(device.id, tracked)

        if diff.connected or diff.disconnected:
            logger.info(
                f"{device.display_name}: sessions +{len(diff.connected)} -{len(diff.disconnected)}"
            )

        if self.alerts is not None:
            for key in diff.connected:
                await self._alert(device, key, True, current[key].address)
            for key in diff.disconnected:
                gone = previous[key]
                duration = int((now - gone.connected_at).total_seconds())
                await self._alert(device, key, False, gone.address, duration)

        return diff

    async def _alert(
        self,
        device: Device,
        key: str,
        connected: bool,
        address: Optional[str],
        duration: Optional[int] = None,
    ) -> None:
        try:
            await self.alerts.session_transition(device, key, connected, address, duration)
        except PersistenceError as e:
            logger.error(f"{device.display_name}: failed to store session alert for {key}: {e}")

    def clear(self, device: Device) -> int:
        """Forget every tracked session of a device."""
        removed = self.store.clear_active_sessions(device.id)
        logger.debug(f"{device.display_name}: cleared {removed} tracked sessions")
        return removed

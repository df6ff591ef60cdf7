"""
Alert emitter.

Every alert goes through one path: dedup decision, persist the Alert row,
then a best-effort notifier call.

Dedup is keyed on (device_id, target, type). An alert is suppressed when the
most recent alert with the same key inside the dedup window carries the same
state. A repeated identical transition stays quiet; a genuine flip since the
last emission is always reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ._types import (
    Alert,
    AlertSeverity,
    AlertType,
    Device,
    DeviceStatus,
    WatchStatus,
    now_utc,
)
from .notifier import NotificationPayload, Notifier
from .store import TelemetryStore

logger = logging.getLogger(__name__)

# Default dedup window, overridable via config
DEFAULT_DEDUP_WINDOW_SECONDS = 30 * 60


@dataclass
class EmitDecision:
    """Result of a dedup check."""
    emit: bool
    reason: str
    previous: Optional[Alert] = None


class AlertEmitter:
    """
    Deduplicating alert emitter.

    Args:
        store: Telemetry store the alerts are persisted to
        notifier: Optional dispatcher; failures are logged and swallowed
        dedup_window_seconds: Suppression window for identical alerts
        enabled: Global switch; when off nothing is persisted or sent
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        store: TelemetryStore,
        notifier: Optional[Notifier] = None,
        dedup_window_seconds: int = DEFAULT_DEDUP_WINDOW_SECONDS,
        enabled: bool = True,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.store = store
        self.notifier = notifier
        self.dedup_window = timedelta(seconds=dedup_window_seconds)
        self.enabled = enabled
        self.clock = clock

    def should_emit(
        self,
        device_id: str,
        target: str,
        alert_type: AlertType,
        state: str,
    ) -> EmitDecision:
        """Decide whether an alert for this key and state may be emitted now."""
        if not self.enabled:
            return EmitDecision(False, "alerts disabled")

        since = self.clock() - self.dedup_window
        previous = self.store.find_recent_alert(device_id, target, alert_type, since=since)
        if previous is None:
            return EmitDecision(True, "no recent alert")
        if previous.state != state:
            return EmitDecision(True, f"state flipped {previous.state} -> {state}", previous)
        return EmitDecision(False, "duplicate within dedup window", previous)

    async def emit(
        self,
        device: Device,
        target: str,
        alert_type: AlertType,
        state: str,
        severity: AlertSeverity,
        title: str,
        message: str,
        target_name: Optional[str] = None,
    ) -> Optional[Alert]:
        """
        Emit an alert unless it is suppressed.

        Returns the persisted alert, or None when suppressed. A store failure
        raises PersistenceError to the caller; notifier failures never raise.
        """
        decision = self.should_emit(device.id, target, alert_type, state)
        if not decision.emit:
            logger.debug(
                f"Suppressed {alert_type.value} alert for {device.display_name}/{target} "
                f"({state}): {decision.reason}"
            )
            return None

        alert = self.store.insert_alert(Alert(
            device_id=device.id,
            type=alert_type,
            target=target,
            severity=severity,
            state=state,
            title=title,
            message=message,
            created_at=self.clock(),
        ))
        logger.info(f"Alert [{severity.value}] {device.display_name}: {message}")

        await self._notify(device, alert, target_name)
        return alert

    async def _notify(self, device: Device, alert: Alert, target_name: Optional[str]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(NotificationPayload.from_alert(device, alert, target_name))
        except Exception as e:
            logger.warning(f"Notification failed for alert {alert.id}: {e}")

    # -------------------------------------------------------------------------
    # Builders
    # -------------------------------------------------------------------------

    async def status_change(
        self,
        device: Device,
        new_status: DeviceStatus,
        reason: Optional[str] = None,
    ) -> Optional[Alert]:
        """Device went offline (critical) or came back online (info)."""
        if new_status == DeviceStatus.OFFLINE:
            severity = AlertSeverity.CRITICAL
            title = "Device Offline"
            message = f"Device {device.display_name} is offline"
            if reason:
                message += f": {reason}"
        elif new_status == DeviceStatus.ONLINE:
            severity = AlertSeverity.INFO
            title = "Device Online"
            message = f"Device {device.display_name} is back online"
        else:
            severity = AlertSeverity.INFO
            title = "Device Status Changed"
            message = f"Device {device.display_name} is now {new_status.value}"

        return await self.emit(
            device,
            target=device.address,
            alert_type=AlertType.STATUS_CHANGE,
            state=new_status.value,
            severity=severity,
            title=title,
            message=message,
        )

    async def netwatch_transition(
        self,
        device: Device,
        host: str,
        name: Optional[str],
        new_status: WatchStatus,
    ) -> Optional[Alert]:
        """Netwatch host moved between up and down."""
        if not new_status.is_settled:
            return None

        label = f"{name} ({host})" if name else host
        if new_status == WatchStatus.DOWN:
            severity = AlertSeverity.WARNING
            title = "Netwatch Host Down"
            message = f"Netwatch host {label} is DOWN"
        else:
            severity = AlertSeverity.INFO
            title = "Netwatch Host Up"
            message = f"Netwatch host {label} is UP"

        return await self.emit(
            device,
            target=host,
            alert_type=AlertType.NETWATCH,
            state=new_status.value,
            severity=severity,
            title=title,
            message=message,
            target_name=name,
        )

    async def performance(
        self,
        device: Device,
        host: str,
        name: Optional[str],
        latency_ms: Optional[int],
        packet_loss: int,
        threshold_ms: int,
    ) -> Optional[Alert]:
        """Probe exceeded the latency threshold or lost packets."""
        label = f"{name} ({host})" if name else host
        problems = []
        if latency_ms is not None and latency_ms > threshold_ms:
            problems.append(f"latency {latency_ms}ms > {threshold_ms}ms")
        if packet_loss > 0:
            problems.append(f"packet loss {packet_loss}%")

        return await self.emit(
            device,
            target=host,
            alert_type=AlertType.PERFORMANCE,
            state="degraded",
            severity=AlertSeverity.WARNING,
            title="Degraded Performance",
            message=f"Host {label} degraded: {', '.join(problems) or 'threshold exceeded'}",
            target_name=name,
        )

    async def session_transition(
        self,
        device: Device,
        session_key: str,
        connected: bool,
        address: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> Optional[Alert]:
        """Remote session appeared or disappeared."""
        state = "connected" if connected else "disconnected"
        message = f"Session {session_key} {state} on {device.display_name}"
        if address:
            message += f" ({address})"
        if duration_seconds is not None:
            message += f" after {duration_seconds}s"

        return await self.emit(
            device,
            target=session_key,
            alert_type=AlertType.SESSION,
            state=state,
            severity=AlertSeverity.INFO,
            title=f"Session {state.title()}",
            message=message,
        )

    async def resource_threshold(
        self,
        device: Device,
        alert_type: AlertType,
        severity: AlertSeverity,
        value: int,
        threshold: int,
    ) -> Optional[Alert]:
        """CPU or memory usage crossed a warning/critical threshold."""
        if alert_type == AlertType.HIGH_CPU:
            resource, target = "CPU", "cpu"
        elif alert_type == AlertType.HIGH_MEMORY:
            resource, target = "Memory", "memory"
        else:
            raise ValueError(f"Not a resource alert type: {alert_type}")

        return await self.emit(
            device,
            target=target,
            alert_type=alert_type,
            state=severity.value,
            severity=severity,
            title=f"High {resource} Usage",
            message=f"{resource} usage on {device.display_name} is {value}% (threshold: {threshold}%)",
        )

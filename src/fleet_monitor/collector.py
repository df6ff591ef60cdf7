"""
Metrics collector.

Fetches identity, resources, interface counters and active sessions from a
device and turns raw monotonic interface counters into bit rates.

Primary commands (identity, resource, interface list) raise ProtocolError
when they fail. Secondary commands (routerboard, health, ethernet link
speed) fail independently and leave their fields at defaults.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ._types import (
    AlertSeverity,
    AlertType,
    Device,
    DeviceIdentity,
    DeviceSnapshot,
    InterfaceSample,
    InterfaceState,
    MetricSnapshot,
    RemoteSession,
    now_utc,
)
from .errors import ProtocolError
from .parsers import (
    parse_uptime_seconds,
    to_bool,
    to_int,
    to_optional_float,
    to_optional_int,
)
from .session import DeviceSession, DeviceSessionAdapter
from .store import TelemetryStore

logger = logging.getLogger(__name__)


def compute_rate(
    previous: int,
    previous_at: datetime,
    current: int,
    current_at: datetime,
) -> int:
    """
    Bits per second between two counter samples.

    Counter resets (negative delta) and non-positive elapsed time yield 0.
    """
    elapsed = (current_at - previous_at).total_seconds()
    if elapsed <= 0:
        return 0
    delta = current - previous
    if delta < 0:
        return 0
    return round(delta * 8 / elapsed)


def apply_interface_rates(
    store: TelemetryStore,
    device_id: str,
    interfaces: list[InterfaceSample],
    sampled_at: datetime,
) -> list[InterfaceState]:
    """
    Derive rates against the stored sample and upsert every interface.

    The stored counter always advances to the new sample, including after a
    counter reset.
    """
    states = []
    for sample in interfaces:
        previous = store.get_interface(device_id, sample.name)
        tx_rate = rx_rate = 0
        if previous is not None:
            tx_rate = compute_rate(previous.tx_bytes, previous.last_updated, sample.tx_bytes, sampled_at)
            rx_rate = compute_rate(previous.rx_bytes, previous.last_updated, sample.rx_bytes, sampled_at)

        state = InterfaceState(
            **vars(sample),
            device_id=device_id,
            tx_rate=tx_rate,
            rx_rate=rx_rate,
            last_updated=sampled_at,
        )
        store.upsert_interface(state)
        states.append(state)
    return states


def evaluate_thresholds(
    snapshot: MetricSnapshot,
    cpu_warning: int = 70,
    cpu_critical: int = 90,
    memory_warning: int = 80,
    memory_critical: int = 95,
) -> list[tuple[AlertType, AlertSeverity, int, int]]:
    """
    Compare a resource sample against thresholds.

    Returns (alert_type, severity, value, threshold) for every breach.
    """
    breaches = []

    if snapshot.cpu_load is not None and snapshot.cpu_load >= cpu_warning:
        if snapshot.cpu_load >= cpu_critical:
            breaches.append((AlertType.HIGH_CPU, AlertSeverity.CRITICAL, snapshot.cpu_load, cpu_critical))
        else:
            breaches.append((AlertType.HIGH_CPU, AlertSeverity.WARNING, snapshot.cpu_load, cpu_warning))

    memory = snapshot.memory_percent
    if memory is not None and memory >= memory_warning:
        if memory >= memory_critical:
            breaches.append((AlertType.HIGH_MEMORY, AlertSeverity.CRITICAL, memory, memory_critical))
        else:
            breaches.append((AlertType.HIGH_MEMORY, AlertSeverity.WARNING, memory, memory_warning))

    return breaches


def _first(rows: list[dict[str, Any]]) -> dict[str, Any]:
    return rows[0] if rows else {}


def _health_value(rows: list[dict[str, Any]], key: str) -> Optional[float]:
    """Read a health sensor from either the flat or the name/value reply shape."""
    for row in rows:
        if key in row:
            return to_optional_float(row[key])
        if row.get("name") == key:
            return to_optional_float(row.get("value"))
    return None


class MetricsCollector:
    """
    Collects device metrics over an open session.

    Args:
        adapter: Session adapter used for every command
        store: Telemetry store for snapshots and interface rows
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        adapter: DeviceSessionAdapter,
        store: TelemetryStore,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.adapter = adapter
        self.store = store
        self.clock = clock

    async def _optional(self, session: DeviceSession, command: str) -> list[dict[str, Any]]:
        """Run a secondary command; a protocol failure yields no rows."""
        try:
            return await self.adapter.execute(session, command)
        except ProtocolError as e:
            logger.debug(f"{session.address}: optional {command} unavailable: {e}")
            return []

    # -------------------------------------------------------------------------
    # Identity and resources
    # -------------------------------------------------------------------------

    async def fetch_identity(self, session: DeviceSession) -> DeviceIdentity:
        """Identity, version and hardware model. Doubles as a liveness check."""
        identity_row = _first(await self.adapter.execute(session, "/system/identity/print"))
        resource_row = _first(await self.adapter.execute(session, "/system/resource/print"))
        routerboard_row = _first(await self._optional(session, "/system/routerboard/print"))
        return self._build_identity(identity_row, resource_row, routerboard_row)

    def _build_identity(
        self,
        identity_row: dict[str, Any],
        resource_row: dict[str, Any],
        routerboard_row: dict[str, Any],
    ) -> DeviceIdentity:
        return DeviceIdentity(
            identity=identity_row.get("name"),
            version=resource_row.get("version"),
            model=routerboard_row.get("model") or resource_row.get("board-name"),
            serial_number=routerboard_row.get("serial-number"),
            board_name=resource_row.get("board-name"),
            architecture=resource_row.get("architecture-name"),
            resource=resource_row,
        )

    def _build_resources(
        self,
        device_id: str,
        resource: dict[str, Any],
        health_rows: list[dict[str, Any]],
        recorded_at: datetime,
    ) -> MetricSnapshot:
        total_memory = to_optional_int(resource.get("total-memory"))
        free_memory = to_optional_int(resource.get("free-memory"))
        total_disk = to_optional_int(resource.get("total-hdd-space"))
        free_disk = to_optional_int(resource.get("free-hdd-space"))

        return MetricSnapshot(
            device_id=device_id,
            recorded_at=recorded_at,
            cpu_load=to_optional_int(resource.get("cpu-load")),
            cpu_count=to_int(resource.get("cpu-count"), default=1),
            cpu_frequency=to_optional_int(resource.get("cpu-frequency")),
            total_memory=total_memory,
            used_memory=total_memory - free_memory if total_memory is not None and free_memory is not None else None,
            free_memory=free_memory,
            total_disk=total_disk,
            used_disk=total_disk - free_disk if total_disk is not None and free_disk is not None else None,
            free_disk=free_disk,
            uptime=parse_uptime_seconds(resource.get("uptime")),
            temperature=_health_value(health_rows, "temperature"),
            voltage=_health_value(health_rows, "voltage"),
        )

    # -------------------------------------------------------------------------
    # Interfaces
    # -------------------------------------------------------------------------

    async def fetch_interfaces(self, session: DeviceSession) -> list[InterfaceSample]:
        """Interface counters with ethernet link speeds where available."""
        rows = await self.adapter.execute(session, "/interface/print")
        speeds = {
            row["name"]: row["speed"]
            for row in await self._optional(session, "/interface/ethernet/print")
            if row.get("name") and row.get("speed")
        }

        samples = []
        for row in rows:
            name = row.get("name")
            if not name:
                logger.debug(f"{session.address}: interface row without name skipped")
                continue
            samples.append(InterfaceSample(
                name=name,
                default_name=row.get("default-name"),
                type=row.get("type"),
                mac_address=row.get("mac-address"),
                running=to_bool(row.get("running")),
                disabled=to_bool(row.get("disabled")),
                tx_bytes=to_int(row.get("tx-byte")),
                rx_bytes=to_int(row.get("rx-byte")),
                tx_packets=to_int(row.get("tx-packet")),
                rx_packets=to_int(row.get("rx-packet")),
                tx_drops=to_int(row.get("tx-drop")),
                rx_drops=to_int(row.get("rx-drop")),
                tx_errors=to_int(row.get("tx-error")),
                rx_errors=to_int(row.get("rx-error")),
                speed=speeds.get(name) or row.get("speed"),
                comment=row.get("comment"),
            ))
        return samples

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def fetch_snapshot(
        self,
        session: DeviceSession,
        device_id: str,
        identity: Optional[DeviceIdentity] = None,
    ) -> DeviceSnapshot:
        """
        Identity, resources and interfaces in one pass.

        Pass the identity already read this cycle to skip re-reading the
        identity, resource and routerboard replies.
        """
        if identity is None:
            identity = await self.fetch_identity(session)
        health_rows = await self._optional(session, "/system/health/print")
        recorded_at = self.clock()

        return DeviceSnapshot(
            identity=identity,
            resources=self._build_resources(device_id, identity.resource, health_rows, recorded_at),
            interfaces=await self.fetch_interfaces(session),
        )

    async def full_sync(
        self,
        session: DeviceSession,
        device: Device,
        identity: Optional[DeviceIdentity] = None,
    ) -> DeviceSnapshot:
        """Fetch a snapshot, persist the metric row and update interface rates."""
        snapshot = await self.fetch_snapshot(session, device.id, identity)
        snapshot.resources.id = self.store.insert_metric_snapshot(snapshot.resources)
        apply_interface_rates(
            self.store,
            device.id,
            snapshot.interfaces,
            snapshot.resources.recorded_at,
        )
        logger.debug(
            f"{device.display_name}: cpu={snapshot.resources.cpu_load}% "
            f"mem={snapshot.resources.memory_percent}% interfaces={len(snapshot.interfaces)}"
        )
        return snapshot

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def fetch_sessions(self, session: DeviceSession) -> list[RemoteSession]:
        """Active PPP sessions. Rows without a username are ignored."""
        rows = await self.adapter.execute(session, "/ppp/active/print")
        return [
            RemoteSession(
                name=row["name"],
                service=row.get("service"),
                caller_id=row.get("caller-id"),
                address=row.get("address"),
                uptime=row.get("uptime"),
                session_id=row.get("session-id"),
            )
            for row in rows
            if row.get("name")
        ]

"""
Type definitions for the fleet monitor.

These dataclasses define the domain model for device polling, interface
counters, netwatch targets, active sessions and alerts.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def now_utc() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class DeviceStatus(str, Enum):
    """Device reachability status."""
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class WatchStatus(str, Enum):
    """Netwatch target status as reported by the device."""
    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"

    @property
    def is_settled(self) -> bool:
        return self is not WatchStatus.UNKNOWN

    @classmethod
    def from_remote(cls, value: Any) -> "WatchStatus":
        """Map a raw remote status value, anything unexpected is UNKNOWN."""
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "up":
                return cls.UP
            if lowered == "down":
                return cls.DOWN
        return cls.UNKNOWN


class AlertType(str, Enum):
    """Alert categories. Dedup is keyed on (device, target, type)."""
    STATUS_CHANGE = "status_change"
    NETWATCH = "netwatch"
    PERFORMANCE = "performance"
    SESSION = "session"
    HIGH_CPU = "high_cpu"
    HIGH_MEMORY = "high_memory"


class AlertSeverity(str, Enum):
    """Alert severity."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ConnectivityKind(str, Enum):
    """Why a device could not be reached."""
    TIMEOUT = "timeout"
    REFUSED = "refused"
    UNREACHABLE = "unreachable"
    AUTH = "auth"
    CLOSED = "closed"


@dataclass
class DeviceCredentials:
    """Connection parameters handed to the session adapter (secret decrypted)."""
    address: str
    username: str
    secret: str
    port: int = 8728
    timeout: float = 10.0


@dataclass
class Device:
    """
    A monitored device as held by the external registry.

    The engine reads the connection fields and only writes status,
    last_seen, latency and the identity fields.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    address: str = ""
    port: int = 8728
    username: str = ""
    secret_encrypted: str = ""

    status: DeviceStatus = DeviceStatus.UNKNOWN
    last_seen: Optional[datetime] = None
    latency: Optional[int] = None

    # Identity (fetched from the device)
    identity: Optional[str] = None
    version: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    board_name: Optional[str] = None
    architecture: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.identity or self.address


@dataclass
class DeviceIdentity:
    """Identity fields read on every cycle."""
    identity: Optional[str] = None
    version: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    board_name: Optional[str] = None
    architecture: Optional[str] = None
    # raw /system/resource row, reused by a full sync in the same cycle
    resource: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass
class MetricSnapshot:
    """A point-in-time resource sample. Append-only."""
    device_id: str
    recorded_at: datetime = field(default_factory=now_utc)
    cpu_load: Optional[int] = None
    cpu_count: Optional[int] = None
    cpu_frequency: Optional[int] = None
    total_memory: Optional[int] = None
    used_memory: Optional[int] = None
    free_memory: Optional[int] = None
    total_disk: Optional[int] = None
    used_disk: Optional[int] = None
    free_disk: Optional[int] = None
    uptime: Optional[int] = None  # seconds
    temperature: Optional[float] = None
    voltage: Optional[float] = None
    id: Optional[int] = None

    @property
    def memory_percent(self) -> Optional[int]:
        if not self.total_memory or self.used_memory is None:
            return None
        return round(self.used_memory * 100 / self.total_memory)


@dataclass
class InterfaceSample:
    """Raw interface counters as read from the device."""
    name: str
    default_name: Optional[str] = None
    type: Optional[str] = None
    mac_address: Optional[str] = None
    running: bool = False
    disabled: bool = False
    tx_bytes: int = 0
    rx_bytes: int = 0
    tx_packets: int = 0
    rx_packets: int = 0
    tx_drops: int = 0
    rx_drops: int = 0
    tx_errors: int = 0
    rx_errors: int = 0
    speed: Optional[str] = None
    comment: Optional[str] = None


@dataclass
class InterfaceState(InterfaceSample):
    """Persisted interface row, (device_id, name) unique."""
    device_id: str = ""
    tx_rate: int = 0  # bits per second
    rx_rate: int = 0
    last_updated: datetime = field(default_factory=now_utc)


@dataclass
class DeviceSnapshot:
    """Everything a full-sync fetch returns."""
    identity: DeviceIdentity
    resources: MetricSnapshot
    interfaces: list[InterfaceSample] = field(default_factory=list)


@dataclass
class RemoteWatchEntry:
    """A netwatch entry as reported by the device."""
    host: str
    name: Optional[str] = None
    comment: Optional[str] = None
    status: WatchStatus = WatchStatus.UNKNOWN
    disabled: bool = False
    since_up: Optional[datetime] = None
    since_down: Optional[datetime] = None
    interval: Optional[int] = None  # seconds
    remote_id: Optional[str] = None


@dataclass
class WatchTarget:
    """Persisted netwatch row, (device_id, host) unique."""
    device_id: str
    host: str
    name: Optional[str] = None
    status: WatchStatus = WatchStatus.UNKNOWN
    interval: int = 30
    latency: Optional[int] = None
    last_known_latency: Optional[int] = None
    packet_loss: int = 0
    last_check: Optional[datetime] = None
    last_up: Optional[datetime] = None
    last_down: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class RemoteSession:
    """An active remote session (PPP) as reported by the device."""
    name: str
    service: Optional[str] = None
    caller_id: Optional[str] = None
    address: Optional[str] = None
    uptime: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class ActiveSession:
    """Persisted tracked session, (device_id, session_key) unique."""
    device_id: str
    session_key: str
    address: Optional[str] = None
    service: Optional[str] = None
    caller_id: Optional[str] = None
    uptime: Optional[str] = None
    connected_at: datetime = field(default_factory=now_utc)
    last_seen: datetime = field(default_factory=now_utc)


@dataclass
class Alert:
    """An emitted alert. Append-only."""
    device_id: str
    type: AlertType
    target: str
    severity: AlertSeverity
    state: str
    message: str
    title: str = ""
    created_at: datetime = field(default_factory=now_utc)
    id: Optional[int] = None

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.device_id, self.target, self.type.value)


@dataclass
class ProbeResult:
    """Outcome of pinging one target."""
    host: str
    latency_ms: Optional[int] = None
    packet_loss: int = 100
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.error is None


@dataclass
class SyncResult:
    """Netwatch reconciliation summary."""
    synced_count: int = 0
    errors: list[str] = field(default_factory=list)
    alerts: int = 0


@dataclass
class SessionDiff:
    """Session tracker output."""
    connected: list[str] = field(default_factory=list)
    disconnected: list[str] = field(default_factory=list)


@dataclass
class RefreshRequest:
    """A trigger for one device cycle, supplied by the scheduler or the API."""
    device_id: str
    full_sync: bool = False
    netwatch: bool = False
    probe: bool = False
    sessions: bool = False
    triggered_by: str = "schedule"


@dataclass
class RefreshResult:
    """Outcome of one device cycle."""
    device_id: str
    status: Optional[DeviceStatus] = None
    skipped: bool = False
    connectivity_error: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    netwatch: Optional[SyncResult] = None
    probes: list[ProbeResult] = field(default_factory=list)
    sessions: Optional[SessionDiff] = None
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return not self.skipped and self.connectivity_error is None and not self.errors


# Name prefix marking disabled netwatch entries
DISABLED_PREFIX = "[DISABLED] "

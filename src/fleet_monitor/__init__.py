"""
Fleet Monitor - device state reconciliation and health telemetry.

Polls RouterOS-style network devices over their management API, reconciles
live state into a local SQLite store, derives interface bit rates from raw
counters, probes netwatch targets for latency, tracks remote sessions and
emits deduplicated alerts on state transitions.

Architecture:
    service (scheduler + trigger API) -> orchestrator (one cycle per device)
    -> collector / netwatch / prober / sessions -> store + alerts

Sovereignty:
    - All data stored locally in /var/lib/fleet-monitor/telemetry.db
    - Polling cadence is decided by the scheduler, never by the engine
"""

__version__ = "1.0.0"

from ._types import (
    Alert,
    AlertSeverity,
    AlertType,
    Device,
    DeviceStatus,
    ProbeResult,
    RefreshRequest,
    RefreshResult,
    SessionDiff,
    SyncResult,
    WatchStatus,
)
from .errors import (
    ConnectivityError,
    FleetMonitorError,
    PersistenceError,
    ProbeError,
    ProtocolError,
)

__all__ = [
    "__version__",
    "Alert",
    "AlertSeverity",
    "AlertType",
    "Device",
    "DeviceStatus",
    "ProbeResult",
    "RefreshRequest",
    "RefreshResult",
    "SessionDiff",
    "SyncResult",
    "WatchStatus",
    "ConnectivityError",
    "FleetMonitorError",
    "PersistenceError",
    "ProbeError",
    "ProtocolError",
]

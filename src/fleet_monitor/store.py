"""
Telemetry store for the fleet monitor.

SQLite database at /var/lib/fleet-monitor/telemetry.db storing:
- Registered devices (status, identity, credentials reference)
- Metric snapshots (append-only)
- Interface state and derived rates
- Netwatch targets
- Tracked active sessions
- Alerts (append-only)

Uses WAL mode for crash safety and concurrent reads. Every write is scoped
by device_id so concurrent device cycles never touch the same rows.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ._types import (
    ActiveSession,
    Alert,
    AlertSeverity,
    AlertType,
    Device,
    DeviceIdentity,
    DeviceStatus,
    InterfaceState,
    MetricSnapshot,
    WatchStatus,
    WatchTarget,
    now_utc,
)
from .errors import PersistenceError

logger = logging.getLogger(__name__)


# Database schema
SCHEMA = """
-- Device registry (owned by the registry, engine updates status/identity)
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    address TEXT NOT NULL,
    port INTEGER NOT NULL DEFAULT 8728,
    username TEXT NOT NULL,
    secret_encrypted TEXT NOT NULL,

    status TEXT NOT NULL DEFAULT 'unknown',
    last_seen TEXT,
    latency INTEGER,

    identity TEXT,
    version TEXT,
    model TEXT,
    serial_number TEXT,
    board_name TEXT,
    architecture TEXT
);

-- Resource samples
CREATE TABLE IF NOT EXISTS metric_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    cpu_load INTEGER,
    cpu_count INTEGER,
    cpu_frequency INTEGER,
    total_memory INTEGER,
    used_memory INTEGER,
    free_memory INTEGER,
    total_disk INTEGER,
    used_disk INTEGER,
    free_disk INTEGER,
    uptime INTEGER,
    temperature REAL,
    voltage REAL,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
);

-- Interface counters and derived rates
CREATE TABLE IF NOT EXISTS interfaces (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    name TEXT NOT NULL,
    default_name TEXT,
    type TEXT,
    mac_address TEXT,
    running BOOLEAN DEFAULT FALSE,
    disabled BOOLEAN DEFAULT FALSE,
    tx_bytes INTEGER DEFAULT 0,
    rx_bytes INTEGER DEFAULT 0,
    tx_packets INTEGER DEFAULT 0,
    rx_packets INTEGER DEFAULT 0,
    tx_drops INTEGER DEFAULT 0,
    rx_drops INTEGER DEFAULT 0,
    tx_errors INTEGER DEFAULT 0,
    rx_errors INTEGER DEFAULT 0,
    tx_rate INTEGER DEFAULT 0,
    rx_rate INTEGER DEFAULT 0,
    speed TEXT,
    comment TEXT,
    last_updated TEXT NOT NULL,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE,
    UNIQUE(device_id, name)
);

-- Netwatch targets
CREATE TABLE IF NOT EXISTS watch_targets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    host TEXT NOT NULL,
    name TEXT,
    status TEXT NOT NULL DEFAULT 'unknown',
    interval INTEGER DEFAULT 30,
    latency INTEGER,
    last_known_latency INTEGER,
    packet_loss INTEGER DEFAULT 0,
    last_check TEXT,
    last_up TEXT,
    last_down TEXT,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE,
    UNIQUE(device_id, host)
);

-- Sessions currently observed on a device
CREATE TABLE IF NOT EXISTS active_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    session_key TEXT NOT NULL,
    address TEXT,
    service TEXT,
    caller_id TEXT,
    uptime TEXT,
    connected_at TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE,
    UNIQUE(device_id, session_key)
);

-- Emitted alerts
CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    type TEXT NOT NULL,
    target TEXT NOT NULL,
    severity TEXT NOT NULL,
    state TEXT NOT NULL,
    title TEXT,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_devices_status ON devices(status);
CREATE INDEX IF NOT EXISTS idx_metric_snapshots_device ON metric_snapshots(device_id, recorded_at);
CREATE INDEX IF NOT EXISTS idx_interfaces_device ON interfaces(device_id);
CREATE INDEX IF NOT EXISTS idx_watch_targets_device ON watch_targets(device_id);
CREATE INDEX IF NOT EXISTS idx_active_sessions_device ON active_sessions(device_id);
CREATE INDEX IF NOT EXISTS idx_alerts_key ON alerts(device_id, target, type, created_at);
CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts(created_at);
"""


def _iso_format(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as a UTC ISO string (fixed width so rows sort as text)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


class TelemetryStore:
    """
    SQLite store for device telemetry, netwatch state and alerts.

    Thread-safe with WAL mode enabled for concurrent reads. sqlite3 errors
    surface as PersistenceError and only affect the write that raised them.
    """

    def __init__(self, db_path: Path | str = "/var/lib/fleet-monitor/telemetry.db"):
        self.db_path = Path(db_path)
        self._ensure_directory()
        self._init_db()

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            # Enable WAL mode for crash safety
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def register_device(self, device: Device) -> None:
        """Insert or replace a registry row (registry collaborator and tests)."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO devices (
                    id, name, address, port, username, secret_encrypted,
                    status, last_seen, latency, identity, version, model,
                    serial_number, board_name, architecture
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    address = excluded.address,
                    port = excluded.port,
                    username = excluded.username,
                    secret_encrypted = excluded.secret_encrypted
            """, (
                device.id,
                device.name,
                device.address,
                device.port,
                device.username,
                device.secret_encrypted,
                device.status.value,
                _iso_format(device.last_seen),
                device.latency,
                device.identity,
                device.version,
                device.model,
                device.serial_number,
                device.board_name,
                device.architecture,
            ))
            conn.commit()

    def get_device(self, device_id: str) -> Optional[Device]:
        """Get device by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE id = ?", (device_id,)
            ).fetchone()
            if row:
                return self._row_to_device(row)
            return None

    def get_devices(self, status: Optional[DeviceStatus] = None) -> list[Device]:
        """Get registered devices, optionally filtered by status."""
        query = "SELECT * FROM devices"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY name"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_device(row) for row in rows]

    def delete_device(self, device_id: str) -> bool:
        """Delete a device and, by cascade, all of its telemetry."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
            conn.commit()
            return cursor.rowcount > 0

    def update_device_status(
        self,
        device_id: str,
        status: DeviceStatus,
        last_seen: Optional[datetime] = None,
        latency: Optional[int] = None,
    ) -> None:
        """Update reachability status; last_seen/latency only when given."""
        updates = ["status = ?"]
        params: list = [status.value]

        if last_seen is not None:
            updates.append("last_seen = ?")
            params.append(_iso_format(last_seen))
        if latency is not None:
            updates.append("latency = ?")
            params.append(latency)

        query = f"UPDATE devices SET {', '.join(updates)} WHERE id = ?"
        params.append(device_id)

        with self._get_connection() as conn:
            conn.execute(query, params)
            conn.commit()

    def update_device_identity(self, device_id: str, identity: DeviceIdentity) -> None:
        """Store identity fields read from the device. Missing values keep the old ones."""
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE devices SET
                    identity = COALESCE(?, identity),
                    version = COALESCE(?, version),
                    model = COALESCE(?, model),
                    serial_number = COALESCE(?, serial_number),
                    board_name = COALESCE(?, board_name),
                    architecture = COALESCE(?, architecture)
                WHERE id = ?
            """, (
                identity.identity,
                identity.version,
                identity.model,
                identity.serial_number,
                identity.board_name,
                identity.architecture,
                device_id,
            ))
            conn.commit()

    def _row_to_device(self, row: sqlite3.Row) -> Device:
        """Convert database row to Device object."""
        return Device(
            id=row["id"],
            name=row["name"],
            address=row["address"],
            port=row["port"],
            username=row["username"],
            secret_encrypted=row["secret_encrypted"],
            status=DeviceStatus(row["status"]),
            last_seen=_parse_datetime(row["last_seen"]),
            latency=row["latency"],
            identity=row["identity"],
            version=row["version"],
            model=row["model"],
            serial_number=row["serial_number"],
            board_name=row["board_name"],
            architecture=row["architecture"],
        )

    # -------------------------------------------------------------------------
    # Metric Snapshots
    # -------------------------------------------------------------------------

    def insert_metric_snapshot(self, snapshot: MetricSnapshot) -> int:
        """Append a resource sample. Returns its row id."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO metric_snapshots (
                    device_id, recorded_at, cpu_load, cpu_count, cpu_frequency,
                    total_memory, used_memory, free_memory,
                    total_disk, used_disk, free_disk,
                    uptime, temperature, voltage
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                snapshot.device_id,
                _iso_format(snapshot.recorded_at),
                snapshot.cpu_load,
                snapshot.cpu_count,
                snapshot.cpu_frequency,
                snapshot.total_memory,
                snapshot.used_memory,
                snapshot.free_memory,
                snapshot.total_disk,
                snapshot.used_disk,
                snapshot.free_disk,
                snapshot.uptime,
                snapshot.temperature,
                snapshot.voltage,
            ))
            conn.commit()
            return cursor.lastrowid

    def get_metric_snapshots(self, device_id: str, limit: int = 100) -> list[MetricSnapshot]:
        """Get recent snapshots for a device, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM metric_snapshots
                WHERE device_id = ?
                ORDER BY recorded_at DESC, id DESC
                LIMIT ?
            """, (device_id, limit)).fetchall()
            return [
                MetricSnapshot(
                    id=row["id"],
                    device_id=row["device_id"],
                    recorded_at=_parse_datetime(row["recorded_at"]) or now_utc(),
                    cpu_load=row["cpu_load"],
                    cpu_count=row["cpu_count"],
                    cpu_frequency=row["cpu_frequency"],
                    total_memory=row["total_memory"],
                    used_memory=row["used_memory"],
                    free_memory=row["free_memory"],
                    total_disk=row["total_disk"],
                    used_disk=row["used_disk"],
                    free_disk=row["free_disk"],
                    uptime=row["uptime"],
                    temperature=row["temperature"],
                    voltage=row["voltage"],
                )
                for row in rows
            ]

    def get_latest_metric_snapshot(self, device_id: str) -> Optional[MetricSnapshot]:
        """Get the most recent snapshot."""
        snapshots = self.get_metric_snapshots(device_id, limit=1)
        return snapshots[0] if snapshots else None

    # -------------------------------------------------------------------------
    # Interfaces
    # -------------------------------------------------------------------------

    def upsert_interface(self, state: InterfaceState) -> None:
        """Insert or update an interface row keyed by (device_id, name)."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO interfaces (
                    device_id, name, default_name, type, mac_address,
                    running, disabled,
                    tx_bytes, rx_bytes, tx_packets, rx_packets,
                    tx_drops, rx_drops, tx_errors, rx_errors,
                    tx_rate, rx_rate, speed, comment, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id, name) DO UPDATE SET
                    default_name = excluded.default_name,
                    type = excluded.type,
                    mac_address = excluded.mac_address,
                    running = excluded.running,
                    disabled = excluded.disabled,
                    tx_bytes = excluded.tx_bytes,
                    rx_bytes = excluded.rx_bytes,
                    tx_packets = excluded.tx_packets,
                    rx_packets = excluded.rx_packets,
                    tx_drops = excluded.tx_drops,
                    rx_drops = excluded.rx_drops,
                    tx_errors = excluded.tx_errors,
                    rx_errors = excluded.rx_errors,
                    tx_rate = excluded.tx_rate,
                    rx_rate = excluded.rx_rate,
                    speed = COALESCE(excluded.speed, interfaces.speed),
                    comment = excluded.comment,
                    last_updated = excluded.last_updated
            """, (
                state.device_id,
                state.name,
                state.default_name,
                state.type,
                state.mac_address,
                state.running,
                state.disabled,
                state.tx_bytes,
                state.rx_bytes,
                state.tx_packets,
                state.rx_packets,
                state.tx_drops,
                state.rx_drops,
                state.tx_errors,
                state.rx_errors,
                state.tx_rate,
                state.rx_rate,
                state.speed,
                state.comment,
                _iso_format(state.last_updated),
            ))
            conn.commit()

    def get_interface(self, device_id: str, name: str) -> Optional[InterfaceState]:
        """Get one interface row."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM interfaces WHERE device_id = ? AND name = ?",
                (device_id, name),
            ).fetchone()
            if row:
                return self._row_to_interface(row)
            return None

    def get_interfaces(self, device_id: str) -> list[InterfaceState]:
        """Get all interfaces for a device."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM interfaces WHERE device_id = ? ORDER BY name",
                (device_id,),
            ).fetchall()
            return [self._row_to_interface(row) for row in rows]

    def _row_to_interface(self, row: sqlite3.Row) -> InterfaceState:
        return InterfaceState(
            device_id=row["device_id"],
            name=row["name"],
            default_name=row["default_name"],
            type=row["type"],
            mac_address=row["mac_address"],
            running=bool(row["running"]),
            disabled=bool(row["disabled"]),
            tx_bytes=row["tx_bytes"],
            rx_bytes=row["rx_bytes"],
            tx_packets=row["tx_packets"],
            rx_packets=row["rx_packets"],
            tx_drops=row["tx_drops"],
            rx_drops=row["rx_drops"],
            tx_errors=row["tx_errors"],
            rx_errors=row["rx_errors"],
            tx_rate=row["tx_rate"],
            rx_rate=row["rx_rate"],
            speed=row["speed"],
            comment=row["comment"],
            last_updated=_parse_datetime(row["last_updated"]) or now_utc(),
        )

    # -------------------------------------------------------------------------
    # Watch Targets
    # -------------------------------------------------------------------------

    def upsert_watch_target(self, target: WatchTarget) -> None:
        """
        Insert or update a netwatch row keyed by (device_id, host).

        Probe results (latency, packet loss) are owned by the prober and are
        not overwritten here.
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO watch_targets (
                    device_id, host, name, status, interval,
                    latency, last_known_latency, packet_loss,
                    last_check, last_up, last_down
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id, host) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    interval = excluded.interval,
                    last_check = excluded.last_check,
                    last_up = excluded.last_up,
                    last_down = excluded.last_down
            """, (
                target.device_id,
                target.host,
                target.name,
                target.status.value,
                target.interval,
                target.latency,
                target.last_known_latency,
                target.packet_loss,
                _iso_format(target.last_check),
                _iso_format(target.last_up),
                _iso_format(target.last_down),
            ))
            conn.commit()

    def get_watch_target(self, device_id: str, host: str) -> Optional[WatchTarget]:
        """Get one netwatch row."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM watch_targets WHERE device_id = ? AND host = ?",
                (device_id, host),
            ).fetchone()
            if row:
                return self._row_to_watch_target(row)
            return None

    def get_watch_targets(self, device_id: str) -> list[WatchTarget]:
        """Get all netwatch rows for a device."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM watch_targets WHERE device_id = ? ORDER BY host",
                (device_id,),
            ).fetchall()
            return [self._row_to_watch_target(row) for row in rows]

    def update_probe_result(
        self,
        device_id: str,
        host: str,
        latency: Optional[int],
        packet_loss: int,
        checked_at: datetime,
    ) -> None:
        """Record a probe outcome. last_known_latency only moves on success."""
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE watch_targets SET
                    latency = ?,
                    last_known_latency = COALESCE(?, last_known_latency),
                    packet_loss = ?,
                    last_check = ?
                WHERE device_id = ? AND host = ?
            """, (latency, latency, packet_loss, _iso_format(checked_at), device_id, host))
            conn.commit()

    def delete_watch_target(self, device_id: str, host: str) -> bool:
        """Delete a netwatch row."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM watch_targets WHERE device_id = ? AND host = ?",
                (device_id, host),
            )
            conn.commit()
            return cursor.rowcount > 0

    def _row_to_watch_target(self, row: sqlite3.Row) -> WatchTarget:
        return WatchTarget(
            id=row["id"],
            device_id=row["device_id"],
            host=row["host"],
            name=row["name"],
            status=WatchStatus(row["status"]),
            interval=row["interval"],
            latency=row["latency"],
            last_known_latency=row["last_known_latency"],
            packet_loss=row["packet_loss"],
            last_check=_parse_datetime(row["last_check"]),
            last_up=_parse_datetime(row["last_up"]),
            last_down=_parse_datetime(row["last_down"]),
        )

    # -------------------------------------------------------------------------
    # Active Sessions
    # -------------------------------------------------------------------------

    def get_active_sessions(self, device_id: str) -> list[ActiveSession]:
        """Get the tracked session set for a device."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM active_sessions WHERE device_id = ? ORDER BY session_key",
                (device_id,),
            ).fetchall()
            return [
                ActiveSession(
                    device_id=row["device_id"],
                    session_key=row["session_key"],
                    address=row["address"],
                    service=row["service"],
                    caller_id=row["caller_id"],
                    uptime=row["uptime"],
                    connected_at=_parse_datetime(row["connected_at"]) or now_utc(),
                    last_seen=_parse_datetime(row["last_seen"]) or now_utc(),
                )
                for row in rows
            ]

    def replace_active_sessions(self, device_id: str, sessions: list[ActiveSession]) -> None:
        """
        Make the tracked set for a device exactly match `sessions`.

        Runs in one transaction. Surviving rows keep connected_at.
        """
        keys = [s.session_key for s in sessions]
        with self._get_connection() as conn:
            if keys:
                placeholders = ", ".join("?" for _ in keys)
                conn.execute(
                    f"DELETE FROM active_sessions WHERE device_id = ? AND session_key NOT IN ({placeholders})",
                    [device_id, *keys],
                )
            else:
                conn.execute("DELETE FROM active_sessions WHERE device_id = ?", (device_id,))

            for session in sessions:
                conn.execute("""
                    INSERT INTO active_sessions (
                        device_id, session_key, address, service, caller_id,
                        uptime, connected_at, last_seen
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(device_id, session_key) DO UPDATE SET
                        address = excluded.address,
                        service = excluded.service,
                        caller_id = excluded.caller_id,
                        uptime = excluded.uptime,
                        last_seen = excluded.last_seen
                """, (
                    device_id,
                    session.session_key,
                    session.address,
                    session.service,
                    session.caller_id,
                    session.uptime,
                    _iso_format(session.connected_at),
                    _iso_format(session.last_seen),
                ))
            conn.commit()

    def clear_active_sessions(self, device_id: str) -> int:
        """Drop all tracked sessions for a device."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM active_sessions WHERE device_id = ?", (device_id,))
            conn.commit()
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def insert_alert(self, alert: Alert) -> Alert:
        """Append an alert. Returns it with its id set."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO alerts (device_id, type, target, severity, state, title, message, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                alert.device_id,
                alert.type.value,
                alert.target,
                alert.severity.value,
                alert.state,
                alert.title,
                alert.message,
                _iso_format(alert.created_at),
            ))
            conn.commit()
            alert.id = cursor.lastrowid
            return alert

    def find_recent_alert(
        self,
        device_id: str,
        target: str,
        alert_type: AlertType,
        since: datetime,
        state: Optional[str] = None,
    ) -> Optional[Alert]:
        """Most recent alert for (device, target, type) created at or after `since`."""
        query = """
            SELECT * FROM alerts
            WHERE device_id = ? AND target = ? AND type = ? AND created_at >= ?
        """
        params: list = [device_id, target, alert_type.value, _iso_format(since)]
        if state is not None:
            query += " AND state = ?"
            params.append(state)
        query += " ORDER BY created_at DESC, id DESC LIMIT 1"

        with self._get_connection() as conn:
            row = conn.execute(query, params).fetchone()
            if row:
                return self._row_to_alert(row)
            return None

    def get_alerts(
        self,
        device_id: Optional[str] = None,
        alert_type: Optional[AlertType] = None,
        limit: int = 100,
    ) -> list[Alert]:
        """Get alerts with optional filters, newest first."""
        query = "SELECT * FROM alerts WHERE 1=1"
        params: list = []

        if device_id:
            query += " AND device_id = ?"
            params.append(device_id)
        if alert_type:
            query += " AND type = ?"
            params.append(alert_type.value)

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_alert(row) for row in rows]

    def _row_to_alert(self, row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            device_id=row["device_id"],
            type=AlertType(row["type"]),
            target=row["target"],
            severity=AlertSeverity(row["severity"]),
            state=row["state"],
            title=row["title"] or "",
            message=row["message"],
            created_at=_parse_datetime(row["created_at"]) or now_utc(),
        )

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_device_counts(self) -> dict[str, int]:
        """Get device counts by status."""
        with self._get_connection() as conn:
            result: dict = {"total": 0, "by_status": {}}

            row = conn.execute("SELECT COUNT(*) as cnt FROM devices").fetchone()
            result["total"] = row["cnt"]

            rows = conn.execute(
                "SELECT status, COUNT(*) as cnt FROM devices GROUP BY status"
            ).fetchall()
            result["by_status"] = {row["status"]: row["cnt"] for row in rows}

            return result

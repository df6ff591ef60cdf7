"""Tests for telemetry store operations."""

from datetime import datetime, timedelta, timezone

import pytest

from fleet_monitor._types import (
    ActiveSession,
    Alert,
    AlertSeverity,
    AlertType,
    Device,
    DeviceIdentity,
    DeviceStatus,
    MetricSnapshot,
    WatchStatus,
    WatchTarget,
)
from fleet_monitor.errors import PersistenceError
from fleet_monitor.store import TelemetryStore


T0 = datetime(2024, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class TestDevices:
    """Tests for registry rows and status updates."""

    def test_register_and_get(self, store: TelemetryStore):
        """Should round-trip a registered device."""
        device = Device(name="edge-1", address="10.1.1.1", username="admin", secret_encrypted="x")
        store.register_device(device)

        retrieved = store.get_device(device.id)
        assert retrieved is not None
        assert retrieved.address == "10.1.1.1"
        assert retrieved.status == DeviceStatus.UNKNOWN

    def test_get_missing_device(self, store: TelemetryStore):
        assert store.get_device("nope") is None

    def test_reregister_keeps_status(self, store: TelemetryStore, device):
        """Registry updates must not clobber engine-owned fields."""
        store.update_device_status(device.id, DeviceStatus.OFFLINE)
        device.address = "10.0.0.2"
        store.register_device(device)

        retrieved = store.get_device(device.id)
        assert retrieved.address == "10.0.0.2"
        assert retrieved.status == DeviceStatus.OFFLINE

    def test_update_status_only_touches_given_fields(self, store: TelemetryStore, device):
        store.update_device_status(device.id, DeviceStatus.ONLINE, last_seen=T0, latency=15)
        store.update_device_status(device.id, DeviceStatus.OFFLINE)

        retrieved = store.get_device(device.id)
        assert retrieved.status == DeviceStatus.OFFLINE
        assert retrieved.last_seen == T0
        assert retrieved.latency == 15

    def test_identity_keeps_previous_values(self, store: TelemetryStore, device):
        store.update_device_identity(device.id, DeviceIdentity(identity="r1", serial_number="SN1"))
        store.update_device_identity(device.id, DeviceIdentity(identity="r1-renamed"))

        retrieved = store.get_device(device.id)
        assert retrieved.identity == "r1-renamed"
        assert retrieved.serial_number == "SN1"

    def test_get_devices_by_status(self, store: TelemetryStore, device):
        other = Device(name="edge-2", address="10.0.0.9", username="u", secret_encrypted="s")
        store.register_device(other)

        online = store.get_devices(DeviceStatus.ONLINE)
        assert [d.id for d in online] == [device.id]
        assert len(store.get_devices()) == 2

    def test_device_counts(self, store: TelemetryStore, device):
        counts = store.get_device_counts()
        assert counts["total"] == 1
        assert counts["by_status"] == {"online": 1}

    def test_delete_cascades(self, store: TelemetryStore, device):
        """Deleting a device removes its telemetry."""
        store.upsert_watch_target(WatchTarget(device_id=device.id, host="1.1.1.1"))
        store.insert_metric_snapshot(MetricSnapshot(device_id=device.id, cpu_load=5))

        assert store.delete_device(device.id) is True
        assert store.get_watch_targets(device.id) == []
        assert store.get_metric_snapshots(device.id) == []
        assert store.delete_device(device.id) is False


class TestMetricSnapshots:
    def test_append_only_newest_first(self, store: TelemetryStore, device):
        first = store.insert_metric_snapshot(MetricSnapshot(device_id=device.id, recorded_at=T0, cpu_load=10))
        second = store.insert_metric_snapshot(
            MetricSnapshot(device_id=device.id, recorded_at=T0 + timedelta(minutes=2), cpu_load=20)
        )

        snapshots = store.get_metric_snapshots(device.id)
        assert [s.id for s in snapshots] == [second, first]
        assert store.get_latest_metric_snapshot(device.id).cpu_load == 20

    def test_latest_missing(self, store: TelemetryStore, device):
        assert store.get_latest_metric_snapshot(device.id) is None

    def test_unknown_device_rejected(self, store: TelemetryStore):
        """Foreign keys are enforced; the failure surfaces as PersistenceError."""
        with pytest.raises(PersistenceError):
            store.insert_metric_snapshot(MetricSnapshot(device_id="ghost"))


class TestWatchTargets:
    """Tests for netwatch rows."""

    def test_unique_per_host(self, store: TelemetryStore, device):
        store.upsert_watch_target(WatchTarget(device_id=device.id, host="8.8.8.8", status=WatchStatus.UP))
        store.upsert_watch_target(WatchTarget(device_id=device.id, host="8.8.8.8", status=WatchStatus.DOWN))

        targets = store.get_watch_targets(device.id)
        assert len(targets) == 1
        assert targets[0].status == WatchStatus.DOWN

    def test_upsert_preserves_probe_fields(self, store: TelemetryStore, device):
        """Reconciliation must not wipe probe results."""
        store.upsert_watch_target(WatchTarget(device_id=device.id, host="8.8.8.8"))
        store.update_probe_result(device.id, "8.8.8.8", 12, 0, T0)
        store.upsert_watch_target(WatchTarget(device_id=device.id, host="8.8.8.8", name="dns"))

        target = store.get_watch_target(device.id, "8.8.8.8")
        assert target.name == "dns"
        assert target.latency == 12
        assert target.last_known_latency == 12

    def test_failed_probe_keeps_last_known_latency(self, store: TelemetryStore, device):
        store.upsert_watch_target(WatchTarget(device_id=device.id, host="8.8.8.8"))
        store.update_probe_result(device.id, "8.8.8.8", 12, 0, T0)
        store.update_probe_result(device.id, "8.8.8.8", None, 100, T0 + timedelta(seconds=60))

        target = store.get_watch_target(device.id, "8.8.8.8")
        assert target.latency is None
        assert target.packet_loss == 100
        assert target.last_known_latency == 12
        assert target.last_check == T0 + timedelta(seconds=60)

    def test_delete(self, store: TelemetryStore, device):
        store.upsert_watch_target(WatchTarget(device_id=device.id, host="8.8.8.8"))
        assert store.delete_watch_target(device.id, "8.8.8.8") is True
        assert store.delete_watch_target(device.id, "8.8.8.8") is False


class TestActiveSessions:
    def test_replace_matches_exactly(self, store: TelemetryStore, device):
        """The stored set is replaced; survivors keep connected_at."""
        store.replace_active_sessions(device.id, [
            ActiveSession(device_id=device.id, session_key="alice", connected_at=T0, last_seen=T0),
            ActiveSession(device_id=device.id, session_key="bob", connected_at=T0, last_seen=T0),
        ])
        later = T0 + timedelta(minutes=5)
        store.replace_active_sessions(device.id, [
            ActiveSession(device_id=device.id, session_key="bob", connected_at=later, last_seen=later),
            ActiveSession(device_id=device.id, session_key="carol", connected_at=later, last_seen=later),
        ])

        sessions = {s.session_key: s for s in store.get_active_sessions(device.id)}
        assert set(sessions) == {"bob", "carol"}
        assert sessions["bob"].connected_at == T0
        assert sessions["bob"].last_seen == later

    def test_replace_with_empty_clears(self, store: TelemetryStore, device):
        store.replace_active_sessions(device.id, [ActiveSession(device_id=device.id, session_key="alice")])
        store.replace_active_sessions(device.id, [])

        assert store.get_active_sessions(device.id) == []

    def test_clear(self, store: TelemetryStore, device):
        store.replace_active_sessions(device.id, [ActiveSession(device_id=device.id, session_key="alice")])
        assert store.clear_active_sessions(device.id) == 1


class TestAlerts:
    """Tests for alert persistence and lookup."""

    def _alert(self, device_id, created_at, state="down", target="8.8.8.8"):
        return Alert(
            device_id=device_id,
            type=AlertType.NETWATCH,
            target=target,
            severity=AlertSeverity.WARNING,
            state=state,
            message="m",
            created_at=created_at,
        )

    def test_insert_sets_id(self, store: TelemetryStore, device):
        alert = store.insert_alert(self._alert(device.id, T0))
        assert alert.id is not None

    def test_find_recent_respects_since(self, store: TelemetryStore, device):
        store.insert_alert(self._alert(device.id, T0))

        assert store.find_recent_alert(device.id, "8.8.8.8", AlertType.NETWATCH, since=T0) is not None
        assert store.find_recent_alert(
            device.id, "8.8.8.8", AlertType.NETWATCH, since=T0 + timedelta(seconds=1),
        ) is None

    def test_find_recent_filters_state_and_key(self, store: TelemetryStore, device):
        store.insert_alert(self._alert(device.id, T0, state="down"))

        since = T0 - timedelta(minutes=1)
        assert store.find_recent_alert(device.id, "8.8.8.8", AlertType.NETWATCH, since, state="up") is None
        assert store.find_recent_alert(device.id, "1.1.1.1", AlertType.NETWATCH, since) is None
        assert store.find_recent_alert(device.id, "8.8.8.8", AlertType.PERFORMANCE, since) is None
        assert store.find_recent_alert(device.id, "8.8.8.8", AlertType.NETWATCH, since, state="down") is not None

    def test_timestamps_compare_across_offsets(self, store: TelemetryStore, device):
        """Non-UTC timestamps are normalised before comparison."""
        plus7 = timezone(timedelta(hours=7))
        store.insert_alert(self._alert(device.id, datetime(2024, 1, 5, 19, 0, 0, tzinfo=plus7)))

        found = store.find_recent_alert(device.id, "8.8.8.8", AlertType.NETWATCH, since=T0 - timedelta(seconds=1))
        assert found is not None
        assert found.created_at == T0

    def test_get_alerts_filters(self, store: TelemetryStore, device):
        store.insert_alert(self._alert(device.id, T0))
        store.insert_alert(self._alert(device.id, T0 + timedelta(seconds=1), state="up"))

        alerts = store.get_alerts(device_id=device.id, alert_type=AlertType.NETWATCH)
        assert [a.state for a in alerts] == ["up", "down"]
        assert store.get_alerts(alert_type=AlertType.SESSION) == []
        assert len(store.get_alerts(limit=1)) == 1

"""Tests for configuration loading and validation."""

from datetime import timezone
from pathlib import Path

import pytest

from fleet_monitor.config import EngineConfig


class TestDefaults:
    def test_defaults(self):
        config = EngineConfig()

        assert config.poll_interval_seconds == 120
        assert config.dedup_window_seconds == 1800
        assert config.probe_concurrency == 5
        assert config.alerts_enabled is True
        assert config.command_timeout_seconds == 30.0

    def test_unknown_timezone_falls_back_to_utc(self):
        config = EngineConfig(device_timezone="Mars/Olympus_Mons")
        assert config.tz == timezone.utc

    def test_named_timezone(self):
        config = EngineConfig(device_timezone="Asia/Jakarta")
        assert str(config.tz) == "Asia/Jakarta"


class TestFromEnv:
    """Tests for environment configuration."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("FLEET_DB_PATH", "/tmp/fleet.db")
        monkeypatch.setenv("FLEET_POLL_INTERVAL", "60")
        monkeypatch.setenv("FLEET_DEDUP_WINDOW", "600")
        monkeypatch.setenv("FLEET_ALERTS_ENABLED", "false")
        monkeypatch.setenv("FLEET_PROBE_TIMEOUT", "2.5")
        monkeypatch.setenv("FLEET_COMMAND_TIMEOUT", "45")
        monkeypatch.setenv("FLEET_ENCRYPTION_KEY", "k")

        config = EngineConfig.from_env()

        assert config.db_path == Path("/tmp/fleet.db")
        assert config.poll_interval_seconds == 60
        assert config.dedup_window_seconds == 600
        assert config.alerts_enabled is False
        assert config.probe_timeout_seconds == 2.5
        assert config.command_timeout_seconds == 45.0
        assert config.encryption_key == "k"


class TestFromYaml:
    """Tests for YAML configuration."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = EngineConfig.from_yaml(tmp_path / "absent.yaml")
        assert config.poll_interval_seconds == 120

    def test_sections(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FLEET_ENCRYPTION_KEY", raising=False)
        path = tmp_path / "fleet.yaml"
        path.write_text(
            "paths:\n"
            "  db: /srv/fleet/telemetry.db\n"
            "polling:\n"
            "  interval: 300\n"
            "  full_sync_every: 5\n"
            "  sessions: false\n"
            "devices:\n"
            "  timezone: Asia/Jakarta\n"
            "  command_timeout: 12\n"
            "probes:\n"
            "  concurrency: 8\n"
            "  latency_threshold_ms: 250\n"
            "alerts:\n"
            "  dedup_window: 900\n"
            "notifier:\n"
            "  url: https://hooks.example.net/fleet\n"
            "api:\n"
            "  port: 9000\n"
            "encryption_key: from-file\n"
            "log_level: DEBUG\n"
        )

        config = EngineConfig.from_yaml(path)

        assert config.db_path == Path("/srv/fleet/telemetry.db")
        assert config.poll_interval_seconds == 300
        assert config.full_sync_every == 5
        assert config.include_sessions is False
        assert config.include_netwatch is True
        assert config.device_timezone == "Asia/Jakarta"
        assert config.command_timeout_seconds == 12
        assert config.probe_concurrency == 8
        assert config.latency_threshold_ms == 250
        assert config.dedup_window_seconds == 900
        assert config.notifier_url == "https://hooks.example.net/fleet"
        assert config.api_port == 9000
        assert config.encryption_key == "from-file"
        assert config.log_level == "DEBUG"

    def test_environment_key_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_ENCRYPTION_KEY", "from-env")
        path = tmp_path / "fleet.yaml"
        path.write_text("encryption_key: from-file\n")

        assert EngineConfig.from_yaml(path).encryption_key == "from-env"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "fleet.yaml"
        path.write_text("")
        assert EngineConfig.from_yaml(path).dedup_window_seconds == 1800


class TestValidate:
    def test_valid(self):
        config = EngineConfig(encryption_key="k")
        assert config.validate() == []

    def test_missing_key_is_a_warning(self):
        errors = EngineConfig().validate()
        assert len(errors) == 1
        assert not any("CRITICAL" in e for e in errors)

    @pytest.mark.parametrize("overrides", [
        {"full_sync_every": 0},
        {"max_concurrent_devices": 0},
        {"probe_timeout_seconds": 0},
        {"command_timeout_seconds": 0},
    ])
    def test_critical_errors(self, overrides):
        config = EngineConfig(encryption_key="k", **overrides)
        assert any("CRITICAL" in e for e in config.validate())

    def test_threshold_order(self):
        config = EngineConfig(encryption_key="k", cpu_warning=95, cpu_critical=90)
        assert config.validate() == ["cpu_warning must not exceed cpu_critical"]

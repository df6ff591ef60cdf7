"""
Fleet monitor configuration.

Loaded from environment variables or a YAML file. The device encryption key
is kept out of the YAML file when possible and read from the environment
(FLEET_ENCRYPTION_KEY) instead.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import tzinfo, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass
class EngineConfig:
    """
    Fleet monitor configuration.

    The polling cadence lives here only for the bundled scheduler; the
    refresh engine itself just executes the requests it is handed.
    """

    # Database
    db_path: Path = field(default_factory=lambda: Path("/var/lib/fleet-monitor/telemetry.db"))

    # Scheduler
    poll_interval_seconds: int = 120
    full_sync_every: int = 1  # every Nth tick is a full sync
    max_concurrent_devices: int = 20
    include_netwatch: bool = True
    include_probes: bool = True
    include_sessions: bool = True

    # Device sessions
    connect_timeout_seconds: float = 10.0
    command_timeout_seconds: float = 30.0
    device_timezone: str = "UTC"

    # Latency probing
    probe_concurrency: int = 5
    probe_timeout_seconds: float = 5.0
    probe_count: int = 3
    latency_threshold_ms: int = 100

    # Alerts
    alerts_enabled: bool = True
    dedup_window_seconds: int = 1800  # 30 minutes
    cpu_warning: int = 70
    cpu_critical: int = 90
    memory_warning: int = 80
    memory_critical: int = 95

    # Notification dispatch
    notifier_url: Optional[str] = None
    notifier_token: Optional[str] = None
    notifier_timeout_seconds: float = 10.0

    # Secrets
    encryption_key: Optional[str] = None

    # API server (refresh triggers)
    api_host: str = "127.0.0.1"
    api_port: int = 8090

    # Logging
    log_level: str = "INFO"

    @property
    def tz(self) -> tzinfo:
        """Timezone used for device-local timestamps."""
        try:
            return ZoneInfo(self.device_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown device timezone {self.device_timezone!r}, using UTC")
            return timezone.utc

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        config = cls()

        if db_path := os.getenv("FLEET_DB_PATH"):
            config.db_path = Path(db_path)

        config.poll_interval_seconds = int(os.getenv("FLEET_POLL_INTERVAL", "120"))
        config.full_sync_every = int(os.getenv("FLEET_FULL_SYNC_EVERY", "1"))
        config.max_concurrent_devices = int(os.getenv("FLEET_MAX_CONCURRENT_DEVICES", "20"))
        config.include_netwatch = _env_bool("FLEET_NETWATCH", True)
        config.include_probes = _env_bool("FLEET_PROBES", True)
        config.include_sessions = _env_bool("FLEET_SESSIONS", True)

        config.connect_timeout_seconds = float(os.getenv("FLEET_CONNECT_TIMEOUT", "10"))
        config.command_timeout_seconds = float(os.getenv("FLEET_COMMAND_TIMEOUT", "30"))
        config.device_timezone = os.getenv("FLEET_DEVICE_TZ", "UTC")

        config.probe_concurrency = int(os.getenv("FLEET_PROBE_CONCURRENCY", "5"))
        config.probe_timeout_seconds = float(os.getenv("FLEET_PROBE_TIMEOUT", "5"))
        config.probe_count = int(os.getenv("FLEET_PROBE_COUNT", "3"))
        config.latency_threshold_ms = int(os.getenv("FLEET_LATENCY_THRESHOLD_MS", "100"))

        config.alerts_enabled = _env_bool("FLEET_ALERTS_ENABLED", True)
        config.dedup_window_seconds = int(os.getenv("FLEET_DEDUP_WINDOW", "1800"))
        config.cpu_warning = int(os.getenv("FLEET_CPU_WARNING", "70"))
        config.cpu_critical = int(os.getenv("FLEET_CPU_CRITICAL", "90"))
        config.memory_warning = int(os.getenv("FLEET_MEMORY_WARNING", "80"))
        config.memory_critical = int(os.getenv("FLEET_MEMORY_CRITICAL", "95"))

        config.notifier_url = os.getenv("FLEET_NOTIFIER_URL")
        config.notifier_token = os.getenv("FLEET_NOTIFIER_TOKEN")
        config.encryption_key = os.getenv("FLEET_ENCRYPTION_KEY")

        config.api_host = os.getenv("FLEET_API_HOST", "127.0.0.1")
        config.api_port = int(os.getenv("FLEET_API_PORT", "8090"))

        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "EngineConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "paths" in data:
            p = data["paths"]
            if "db" in p:
                config.db_path = Path(p["db"])

        if "polling" in data:
            s = data["polling"]
            config.poll_interval_seconds = s.get("interval", config.poll_interval_seconds)
            config.full_sync_every = s.get("full_sync_every", config.full_sync_every)
            config.max_concurrent_devices = s.get("max_concurrent_devices", config.max_concurrent_devices)
            config.include_netwatch = s.get("netwatch", True)
            config.include_probes = s.get("probes", True)
            config.include_sessions = s.get("sessions", True)

        if "devices" in data:
            d = data["devices"]
            config.connect_timeout_seconds = d.get("connect_timeout", config.connect_timeout_seconds)
            config.command_timeout_seconds = d.get("command_timeout", config.command_timeout_seconds)
            config.device_timezone = d.get("timezone", config.device_timezone)

        if "probes" in data:
            pr = data["probes"]
            config.probe_concurrency = pr.get("concurrency", config.probe_concurrency)
            config.probe_timeout_seconds = pr.get("timeout", config.probe_timeout_seconds)
            config.probe_count = pr.get("count", config.probe_count)
            config.latency_threshold_ms = pr.get("latency_threshold_ms", config.latency_threshold_ms)

        if "alerts" in data:
            a = data["alerts"]
            config.alerts_enabled = a.get("enabled", True)
            config.dedup_window_seconds = a.get("dedup_window", config.dedup_window_seconds)
            config.cpu_warning = a.get("cpu_warning", config.cpu_warning)
            config.cpu_critical = a.get("cpu_critical", config.cpu_critical)
            config.memory_warning = a.get("memory_warning", config.memory_warning)
            config.memory_critical = a.get("memory_critical", config.memory_critical)

        if "notifier" in data:
            n = data["notifier"]
            config.notifier_url = n.get("url")
            config.notifier_token = n.get("token")
            config.notifier_timeout_seconds = n.get("timeout", config.notifier_timeout_seconds)

        if "api" in data:
            a = data["api"]
            config.api_host = a.get("host", "127.0.0.1")
            config.api_port = a.get("port", 8090)

        config.encryption_key = os.getenv("FLEET_ENCRYPTION_KEY", data.get("encryption_key"))
        config.log_level = data.get("log_level", "INFO")

        return config

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        if self.poll_interval_seconds < 10:
            errors.append(f"Polling interval too short: {self.poll_interval_seconds}s")

        if self.full_sync_every < 1:
            errors.append(f"CRITICAL: full_sync_every must be >= 1, got {self.full_sync_every}")

        if self.max_concurrent_devices < 1:
            errors.append("CRITICAL: max_concurrent_devices must be >= 1")

        if not 1 <= self.probe_concurrency <= 50:
            errors.append(f"probe_concurrency out of range: {self.probe_concurrency}")

        if self.probe_timeout_seconds <= 0:
            errors.append("CRITICAL: probe_timeout must be positive")

        if self.command_timeout_seconds <= 0:
            errors.append("CRITICAL: command_timeout must be positive")

        if self.dedup_window_seconds < 0:
            errors.append("dedup_window must not be negative")

        if self.cpu_warning > self.cpu_critical:
            errors.append("cpu_warning must not exceed cpu_critical")

        if self.memory_warning > self.memory_critical:
            errors.append("memory_warning must not exceed memory_critical")

        if not self.encryption_key:
            errors.append("No encryption key configured; stored secrets are used as-is")

        return errors


# Example fleet_monitor.yaml:
"""
paths:
  db: "/var/lib/fleet-monitor/telemetry.db"

polling:
  interval: 120
  full_sync_every: 1
  max_concurrent_devices: 20
  netwatch: true
  probes: true
  sessions: true

devices:
  connect_timeout: 10
  command_timeout: 30
  timezone: "Asia/Jakarta"

probes:
  concurrency: 5
  timeout: 5
  count: 3
  latency_threshold_ms: 100

alerts:
  enabled: true
  dedup_window: 1800
  cpu_warning: 70
  cpu_critical: 90
  memory_warning: 80
  memory_critical: 95

notifier:
  url: "https://notify.example.net/hooks/fleet"
  token: "..."

api:
  host: "127.0.0.1"
  port: 8090

log_level: "INFO"
"""

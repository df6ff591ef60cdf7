"""Shared fixtures: temp store, controllable clock and a scripted device connector."""

import asyncio
import inspect
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from fleet_monitor._types import Device, DeviceCredentials, DeviceStatus
from fleet_monitor.config import EngineConfig
from fleet_monitor.credentials import PlainSecretDecryptor
from fleet_monitor.errors import ProtocolError
from fleet_monitor.orchestrator import RefreshOrchestrator
from fleet_monitor.session import DeviceConnection, DeviceConnector
from fleet_monitor.store import TelemetryStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeConnection(DeviceConnection):
    def __init__(self, connector: "FakeConnector", credentials: DeviceCredentials):
        self.connector = connector
        self.credentials = credentials

    async def execute(
        self,
        command: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[dict]:
        if timeout:
            return await asyncio.wait_for(self._reply(command, params), timeout=timeout)
        return await self._reply(command, params)

    async def _reply(self, command: str, params: Optional[dict[str, Any]]) -> list[dict]:
        params = dict(params or {})
        self.connector.calls.append((command, params))

        if command not in self.connector.replies:
            raise ProtocolError(f"no such command ({command})", command=command)

        reply = self.connector.replies[command]
        if callable(reply):
            reply = reply(params)
            if inspect.isawaitable(reply):
                reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        return [dict(row) for row in reply]

    async def close(self) -> None:
        self.connector.closed += 1
        if self.connector.close_error:
            raise self.connector.close_error


class FakeConnector(DeviceConnector):
    """
    Scripted connector.

    replies maps a command to rows, an exception to raise, or a callable
    taking the params (sync or async) returning either.
    """

    def __init__(self):
        self.replies: dict[str, Any] = {}
        self.calls: list[tuple[str, dict]] = []
        self.connect_error: Optional[BaseException] = None
        self.close_error: Optional[BaseException] = None
        self.connect_delay: float = 0
        self.opened = 0
        self.closed = 0

    async def connect(self, credentials: DeviceCredentials) -> DeviceConnection:
        self.opened += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error:
            raise self.connect_error
        return FakeConnection(self, credentials)

    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]


class BlockingApi:
    """
    Blocking stand-in for a librouteros Api.

    Every command sleeps for the delay of its address, then answers with a
    one-row ping summary of 5ms.
    """

    def __init__(self, delays: Optional[dict[str, float]] = None):
        self.delays = delays or {}
        self.commands: list[str] = []
        self.closed = False

    def __call__(self, command: str, **words: str):
        self.commands.append(command)
        address = words.get("address")
        time.sleep(self.delays.get(address, 0))
        return iter([{"host": address, "avg-rtt": "5ms", "packet-loss": "0"}])

    def close(self) -> None:
        self.closed = True


def standard_replies() -> dict[str, Any]:
    """Replies of a healthy router with two interfaces and one netwatch host."""
    return {
        "/system/identity/print": [{"name": "core-router"}],
        "/system/resource/print": [{
            "uptime": "1w2d3h4m5s",
            "version": "7.12.1 (stable)",
            "cpu-load": "12",
            "cpu-count": "4",
            "cpu-frequency": "1400",
            "total-memory": "1073741824",
            "free-memory": "805306368",
            "total-hdd-space": "134217728",
            "free-hdd-space": "100663296",
            "board-name": "CCR2004-16G-2S+",
            "architecture-name": "arm64",
        }],
        "/system/routerboard/print": [{"model": "CCR2004-16G-2S+", "serial-number": "HE1234567"}],
        "/system/health/print": [
            {"name": "temperature", "value": "45", "type": "C"},
            {"name": "voltage", "value": "24.1", "type": "V"},
        ],
        "/interface/print": [
            {
                ".id": "*1", "name": "ether1", "default-name": "ether1", "type": "ether",
                "mac-address": "48:8F:5A:00:00:01", "running": "true", "disabled": "false",
                "tx-byte": "1000", "rx-byte": "2000", "tx-packet": "10", "rx-packet": "20",
            },
            {
                ".id": "*2", "name": "bridge", "type": "bridge",
                "running": True, "disabled": False,
                "tx-byte": 500, "rx-byte": 700,
            },
        ],
        "/interface/ethernet/print": [{".id": "*1", "name": "ether1", "speed": "1Gbps"}],
        "/tool/netwatch/print": [
            {".id": "*A", "host": "8.8.8.8", "comment": "Google DNS", "status": "up",
             "since": "jan/05 10:00:00", "interval": "30s", "disabled": "false"},
        ],
        "/ppp/active/print": [],
        "/ping": [
            {"seq": "0", "host": "8.8.8.8", "time": "10ms", "status": ""},
            {"seq": "1", "host": "8.8.8.8", "time": "12ms"},
            {"seq": "2", "host": "8.8.8.8", "time": "14ms", "sent": "3", "received": "3",
             "packet-loss": "0", "avg-rtt": "12ms"},
        ],
    }


@pytest.fixture
def temp_db():
    """Create temporary database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup
    db_path.unlink(missing_ok=True)
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def store(temp_db):
    """Create a temporary telemetry store."""
    return TelemetryStore(temp_db)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 5, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_connector():
    return FakeConnector()


@pytest.fixture
def routeros(fake_connector):
    """Fake connector loaded with a healthy router's replies."""
    fake_connector.replies.update(standard_replies())
    return fake_connector


@pytest.fixture
def device(store):
    """A registered, online device."""
    d = Device(
        name="core-router",
        address="10.0.0.1",
        port=8728,
        username="admin",
        secret_encrypted="s3cret",
        status=DeviceStatus.ONLINE,
    )
    store.register_device(d)
    return d


@pytest.fixture
def engine_config(temp_db):
    config = EngineConfig()
    config.db_path = temp_db
    config.connect_timeout_seconds = 2.0
    config.probe_timeout_seconds = 1.0
    return config


@pytest.fixture
def orchestrator(engine_config, routeros, store, clock):
    return RefreshOrchestrator.from_config(
        engine_config,
        routeros,
        store=store,
        decryptor=PlainSecretDecryptor(),
        clock=clock,
    )


@pytest.fixture
def blocking_api():
    return BlockingApi


@pytest.fixture
def executor():
    """Thread pool for librouteros-backed connections."""
    pool = ThreadPoolExecutor(max_workers=6)
    yield pool
    pool.shutdown(wait=True)

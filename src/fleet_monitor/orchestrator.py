"""
Refresh orchestrator.

Runs one refresh cycle per device: open a session, fetch identity, then the
features the request asks for, and close the session no matter what.

Failure classification:
- ConnectivityError: device marked offline (status alert if it was online)
- ProtocolError / PersistenceError: that feature is skipped and recorded
- anything else: logged and reported, device status untouched

Cycles for the same device never overlap; a request for a busy device is
reported as skipped. Independent devices run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ._types import (
    Device,
    DeviceIdentity,
    DeviceStatus,
    RefreshRequest,
    RefreshResult,
    now_utc,
)
from .alerts import AlertEmitter
from .collector import MetricsCollector, evaluate_thresholds
from .config import EngineConfig
from .credentials import SecretDecryptor, build_decryptor
from .errors import ConnectivityError, CredentialError, PersistenceError, ProtocolError
from .netwatch import NetwatchReconciler
from .notifier import Notifier
from .prober import LatencyProber
from .session import DeviceConnector, DeviceSession, DeviceSessionAdapter
from .sessions import SessionTracker
from .store import TelemetryStore

logger = logging.getLogger(__name__)


class RefreshOrchestrator:
    """
    Drives refresh cycles.

    Build with from_config() for the standard wiring; the constructor takes
    each component so tests can substitute any of them.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: TelemetryStore,
        adapter: DeviceSessionAdapter,
        decryptor: SecretDecryptor,
        alerts: AlertEmitter,
        collector: MetricsCollector,
        netwatch: NetwatchReconciler,
        prober: LatencyProber,
        sessions: SessionTracker,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.config = config
        self.store = store
        self.adapter = adapter
        self.decryptor = decryptor
        self.alerts = alerts
        self.collector = collector
        self.netwatch = netwatch
        self.prober = prober
        self.sessions = sessions
        self.clock = clock

        # device_id -> lock held for the duration of that device's cycle
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        connector: DeviceConnector,
        store: Optional[TelemetryStore] = None,
        notifier: Optional[Notifier] = None,
        decryptor: Optional[SecretDecryptor] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> "RefreshOrchestrator":
        """Wire every component from configuration."""
        store = store or TelemetryStore(config.db_path)
        decryptor = decryptor or build_decryptor(config.encryption_key)
        adapter = DeviceSessionAdapter(connector, command_timeout=config.command_timeout_seconds)
        alerts = AlertEmitter(
            store,
            notifier=notifier,
            dedup_window_seconds=config.dedup_window_seconds,
            enabled=config.alerts_enabled,
            clock=clock,
        )
        return cls(
            config=config,
            store=store,
            adapter=adapter,
            decryptor=decryptor,
            alerts=alerts,
            collector=MetricsCollector(adapter, store, clock=clock),
            netwatch=NetwatchReconciler(
                adapter,
                store,
                alerts,
                decryptor=decryptor,
                tz=config.tz,
                connect_timeout=config.connect_timeout_seconds,
                clock=clock,
            ),
            prober=LatencyProber(
                adapter,
                store=store,
                alerts=alerts,
                concurrency=config.probe_concurrency,
                timeout=config.probe_timeout_seconds,
                count=config.probe_count,
                latency_threshold_ms=config.latency_threshold_ms,
                clock=clock,
            ),
            sessions=SessionTracker(store, alerts, clock=clock),
            clock=clock,
        )

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    def is_busy(self, device_id: str) -> bool:
        lock = self._locks.get(device_id)
        return lock is not None and lock.locked()

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self, request: RefreshRequest) -> RefreshResult:
        """Run one cycle for one device."""
        device = self.store.get_device(request.device_id)
        if device is None:
            result = RefreshResult(device_id=request.device_id, errors=["Device not found"])
            result.completed_at = self.clock()
            return result

        lock = self._lock_for(device.id)
        if lock.locked():
            logger.info(f"{device.display_name}: refresh already running, skipping ({request.triggered_by})")
            result = RefreshResult(device_id=device.id, status=device.status, skipped=True)
            result.completed_at = self.clock()
            return result

        async with lock:
            return await self._run_cycle(device, request)

    async def refresh_many(
        self,
        requests: list[RefreshRequest],
        max_concurrent: Optional[int] = None,
    ) -> list[RefreshResult]:
        """Refresh many devices concurrently. One device never blocks another."""
        semaphore = asyncio.Semaphore(max_concurrent or self.config.max_concurrent_devices)

        async def refresh_with_limit(request: RefreshRequest) -> RefreshResult:
            async with semaphore:
                return await self.refresh(request)

        results = await asyncio.gather(
            *[refresh_with_limit(r) for r in requests],
            return_exceptions=True,
        )

        final = []
        for request, result in zip(requests, results):
            if isinstance(result, BaseException):
                logger.error(f"Refresh of {request.device_id} failed: {result}")
                final.append(RefreshResult(device_id=request.device_id, errors=[str(result)]))
            else:
                final.append(result)
        return final

    async def _run_cycle(self, device: Device, request: RefreshRequest) -> RefreshResult:
        result = RefreshResult(device_id=device.id, status=device.status, started_at=self.clock())
        status = device.status
        session: Optional[DeviceSession] = None

        logger.debug(
            f"{device.display_name}: refresh (full_sync={request.full_sync}, "
            f"netwatch={request.netwatch}, probe={request.probe}, "
            f"sessions={request.sessions}, by={request.triggered_by})"
        )

        try:
            credentials = self.decryptor.credentials_for(device, self.config.connect_timeout_seconds)
            session = await self.adapter.open(credentials)

            status, identity = await self._identity(session, device, status, result)

            if request.full_sync:
                await self._feature("full_sync", result, self._full_sync(session, device, identity))

            synced = False
            if request.netwatch:
                sync = await self._feature("netwatch", result, self.netwatch.reconcile(session, device))
                if sync is not None:
                    result.netwatch = sync
                    result.errors.extend(sync.errors)
                    synced = True

            if request.probe and (synced or not request.netwatch):
                targets = self.store.get_watch_targets(device.id)
                probes = await self._feature("probe", result, self.prober.probe_targets(session, device, targets))
                if probes is not None:
                    result.probes = probes

            if request.sessions:
                diff = await self._feature("sessions", result, self._track_sessions(session, device))
                if diff is not None:
                    result.sessions = diff

        except ConnectivityError as e:
            result.connectivity_error = str(e)
            status = await self._mark_offline(device, status, e)
        except CredentialError as e:
            logger.error(f"{device.display_name}: cannot decrypt credentials: {e}")
            result.errors.append(f"credentials: {e}")
        except Exception as e:
            logger.error(f"{device.display_name}: refresh failed: {e}")
            result.errors.append(str(e))
        finally:
            await self.adapter.close(session)

        result.status = status
        result.completed_at = self.clock()
        return result

    async def _feature(self, name: str, result: RefreshResult, work: Awaitable[Any]) -> Any:
        """Run one feature; protocol and store failures only skip that feature."""
        try:
            return await work
        except ProtocolError as e:
            logger.warning(f"{name} skipped for {result.device_id}: {e}")
            result.errors.append(f"{name}: {e}")
        except PersistenceError as e:
            logger.error(f"{name} could not be stored for {result.device_id}: {e}")
            result.errors.append(f"{name}: {e}")
        return None

    async def _identity(
        self,
        session: DeviceSession,
        device: Device,
        status: DeviceStatus,
        result: RefreshResult,
    ) -> tuple[DeviceStatus, Optional[DeviceIdentity]]:
        """Fetch identity and record the device as reachable."""
        started = time.monotonic()
        try:
            identity = await self.collector.fetch_identity(session)
        except ProtocolError as e:
            logger.warning(f"{device.display_name}: identity unavailable: {e}")
            result.errors.append(f"identity: {e}")
            return status, None
        latency = round((time.monotonic() - started) * 1000)

        new_status = status if status == DeviceStatus.MAINTENANCE else DeviceStatus.ONLINE
        try:
            self.store.update_device_identity(device.id, identity)
            self.store.update_device_status(device.id, new_status, last_seen=self.clock(), latency=latency)
        except PersistenceError as e:
            logger.error(f"{device.display_name}: failed to store identity: {e}")
            result.errors.append(f"identity: {e}")
            return status, identity

        if status == DeviceStatus.OFFLINE and new_status == DeviceStatus.ONLINE:
            logger.info(f"{device.display_name} is back online")
            await self._status_alert(device, DeviceStatus.ONLINE)
        return new_status, identity

    async def _mark_offline(
        self,
        device: Device,
        status: DeviceStatus,
        error: ConnectivityError,
    ) -> DeviceStatus:
        logger.warning(f"{device.display_name} unreachable: {error}")
        if status == DeviceStatus.MAINTENANCE:
            return status

        try:
            self.store.update_device_status(device.id, DeviceStatus.OFFLINE)
        except PersistenceError as e:
            logger.error(f"{device.display_name}: failed to store offline status: {e}")
            return status

        if status == DeviceStatus.ONLINE:
            await self._status_alert(device, DeviceStatus.OFFLINE, str(error))
        return DeviceStatus.OFFLINE

    async def _status_alert(self, device: Device, status: DeviceStatus, reason: Optional[str] = None) -> None:
        try:
            await self.alerts.status_change(device, status, reason)
        except PersistenceError as e:
            logger.error(f"{device.display_name}: failed to store status alert: {e}")

    async def _full_sync(
        self,
        session: DeviceSession,
        device: Device,
        identity: Optional[DeviceIdentity],
    ) -> None:
        snapshot = await self.collector.full_sync(session, device, identity)
        breaches = evaluate_thresholds(
            snapshot.resources,
            cpu_warning=self.config.cpu_warning,
            cpu_critical=self.config.cpu_critical,
            memory_warning=self.config.memory_warning,
            memory_critical=self.config.memory_critical,
        )
        for alert_type, severity, value, threshold in breaches:
            await self.alerts.resource_threshold(device, alert_type, severity, value, threshold)

    async def _track_sessions(self, session: DeviceSession, device: Device):
        remote = await self.collector.fetch_sessions(session)
        return await self.sessions.track(device, remote)

    def forget_device(self, device_id: str) -> None:
        """Drop per-device state for a device removed from the registry."""
        device = self.store.get_device(device_id)
        if device is not None:
            self.sessions.clear(device)
        self._locks.pop(device_id, None)

"""
Latency prober.

Pings watch targets through the device's own ping tool. Probes share the
device session and run through a bounded semaphore pool; extra probes
queue. A failing or slow target never affects its siblings: it records
latency None and 100% packet loss.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ._types import Device, ProbeResult, WatchStatus, WatchTarget, now_utc
from .alerts import AlertEmitter
from .errors import ConnectivityError, PersistenceError, ProbeError, ProtocolError
from .parsers import parse_duration_ms, round_half_up, to_int
from .session import DeviceSession, DeviceSessionAdapter
from .store import TelemetryStore

logger = logging.getLogger(__name__)


def summarize_ping(rows: list[dict[str, Any]], count: int) -> tuple[Optional[int], int]:
    """
    Reduce ping reply rows to (latency_ms, packet_loss).

    The last avg-rtt wins when present (RouterOS repeats the running
    average on every row), else the mean of per-packet times. Packet
    loss comes from the summary row, else from sent/received, else from
    the share of packets that carried a time.
    """
    latency: Optional[int] = None
    times: list[int] = []
    packet_loss: Optional[int] = None
    sent = received = None

    for row in rows:
        if row.get("avg-rtt"):
            average = parse_duration_ms(row["avg-rtt"])
            if average is not None:
                latency = average
        if row.get("time"):
            value = parse_duration_ms(row["time"])
            if value is not None:
                times.append(value)
        if "packet-loss" in row:
            packet_loss = to_int(row["packet-loss"], default=100)
        if "sent" in row:
            sent = to_int(row["sent"])
            received = to_int(row.get("received"))

    if latency is None and times:
        latency = round_half_up(sum(times) / len(times))

    if packet_loss is None:
        if sent:
            packet_loss = round((sent - (received or 0)) * 100 / sent)
        elif count > 0:
            packet_loss = round(max(0, count - len(times)) * 100 / count)
        else:
            packet_loss = 0 if times else 100

    if latency is None:
        packet_loss = 100
    return latency, max(0, min(100, packet_loss))


class LatencyProber:
    """
    Concurrency-bounded ping prober.

    Args:
        adapter: Session adapter (the ping runs on the device)
        store: Telemetry store for probe results
        alerts: Alert emitter for degraded targets
        concurrency: Max probes in flight per device
        timeout: Per-probe timeout in seconds
        count: Echo requests per probe
        latency_threshold_ms: Latency above this raises a performance alert
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        adapter: DeviceSessionAdapter,
        store: Optional[TelemetryStore] = None,
        alerts: Optional[AlertEmitter] = None,
        concurrency: int = 5,
        timeout: float = 5.0,
        count: int = 3,
        latency_threshold_ms: int = 100,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.adapter = adapter
        self.store = store
        self.alerts = alerts
        self.concurrency = concurrency
        self.timeout = timeout
        self.count = count
        self.latency_threshold_ms = latency_threshold_ms
        self.clock = clock

    async def _ping(self, session: DeviceSession, host: str) -> ProbeResult:
        try:
            rows = await self.adapter.execute(
                session,
                "/ping",
                {"address": host, "count": self.count},
                timeout=self.timeout,
            )
        except (ConnectivityError, ProtocolError) as e:
            raise ProbeError(str(e), host) from e

        latency, packet_loss = summarize_ping(rows, self.count)
        return ProbeResult(host=host, latency_ms=latency, packet_loss=packet_loss)

    async def probe(
        self,
        session: DeviceSession,
        targets: list[str],
        concurrency: Optional[int] = None,
    ) -> list[ProbeResult]:
        """Ping every host. Results come back in input order."""
        semaphore = asyncio.Semaphore(concurrency or self.concurrency)

        async def probe_with_limit(host: str) -> ProbeResult:
            async with semaphore:
                try:
                    return await self._ping(session, host)
                except ProbeError as e:
                    logger.debug(f"{session.address}: probe {host} failed: {e}")
                    return ProbeResult(host=host, error=str(e))

        return list(await asyncio.gather(*[probe_with_limit(host) for host in targets]))

    def is_degraded(self, result: ProbeResult) -> bool:
        if not result.completed:
            return False
        if result.latency_ms is not None and result.latency_ms > self.latency_threshold_ms:
            return True
        return result.packet_loss > 0

    async def probe_targets(
        self,
        session: DeviceSession,
        device: Device,
        targets: list[WatchTarget],
    ) -> list[ProbeResult]:
        """Probe watch targets, persist the results and alert on degradation."""
        if not targets:
            return []

        results = await self.probe(session, [t.host for t in targets])
        checked_at = self.clock()

        for target, result in zip(targets, results):
            if self.store is not None:
                try:
                    self.store.update_probe_result(
                        device.id, target.host, result.latency_ms, result.packet_loss, checked_at,
                    )
                except PersistenceError as e:
                    logger.error(f"{device.display_name}: failed to store probe for {target.host}: {e}")
                    continue

            if self.alerts is None or target.status == WatchStatus.DOWN:
                continue
            if self.is_degraded(result):
                try:
                    await self.alerts.performance(
                        device,
                        target.host,
                        target.name,
                        result.latency_ms,
                        result.packet_loss,
                        self.latency_threshold_ms,
                    )
                except PersistenceError as e:
                    logger.error(f"{device.display_name}: failed to store performance alert: {e}")

        return results

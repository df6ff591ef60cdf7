"""
Netwatch reconciler.

Mirrors the device's netwatch table into the store, keyed by host. Remote
state wins for status and since-timestamps; a settled up/down flip raises
one netwatch alert before the row is updated. Hosts that disappear from the
device are left alone here; deletion goes through remove_target().
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional

from ._types import (
    DISABLED_PREFIX,
    Device,
    RemoteWatchEntry,
    SyncResult,
    WatchStatus,
    WatchTarget,
    now_utc,
)
from .alerts import AlertEmitter
from .credentials import SecretDecryptor
from .errors import ConnectivityError, CredentialError, FleetMonitorError, PersistenceError, ProtocolError
from .parsers import parse_device_timestamp, parse_interval_seconds, to_bool
from .session import DeviceSession, DeviceSessionAdapter
from .store import TelemetryStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30


def display_name(entry: RemoteWatchEntry, previous_name: Optional[str] = None) -> Optional[str]:
    """
    Name shown for a watch target.

    Remote comment, else remote name, else the stored name without any
    disabled prefix; prefixed with "[DISABLED] " when the entry is disabled.
    """
    base = entry.comment or entry.name
    if not base and previous_name:
        base = previous_name
        if base.startswith(DISABLED_PREFIX.strip()):
            base = base[len(DISABLED_PREFIX.strip()):].lstrip()
    prefix = DISABLED_PREFIX if entry.disabled else ""
    name = prefix + (base or "")
    return name or None


class NetwatchReconciler:
    """
    Reconciles remote netwatch entries with stored watch targets.

    Args:
        adapter: Session adapter
        store: Telemetry store
        alerts: Alert emitter for up/down transitions
        decryptor: Used by sync_one()/remove_target() to open their own session
        tz: Timezone device-local timestamps are interpreted in
        connect_timeout: Session open timeout for standalone syncs
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        adapter: DeviceSessionAdapter,
        store: TelemetryStore,
        alerts: AlertEmitter,
        decryptor: Optional[SecretDecryptor] = None,
        tz: tzinfo = timezone.utc,
        connect_timeout: float = 10.0,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.adapter = adapter
        self.store = store
        self.alerts = alerts
        self.decryptor = decryptor
        self.tz = tz
        self.connect_timeout = connect_timeout
        self.clock = clock

    async def fetch_entries(self, session: DeviceSession) -> list[RemoteWatchEntry]:
        """Read the remote netwatch table. Rows without a host are skipped."""
        rows = await self.adapter.execute(session, "/tool/netwatch/print")
        now = self.clock().astimezone(self.tz)

        entries = []
        for row in rows:
            host = row.get("host")
            if not host:
                continue

            status = WatchStatus.from_remote(row.get("status"))
            since = parse_device_timestamp(row.get("since"), tz=self.tz, now=now)
            if row.get("since") and since is None:
                logger.debug(f"{session.address}: dropped unparseable since {row.get('since')!r} for {host}")

            entries.append(RemoteWatchEntry(
                host=host,
                name=row.get("name"),
                comment=row.get("comment"),
                status=status,
                disabled=to_bool(row.get("disabled")),
                since_up=since if status == WatchStatus.UP else None,
                since_down=since if status == WatchStatus.DOWN else None,
                interval=parse_interval_seconds(row.get("interval"), default=10) if row.get("interval") else None,
                remote_id=row.get(".id"),
            ))
        return entries

    async def reconcile(self, session: DeviceSession, device: Device) -> SyncResult:
        """
        Reconcile inside an already open session.

        ProtocolError/ConnectivityError from the fetch propagate; per-entry
        store or alert failures are recorded and the remaining entries are
        still processed.
        """
        result = SyncResult()
        entries = await self.fetch_entries(session)
        existing = {t.host: t for t in self.store.get_watch_targets(device.id)}

        for entry in entries:
            try:
                if await self._apply_entry(device, entry, existing.get(entry.host)):
                    result.alerts += 1
                result.synced_count += 1
            except PersistenceError as e:
                logger.error(f"{device.display_name}: failed to store netwatch {entry.host}: {e}")
                result.errors.append(f"{entry.host}: {e}")

        logger.debug(f"{device.display_name}: netwatch synced {result.synced_count}/{len(entries)}")
        return result

    async def _apply_entry(
        self,
        device: Device,
        entry: RemoteWatchEntry,
        current: Optional[WatchTarget],
    ) -> bool:
        """Upsert one entry. Returns True when an alert was emitted."""
        name = display_name(entry, current.name if current else None)
        alerted = False

        if current is None:
            target = WatchTarget(
                device_id=device.id,
                host=entry.host,
                name=name,
                status=entry.status,
                interval=entry.interval or DEFAULT_INTERVAL_SECONDS,
                last_check=self.clock(),
                last_up=entry.since_up,
                last_down=entry.since_down,
            )
        else:
            if (
                current.status.is_settled
                and entry.status.is_settled
                and current.status != entry.status
            ):
                logger.info(
                    f"{device.display_name}: netwatch {entry.host} "
                    f"{current.status.value} -> {entry.status.value}"
                )
                alert = await self.alerts.netwatch_transition(device, entry.host, name, entry.status)
                alerted = alert is not None

            target = WatchTarget(
                device_id=device.id,
                host=entry.host,
                name=name,
                status=entry.status,
                interval=entry.interval or current.interval,
                latency=current.latency,
                last_known_latency=current.last_known_latency,
                packet_loss=current.packet_loss,
                last_check=self.clock(),
                last_up=entry.since_up or current.last_up,
                last_down=entry.since_down or current.last_down,
                id=current.id,
            )

        self.store.upsert_watch_target(target)
        return alerted

    async def sync_one(self, device: Device) -> SyncResult:
        """
        Open a session and reconcile one device.

        A connectivity or protocol failure becomes an error string and leaves
        stored rows untouched.
        """
        if self.decryptor is None:
            raise RuntimeError("sync_one requires a secret decryptor")

        session = None
        try:
            credentials = self.decryptor.credentials_for(device, self.connect_timeout)
            session = await self.adapter.open(credentials)
            return await self.reconcile(session, device)
        except (ConnectivityError, ProtocolError, CredentialError) as e:
            logger.warning(f"Netwatch sync failed for {device.display_name}: {e}")
            return SyncResult(errors=[f"Failed to sync netwatch: {e}"])
        finally:
            await self.adapter.close(session)

    async def remove_target(self, device: Device, host: str) -> bool:
        """
        Remove a watch target.

        The remote entry is removed best effort; the stored row is always
        deleted. Returns True when a stored row existed.
        """
        if self.decryptor is not None:
            try:
                credentials = self.decryptor.credentials_for(device, self.connect_timeout)
                async with self.adapter.session(credentials) as session:
                    rows = await self.adapter.execute(session, "/tool/netwatch/print")
                    for row in rows:
                        if row.get("host") == host and row.get(".id"):
                            await self.adapter.execute(
                                session, "/tool/netwatch/remove", {".id": row[".id"]},
                            )
                            logger.info(f"{device.display_name}: removed remote netwatch {host}")
                            break
            except FleetMonitorError as e:
                logger.warning(f"Could not remove remote netwatch {host} on {device.display_name}: {e}")

        return self.store.delete_watch_target(device.id, host)

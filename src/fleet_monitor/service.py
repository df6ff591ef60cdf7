"""
Fleet Monitor Service - polling loop and trigger API.

Every poll interval each registered device gets a refresh request; every
Nth tick is a full sync. The HTTP API lets a presentation layer trigger an
immediate refresh and read persisted state.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Coroutine, Optional

from aiohttp import web
from pydantic import BaseModel, ValidationError

from ._types import (
    Alert,
    AlertType,
    Device,
    RefreshRequest,
    RefreshResult,
    WatchTarget,
)
from .config import EngineConfig
from .notifier import Notifier, build_notifier
from .orchestrator import RefreshOrchestrator
from .session import DeviceConnector, RouterOSConnector

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================

class RefreshBody(BaseModel):
    """Body of POST /api/devices/{device_id}/refresh."""
    full_sync: bool = True
    netwatch: bool = True
    probe: bool = True
    sessions: bool = True
    wait: bool = False


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def device_to_dict(device: Device) -> dict[str, Any]:
    return {
        "id": device.id,
        "name": device.name,
        "address": device.address,
        "port": device.port,
        "status": device.status.value,
        "last_seen": _iso(device.last_seen),
        "latency": device.latency,
        "identity": device.identity,
        "version": device.version,
        "model": device.model,
        "serial_number": device.serial_number,
        "board_name": device.board_name,
        "architecture": device.architecture,
    }


def watch_target_to_dict(target: WatchTarget) -> dict[str, Any]:
    return {
        "host": target.host,
        "name": target.name,
        "status": target.status.value,
        "interval": target.interval,
        "latency": target.latency,
        "last_known_latency": target.last_known_latency,
        "packet_loss": target.packet_loss,
        "last_check": _iso(target.last_check),
        "last_up": _iso(target.last_up),
        "last_down": _iso(target.last_down),
    }


def alert_to_dict(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "device_id": alert.device_id,
        "type": alert.type.value,
        "target": alert.target,
        "severity": alert.severity.value,
        "state": alert.state,
        "title": alert.title,
        "message": alert.message,
        "created_at": _iso(alert.created_at),
    }


def result_to_dict(result: RefreshResult) -> dict[str, Any]:
    return {
        "device_id": result.device_id,
        "status": result.status.value if result.status else None,
        "ok": result.ok,
        "skipped": result.skipped,
        "connectivity_error": result.connectivity_error,
        "errors": result.errors,
        "netwatch": {
            "synced_count": result.netwatch.synced_count,
            "errors": result.netwatch.errors,
            "alerts": result.netwatch.alerts,
        } if result.netwatch else None,
        "probes": [
            {
                "host": p.host,
                "latency_ms": p.latency_ms,
                "packet_loss": p.packet_loss,
                "error": p.error,
            }
            for p in result.probes
        ],
        "sessions": {
            "connected": result.sessions.connected,
            "disconnected": result.sessions.disconnected,
        } if result.sessions else None,
        "started_at": _iso(result.started_at),
        "completed_at": _iso(result.completed_at),
    }


class FleetMonitorService:
    """
    Main fleet monitor service.

    Schedules refresh cycles and serves the trigger API.
    """

    def __init__(
        self,
        config: EngineConfig,
        connector: Optional[DeviceConnector] = None,
        notifier: Optional[Notifier] = None,
    ):
        """
        Initialize fleet monitor service.

        Args:
            config: Engine configuration
            connector: Wire-protocol connector (RouterOS API by default)
            notifier: Notification dispatcher (webhook or log by default)
        """
        self.config = config
        self.connector = connector or RouterOSConnector(
            max_workers=config.max_concurrent_devices * (config.probe_concurrency + 1),
            channels_per_device=config.probe_concurrency,
        )
        self.notifier = notifier or build_notifier(
            config.notifier_url,
            token=config.notifier_token,
            timeout_seconds=config.notifier_timeout_seconds,
        )
        self.orchestrator = RefreshOrchestrator.from_config(config, self.connector, notifier=self.notifier)
        self.store = self.orchestrator.store
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tick = 0
        self._background: set[asyncio.Task] = set()
        self._device_slots = asyncio.Semaphore(config.max_concurrent_devices)

        # API server for on-demand refreshes
        self._api_app: Optional[web.Application] = None
        self._api_runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        """Start the service."""
        logger.info("Starting Fleet Monitor Service")
        self._running = True

        await self._start_api_server()
        await self._main_loop()

    async def stop(self) -> None:
        """Stop the service."""
        if not self._running and self._shutdown_event.is_set():
            return
        logger.info("Stopping Fleet Monitor Service")
        self._running = False
        self._shutdown_event.set()

        if self._api_runner:
            await self._api_runner.cleanup()
            self._api_runner = None

        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            logger.info(f"Cancelling {len(pending)} running refreshes")
            await asyncio.gather(*pending, return_exceptions=True)

        await self.notifier.close()
        if isinstance(self.connector, RouterOSConnector):
            self.connector.shutdown()

    def create_app(self) -> web.Application:
        """Build the API application."""
        app = web.Application()
        app.router.add_post("/api/devices/{device_id}/refresh", self._handle_refresh)
        app.router.add_get("/api/devices/{device_id}", self._handle_get_device)
        app.router.add_get("/api/devices/{device_id}/netwatch", self._handle_list_netwatch)
        app.router.add_delete("/api/devices/{device_id}/netwatch/{host}", self._handle_delete_netwatch)
        app.router.add_get("/api/alerts", self._handle_list_alerts)
        app.router.add_get("/api/health", self._handle_health)
        return app

    async def _start_api_server(self) -> None:
        """Start API server for refresh triggers."""
        self._api_app = self.create_app()
        self._api_runner = web.AppRunner(self._api_app)
        await self._api_runner.setup()
        site = web.TCPSite(self._api_runner, self.config.api_host, self.config.api_port)
        await site.start()
        logger.info(f"API server started on {self.config.api_host}:{self.config.api_port}")

    async def _main_loop(self) -> None:
        """Main service loop - schedules refresh cycles."""
        logger.info("Polling loop started")

        while self._running:
            try:
                self.schedule_tick()
            except Exception as e:
                logger.error(f"Error in polling loop: {e}")

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                # Shutdown requested
                break
            except asyncio.TimeoutError:
                # Normal timeout, continue loop
                pass

        logger.info("Polling loop stopped")

    def build_requests(self, full_sync: bool) -> list[RefreshRequest]:
        """One request per registered device for this tick."""
        return [
            RefreshRequest(
                device_id=device.id,
                full_sync=full_sync,
                netwatch=self.config.include_netwatch,
                probe=self.config.include_probes,
                sessions=self.config.include_sessions,
                triggered_by="schedule",
            )
            for device in self.store.get_devices()
        ]

    def schedule_tick(self) -> list[asyncio.Task]:
        """
        Start one refresh task per registered device and return at once.

        Each device runs on its own task, so a slow device only delays
        itself; its next scheduled request is skipped while it is still busy.
        """
        full_sync = self._tick % self.config.full_sync_every == 0
        self._tick += 1

        requests = self.build_requests(full_sync)
        if not requests:
            logger.debug("No devices registered")
            return []

        logger.debug(f"Tick {self._tick}: scheduling {len(requests)} refreshes (full_sync={full_sync})")
        return [self._spawn(self._scheduled_refresh(r)) for r in requests]

    async def run_tick(self) -> list[RefreshResult]:
        """Schedule one tick and wait for all of its refreshes."""
        results = list(await asyncio.gather(*self.schedule_tick()))
        if results:
            offline = sum(1 for r in results if r.connectivity_error)
            skipped = sum(1 for r in results if r.skipped)
            failed = sum(1 for r in results if r.errors)
            logger.info(
                f"Tick completed: {len(results)} devices, {offline} unreachable, "
                f"{failed} with errors, {skipped} skipped"
            )
        return results

    async def _scheduled_refresh(self, request: RefreshRequest) -> RefreshResult:
        async with self._device_slots:
            try:
                result = await self.orchestrator.refresh(request)
            except Exception as e:
                logger.error(f"Refresh of {request.device_id} failed: {e}")
                return RefreshResult(device_id=request.device_id, errors=[str(e)])

        if result.connectivity_error:
            logger.warning(f"{request.device_id}: unreachable ({result.connectivity_error})")
        elif result.errors:
            logger.warning(f"{request.device_id}: completed with errors: {'; '.join(result.errors)}")
        return result

    def _spawn(self, work: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(work)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -------------------------------------------------------------------------
    # API Handlers
    # -------------------------------------------------------------------------

    async def _handle_refresh(self, request: web.Request) -> web.Response:
        """Handle POST /api/devices/{device_id}/refresh."""
        device_id = request.match_info["device_id"]
        try:
            data = await request.json() if request.body_exists else {}
            body = RefreshBody(**(data or {}))
        except ValidationError as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=400,
            )
        except ValueError as e:
            return web.json_response(
                {"status": "error", "message": f"Invalid JSON: {e}"},
                status=400,
            )

        try:
            if self.store.get_device(device_id) is None:
                return web.json_response(
                    {"status": "error", "message": "Device not found"},
                    status=404,
                )

            refresh_request = RefreshRequest(
                device_id=device_id,
                full_sync=body.full_sync,
                netwatch=body.netwatch,
                probe=body.probe,
                sessions=body.sessions,
                triggered_by="api",
            )

            if body.wait:
                result = await self.orchestrator.refresh(refresh_request)
                return web.json_response({"status": "completed", "result": result_to_dict(result)})

            self._spawn(self.orchestrator.refresh(refresh_request))

            return web.json_response({
                "status": "started",
                "message": f"Refresh triggered for {device_id}",
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_get_device(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices/{device_id}."""
        try:
            device_id = request.match_info["device_id"]
            device = self.store.get_device(device_id)

            if not device:
                return web.json_response(
                    {"status": "error", "message": "Device not found"},
                    status=404,
                )

            latest = self.store.get_latest_metric_snapshot(device_id)
            interfaces = self.store.get_interfaces(device_id)
            sessions = self.store.get_active_sessions(device_id)

            return web.json_response({
                "device": device_to_dict(device),
                "busy": self.orchestrator.is_busy(device_id),
                "metrics": {
                    "recorded_at": _iso(latest.recorded_at),
                    "cpu_load": latest.cpu_load,
                    "memory_percent": latest.memory_percent,
                    "uptime": latest.uptime,
                    "temperature": latest.temperature,
                    "voltage": latest.voltage,
                } if latest else None,
                "interfaces": [
                    {
                        "name": i.name,
                        "type": i.type,
                        "running": i.running,
                        "disabled": i.disabled,
                        "tx_rate": i.tx_rate,
                        "rx_rate": i.rx_rate,
                        "speed": i.speed,
                        "last_updated": _iso(i.last_updated),
                    }
                    for i in interfaces
                ],
                "sessions": [
                    {
                        "name": s.session_key,
                        "address": s.address,
                        "service": s.service,
                        "uptime": s.uptime,
                        "connected_at": _iso(s.connected_at),
                    }
                    for s in sessions
                ],
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_list_netwatch(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices/{device_id}/netwatch."""
        try:
            device_id = request.match_info["device_id"]
            targets = self.store.get_watch_targets(device_id)
            return web.json_response({
                "targets": [watch_target_to_dict(t) for t in targets],
                "total": len(targets),
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_delete_netwatch(self, request: web.Request) -> web.Response:
        """Handle DELETE /api/devices/{device_id}/netwatch/{host}."""
        try:
            device_id = request.match_info["device_id"]
            host = request.match_info["host"]
            device = self.store.get_device(device_id)

            if not device:
                return web.json_response(
                    {"status": "error", "message": "Device not found"},
                    status=404,
                )

            if await self.orchestrator.netwatch.remove_target(device, host):
                return web.json_response({"status": "ok"})
            return web.json_response(
                {"status": "error", "message": "Watch target not found"},
                status=404,
            )

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_list_alerts(self, request: web.Request) -> web.Response:
        """Handle GET /api/alerts."""
        try:
            device_id = request.query.get("device_id")
            alert_type = request.query.get("type")
            limit = int(request.query.get("limit", "100"))

            alerts = self.store.get_alerts(
                device_id=device_id,
                alert_type=AlertType(alert_type) if alert_type else None,
                limit=limit,
            )
            return web.json_response({"alerts": [alert_to_dict(a) for a in alerts]})

        except ValueError as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=400,
            )
        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        counts = self.store.get_device_counts()

        return web.json_response({
            "status": "ok",
            "service": "fleet-monitor",
            "devices": counts["total"],
            "by_status": counts["by_status"],
            "ticks": self._tick,
        })


def main():
    """Entry point for fleet-monitor service."""
    import argparse

    parser = argparse.ArgumentParser(description="Fleet Monitor Service")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--host", type=str, help="API host")
    parser.add_argument("--port", type=int, help="API port")
    parser.add_argument("--log-level", type=str, help="Log level")
    args = parser.parse_args()

    # Load configuration
    if args.config:
        config = EngineConfig.from_yaml(Path(args.config))
    else:
        config = EngineConfig.from_env()

    # Override with CLI args
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.log_level:
        config.log_level = args.log_level

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Validate
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        if any("CRITICAL" in e for e in errors):
            sys.exit(1)

    # Handle signals
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = FleetMonitorService(config)

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()

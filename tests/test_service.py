"""
Tests for the service trigger API, the polling tick and webhook delivery.
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from fleet_monitor._types import Alert, AlertSeverity, AlertType, Device, DeviceStatus
from fleet_monitor.notifier import LogNotifier, NotificationPayload, WebhookNotifier
from fleet_monitor.service import FleetMonitorService, RefreshBody


@pytest.fixture
def service(engine_config, routeros, device):
    return FleetMonitorService(engine_config, connector=routeros, notifier=LogNotifier())


@pytest_asyncio.fixture
async def client(service):
    async with test_utils.TestClient(test_utils.TestServer(service.create_app())) as test_client:
        yield test_client


class TestRefreshEndpoint:
    """Tests for POST /api/devices/{device_id}/refresh."""

    @pytest.mark.asyncio
    async def test_refresh_and_wait(self, client, device):
        resp = await client.post(f"/api/devices/{device.id}/refresh", json={"wait": True})
        data = await resp.json()

        assert resp.status == 200
        assert data["status"] == "completed"
        assert data["result"]["ok"] is True
        assert data["result"]["status"] == "online"
        assert data["result"]["netwatch"]["synced_count"] == 1
        assert data["result"]["probes"][0]["latency_ms"] == 12

    @pytest.mark.asyncio
    async def test_refresh_in_background(self, client, service, device, routeros):
        resp = await client.post(f"/api/devices/{device.id}/refresh")
        data = await resp.json()

        assert data["status"] == "started"
        await asyncio.gather(*list(service._background))
        assert routeros.opened == 1

    @pytest.mark.asyncio
    async def test_selected_features(self, client, device, routeros):
        body = {"wait": True, "full_sync": False, "netwatch": False, "probe": False, "sessions": False}
        resp = await client.post(f"/api/devices/{device.id}/refresh", json=body)

        assert resp.status == 200
        assert "/interface/print" not in routeros.commands()

    @pytest.mark.asyncio
    async def test_unknown_device(self, client):
        resp = await client.post("/api/devices/missing/refresh", json={})
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_invalid_body(self, client, device):
        resp = await client.post(f"/api/devices/{device.id}/refresh", json={"full_sync": "sometimes"})
        data = await resp.json()

        assert resp.status == 400
        assert data["status"] == "error"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, device):
        resp = await client.post(
            f"/api/devices/{device.id}/refresh",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

    def test_body_defaults(self):
        body = RefreshBody()
        assert body.full_sync and body.netwatch and body.probe and body.sessions
        assert body.wait is False


class TestReadEndpoints:
    @pytest.mark.asyncio
    async def test_get_device(self, client, device):
        await client.post(f"/api/devices/{device.id}/refresh", json={"wait": True})

        resp = await client.get(f"/api/devices/{device.id}")
        data = await resp.json()

        assert resp.status == 200
        assert data["device"]["identity"] == "core-router"
        assert data["busy"] is False
        assert data["metrics"]["cpu_load"] == 12
        assert {i["name"] for i in data["interfaces"]} == {"ether1", "bridge"}

    @pytest.mark.asyncio
    async def test_get_missing_device(self, client):
        resp = await client.get("/api/devices/missing")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_netwatch_list_and_delete(self, client, device, routeros):
        routeros.replies["/tool/netwatch/remove"] = []
        await client.post(f"/api/devices/{device.id}/refresh", json={"wait": True})

        resp = await client.get(f"/api/devices/{device.id}/netwatch")
        data = await resp.json()
        assert data["total"] == 1
        assert data["targets"][0]["host"] == "8.8.8.8"
        assert data["targets"][0]["status"] == "up"

        resp = await client.delete(f"/api/devices/{device.id}/netwatch/8.8.8.8")
        assert resp.status == 200

        resp = await client.delete(f"/api/devices/{device.id}/netwatch/8.8.8.8")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_alerts(self, client, device, routeros, store):
        routeros.connect_error = ConnectionRefusedError("refused")
        await client.post(f"/api/devices/{device.id}/refresh", json={"wait": True})

        resp = await client.get("/api/alerts", params={"device_id": device.id, "type": "status_change"})
        data = await resp.json()

        assert len(data["alerts"]) == 1
        assert data["alerts"][0]["state"] == "offline"

    @pytest.mark.asyncio
    async def test_alerts_bad_type(self, client):
        resp = await client.get("/api/alerts", params={"type": "nonsense"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        data = await resp.json()

        assert data["status"] == "ok"
        assert data["service"] == "fleet-monitor"
        assert data["devices"] == 1


class TestTick:
    @pytest.mark.asyncio
    async def test_full_sync_every_nth_tick(self, service, store, device):
        service.config.full_sync_every = 2

        first = await service.run_tick()
        second = await service.run_tick()
        third = await service.run_tick()

        assert all(r.ok for r in first + second + third)
        # ticks 0 and 2 are full syncs
        assert len(store.get_metric_snapshots(device.id)) == 2

    @pytest.mark.asyncio
    async def test_requests_follow_config(self, service, device):
        service.config.include_sessions = False

        requests = service.build_requests(full_sync=False)

        assert len(requests) == 1
        assert requests[0].netwatch is True
        assert requests[0].sessions is False
        assert requests[0].triggered_by == "schedule"

    @pytest.mark.asyncio
    async def test_slow_device_does_not_hold_up_the_tick(self, service, store, routeros, device, monkeypatch):
        slow = Device(
            name="edge-router",
            address="10.0.0.99",
            port=8728,
            username="admin",
            secret_encrypted="s3cret",
            status=DeviceStatus.ONLINE,
        )
        store.register_device(slow)
        connect = routeros.connect

        async def hang_on_slow(credentials):
            if credentials.address == slow.address:
                await asyncio.sleep(30)
            return await connect(credentials)

        monkeypatch.setattr(routeros, "connect", hang_on_slow)

        done, pending = await asyncio.wait(service.schedule_tick(), timeout=1.0)

        assert [t.result().device_id for t in done] == [device.id]
        assert all(t.result().ok for t in done)
        assert len(pending) == 1

        second = await asyncio.wait_for(asyncio.gather(*service.schedule_tick()), timeout=1.0)
        by_device = {r.device_id: r for r in second}
        assert by_device[device.id].ok
        assert by_device[slow.id].skipped

        await service.stop()

        assert all(t.cancelled() for t in pending)
        assert not service._background

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, service):
        await service.stop()
        await service.stop()


class TestWebhookNotifier:
    """Tests for webhook delivery against a local receiver."""

    @pytest_asyncio.fixture
    async def receiver(self):
        received = []

        async def hook(request):
            received.append((dict(request.headers), await request.json()))
            status = 503 if request.query.get("fail") else 204
            return web.Response(status=status)

        app = web.Application()
        app.router.add_post("/hook", hook)
        server = test_utils.TestServer(app)
        await server.start_server()
        yield server, received
        await server.close()

    def _payload(self, device):
        alert = Alert(
            device_id=device.id,
            type=AlertType.NETWATCH,
            target="8.8.8.8",
            severity=AlertSeverity.WARNING,
            state="down",
            message="Netwatch host 8.8.8.8 is DOWN",
        )
        return NotificationPayload.from_alert(device, alert, "Google DNS")

    @pytest.mark.asyncio
    async def test_delivers_json_with_token(self, receiver, device):
        server, received = receiver
        notifier = WebhookNotifier(str(server.make_url("/hook")), token="hook-token")

        await notifier.notify(self._payload(device))
        await notifier.close()

        headers, body = received[0]
        assert headers["Authorization"] == "Bearer hook-token"
        assert body["deviceId"] == device.id
        assert body["targetName"] == "Google DNS"

    @pytest.mark.asyncio
    async def test_error_status_raises(self, receiver, device):
        server, _ = receiver
        notifier = WebhookNotifier(str(server.make_url("/hook").with_query(fail="1")))

        with pytest.raises(RuntimeError):
            await notifier.notify(self._payload(device))
        await notifier.close()

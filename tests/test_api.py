"""
Tests for API endpoints.
"""

import csv
import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.api.main import app, get_command_publisher, get_ingestor, get_registry, get_sweeper
from app.services.heartbeat import IngestOutcome
from app.services.sweeper import StalenessSweeper


@pytest.fixture
def publisher():
    return MagicMock(return_value=True)


@pytest.fixture
def client(registry, clock, publisher):
    sweeper = StalenessSweeper(registry, clock=clock)
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_sweeper] = lambda: sweeper
    app.dependency_overrides[get_command_publisher] = lambda: publisher
    yield TestClient(app)
    app.dependency_overrides.clear()


def add_tv(client, **fields):
    body = {"name": "Lobby TV", "location": "Lobby", "model": "Samsung QN90", **fields}
    response = client.post("/api/devices", json=body)
    assert response.status_code == 201
    return response.json()["device"]


class TestDeviceEndpoints:
    """CRUD on /api/devices."""

    def test_create_device(self, client):
        response = client.post("/api/devices", json={
            "name": "Lobby TV", "location": "Lobby", "model": "Samsung QN90",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Device created successfully"
        assert data["device"]["status"] == "offline"
        assert data["device"]["heartbeat_interval"] == 60
        assert data["device"]["last_heartbeat"] is None

    def test_create_missing_fields_is_400(self, client):
        response = client.post("/api/devices", json={"name": "Lobby TV"})

        assert response.status_code == 400
        assert "location" in response.json()["error"]

    def test_list_devices(self, client):
        first = add_tv(client, name="First")
        second = add_tv(client, name="Second", status="online")

        devices = client.get("/api/devices").json()["devices"]

        assert {d["id"] for d in devices} == {first["id"], second["id"]}

    def test_get_unknown_device_is_404(self, client):
        response = client.get("/api/devices/nope")

        assert response.status_code == 404
        assert response.json() == {"error": "Device nope not found"}

    def test_update_device(self, client):
        device = add_tv(client)

        response = client.put(f"/api/devices/{device['id']}", json={"location": "Bar", "status": "online"})

        assert response.status_code == 200
        updated = response.json()["device"]
        assert updated["location"] == "Bar"
        assert updated["status"] == "online"
        assert updated["version"] == 2

    def test_update_cannot_fake_heartbeat(self, client):
        device = add_tv(client)

        response = client.put(
            f"/api/devices/{device['id']}",
            json={"last_heartbeat": "2026-01-15T12:00:00Z"},
        )

        assert response.status_code == 400

    def test_delete_device(self, client):
        device = add_tv(client)

        assert client.delete(f"/api/devices/{device['id']}").status_code == 200
        assert client.get(f"/api/devices/{device['id']}").status_code == 404
        assert client.delete(f"/api/devices/{device['id']}").status_code == 404


class TestPowerEndpoints:
    """Single and bulk power control."""

    def test_power_sets_status_and_sends_command(self, client, publisher):
        device = add_tv(client)

        response = client.post(f"/api/devices/{device['id']}/power", json={"status": "online"})

        assert response.status_code == 200
        assert response.json()["device"]["status"] == "online"
        assert response.json()["command_sent"] is True
        publisher.assert_called_once_with(device["id"], "power", status="online")

    def test_power_stands_when_command_fails(self, client, publisher):
        publisher.return_value = False
        device = add_tv(client, status="online")

        response = client.post(f"/api/devices/{device['id']}/power", json={"status": "offline"})

        assert response.json()["device"]["status"] == "offline"
        assert response.json()["command_sent"] is False

    def test_power_invalid_status_is_400(self, client):
        device = add_tv(client)

        response = client.post(f"/api/devices/{device['id']}/power", json={"status": "standby"})

        assert response.status_code == 400

    def test_bulk_turn_off(self, client):
        on = [add_tv(client, name=f"TV {i}", status="online") for i in range(3)]
        add_tv(client, name="Off")

        response = client.post("/api/devices/bulk", json={"status": "offline"})

        assert response.status_code == 200
        result = response.json()
        assert sorted(result["updated"]) == sorted(d["id"] for d in on)
        assert result["failed"] == []
        assert client.get("/api/stats").json() == {"total": 4, "online": 0, "offline": 4}


class TestHeartbeatAndSweep:
    """HTTP heartbeat push and on-demand sweep."""

    def test_push_heartbeat(self, client, clock):
        device = add_tv(client)
        payload = {
            "device_id": device["id"],
            "status": "online",
            "sensor_data": {"temperature": 40.1},
            "timestamp": clock().isoformat(),
        }

        first = client.post("/api/heartbeat", json=payload)
        second = client.post("/api/heartbeat", json=payload)
        stored = client.get(f"/api/devices/{device['id']}").json()["device"]

        assert first.json() == {"outcome": "applied"}
        assert second.json() == {"outcome": "duplicate"}
        assert stored["status"] == "online"
        assert stored["sensor_data"]["temperature"] == 40.1

    def test_push_heartbeat_unknown_device(self, client, clock):
        response = client.post("/api/heartbeat", json={"device_id": "ghost", "timestamp": clock().isoformat()})

        assert response.status_code == 404
        assert client.get("/api/devices").json()["devices"] == []

    def test_push_heartbeat_without_device_id(self, client):
        response = client.post("/api/heartbeat", json={"status": "online"})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing device_id"

    def test_push_heartbeat_from_the_future_is_400(self, client):
        device = add_tv(client)

        response = client.post("/api/heartbeat", json={
            "device_id": device["id"],
            "timestamp": "2099-01-01T00:00:00+00:00",
        })
        stored = client.get(f"/api/devices/{device['id']}").json()["device"]

        assert response.status_code == 400
        assert "future" in response.json()["error"]
        assert stored["last_heartbeat"] is None

    def test_push_heartbeat_conflict_is_409(self, client):
        ingestor = MagicMock()
        ingestor.ingest = AsyncMock(return_value=IngestOutcome.CONFLICT)
        app.dependency_overrides[get_ingestor] = lambda: ingestor

        response = client.post("/api/heartbeat", json={"device_id": "tv-1"})

        assert response.status_code == 409
        assert response.json() == {"error": "Device tv-1 changed concurrently"}

    def test_sweep_demotes_stale_device(self, client, clock):
        device = add_tv(client)
        client.post("/api/heartbeat", json={
            "device_id": device["id"],
            "timestamp": clock.ago(125).isoformat(),
        })

        report = client.post("/api/sweep").json()
        stored = client.get(f"/api/devices/{device['id']}").json()["device"]

        assert report["demoted"] == [device["id"]]
        assert stored["status"] == "offline"


class TestExportAndHealth:
    """CSV export and health check."""

    def test_export_current_month(self, client, clock):
        device = add_tv(client, network_address="AA:BB:CC:DD:EE:FF")

        response = client.get("/api/export/devices.csv", params={"month": "2026-01"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "devices_01-2026.csv" in response.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0][0] == "ID"
        assert rows[1][0] == device["id"]
        assert rows[1][5] == "AA:BB:CC:DD:EE:FF"
        assert rows[1][7] == "15/01/2026 12:00:00"

    def test_export_other_month_has_only_header(self, client):
        add_tv(client)

        response = client.get("/api/export/devices.csv", params={"month": "2025-12"})

        rows = list(csv.reader(io.StringIO(response.text)))
        assert len(rows) == 1

    def test_export_bad_month_is_400(self, client):
        assert client.get("/api/export/devices.csv", params={"month": "2026-13"}).status_code == 400

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

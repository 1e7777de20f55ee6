"""
Pytest configuration and fixtures for IoTV Monitor tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

    def ago(self, seconds: float) -> datetime:
        return self.now - timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry(clock):
    from app.services.registry import MemoryDeviceRegistry

    return MemoryDeviceRegistry(clock=clock)


@pytest.fixture
def sample_device():
    """Operator "add device" input."""
    from app.schemas.device import DeviceCreate

    return DeviceCreate(name="Lobby TV", location="Lobby", model="Samsung QN90")


@pytest.fixture
def sample_heartbeat_payload():
    """Heartbeat as published by a TV."""
    return {
        "device_id": "tv-123",
        "status": "online",
        "sensor_data": {"current": 0.5, "voltage": 220.0, "power": 110.0, "temperature": 38.5},
        "timestamp": "2026-01-15T11:59:30+00:00",
    }


@pytest.fixture
def mock_mqtt_client():
    """Create a mock MQTT client for testing."""
    from unittest.mock import MagicMock

    client = MagicMock()
    client.is_connected.return_value = True

    result = MagicMock()
    result.rc = 0  # MQTT_ERR_SUCCESS
    client.publish.return_value = result

    return client

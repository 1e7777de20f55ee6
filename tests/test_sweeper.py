"""
Tests for the staleness sweeper.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.core.errors import StoreError
from app.schemas.device import DeviceCreate, HeartbeatEvent
from app.services.commands import DeviceCommands
from app.services.heartbeat import HeartbeatIngestor
from app.services.registry import MemoryDeviceRegistry
from app.services.sweeper import StalenessSweeper


def online_device(registry, ingestor, last_seen, interval=60):
    """Create a device and bring it online with a heartbeat at `last_seen`."""
    async def scenario():
        device = await registry.create(DeviceCreate(
            name="Lobby TV", location="Lobby", model="Samsung QN90", heartbeat_interval=interval,
        ))
        await ingestor.ingest(HeartbeatEvent(device_id=device.id, timestamp=last_seen))
        return await registry.get(device.id)

    return asyncio.run(scenario())


@pytest.fixture
def ingestor(registry, clock):
    return HeartbeatIngestor(registry, clock=clock)


@pytest.fixture
def sweeper(registry, clock):
    return StalenessSweeper(registry, clock=clock)


class TestStaleness:
    """Tests for the grace window."""

    def test_device_past_twice_interval_is_demoted(self, registry, ingestor, sweeper, clock):
        device = online_device(registry, ingestor, clock.ago(125))

        report = asyncio.run(sweeper.sweep_once())
        stored = asyncio.run(registry.get(device.id))

        assert report.demoted == [device.id]
        assert stored.status == "offline"
        assert stored.last_heartbeat == clock.ago(125)
        assert stored.updated_at == clock()

    def test_device_within_grace_stays_online(self, registry, ingestor, sweeper, clock):
        device = online_device(registry, ingestor, clock.ago(90))

        report = asyncio.run(sweeper.sweep_once())
        stored = asyncio.run(registry.get(device.id))

        assert report.checked == 1
        assert report.demoted == []
        assert stored.status == "online"

    def test_exactly_twice_interval_is_not_stale(self, registry, ingestor, sweeper, clock):
        device = online_device(registry, ingestor, clock.ago(120))
        assert not sweeper.is_stale(device, clock())

    def test_interval_is_per_device(self, registry, ingestor, sweeper, clock):
        slow = online_device(registry, ingestor, clock.ago(125), interval=300)
        fast = online_device(registry, ingestor, clock.ago(125), interval=30)

        report = asyncio.run(sweeper.sweep_once())

        assert report.demoted == [fast.id]
        assert asyncio.run(registry.get(slow.id)).status == "online"

    def test_offline_devices_are_not_scanned(self, registry, sweeper):
        asyncio.run(registry.create(DeviceCreate(name="TV", location="Bar", model="LG")))

        report = asyncio.run(sweeper.sweep_once())

        assert report.checked == 0

    def test_manual_turn_on_without_heartbeat_is_demoted(self, registry, sweeper):
        commands = DeviceCommands(registry)

        async def scenario():
            device = await commands.create_device(DeviceCreate(name="TV", location="Bar", model="LG"))
            await commands.set_status(device.id, "online")
            report = await sweeper.sweep_once()
            return device, report, await registry.get(device.id)

        device, report, stored = asyncio.run(scenario())
        assert report.demoted == [device.id]
        assert stored.status == "offline"
        assert stored.last_heartbeat is None


class TestSweepRaces:
    """The sweep must never overwrite fresher heartbeat data."""

    def test_heartbeat_between_read_and_write_wins(self, registry, ingestor, sweeper, clock):
        device = online_device(registry, ingestor, clock.ago(200))
        original_apply = registry.apply
        injected = []

        async def apply_after_heartbeat(device_id, changes, expected_version):
            if changes == {"status": "offline"} and not injected:
                injected.append(device_id)
                await ingestor.ingest(HeartbeatEvent(device_id=device_id, timestamp=clock()))
            return await original_apply(device_id, changes, expected_version)

        with patch.object(registry, "apply", side_effect=apply_after_heartbeat):
            report = asyncio.run(sweeper.sweep_once())

        stored = asyncio.run(registry.get(device.id))
        assert injected == [device.id]
        assert report.demoted == []
        assert report.raced == [device.id]
        assert stored.status == "online"
        assert stored.last_heartbeat == clock()

    def test_unrelated_write_does_not_save_stale_device(self, registry, ingestor, sweeper, clock):
        """A rename racing the sweep is retried: the device is still stale."""
        device = online_device(registry, ingestor, clock.ago(200))
        original_apply = registry.apply
        renamed = []

        async def apply_after_rename(device_id, changes, expected_version):
            if changes == {"status": "offline"} and not renamed:
                renamed.append(device_id)
                current = await registry.get(device_id)
                await original_apply(device_id, {"name": "Renamed"}, current.version)
            return await original_apply(device_id, changes, expected_version)

        with patch.object(registry, "apply", side_effect=apply_after_rename):
            report = asyncio.run(sweeper.sweep_once())

        stored = asyncio.run(registry.get(device.id))
        assert report.demoted == [device.id]
        assert stored.status == "offline"
        assert stored.name == "Renamed"

    def test_device_deleted_mid_sweep_is_skipped(self, registry, ingestor, sweeper, clock):
        device = online_device(registry, ingestor, clock.ago(200))
        original_apply = registry.apply

        async def apply_after_delete(device_id, changes, expected_version):
            await registry.delete(device_id)
            return await original_apply(device_id, changes, expected_version)

        with patch.object(registry, "apply", side_effect=apply_after_delete):
            report = asyncio.run(sweeper.sweep_once())

        assert report.demoted == []
        assert report.failed == []

    def test_one_failure_does_not_abort_the_sweep(self, registry, ingestor, sweeper, clock):
        broken = online_device(registry, ingestor, clock.ago(300))
        healthy = online_device(registry, ingestor, clock.ago(300))
        original_apply = registry.apply

        async def flaky_apply(device_id, changes, expected_version):
            if device_id == broken.id:
                raise StoreError("disk full")
            return await original_apply(device_id, changes, expected_version)

        with patch.object(registry, "apply", side_effect=flaky_apply):
            report = asyncio.run(sweeper.sweep_once())

        assert report.demoted == [healthy.id]
        assert [f.device_id for f in report.failed] == [broken.id]
        assert report.failed[0].status_code == 500
        assert asyncio.run(registry.get(broken.id)).status == "online"


class TestSweeperLifecycle:
    """Timer behaviour: ticks never overlap, stop waits for in-flight work."""

    def test_tick_is_skipped_while_sweep_runs(self, clock):
        async def scenario():
            gate = asyncio.Event()

            class SlowRegistry(MemoryDeviceRegistry):
                async def list(self, status=None):
                    await gate.wait()
                    return await super().list(status)

            sweeper = StalenessSweeper(SlowRegistry(clock=clock), clock=clock)
            first = sweeper.trigger()
            await asyncio.sleep(0)
            skipped = sweeper.trigger()
            gate.set()
            report = await first
            again = sweeper.trigger()
            await again
            return first, skipped, report, again

        first, skipped, report, again = asyncio.run(scenario())
        assert first is not None
        assert skipped is None
        assert report.checked == 0
        assert again is not None

    def test_periodic_sweeps_and_stop(self, registry, clock):
        sweeper = StalenessSweeper(registry, period=0.01, clock=clock)

        async def scenario():
            with patch.object(sweeper, "sweep_once", AsyncMock()) as sweep_once:
                await sweeper.start()
                await asyncio.sleep(0.1)
                await sweeper.stop()
                return sweep_once.await_count

        count = asyncio.run(scenario())
        assert count >= 1
        assert sweeper.running is False

    def test_stop_waits_for_in_flight_sweep(self, clock):
        async def scenario():
            finished = []

            class SlowRegistry(MemoryDeviceRegistry):
                async def list(self, status=None):
                    await asyncio.sleep(0.05)
                    finished.append(True)
                    return await super().list(status)

            sweeper = StalenessSweeper(SlowRegistry(clock=clock), clock=clock)
            await sweeper.start()
            sweeper.trigger()
            await sweeper.stop()
            return finished

        assert asyncio.run(scenario()) == [True]

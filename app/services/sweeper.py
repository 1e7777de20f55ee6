"""
Staleness Sweeper - demotes online devices that stopped sending heartbeats
Runs as a background task next to the MQTT processor
"""

import asyncio
import logging
from datetime import datetime, timedelta

from app.core.errors import DeviceError, DeviceNotFound, VersionConflict
from app.schemas.device import OFFLINE, ONLINE, BulkFailure, DeviceState, SweepReport
from app.services.registry import Clock, DeviceRegistry, utcnow

logger = logging.getLogger(__name__)


class StalenessSweeper:
    """Periodic scan of online devices."""

    def __init__(
        self,
        registry: DeviceRegistry,
        period: float = 60.0,
        grace_multiplier: float = 2.0,
        clock: Clock = utcnow,
        max_attempts: int = 3,
    ):
        self.registry = registry
        self.period = period
        self.grace_multiplier = grace_multiplier
        self.clock = clock
        self.max_attempts = max_attempts
        self.running = False
        self._timer: asyncio.Task | None = None
        self._current: asyncio.Task | None = None

    def is_stale(self, device: DeviceState, now: datetime) -> bool:
        """A device is stale after missing `grace_multiplier` heartbeats, or if it never sent one."""
        if device.last_heartbeat is None:
            return True
        allowed = timedelta(seconds=device.heartbeat_interval * self.grace_multiplier)
        return now - device.last_heartbeat > allowed

    async def sweep_once(self, now: datetime | None = None) -> SweepReport:
        """Check every online device once and demote the stale ones."""
        now = now or self.clock()
        report = SweepReport(started_at=now)

        devices = await self.registry.list(status=ONLINE)
        report.checked = len(devices)

        for device in devices:
            try:
                await self._demote_if_stale(device, now, report)
            except DeviceError as e:
                logger.error(f"❌ Sweep failed for device {device.id}: {e.reason}")
                report.failed.append(
                    BulkFailure(device_id=device.id, reason=e.reason, status_code=e.status_code)
                )
            except Exception as e:
                logger.exception(f"❌ Unexpected sweep error for device {device.id}")
                report.failed.append(BulkFailure(device_id=device.id, reason=str(e), status_code=500))

        if report.demoted:
            logger.info(f"🔌 Marked {len(report.demoted)} device(s) offline")
        return report

    async def _demote_if_stale(self, device: DeviceState, now: datetime, report: SweepReport) -> None:
        if not self.is_stale(device, now):
            return

        for _ in range(self.max_attempts):
            try:
                await self.registry.apply(device.id, {"status": OFFLINE}, device.version)
            except VersionConflict:
                # A heartbeat or operator write landed after our read; decide again on fresh data
                try:
                    device = await self.registry.get(device.id)
                except DeviceNotFound:
                    return
                if device.status != ONLINE or not self.is_stale(device, now):
                    logger.info(f"↩️ Demotion of {device.id} abandoned, device changed meanwhile")
                    report.raced.append(device.id)
                    return
                continue
            except DeviceNotFound:
                return

            elapsed = "never" if device.last_heartbeat is None else f"{(now - device.last_heartbeat).total_seconds():.0f}s ago"
            logger.info(f"📴 Device {device.name} ({device.id}) offline, last heartbeat {elapsed}")
            report.demoted.append(device.id)
            return

        raise VersionConflict(device.id, device.version)

    # ==================== LIFECYCLE ====================

    def trigger(self) -> asyncio.Task | None:
        """Start a sweep now unless one is already running (then nothing is queued)."""
        if self._current is not None and not self._current.done():
            logger.warning("⏭️ Previous sweep still running, tick skipped")
            return None
        self._current = asyncio.create_task(self._sweep_logged())
        return self._current

    async def _sweep_logged(self) -> SweepReport | None:
        try:
            return await self.sweep_once()
        except Exception as e:
            logger.error(f"Sweeper error: {e}")
            return None

    async def start(self):
        """Start the periodic timer."""
        if self._timer is not None:
            return
        self.running = True
        self._timer = asyncio.create_task(self._run())
        logger.info(f"🧹 Staleness sweeper started (every {self.period:.0f}s)")

    async def _run(self):
        while self.running:
            await asyncio.sleep(self.period)
            self.trigger()

    async def stop(self):
        """Cancel the timer and let an in-flight sweep finish its writes."""
        self.running = False
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        if self._current is not None and not self._current.done():
            await self._current
        logger.info("🧹 Staleness sweeper stopped")

"""
Command API - operator actions on devices

Operator writes are unconditional: they are retried against fresh state
until they land, so an explicit "turn off" sticks even right after a
heartbeat. Turning a device on never touches last_heartbeat, so a device
without recent heartbeats goes back offline on the next sweep.
"""

import logging
from typing import Any

from app.core.errors import DeviceError, InvalidDeviceInput, VersionConflict
from app.schemas.device import (
    OFFLINE,
    ONLINE,
    BulkFailure,
    BulkResult,
    DeviceCreate,
    DeviceState,
    DeviceUpdate,
)
from app.services.registry import DeviceRegistry

logger = logging.getLogger(__name__)


class DeviceCommands:
    """Operator-facing operations on the registry."""

    def __init__(self, registry: DeviceRegistry, max_attempts: int = 10):
        self.registry = registry
        self.max_attempts = max_attempts

    async def list_devices(self) -> list[DeviceState]:
        return await self.registry.list()

    async def get_device(self, device_id: str) -> DeviceState:
        return await self.registry.get(device_id)

    async def create_device(self, spec: DeviceCreate) -> DeviceState:
        device = await self.registry.create(spec)
        logger.info(f"🆕 Device added: {device.name} ({device.id}), status {device.status}")
        return device

    async def update_device(self, device_id: str, update: DeviceUpdate) -> DeviceState:
        changes = update.changes()
        if not changes:
            raise InvalidDeviceInput("No fields to update")
        return await self._write(device_id, changes)

    async def set_status(self, device_id: str, status: str) -> DeviceState:
        return await self._write(device_id, {"status": status})

    async def delete_device(self, device_id: str) -> None:
        await self.registry.delete(device_id)
        logger.info(f"🗑️ Device removed: {device_id}")

    async def _write(self, device_id: str, changes: dict[str, Any]) -> DeviceState:
        for _ in range(self.max_attempts):
            device = await self.registry.get(device_id)
            try:
                return await self.registry.apply(device_id, changes, device.version)
            except VersionConflict:
                continue
        raise VersionConflict(device_id, device.version)

    async def bulk_set_status(self, status: str) -> BulkResult:
        """
        Turn on every offline device (status="online") or turn off every
        online device (status="offline").

        Each device is written independently; a failure is recorded for that
        device and the rest of the batch still goes through.
        """
        source = OFFLINE if status == ONLINE else ONLINE
        result = BulkResult(status=status)

        for device in await self.registry.list(status=source):
            try:
                await self.set_status(device.id, status)
            except DeviceError as e:
                logger.error(f"❌ Bulk {status} failed for {device.id}: {e.reason}")
                result.failed.append(
                    BulkFailure(device_id=device.id, reason=e.reason, status_code=e.status_code)
                )
                continue
            result.updated.append(device.id)

        logger.info(f"📺 Bulk {status}: {len(result.updated)} updated, {len(result.failed)} failed")
        return result

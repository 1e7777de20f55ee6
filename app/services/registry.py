"""
Device Registry - the single point of mutation for device records

Every write is a compare-and-set against the device's version counter:
the caller passes the version it read, and the write only lands when nobody
else changed the device in between. Writes to different devices never wait
on each other.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import DeviceNotFound, InvalidDeviceInput, StoreError, VersionConflict
from app.models.device import Device
from app.schemas.device import DeviceCreate, DeviceState, SensorData, ensure_utc


Clock = Callable[[], datetime]

# Fields a mutation may touch; id, version and timestamps are managed here
MUTABLE_FIELDS = frozenset({
    "name",
    "location",
    "model",
    "network_address",
    "status",
    "last_heartbeat",
    "heartbeat_interval",
    "sensor_data",
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise InvalidDeviceInput(f"Fields cannot be modified: {', '.join(sorted(unknown))}")


class DeviceRegistry(ABC):
    """Authoritative store of device records."""

    @abstractmethod
    async def get(self, device_id: str) -> DeviceState:
        """Return the device or raise DeviceNotFound."""

    @abstractmethod
    async def list(self, status: str | None = None) -> list[DeviceState]:
        """All devices (optionally only those with `status`), newest first."""

    @abstractmethod
    async def list_created_between(self, start: datetime, end: datetime) -> list[DeviceState]:
        """Devices with start <= created_at < end, newest first."""

    @abstractmethod
    async def create(self, spec: DeviceCreate) -> DeviceState:
        """Store a new device with a fresh id."""

    @abstractmethod
    async def apply(self, device_id: str, changes: dict[str, Any], expected_version: int) -> DeviceState:
        """
        Atomically apply `changes` if the stored version equals `expected_version`.

        Raises:
            DeviceNotFound: the device does not exist (anymore)
            VersionConflict: another write landed since `expected_version` was read
        """

    @abstractmethod
    async def delete(self, device_id: str) -> None:
        """Remove the device or raise DeviceNotFound."""


# ==================== IN-MEMORY ====================

class MemoryDeviceRegistry(DeviceRegistry):
    """Registry kept in process memory, one lock per device id."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._devices: dict[str, DeviceState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._by_status: dict[str, set[str]] = {"online": set(), "offline": set()}

    async def get(self, device_id: str) -> DeviceState:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFound(device_id)
        return device

    async def list(self, status: str | None = None) -> list[DeviceState]:
        if status is None:
            devices = list(self._devices.values())
        else:
            ids = self._by_status.get(status, set())
            devices = [self._devices[i] for i in ids if i in self._devices]
        return sorted(devices, key=lambda d: d.created_at, reverse=True)

    async def list_created_between(self, start: datetime, end: datetime) -> list[DeviceState]:
        devices = [d for d in self._devices.values() if start <= d.created_at < end]
        return sorted(devices, key=lambda d: d.created_at, reverse=True)

    async def create(self, spec: DeviceCreate) -> DeviceState:
        now = self._clock()
        device = DeviceState(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            version=1,
            **spec.model_dump(),
        )
        self._locks[device.id] = asyncio.Lock()
        self._devices[device.id] = device
        self._by_status[device.status].add(device.id)
        return device

    async def apply(self, device_id: str, changes: dict[str, Any], expected_version: int) -> DeviceState:
        _check_changes(changes)
        lock = self._locks.get(device_id)
        if lock is None:
            raise DeviceNotFound(device_id)

        async with lock:
            current = self._devices.get(device_id)
            if current is None:
                raise DeviceNotFound(device_id)
            if current.version != expected_version:
                raise VersionConflict(device_id, expected_version)

            updated = current.model_copy(update={
                **changes,
                "version": current.version + 1,
                "updated_at": self._clock(),
            })
            self._devices[device_id] = updated
            self._by_status[current.status].discard(device_id)
            self._by_status[updated.status].add(device_id)
            return updated

    async def delete(self, device_id: str) -> None:
        lock = self._locks.get(device_id)
        if lock is None:
            raise DeviceNotFound(device_id)

        async with lock:
            device = self._devices.pop(device_id, None)
            if device is None:
                raise DeviceNotFound(device_id)
            self._by_status[device.status].discard(device_id)
            self._locks.pop(device_id, None)


# ==================== SQL ====================

def _to_state(device: Device) -> DeviceState:
    return DeviceState(
        id=device.id,
        name=device.name,
        location=device.location,
        model=device.model,
        network_address=device.network_address,
        status=device.status,
        last_heartbeat=ensure_utc(device.last_heartbeat),
        heartbeat_interval=device.heartbeat_interval,
        sensor_data=SensorData(**device.sensor_data) if device.sensor_data else None,
        version=device.version,
        created_at=ensure_utc(device.created_at),
        updated_at=ensure_utc(device.updated_at),
    )


def _to_columns(changes: dict[str, Any]) -> dict[str, Any]:
    values = dict(changes)
    if "sensor_data" in values:
        sensor_data = values["sensor_data"]
        values["sensor_data"] = sensor_data.model_dump(exclude_none=True) if sensor_data else None
    return values


class SqlDeviceRegistry(DeviceRegistry):
    """Registry backed by the `devices` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = utcnow):
        self._session_maker = session_maker
        self._clock = clock

    async def get(self, device_id: str) -> DeviceState:
        async with self._session_maker() as session:
            try:
                device = await session.get(Device, device_id)
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to load device {device_id}: {e}") from e

        if device is None:
            raise DeviceNotFound(device_id)
        return _to_state(device)

    async def list(self, status: str | None = None) -> list[DeviceState]:
        query = select(Device).order_by(Device.created_at.desc())
        if status is not None:
            query = query.where(Device.status == status)
        return await self._fetch(query)

    async def list_created_between(self, start: datetime, end: datetime) -> list[DeviceState]:
        query = (
            select(Device)
            .where(Device.created_at >= start, Device.created_at < end)
            .order_by(Device.created_at.desc())
        )
        return await self._fetch(query)

    async def _fetch(self, query) -> list[DeviceState]:
        async with self._session_maker() as session:
            try:
                result = await session.execute(query)
                return [_to_state(device) for device in result.scalars().all()]
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to list devices: {e}") from e

    async def create(self, spec: DeviceCreate) -> DeviceState:
        now = self._clock()
        device = Device(
            id=str(uuid.uuid4()),
            version=1,
            created_at=now,
            updated_at=now,
            **spec.model_dump(),
        )
        async with self._session_maker() as session:
            try:
                session.add(device)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError(f"Failed to create device: {e}") from e

        return _to_state(device)

    async def apply(self, device_id: str, changes: dict[str, Any], expected_version: int) -> DeviceState:
        _check_changes(changes)
        values = _to_columns(changes)
        values["version"] = expected_version + 1
        values["updated_at"] = self._clock()

        stmt = (
            update(Device)
            .where(Device.id == device_id, Device.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self._session_maker() as session:
            try:
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    current_version = await session.scalar(
                        select(Device.version).where(Device.id == device_id)
                    )
                    await session.rollback()
                    if current_version is None:
                        raise DeviceNotFound(device_id)
                    raise VersionConflict(device_id, expected_version)

                device = await session.get(Device, device_id)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError(f"Failed to update device {device_id}: {e}") from e

        return _to_state(device)

    async def delete(self, device_id: str) -> None:
        async with self._session_maker() as session:
            try:
                device = await session.get(Device, device_id)
                if device is None:
                    raise DeviceNotFound(device_id)
                await session.delete(device)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError(f"Failed to delete device {device_id}: {e}") from e


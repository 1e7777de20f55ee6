"""
Device schemas - validated input and immutable registry snapshots
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.config import settings


DeviceStatus = Literal["online", "offline"]

ONLINE = "online"
OFFLINE = "offline"


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SensorData(BaseModel):
    """Electrical and thermal readings reported by a TV. Every field is optional."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    current: float | None = None  # A
    voltage: float | None = None  # V
    power: float | None = None  # W
    temperature: float | None = None  # Celsius

    def merged_over(self, previous: "SensorData | None") -> "SensorData":
        """Overlay the readings present here on top of a previous snapshot."""
        if previous is None:
            return self
        update = self.model_dump(exclude_none=True)
        return previous.model_copy(update=update)


class DeviceState(BaseModel):
    """Snapshot of a device as stored in the registry."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    location: str
    model: str
    network_address: str | None = None
    status: DeviceStatus = OFFLINE
    last_heartbeat: datetime | None = None
    heartbeat_interval: int = 60
    sensor_data: SensorData | None = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def is_online(self) -> bool:
        return self.status == ONLINE


def _required_text(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class DeviceCreate(BaseModel):
    """Operator "add device" request."""

    name: str
    location: str
    model: str
    network_address: str | None = None
    status: DeviceStatus = OFFLINE
    heartbeat_interval: int = Field(default_factory=lambda: settings.default_heartbeat_interval, gt=0)

    @field_validator("name", "location", "model")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _required_text(value)


class DeviceUpdate(BaseModel):
    """Partial operator update. Heartbeat fields are not writable here."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    location: str | None = None
    model: str | None = None
    network_address: str | None = None
    status: DeviceStatus | None = None
    heartbeat_interval: int | None = Field(default=None, gt=0)

    @field_validator("name", "location", "model")
    @classmethod
    def not_blank(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _required_text(value)

    @model_validator(mode="after")
    def no_null_required_fields(self) -> "DeviceUpdate":
        for field in ("name", "location", "model", "status", "heartbeat_interval"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self

    def changes(self) -> dict:
        """Only the fields the caller actually sent."""
        return {field: getattr(self, field) for field in self.model_fields_set}


class HeartbeatEvent(BaseModel):
    """Heartbeat published by a TV on devices/{id}/heartbeat."""

    model_config = ConfigDict(extra="ignore")

    device_id: str = Field(min_length=1)
    status: DeviceStatus = ONLINE
    sensor_data: SensorData | None = None
    timestamp: datetime | None = None  # receive time is used when missing

    @field_validator("timestamp")
    @classmethod
    def to_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class StatusRequest(BaseModel):
    """Body of power and bulk status requests."""

    status: DeviceStatus


class BulkFailure(BaseModel):
    device_id: str
    reason: str
    status_code: int


class BulkResult(BaseModel):
    """Outcome of a bulk status change, reported per device."""

    status: DeviceStatus
    updated: list[str] = []
    failed: list[BulkFailure] = []


class SweepReport(BaseModel):
    """Outcome of one staleness sweep."""

    started_at: datetime
    checked: int = 0
    demoted: list[str] = []
    raced: list[str] = []
    failed: list[BulkFailure] = []

# Pydantic schemas
from app.schemas.device import (
    BulkFailure,
    BulkResult,
    DeviceCreate,
    DeviceState,
    DeviceUpdate,
    HeartbeatEvent,
    SensorData,
    StatusRequest,
    SweepReport,
)

__all__ = [
    "BulkFailure",
    "BulkResult",
    "DeviceCreate",
    "DeviceState",
    "DeviceUpdate",
    "HeartbeatEvent",
    "SensorData",
    "StatusRequest",
    "SweepReport",
]

"""
IoTV Monitor - API Server

Provides endpoints for:
- Device management (list, add, update, remove)
- Power control, single device and bulk
- Heartbeat push over HTTP (alternative to MQTT)
- On-demand staleness sweep
- Fleet stats and CSV export
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from fastapi import Body, Depends, FastAPI, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.database import async_session_maker, create_tables
from app.core.errors import (
    DeviceError,
    DeviceNotFound,
    InvalidDeviceInput,
    StoreError,
    VersionConflict,
)
from app.mqtt.main import publish_device_command
from app.schemas.device import ONLINE, DeviceCreate, DeviceUpdate, StatusRequest
from app.services.commands import DeviceCommands
from app.services.export import export_month, parse_month
from app.services.heartbeat import HeartbeatIngestor, IngestOutcome, parse_heartbeat
from app.services.registry import DeviceRegistry, SqlDeviceRegistry
from app.services.sweeper import StalenessSweeper

API_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    if settings.create_tables:
        await create_tables()

    registry = SqlDeviceRegistry(async_session_maker)
    app.state.registry = registry
    # Periodic sweeps run in the MQTT processor; this one serves POST /api/sweep
    app.state.sweeper = StalenessSweeper(
        registry,
        period=settings.sweep_interval_seconds,
        grace_multiplier=settings.grace_multiplier,
    )
    logger.info("🚀 IoTV Monitor API started")
    yield
    await app.state.sweeper.stop()


# ==================== APP ====================

app = FastAPI(
    title="IoTV Monitor API",
    description="Liveness tracking and control for smart TVs",
    version=API_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(DeviceError)
async def device_error_handler(request: Request, exc: DeviceError):
    return JSONResponse({"error": exc.reason}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"][1:])
        problems.append(f"{field}: {error['msg']}" if field else error["msg"])
    return JSONResponse({"error": "; ".join(problems)}, status_code=status.HTTP_400_BAD_REQUEST)


# ==================== DEPENDENCIES ====================

def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


def get_sweeper(request: Request) -> StalenessSweeper:
    return request.app.state.sweeper


def get_commands(registry: DeviceRegistry = Depends(get_registry)) -> DeviceCommands:
    return DeviceCommands(registry)


def get_ingestor(registry: DeviceRegistry = Depends(get_registry)) -> HeartbeatIngestor:
    return HeartbeatIngestor(
        registry,
        max_skew=timedelta(seconds=settings.max_clock_skew_seconds),
    )


def get_command_publisher() -> Callable[..., bool]:
    return publish_device_command


# ==================== DEVICES ====================

@app.get("/api/devices")
async def list_devices(commands: DeviceCommands = Depends(get_commands)):
    """All devices, newest first."""
    devices = await commands.list_devices()
    return {"devices": [d.model_dump(mode="json") for d in devices]}


@app.post("/api/devices", status_code=status.HTTP_201_CREATED)
async def create_device(spec: DeviceCreate, commands: DeviceCommands = Depends(get_commands)):
    device = await commands.create_device(spec)
    return {"device": device.model_dump(mode="json"), "message": "Device created successfully"}


@app.post("/api/devices/bulk")
async def bulk_set_status(body: StatusRequest, commands: DeviceCommands = Depends(get_commands)):
    """
    Turn on all offline devices ({"status": "online"}) or turn off all
    online ones ({"status": "offline"}). Failures are reported per device.
    """
    result = await commands.bulk_set_status(body.status)
    return result.model_dump(mode="json")


@app.get("/api/devices/{device_id}")
async def get_device(device_id: str, commands: DeviceCommands = Depends(get_commands)):
    device = await commands.get_device(device_id)
    return {"device": device.model_dump(mode="json")}


@app.put("/api/devices/{device_id}")
async def update_device(
    device_id: str,
    update: DeviceUpdate,
    commands: DeviceCommands = Depends(get_commands),
):
    device = await commands.update_device(device_id, update)
    return {"device": device.model_dump(mode="json"), "message": "Device updated successfully"}


@app.delete("/api/devices/{device_id}")
async def delete_device(device_id: str, commands: DeviceCommands = Depends(get_commands)):
    await commands.delete_device(device_id)
    return {"message": "Device deleted successfully"}


@app.post("/api/devices/{device_id}/power")
async def set_power(
    device_id: str,
    body: StatusRequest,
    commands: DeviceCommands = Depends(get_commands),
    publish: Callable[..., bool] = Depends(get_command_publisher),
):
    """
    Set the device status and forward a power command to the TV.
    The registry write stands even if the command cannot be delivered.
    """
    device = await commands.set_status(device_id, body.status)
    command_sent = await run_in_threadpool(publish, device_id, "power", status=body.status)
    return {"device": device.model_dump(mode="json"), "command_sent": command_sent}


# ==================== HEARTBEATS ====================

@app.post("/api/heartbeat")
async def push_heartbeat(
    payload: dict[str, Any] = Body(...),
    ingestor: HeartbeatIngestor = Depends(get_ingestor),
):
    """Apply a heartbeat pushed over HTTP (same payload as the MQTT message)."""
    event = parse_heartbeat(payload)
    outcome = await ingestor.ingest(event)
    if outcome == IngestOutcome.UNKNOWN_DEVICE:
        raise DeviceNotFound(event.device_id)
    if outcome == IngestOutcome.FUTURE_TIMESTAMP:
        raise InvalidDeviceInput(f"Heartbeat timestamp for {event.device_id} is in the future")
    if outcome == IngestOutcome.CONFLICT:
        raise VersionConflict(event.device_id)
    return {"outcome": outcome.value}


@app.post("/api/sweep")
async def run_sweep(sweeper: StalenessSweeper = Depends(get_sweeper)):
    """Run a staleness sweep now; skipped if one is already in progress."""
    task = sweeper.trigger()
    if task is None:
        return {"skipped": True}

    report = await task
    if report is None:
        raise StoreError("Sweep failed")
    return report.model_dump(mode="json")


# ==================== STATS & EXPORT ====================

@app.get("/api/stats")
async def get_stats(registry: DeviceRegistry = Depends(get_registry)):
    devices = await registry.list()
    online = sum(1 for d in devices if d.status == ONLINE)
    return {"total": len(devices), "online": online, "offline": len(devices) - online}


@app.get("/api/export/devices.csv")
async def export_devices(
    month: str | None = Query(None, description="YYYY-MM, defaults to current month"),
    registry: DeviceRegistry = Depends(get_registry),
):
    """CSV of devices created during the given month."""
    if month is None:
        now = datetime.now(timezone.utc)
        year, month_number = now.year, now.month
    else:
        try:
            year, month_number = parse_month(month)
        except ValueError:
            raise InvalidDeviceInput(f"Invalid month {month!r}, expected YYYY-MM")

    filename, content = await export_month(registry, year, month_number)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# ==================== HEALTH CHECK ====================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": API_VERSION}


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

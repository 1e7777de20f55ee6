"""
CSV export of device records created in a given month
"""

import csv
import io
from datetime import datetime, timezone

from app.schemas.device import DeviceState
from app.services.registry import DeviceRegistry

CSV_HEADERS = [
    "ID",
    "Name",
    "Location",
    "Status",
    "Model",
    "Network Address",
    "Last Heartbeat",
    "Created At",
    "Updated At",
]

DATE_FORMAT = "%d/%m/%Y %H:%M:%S"


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """[start, end) of a calendar month in UTC."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def parse_month(value: str) -> tuple[int, int]:
    """Parse 'YYYY-MM'."""
    parsed = datetime.strptime(value, "%Y-%m")
    return parsed.year, parsed.month


def _fmt(value: datetime | None) -> str:
    return value.strftime(DATE_FORMAT) if value else ""


def devices_to_csv(devices: list[DeviceState]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)
    for device in devices:
        writer.writerow([
            device.id,
            device.name,
            device.location,
            device.status,
            device.model,
            device.network_address or "",
            _fmt(device.last_heartbeat),
            _fmt(device.created_at),
            _fmt(device.updated_at),
        ])
    return buffer.getvalue()


async def export_month(registry: DeviceRegistry, year: int, month: int) -> tuple[str, str]:
    """Return (filename, csv content) for devices created in the month."""
    start, end = month_bounds(year, month)
    devices = await registry.list_created_between(start, end)
    return f"devices_{month:02d}-{year}.csv", devices_to_csv(devices)
